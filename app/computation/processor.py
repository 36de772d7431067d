"""
Per-student processing and the per-job aggregation context

A StudentProcessor turns one student (+ results, registration flag, expected
core courses) into a StudentOutcome. The ComputationContext folds outcomes
into level-partitioned aggregates. Both are synchronous; the orchestrator
owns all I/O.
"""
import logging
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from app.computation.carryover import CarryoverTracker
from app.computation.constants import (
    CLASSIFICATIONS,
    LEVELS,
    Remark,
)
from app.computation.errors import ComputationError, MissingResultsError
from app.computation.grading import GradeCalculator, SemesterGPA
from app.computation.rules import StandingPolicy
from app.computation.standing import AcademicStandingEngine, StandingDecision
from app.models.computation import (
    CarryoverRecord,
    CatalogCourse,
    Course,
    FailedStudentEntry,
    GPABlock,
    ListCourse,
    ListEntry,
    ResultRecord,
    SemesterResultRecord,
    Student,
    StudentMutation,
    StudentSummary,
)

LIST_BY_REMARK = {
    Remark.EXCELLENT.value: "pass_list",
    Remark.GOOD.value: "pass_list",
    Remark.PROBATION.value: "probation_list",
    Remark.WITHDRAWN.value: "withdrawal_list",
    Remark.TERMINATED.value: "termination_list",
    Remark.SUSPENDED.value: "suspension_list",
}
STANDING_LISTS = ("pass_list", "probation_list", "withdrawal_list", "termination_list", "suspension_list")
ALL_LISTS = STANDING_LISTS + ("carryover_list",)


class StudentOutcome(BaseModel):
    student_id: str
    level: str
    summary: Optional[StudentSummary] = None
    decision: Optional[StandingDecision] = None
    semester: Optional[SemesterGPA] = None
    carryovers: List[CarryoverRecord] = Field(default_factory=list)
    semester_result: Optional[SemesterResultRecord] = None
    mutation: Optional[StudentMutation] = None
    lists: List[str] = Field(default_factory=list)
    error: Optional[FailedStudentEntry] = None

    @property
    def has_results(self) -> bool:
        return self.summary is not None and self.summary.has_results


class LevelAggregate(BaseModel):
    """Running per-level state of a department job"""
    level: str
    summaries: List[StudentSummary] = Field(default_factory=list)
    catalog: Dict[str, CatalogCourse] = Field(default_factory=dict)
    pass_list: List[ListEntry] = Field(default_factory=list)
    probation_list: List[ListEntry] = Field(default_factory=list)
    withdrawal_list: List[ListEntry] = Field(default_factory=list)
    termination_list: List[ListEntry] = Field(default_factory=list)
    suspension_list: List[ListEntry] = Field(default_factory=list)
    carryover_list: List[ListEntry] = Field(default_factory=list)
    total_students: int = 0
    students_with_results: int = 0
    total_gpa: float = 0.0
    highest_gpa: float = 0.0
    lowest_gpa: Optional[float] = None
    total_carryovers: int = 0
    affected_students: int = 0
    failed_students: int = 0
    grade_distribution: Dict[str, int] = Field(default_factory=lambda: {c: 0 for c in CLASSIFICATIONS})


class ComputationContext:
    """Typed per-job aggregation state; discarded when the job ends"""

    def __init__(self, department_id: str, term_id: str, master_run_id: Optional[str] = None):
        self.department_id = department_id
        self.term_id = term_id
        self.master_run_id = master_run_id
        self.levels: Dict[str, LevelAggregate] = {level: LevelAggregate(level=level) for level in LEVELS}
        self.failed_students: List[FailedStudentEntry] = []
        self.students_processed = 0
        self.core_courses: Dict[str, List[Course]] = {}

    def level(self, level: str) -> LevelAggregate:
        if level not in self.levels:
            self.levels[level] = LevelAggregate(level=level)
        return self.levels[level]

    def record_missing(self, entry: FailedStudentEntry) -> None:
        """A listed student whose document could not be read"""
        self.students_processed += 1
        self.failed_students.append(entry)

    def record(self, outcome: StudentOutcome) -> None:
        agg = self.level(outcome.level)
        agg.total_students += 1
        self.students_processed += 1

        if outcome.error is not None:
            agg.failed_students += 1
            self.failed_students.append(outcome.error)

        if outcome.carryovers:
            agg.total_carryovers += len(outcome.carryovers)
            agg.affected_students += 1

        summary = outcome.summary
        if summary is None:
            return

        agg.summaries.append(summary)
        if summary.has_results:
            agg.students_with_results += 1
            gpa = summary.current.gpa
            agg.total_gpa += gpa
            agg.highest_gpa = max(agg.highest_gpa, gpa)
            if gpa > 0 and (agg.lowest_gpa is None or gpa < agg.lowest_gpa):
                agg.lowest_gpa = gpa
            if summary.classification:
                agg.grade_distribution[summary.classification] = agg.grade_distribution.get(summary.classification, 0) + 1
            for course in summary.courses:
                if course.course_id not in agg.catalog:
                    agg.catalog[course.course_id] = CatalogCourse(
                        course_id=course.course_id,
                        course_code=course.course_code,
                        course_title=course.course_title,
                        unit=course.unit,
                        level=course.level,
                        is_core=course.is_core,
                    )

        entry = _list_entry(summary)
        for name in outcome.lists:
            if name == "carryover_list":
                getattr(agg, name).append(_carryover_entry(summary))
            else:
                getattr(agg, name).append(entry)


def _list_entry(summary: StudentSummary) -> ListEntry:
    return ListEntry(
        student_id=summary.student_id,
        matric_number=summary.matric_number,
        name=summary.name,
        level=summary.level,
        gpa=summary.current.gpa,
        cgpa=summary.cumulative.gpa,
        remark=summary.remark,
        reason=summary.reason,
    )


def _carryover_entry(summary: StudentSummary) -> ListEntry:
    entry = _list_entry(summary)
    entry.courses = [
        ListCourse(
            course_id=c.course_id,
            course_code=c.course_code,
            course_title=c.course_title,
            unit=c.unit,
            is_carryover=c.is_core,
        )
        for c in summary.courses if c.failed
    ]
    return entry


class StudentProcessor:
    def __init__(
        self,
        policy: Optional[StandingPolicy] = None,
        is_final: bool = True,
        master_run_id: Optional[str] = None,
    ):
        self.policy = policy or StandingPolicy.get_default_policy()
        self.calculator = GradeCalculator.from_policy(self.policy)
        self.standing = AcademicStandingEngine(self.policy)
        self.tracker = CarryoverTracker()
        self.is_final = is_final
        self.master_run_id = master_run_id

    def process(
        self,
        student: Student,
        results: List[ResultRecord],
        registered: bool,
        term_id: str,
        expected_core_courses: Optional[List[Course]] = None,
    ) -> StudentOutcome:
        """Never raises; errors end up in outcome.error"""
        try:
            if not registered:
                return self._unregistered(student, term_id)
            if not results:
                return self._missing_results(student, term_id, expected_core_courses or [])
            return self._graded(student, results, term_id, expected_core_courses or [])
        except Exception as e:
            error = ComputationError.from_error(e)
            logging.exception("Failed to process student %s: %s", student.id, error.message)
            return StudentOutcome(
                student_id=student.id,
                level=student.level,
                error=FailedStudentEntry(
                    student_id=student.id,
                    matric_number=student.matric_number,
                    name=student.name,
                    level=student.level,
                    error=error.message,
                    code=error.code,
                ),
            )

    def _unregistered(self, student: Student, term_id: str) -> StudentOutcome:
        decision = self.standing.evaluate(
            student, 0.0, student.cgpa, student.total_carryovers,
            registered=False, is_final=self.is_final, term_id=term_id,
        )
        history = student.history
        summary = StudentSummary(
            student_id=student.id,
            matric_number=student.matric_number,
            name=student.name,
            level=student.level,
            previous=GPABlock(tcp=history.previous_tcp, tnu=history.previous_tnu, gpa=history.previous_gpa),
            cumulative=GPABlock(tcp=history.previous_tcp, tnu=history.previous_tnu, gpa=student.cgpa),
            remark=decision.remark,
            action_taken=decision.action_taken,
            reason=decision.reason,
            probation_status=decision.probation_status,
            termination_status=decision.termination_status,
            gpa_evaluated=False,
            has_results=False,
        )
        return StudentOutcome(
            student_id=student.id,
            level=student.level,
            summary=summary,
            decision=decision,
            lists=[LIST_BY_REMARK[decision.remark]],
            semester_result=self._semester_result(student, term_id, summary),
            mutation=self._mutation(student, term_id, decision, None, []),
        )

    def _missing_results(self, student: Student, term_id: str, expected: List[Course]) -> StudentOutcome:
        carryovers = self.tracker.plan(
            student, term_id, expected_core_courses=expected, master_run_id=self.master_run_id,
        )
        error = MissingResultsError(student.id)
        logging.warning("No results found for registered student %s (%d core courses pending)",
                        student.id, len(carryovers))
        mutation = None
        if carryovers:
            new_ids = self.tracker.new_for_student(student, carryovers)
            mutation = StudentMutation(
                student_id=student.id,
                carryover_increment=len(new_ids),
                add_carryover_courses=[c.course_id for c in carryovers],
            )
        return StudentOutcome(
            student_id=student.id,
            level=student.level,
            carryovers=carryovers,
            mutation=mutation,
            error=FailedStudentEntry(
                student_id=student.id,
                matric_number=student.matric_number,
                name=student.name,
                level=student.level,
                error="No results found",
                code=error.code,
            ),
        )

    def _graded(
        self,
        student: Student,
        results: List[ResultRecord],
        term_id: str,
        expected: List[Course],
    ) -> StudentOutcome:
        history = student.history
        resolved = [r.resolved() for r in results]
        semester = self.calculator.semester_gpa(resolved)
        cgpa = self.calculator.cgpa(
            history.previous_tcp, history.previous_tnu, semester.tcp, semester.tnu, student.cgpa,
        )
        decision = self.standing.evaluate(
            student, semester.gpa, cgpa, student.total_carryovers,
            registered=True, is_final=self.is_final, term_id=term_id,
        )

        carryovers: List[CarryoverRecord] = []
        outstanding = []
        academic_history = []
        if not decision.is_removed:
            submitted = {r.course_id for r in results} | {r.course_id for r in resolved}
            carryovers = self.tracker.plan(
                student, term_id,
                semester=semester,
                expected_core_courses=expected,
                submitted_course_ids=submitted,
                master_run_id=self.master_run_id,
            )
            outstanding = [c for c in history.outstanding_courses if c.term_id != term_id]
            academic_history = [h for h in history.academic_history if h.term_id != term_id]

        summary = StudentSummary(
            student_id=student.id,
            matric_number=student.matric_number,
            name=student.name,
            level=student.level,
            current=GPABlock(tcp=semester.tcp, tnu=semester.tnu, gpa=semester.gpa),
            previous=GPABlock(tcp=history.previous_tcp, tnu=history.previous_tnu, gpa=history.previous_gpa),
            cumulative=GPABlock(
                tcp=history.previous_tcp + semester.tcp,
                tnu=history.previous_tnu + semester.tnu,
                gpa=cgpa,
            ),
            courses=semester.courses,
            failed_count=semester.failed_count,
            carryover_count=len(carryovers),
            outstanding_courses=outstanding,
            academic_history=academic_history,
            remark=decision.remark,
            action_taken=decision.action_taken,
            reason=decision.reason,
            probation_status=decision.probation_status,
            termination_status=decision.termination_status,
            classification=self.calculator.classification(semester.gpa),
        )

        lists = [LIST_BY_REMARK[decision.remark]]
        if semester.failed_count > 0:
            lists.append("carryover_list")

        return StudentOutcome(
            student_id=student.id,
            level=student.level,
            summary=summary,
            decision=decision,
            semester=semester,
            carryovers=carryovers,
            lists=lists,
            semester_result=self._semester_result(student, term_id, summary),
            mutation=self._mutation(student, term_id, decision, summary, carryovers),
        )

    def _semester_result(self, student: Student, term_id: str, summary: StudentSummary) -> SemesterResultRecord:
        return SemesterResultRecord(
            id=SemesterResultRecord.make_id(student.id, term_id),
            student_id=student.id,
            term_id=term_id,
            department_id=student.department_id,
            level=student.level,
            courses=summary.courses,
            current=summary.current,
            previous=summary.previous,
            cumulative=summary.cumulative,
            gpa=summary.current.gpa,
            cgpa=summary.cumulative.gpa,
            remark=summary.remark,
            failed_count=summary.failed_count,
            carryover_count=summary.carryover_count,
            master_run_id=self.master_run_id,
        )

    def _mutation(
        self,
        student: Student,
        term_id: str,
        decision: StandingDecision,
        summary: Optional[StudentSummary],
        carryovers: List[CarryoverRecord],
    ) -> StudentMutation:
        fields = {
            "probation_status": decision.probation_status,
            "termination_status": decision.termination_status,
            "suspension": decision.suspension.model_dump() if decision.suspension else None,
            "last_computed_term_id": term_id,
            "term_start_probation_status": student.probation_at_term_start(term_id),
        }
        if summary is not None and decision.gpa_evaluated:
            fields["gpa"] = summary.current.gpa
            fields["cgpa"] = summary.cumulative.gpa
        new_ids = self.tracker.new_for_student(student, carryovers)
        return StudentMutation(
            student_id=student.id,
            set_fields=fields,
            carryover_increment=len(new_ids),
            add_carryover_courses=[c.course_id for c in carryovers],
        )
