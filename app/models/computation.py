"""
Firestore documents of the results computation engine
"""
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from app.computation.constants import (
    CarryoverReason,
    ComputationStatus,
    DEFAULT_LEVEL,
    MasterRunStatus,
    ProbationStatus,
    Purpose,
    SuspensionReason,
    TerminationStatus,
)
from app.computation.grading import CourseGrade
from app.models.firestore_models import FirestoreModel


class _Value(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True, extra="ignore")


# --- Reference data ---
class Department(FirestoreModel):
    name: str = ""
    code: Optional[str] = None
    faculty_id: Optional[str] = None
    head_user_id: Optional[str] = None
    is_active: Optional[bool] = True


class Term(FirestoreModel):
    name: Optional[str] = None
    session: Optional[str] = None
    semester: Optional[int] = None
    department_id: Optional[str] = None
    is_active: bool = True
    is_locked: bool = False
    locked_at: Optional[datetime] = None


class Course(FirestoreModel):
    code: str
    title: str = ""
    unit: int = 0
    level: Optional[str] = None
    department_id: Optional[str] = None
    is_core: bool = True
    borrowed_from: Optional[str] = None


# --- Students ---
class Suspension(_Value):
    active: bool = True
    reason: SuspensionReason
    since_term_id: Optional[str] = None


class OutstandingCourse(_Value):
    course_id: str
    course_code: str = ""
    course_title: str = ""
    unit: int = 0
    term_id: Optional[str] = None


class TermHistory(_Value):
    term_id: str
    session: Optional[str] = None
    level: Optional[str] = None
    gpa: float = 0.0
    cgpa: float = 0.0
    tcp: int = 0
    tnu: int = 0
    remark: Optional[str] = None


class StudentHistory(_Value):
    """Everything earlier terms contribute to the term being computed"""
    previous_tcp: int = 0
    previous_tnu: int = 0
    previous_gpa: float = 0.0
    academic_history: List[TermHistory] = Field(default_factory=list)
    outstanding_courses: List[OutstandingCourse] = Field(default_factory=list)


class Student(FirestoreModel):
    matric_number: str = ""
    name: str = ""
    department_id: Optional[str] = None
    level: str = DEFAULT_LEVEL
    gpa: float = 0.0
    cgpa: float = 0.0
    total_carryovers: int = 0
    carryover_courses: List[str] = Field(default_factory=list)
    probation_status: ProbationStatus = ProbationStatus.NONE
    termination_status: TerminationStatus = TerminationStatus.NONE
    suspension: Optional[Suspension] = None
    is_active: bool = True
    # term of the last final computation that wrote this document, and the
    # probation status the student had when that term was first computed
    last_computed_term_id: Optional[str] = None
    term_start_probation_status: Optional[ProbationStatus] = None

    # filled by the repository for the term being computed, never stored
    history: StudentHistory = Field(default_factory=StudentHistory, exclude=True)

    @property
    def year_of_study(self) -> int:
        try:
            return max(int(self.level) // 100, 1)
        except (TypeError, ValueError):
            return 1

    @property
    def active_suspension(self) -> Optional[Suspension]:
        if self.suspension and self.suspension.active:
            return self.suspension
        return None

    def computed_in(self, term_id: Optional[str]) -> bool:
        return term_id is not None and self.last_computed_term_id == term_id

    def probation_at_term_start(self, term_id: Optional[str]) -> str:
        """Probation status before any earlier attempt on `term_id` overwrote it"""
        if self.computed_in(term_id) and self.term_start_probation_status is not None:
            return self.term_start_probation_status
        return self.probation_status


# --- Results ---
class ResultRecord(FirestoreModel):
    """
    One submitted score for (student, course, term) with denormalized course info.
    `borrowed_*` fields point at the origin course of a borrowed course.
    """
    student_id: str
    course_id: str
    term_id: str
    score: float
    course_code: str = ""
    course_title: str = ""
    unit: int = 0
    is_core: bool = True
    course_level: Optional[str] = None
    borrowed_course_id: Optional[str] = None
    borrowed_course_code: Optional[str] = None
    borrowed_course_title: Optional[str] = None
    borrowed_unit: Optional[int] = None

    @property
    def is_borrowed(self) -> bool:
        return bool(self.borrowed_course_id or self.borrowed_course_code)

    def resolved(self) -> "ResultRecord":
        """Copy with a borrowed course replaced by its origin code/title/unit"""
        if not self.is_borrowed:
            return self
        return self.model_copy(update={
            "course_id": self.borrowed_course_id or self.course_id,
            "course_code": self.borrowed_course_code or self.course_code,
            "course_title": self.borrowed_course_title or self.course_title,
            "unit": self.borrowed_unit if self.borrowed_unit is not None else self.unit,
        })


class Registration(FirestoreModel):
    student_id: str
    term_id: str
    course_ids: List[str] = Field(default_factory=list)


# --- Carry-overs ---
class CarryoverRecord(FirestoreModel):
    student_id: str
    course_id: str
    term_id: str
    department_id: Optional[str] = None
    level: Optional[str] = None
    course_code: str = ""
    course_title: str = ""
    unit: int = 0
    grade: str = "F"
    score: float = 0.0
    reason: CarryoverReason = CarryoverReason.FAILED
    is_core: bool = True
    cleared: bool = False
    cleared_by: Optional[str] = None
    cleared_at: Optional[datetime] = None
    clearing_remark: Optional[str] = None
    clearing_result_id: Optional[str] = None
    master_run_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def make_id(student_id: str, course_id: str, term_id: str) -> str:
        return f"{student_id}_{course_id}_{term_id}"


class GPABlock(_Value):
    tcp: int = 0
    tnu: int = 0
    gpa: float = 0.0


class SemesterResultRecord(FirestoreModel):
    student_id: str
    term_id: str
    department_id: Optional[str] = None
    level: Optional[str] = None
    courses: List[CourseGrade] = Field(default_factory=list)
    current: GPABlock = Field(default_factory=GPABlock)
    previous: GPABlock = Field(default_factory=GPABlock)
    cumulative: GPABlock = Field(default_factory=GPABlock)
    gpa: float = 0.0
    cgpa: float = 0.0
    remark: Optional[str] = None
    failed_count: int = 0
    carryover_count: int = 0
    master_run_id: Optional[str] = None
    computed_at: Optional[datetime] = None

    @staticmethod
    def make_id(student_id: str, term_id: str) -> str:
        return f"{student_id}_{term_id}"


# --- Summaries ---
class StudentSummary(_Value):
    student_id: str
    matric_number: str = ""
    name: str = ""
    level: str = DEFAULT_LEVEL
    current: GPABlock = Field(default_factory=GPABlock)
    previous: GPABlock = Field(default_factory=GPABlock)
    cumulative: GPABlock = Field(default_factory=GPABlock)
    courses: List[CourseGrade] = Field(default_factory=list)
    failed_count: int = 0
    carryover_count: int = 0
    outstanding_courses: List[OutstandingCourse] = Field(default_factory=list)
    academic_history: List[TermHistory] = Field(default_factory=list)
    remark: str = ""
    action_taken: str = "none"
    reason: Optional[str] = None
    probation_status: str = ProbationStatus.NONE.value
    termination_status: str = TerminationStatus.NONE.value
    classification: Optional[str] = None
    gpa_evaluated: bool = True
    has_results: bool = True


class ListCourse(_Value):
    course_id: str
    course_code: str
    course_title: str = ""
    unit: int = 0
    is_carryover: bool = False


class ListEntry(_Value):
    student_id: str
    matric_number: str = ""
    name: str = ""
    level: str = DEFAULT_LEVEL
    gpa: float = 0.0
    cgpa: float = 0.0
    remark: str = ""
    reason: Optional[str] = None
    courses: List[ListCourse] = Field(default_factory=list)


class CatalogCourse(_Value):
    course_id: str
    course_code: str
    course_title: str = ""
    unit: int = 0
    level: Optional[str] = None
    is_core: bool = True


class LevelStats(_Value):
    total_students: int = 0
    students_with_results: int = 0
    total_gpa: float = 0.0
    average_gpa: float = 0.0
    highest_gpa: float = 0.0
    lowest_gpa: float = 0.0
    total_carryovers: int = 0
    affected_students: int = 0
    failed_students: int = 0
    grade_distribution: Dict[str, int] = Field(default_factory=dict)


class LevelSummary(_Value):
    level: str
    student_summaries: List[StudentSummary] = Field(default_factory=list)
    course_catalog: List[CatalogCourse] = Field(default_factory=list)
    pass_list: List[ListEntry] = Field(default_factory=list)
    probation_list: List[ListEntry] = Field(default_factory=list)
    withdrawal_list: List[ListEntry] = Field(default_factory=list)
    termination_list: List[ListEntry] = Field(default_factory=list)
    suspension_list: List[ListEntry] = Field(default_factory=list)
    carryover_list: List[ListEntry] = Field(default_factory=list)
    stats: LevelStats = Field(default_factory=LevelStats)


class MasterSheetLevel(_Value):
    level: str
    key_to_courses: List[CatalogCourse] = Field(default_factory=list)
    pass_list: List[Dict[str, Any]] = Field(default_factory=list)
    outstanding_courses_list: List[Dict[str, Any]] = Field(default_factory=list)
    probation_list: List[Dict[str, Any]] = Field(default_factory=list)
    withdrawal_list: List[Dict[str, Any]] = Field(default_factory=list)
    termination_list: List[Dict[str, Any]] = Field(default_factory=list)
    suspension_list: List[Dict[str, Any]] = Field(default_factory=list)
    summary_of_results: Dict[str, Any] = Field(default_factory=dict)
    mms1: List[Dict[str, Any]] = Field(default_factory=list)
    mms2: List[Dict[str, Any]] = Field(default_factory=list)


class FailedStudentEntry(_Value):
    student_id: str
    matric_number: str = ""
    name: str = ""
    level: Optional[str] = None
    error: str
    code: str = "STUDENT_PROCESSING_ERROR"


SUMMARY_RUN_FIELDS = {
    "id",
    "master_run_id",
    "computed_by",
    "is_preview",
    "purpose",
    "started_at",
    "completed_at",
    "last_retry_at",
    "retry_count",
}


class ComputationSummary(FirestoreModel):
    department_id: str
    department_name: str = ""
    term_id: str
    master_run_id: Optional[str] = None
    computed_by: Optional[str] = None
    is_preview: bool = False
    purpose: Purpose = Purpose.FINAL
    status: ComputationStatus = ComputationStatus.PROCESSING

    # department roll-up
    total_students: int = 0
    students_with_results: int = 0
    students_processed: int = 0
    average_gpa: float = 0.0
    highest_gpa: float = 0.0
    lowest_gpa: float = 0.0
    total_carryovers: int = 0
    affected_students: int = 0
    failed_students_count: int = 0
    list_counts: Dict[str, int] = Field(default_factory=dict)
    grade_distribution: Dict[str, int] = Field(default_factory=dict)

    # department-wide flat lists, capped
    pass_list: List[ListEntry] = Field(default_factory=list)
    probation_list: List[ListEntry] = Field(default_factory=list)
    withdrawal_list: List[ListEntry] = Field(default_factory=list)
    termination_list: List[ListEntry] = Field(default_factory=list)
    suspension_list: List[ListEntry] = Field(default_factory=list)
    carryover_list: List[ListEntry] = Field(default_factory=list)

    levels: Dict[str, LevelSummary] = Field(default_factory=dict)
    master_sheet_data_by_level: Dict[str, MasterSheetLevel] = Field(default_factory=dict)
    failed_students: List[FailedStudentEntry] = Field(default_factory=list)

    term_locked: bool = False
    error_message: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None

    @staticmethod
    def make_id(department_id: str, term_id: str, master_run_id: Optional[str], is_preview: bool) -> str:
        mode = "preview" if is_preview else "final"
        return f"{department_id}_{term_id}_{master_run_id or 'standalone'}_{mode}"

    def content(self) -> Dict[str, Any]:
        """Computed content, without run bookkeeping"""
        return self.model_dump(exclude=SUMMARY_RUN_FIELDS)


# --- Master runs ---
class DepartmentTally(_Value):
    status: str
    summary_id: Optional[str] = None
    students_processed: int = 0
    failed_students: int = 0
    error: Optional[str] = None


class MasterComputationRun(FirestoreModel):
    purpose: Purpose = Purpose.FINAL
    is_preview: bool = False
    status: MasterRunStatus = MasterRunStatus.PENDING
    computed_by: Optional[str] = None
    department_ids: List[str] = Field(default_factory=list)
    total_departments: int = 0
    departments_processed: int = 0
    departments_failed: int = 0
    departments_cancelled: int = 0
    students_processed: int = 0
    department_results: Dict[str, DepartmentTally] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.total_departments > 0 and self.departments_processed >= self.total_departments

    def apply_tally(self, department_id: str, tally: DepartmentTally) -> "MasterComputationRun":
        """
        Store one department's outcome and recompute the counters. A retried
        department replaces its earlier tally instead of counting twice.
        """
        self.department_results[department_id] = tally
        tallies = self._recount()

        if not self.is_finished:
            if self.status != MasterRunStatus.CANCELLED.value:
                self.status = MasterRunStatus.PROCESSING.value
            return self

        with_errors = any(t.status == ComputationStatus.COMPLETED_WITH_ERRORS.value for t in tallies)
        if self.departments_cancelled:
            self.status = MasterRunStatus.CANCELLED.value
        elif self.departments_failed == self.departments_processed:
            self.status = MasterRunStatus.FAILED.value
        elif self.departments_failed or with_errors:
            self.status = MasterRunStatus.COMPLETED_WITH_ERRORS.value
        else:
            self.status = MasterRunStatus.COMPLETED.value
        self.completed_at = datetime.utcnow()
        return self

    def reopen(self, department_ids: List[str]) -> "MasterComputationRun":
        """Forget the tallies of departments queued again; the run waits for them to report"""
        for department_id in department_ids:
            self.department_results.pop(department_id, None)
        self._recount()
        self.status = MasterRunStatus.PROCESSING.value
        self.completed_at = None
        return self

    def _recount(self) -> List[DepartmentTally]:
        tallies = list(self.department_results.values())
        self.departments_processed = len(tallies)
        self.departments_failed = sum(1 for t in tallies if t.status == ComputationStatus.FAILED.value)
        self.departments_cancelled = sum(1 for t in tallies if t.status == ComputationStatus.CANCELLED.value)
        self.students_processed = sum(t.students_processed for t in tallies)
        return tallies


class Notification(FirestoreModel):
    recipient_id: Optional[str] = None
    type: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: Optional[datetime] = None


class StudentMutation(_Value):
    """Final-mode change to a student document"""
    student_id: str
    set_fields: Dict[str, Any] = Field(default_factory=dict)
    carryover_increment: int = 0
    add_carryover_courses: List[str] = Field(default_factory=list)
