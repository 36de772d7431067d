"""
Carry-over tracking: plan new carry-overs for a student, clear existing ones
"""
import logging
from typing import Iterable, List, Optional

from app.computation.constants import CarryoverReason, FAILING_GRADE
from app.computation.errors import (
    CarryoverAlreadyClearedError,
    CarryoverNotFoundError,
    CarryoverProcessingError,
)
from app.computation.grading import SemesterGPA
from app.models.computation import CarryoverRecord, Course, Student


class CarryoverTracker:
    """
    Planning is pure: it returns CarryoverRecord documents keyed
    "{student}_{course}_{term}" and never writes. `clear` goes through the
    carry-over repository.
    """

    def __init__(self, carryovers=None):
        self.carryovers = carryovers

    def plan(
        self,
        student: Student,
        term_id: str,
        semester: Optional[SemesterGPA] = None,
        expected_core_courses: Iterable[Course] = (),
        submitted_course_ids: Iterable[str] = (),
        master_run_id: Optional[str] = None,
    ) -> List[CarryoverRecord]:
        """
        Failed core courses -> reason Failed.
        Core courses expected at the student's level without a result -> NotRegistered.
        Courses already carried over from another term are skipped.
        """
        # uncleared carry-overs recorded for this same term are planned again (same doc id)
        this_term = {c.course_id for c in student.history.outstanding_courses if c.term_id == term_id}
        carried_elsewhere = set(student.carryover_courses) - this_term

        planned = {}

        def add(record: CarryoverRecord):
            if record.course_id in carried_elsewhere or record.id in planned:
                return
            planned[record.id] = record

        if semester is not None:
            for course in semester.failed_courses:
                if not course.is_core:
                    continue
                add(CarryoverRecord(
                    id=CarryoverRecord.make_id(student.id, course.course_id, term_id),
                    student_id=student.id,
                    course_id=course.course_id,
                    term_id=term_id,
                    department_id=student.department_id,
                    level=student.level,
                    course_code=course.course_code,
                    course_title=course.course_title,
                    unit=course.unit,
                    grade=course.grade,
                    score=course.score,
                    reason=CarryoverReason.FAILED,
                    master_run_id=master_run_id,
                ))

        submitted = set(submitted_course_ids)
        for course in expected_core_courses:
            if not course.is_core or course.id in submitted:
                continue
            add(CarryoverRecord(
                id=CarryoverRecord.make_id(student.id, course.id, term_id),
                student_id=student.id,
                course_id=course.id,
                term_id=term_id,
                department_id=student.department_id,
                level=student.level,
                course_code=course.code,
                course_title=course.title,
                unit=course.unit,
                grade=FAILING_GRADE,
                score=0.0,
                reason=CarryoverReason.NOT_REGISTERED,
                master_run_id=master_run_id,
            ))

        return list(planned.values())

    @staticmethod
    def new_for_student(student: Student, planned: Iterable[CarryoverRecord]) -> List[str]:
        """Course ids not yet in the student's active carry-over set"""
        active = set(student.carryover_courses)
        return [c.course_id for c in planned if c.course_id not in active]

    async def clear(
        self,
        carryover_id: str,
        cleared_by: str,
        remark: Optional[str] = None,
        result_id: Optional[str] = None,
    ) -> CarryoverRecord:
        if self.carryovers is None:
            raise CarryoverProcessingError(carryover_id, "No carry-over repository configured")

        record = await self.carryovers.get(carryover_id)
        if record is None:
            raise CarryoverNotFoundError(carryover_id)
        if record.cleared:
            raise CarryoverAlreadyClearedError(carryover_id)

        cleared = await self.carryovers.mark_cleared(record, cleared_by, remark, result_id)
        logging.info("Carryover %s cleared by %s (student %s, course %s)",
                     carryover_id, cleared_by, record.student_id, record.course_code)
        return cleared
