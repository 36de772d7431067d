"""
Grade calculator: score -> grade -> grade point -> credit point, GPA and CGPA

Pure arithmetic, no I/O. Bands come from the grade table of the standing
policy so there is a single place to edit them.
"""
from typing import Iterable, List, Optional, Tuple
from pydantic import BaseModel, Field

from app.computation.constants import (
    CLASSIFICATION_BANDS,
    FAIL_CLASSIFICATION,
    FAILING_GRADE,
    GRADE_SCALE,
    MAX_SCORE,
    MIN_SCORE,
)
from app.computation.errors import InvalidScoreError


class CourseGrade(BaseModel):
    """One graded course line of a semester"""
    course_id: str
    course_code: str
    course_title: str = ""
    unit: int = 0
    level: Optional[str] = None
    is_core: bool = True
    score: float
    grade: str
    grade_point: int
    credit_point: int

    @property
    def failed(self) -> bool:
        return self.grade == FAILING_GRADE


class SemesterGPA(BaseModel):
    gpa: float = 0.0
    tcp: int = 0
    tnu: int = 0
    courses: List[CourseGrade] = Field(default_factory=list)
    failed_courses: List[CourseGrade] = Field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.failed_courses)


def _check_score(score) -> float:
    if isinstance(score, bool):
        raise InvalidScoreError(f"Score must be numeric, got {score!r}", details={"score": score})
    try:
        value = float(score)
    except (TypeError, ValueError):
        raise InvalidScoreError(f"Score must be numeric, got {score!r}", details={"score": score})
    if not (MIN_SCORE <= value <= MAX_SCORE):
        raise InvalidScoreError(
            f"Score {value} outside [{MIN_SCORE}, {MAX_SCORE}]", details={"score": value}
        )
    return value


class GradeCalculator:
    """
    Table-driven grading.

    grade_scale: list of (min_score, grade, grade_point), high to low
    classification_bands: list of (min_gpa, label), high to low
    """

    def __init__(
        self,
        grade_scale: Optional[List[Tuple[float, str, int]]] = None,
        classification_bands: Optional[List[Tuple[float, str]]] = None,
    ):
        self.grade_scale = list(grade_scale or GRADE_SCALE)
        self.classification_bands = list(classification_bands or CLASSIFICATION_BANDS)

    @classmethod
    def from_policy(cls, policy) -> "GradeCalculator":
        return cls(policy.grade_scale, policy.classification_bands)

    def grade_and_point(self, score) -> Tuple[str, int]:
        value = _check_score(score)
        for min_score, grade, point in self.grade_scale:
            if value >= min_score:
                return grade, point
        # unreachable with a table ending at 0.0
        return FAILING_GRADE, 0

    @staticmethod
    def credit_point(grade_point: int, unit: int) -> int:
        return grade_point * unit

    @staticmethod
    def is_failing(grade: str) -> bool:
        return grade == FAILING_GRADE

    def grade_course(self, result) -> CourseGrade:
        """Grade a ResultRecord-like object (borrowed courses already resolved)"""
        grade, point = self.grade_and_point(result.score)
        unit = int(result.unit or 0)
        return CourseGrade(
            course_id=result.course_id,
            course_code=result.course_code,
            course_title=result.course_title or "",
            unit=unit,
            level=result.course_level,
            is_core=result.is_core,
            score=float(result.score),
            grade=grade,
            grade_point=point,
            credit_point=self.credit_point(point, unit),
        )

    def semester_gpa(self, results: Iterable) -> SemesterGPA:
        """Σ(point × unit) / Σunit rounded to 2 decimals; 0.0 with no units"""
        courses = [self.grade_course(r) for r in results]
        tcp = sum(c.credit_point for c in courses)
        tnu = sum(c.unit for c in courses)
        gpa = round(tcp / tnu, 2) if tnu > 0 else 0.0
        return SemesterGPA(
            gpa=gpa,
            tcp=tcp,
            tnu=tnu,
            courses=courses,
            failed_courses=[c for c in courses if c.failed],
        )

    @staticmethod
    def cgpa(
        previous_tcp: float,
        previous_tnu: float,
        current_tcp: float,
        current_tnu: float,
        last_known_cgpa: float = 0.0,
    ) -> float:
        total_tnu = (previous_tnu or 0) + (current_tnu or 0)
        if total_tnu <= 0:
            return round(float(last_known_cgpa or 0.0), 2)
        return round(((previous_tcp or 0) + (current_tcp or 0)) / total_tnu, 2)

    def classification(self, gpa: float) -> str:
        for min_gpa, label in self.classification_bands:
            if gpa >= min_gpa:
                return label
        return FAIL_CLASSIFICATION
