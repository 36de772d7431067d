"""
Academic standing policy

The thresholds are a fixed table (not editable at runtime); the model only
exists so the table can be validated before a job touches any student.
"""
from typing import Any, Dict, List, Tuple
from pydantic import BaseModel

from app.computation.constants import CLASSIFICATION_BANDS, GRADE_SCALE, MAX_SCORE, MIN_SCORE
from app.computation.errors import PolicyConfigurationError


class StandingPolicy(BaseModel):
    """
    Standing and grading cutoffs used by a computation run
    """

    # Withdrawal: CGPA below this, beyond the first year of study
    withdrawal_cgpa: float = 1.00
    withdrawal_min_year: int = 2

    # Probation: CGPA or semester GPA below these
    probation_cgpa: float = 1.50
    probation_semester_gpa: float = 1.00

    # Students in good standing at or above this CGPA are excellent
    excellent_cgpa: float = 4.00

    grade_scale: List[Tuple[float, str, int]] = list(GRADE_SCALE)
    classification_bands: List[Tuple[float, str]] = list(CLASSIFICATION_BANDS)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def get_default_policy(cls) -> "StandingPolicy":
        """Obtenir la politique par défaut"""
        return cls()

    def validate_policy(self) -> "StandingPolicy":
        """Raise PolicyConfigurationError when the cutoffs are inconsistent"""
        problems = []

        if not (0.0 <= self.withdrawal_cgpa <= self.probation_cgpa):
            problems.append("withdrawal_cgpa must be between 0 and probation_cgpa")
        if self.probation_semester_gpa < 0.0:
            problems.append("probation_semester_gpa must not be negative")
        if not (self.probation_cgpa <= self.excellent_cgpa <= 5.0):
            problems.append("expected probation_cgpa <= excellent_cgpa <= 5.0")
        if self.withdrawal_min_year < 1:
            problems.append("withdrawal_min_year must be at least 1")

        if not self.grade_scale:
            problems.append("grade_scale is empty")
        else:
            thresholds = [row[0] for row in self.grade_scale]
            points = [row[2] for row in self.grade_scale]
            if thresholds != sorted(thresholds, reverse=True) or len(set(thresholds)) != len(thresholds):
                problems.append("grade_scale thresholds must be strictly descending")
            if points != sorted(points, reverse=True):
                problems.append("grade_scale points must be descending")
            if thresholds[-1] != MIN_SCORE:
                problems.append(f"grade_scale must end at {MIN_SCORE}")
            if thresholds[0] > MAX_SCORE:
                problems.append(f"grade_scale thresholds must not exceed {MAX_SCORE}")

        band_limits = [row[0] for row in self.classification_bands]
        if band_limits != sorted(band_limits, reverse=True):
            problems.append("classification_bands must be descending")

        if problems:
            raise PolicyConfigurationError("Invalid standing policy: " + "; ".join(problems), details=problems)
        return self
