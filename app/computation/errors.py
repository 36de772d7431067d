"""
Error taxonomy of the computation engine
"""
from datetime import datetime
from typing import Any, Dict, Optional


class ComputationError(Exception):
    """Base error for everything raised by the computation engine"""

    code = "COMPUTATION_ERROR"
    # whether re-running the same job can succeed
    retriable = True

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details
        self.timestamp = datetime.utcnow()

    @classmethod
    def from_error(cls, error: Exception, code: Optional[str] = None) -> "ComputationError":
        if isinstance(error, ComputationError):
            return error
        return cls(str(error), code=code, details=repr(error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class InvalidScoreError(ComputationError):
    code = "INVALID_SCORE"


class PolicyConfigurationError(ComputationError):
    """Invalid cutoffs or thresholds; raised before any student is processed"""
    code = "POLICY_CONFIGURATION_ERROR"
    retriable = False


class StudentProcessingError(ComputationError):
    code = "STUDENT_PROCESSING_ERROR"

    def __init__(self, student_id: str, message: str, details: Any = None):
        super().__init__(f"Student {student_id} processing failed: {message}", details=details)
        self.student_id = student_id


class MissingResultsError(StudentProcessingError):
    code = "MISSING_RESULTS"

    def __init__(self, student_id: str):
        super().__init__(student_id, "No results found")


class DepartmentProcessingError(ComputationError):
    code = "DEPARTMENT_PROCESSING_ERROR"

    def __init__(self, department_id: str, message: str, details: Any = None, retriable: Optional[bool] = None):
        super().__init__(f"Department {department_id} processing failed: {message}", details=details)
        self.department_id = department_id
        if retriable is not None:
            self.retriable = retriable


class TermLockedError(DepartmentProcessingError):
    code = "TERM_LOCKED"
    retriable = False


class CarryoverProcessingError(ComputationError):
    code = "CARRYOVER_PROCESSING_ERROR"

    def __init__(self, carryover_id: str, message: str, details: Any = None):
        super().__init__(message, details=details)
        self.carryover_id = carryover_id


class CarryoverNotFoundError(CarryoverProcessingError):
    code = "CARRYOVER_NOT_FOUND"

    def __init__(self, carryover_id: str):
        super().__init__(carryover_id, f"Carryover {carryover_id} not found")


class CarryoverAlreadyClearedError(CarryoverProcessingError):
    code = "CARRYOVER_ALREADY_CLEARED"

    def __init__(self, carryover_id: str):
        super().__init__(carryover_id, f"Carryover {carryover_id} is already cleared")


class BufferFlushError(ComputationError):
    """A bulk write failed; the buffers were cleared"""
    code = "BUFFER_FLUSH_ERROR"


class AggregationShapeError(ComputationError):
    """Level-partitioned aggregate does not have the canonical shape"""
    code = "AGGREGATION_SHAPE_ERROR"
