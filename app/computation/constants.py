"""
Constants for the results computation engine: grade table, statuses, remarks
"""
import enum


# Grade table (min_score, grade, grade_point), ordered high to low.
# Single edit point for the grading thresholds.
GRADE_SCALE = [
    (70.0, "A", 5),
    (60.0, "B", 4),
    (50.0, "C", 3),
    (45.0, "D", 2),
    (40.0, "E", 1),
    (0.0, "F", 0),
]

FAILING_GRADE = "F"
PASSING_GRADES = [grade for _, grade, _ in GRADE_SCALE if grade != FAILING_GRADE]

MIN_SCORE = 0.0
MAX_SCORE = 100.0

# Degree classification bands on GPA (min_gpa, label), ordered high to low
CLASSIFICATION_BANDS = [
    (4.50, "firstClass"),
    (3.50, "secondClassUpper"),
    (2.40, "secondClassLower"),
    (1.50, "thirdClass"),
]
FAIL_CLASSIFICATION = "fail"
CLASSIFICATIONS = [label for _, label in CLASSIFICATION_BANDS] + [FAIL_CLASSIFICATION]

LEVELS = ("100", "200", "300", "400", "500")
DEFAULT_LEVEL = "100"

BATCH_SIZE = 100
FLUSH_THRESHOLD = 100
SUMMARY_LIST_LIMIT = 100

PREVIEW_ACTION_PREFIX = "would_be_"
NO_ACTION = "none"


class ComputationStatus(str, enum.Enum):
    """Status of a department computation summary"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (ComputationStatus.COMPLETED, ComputationStatus.COMPLETED_WITH_ERRORS)


class MasterRunStatus(str, enum.Enum):
    """Status of a term-wide master computation"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Purpose(str, enum.Enum):
    """Why a computation is run"""
    FINAL = "final"
    PREVIEW = "preview"
    SIMULATION = "simulation"


class ProbationStatus(str, enum.Enum):
    NONE = "none"
    PROBATION = "probation"


class TerminationStatus(str, enum.Enum):
    NONE = "none"
    WITHDRAWN = "withdrawn"
    TERMINATED = "terminated"


class SuspensionReason(str, enum.Enum):
    NO_REGISTRATION = "NO_REGISTRATION"
    SCHOOL_APPROVED = "SCHOOL_APPROVED"


class Remark(str, enum.Enum):
    """Standing remark; feeds list routing and the master-sheet status column"""
    EXCELLENT = "excellent"
    GOOD = "good"
    PROBATION = "probation"
    WITHDRAWN = "withdrawn"
    TERMINATED = "terminated"
    SUSPENDED = "suspended"


class CarryoverReason(str, enum.Enum):
    FAILED = "Failed"
    NOT_REGISTERED = "NotRegistered"
    ABSENT = "Absent"
    INCOMPLETE = "Incomplete"


class Action(str, enum.Enum):
    """Actions recorded by the standing engine"""
    PLACED_ON_PROBATION = "placed_on_probation"
    PROBATION_CONTINUED = "probation_continued"
    PROBATION_LIFTED = "probation_lifted"
    WITHDRAWN_CGPA_LOW = "withdrawn_cgpa_low"
    TERMINATED_NO_REGISTRATION = "terminated_no_registration"
    SUSPENDED_NO_REGISTRATION = "suspended_no_registration"
    SUSPENSION_MAINTAINED = "suspension_maintained"


# Master-sheet status column values, keyed by remark
ACADEMIC_STATUS_BY_REMARK = {
    Remark.EXCELLENT: "good",
    Remark.GOOD: "good",
    Remark.PROBATION: "probation",
    Remark.WITHDRAWN: "withdrawal",
    Remark.TERMINATED: "terminated",
    Remark.SUSPENDED: "suspended",
}

# Firestore collections
STUDENTS_COLLECTION = "students"
RESULTS_COLLECTION = "results"
COURSES_COLLECTION = "courses"
REGISTRATIONS_COLLECTION = "course_registrations"
TERMS_COLLECTION = "terms"
DEPARTMENTS_COLLECTION = "departments"
SUMMARIES_COLLECTION = "computation_summaries"
MASTER_RUNS_COLLECTION = "master_computations"
CARRYOVERS_COLLECTION = "carryover_courses"
SEMESTER_RESULTS_COLLECTION = "semester_results"
NOTIFICATIONS_COLLECTION = "notifications"

FIRESTORE_BATCH_LIMIT = 500
