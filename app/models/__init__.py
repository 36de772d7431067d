"""
Re-exports des modèles Firestore du moteur de calcul.
"""
from app.models.computation import (
    CarryoverRecord,
    ComputationSummary,
    Course,
    Department,
    LevelSummary,
    MasterComputationRun,
    ResultRecord,
    SemesterResultRecord,
    Student,
    Term,
)
from app.models.firestore_models import FirestoreModel

__all__ = [
    "FirestoreModel",
    "CarryoverRecord",
    "ComputationSummary",
    "Course",
    "Department",
    "LevelSummary",
    "MasterComputationRun",
    "ResultRecord",
    "SemesterResultRecord",
    "Student",
    "Term",
]
