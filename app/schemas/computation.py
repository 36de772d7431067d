from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from app.computation.constants import Purpose


class ComputeAllRequest(BaseModel):
    department_id: Optional[str] = Field(None, description="Limit the run to one department")
    is_preview: bool = False
    purpose: Optional[Purpose] = None


class DepartmentTallyOut(BaseModel):
    status: str
    summary_id: Optional[str] = None
    students_processed: int = 0
    failed_students: int = 0
    error: Optional[str] = None


class MasterRunOut(BaseModel):
    id: str
    purpose: str
    is_preview: bool
    status: str
    computed_by: Optional[str] = None
    department_ids: List[str] = []
    total_departments: int = 0
    departments_processed: int = 0
    departments_failed: int = 0
    departments_cancelled: int = 0
    students_processed: int = 0
    department_results: Dict[str, DepartmentTallyOut] = {}
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ComputeAllResponse(BaseModel):
    master_run_id: str
    status: str
    total_departments: int
    department_ids: List[str]
    message: str


class StatusResponse(BaseModel):
    run: MasterRunOut
    digest: Dict[str, Any]


class RetryResponse(BaseModel):
    master_run_id: str
    retried_departments: List[str]


class CancelResponse(BaseModel):
    master_run_id: str
    status: str


class ClearCarryoverRequest(BaseModel):
    remark: Optional[str] = None
    result_id: Optional[str] = Field(None, description="Result that cleared the course")


class CarryoverOut(BaseModel):
    id: str
    student_id: str
    course_id: str
    term_id: str
    course_code: str
    course_title: str = ""
    unit: int = 0
    grade: str
    score: float
    reason: str
    level: Optional[str] = None
    cleared: bool = False
    cleared_by: Optional[str] = None
    cleared_at: Optional[datetime] = None
    clearing_remark: Optional[str] = None


class CarryoverListResponse(BaseModel):
    total: int
    outstanding: int
    carryovers: List[CarryoverOut]


class LevelSheetResponse(BaseModel):
    summary_id: str
    level: str
    level_summary: Dict[str, Any]
    master_sheet: Dict[str, Any]
