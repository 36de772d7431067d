"""
Endpoints du moteur de calcul : lancement des délibérations (master run),
suivi, annulation, reprise, consultation des résumés et des reports (carry-overs).
"""
from typing import Any
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
import logging

from app.computation.carryover import CarryoverTracker
from app.computation.errors import (
    CarryoverAlreadyClearedError,
    CarryoverNotFoundError,
    DepartmentProcessingError,
)
from app.computation.reports import build_admin_digest
from app.computation.scheduler import cancel_master_run, retry_master_run, start_master_run
from app.core.security import Permissions, require_permission
from app.schemas.computation import (
    CancelResponse,
    CarryoverListResponse,
    ClearCarryoverRequest,
    ComputeAllRequest,
    ComputeAllResponse,
    CarryoverOut,
    LevelSheetResponse,
    MasterRunOut,
    RetryResponse,
    StatusResponse,
)


router = APIRouter()


def get_repositories(request: Request):
    return request.app.state.repos


def get_scheduler(request: Request):
    return request.app.state.scheduler


async def _get_run_or_404(repos, master_run_id: str):
    run = await repos.master_runs.get(master_run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Master computation not found")
    return run


@router.post("/compute-all", status_code=status.HTTP_202_ACCEPTED, response_model=ComputeAllResponse)
async def compute_all(
    payload: ComputeAllRequest,
    repos=Depends(get_repositories),
    scheduler=Depends(get_scheduler),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    """Lancer le calcul pour tous les départements (ou un seul) du trimestre actif"""
    try:
        run = await start_master_run(
            repos,
            scheduler,
            computed_by=current_user.id,
            is_preview=payload.is_preview,
            purpose=payload.purpose,
            department_id=payload.department_id,
        )
    except DepartmentProcessingError as e:
        raise HTTPException(status_code=404, detail=e.message)

    logging.info("Master run %s started by %s", run.id, current_user.id)
    return ComputeAllResponse(
        master_run_id=run.id,
        status=run.status,
        total_departments=run.total_departments,
        department_ids=run.department_ids,
        message=f"{run.total_departments} department(s) queued" if run.total_departments
        else "No department with an active unlocked term",
    )


@router.get("/status/{master_run_id}", response_model=StatusResponse)
async def computation_status(
    master_run_id: str,
    repos=Depends(get_repositories),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    run = await _get_run_or_404(repos, master_run_id)
    summaries = await repos.summaries.list_for_master_run(master_run_id)
    return StatusResponse(
        run=MasterRunOut.model_validate(run.model_dump()),
        digest=build_admin_digest(run, summaries),
    )


@router.post("/cancel/{master_run_id}", response_model=CancelResponse)
async def cancel_computation(
    master_run_id: str,
    repos=Depends(get_repositories),
    scheduler=Depends(get_scheduler),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    run = await _get_run_or_404(repos, master_run_id)
    if run.is_finished:
        raise HTTPException(status_code=409, detail=f"Master computation already {run.status}")
    await cancel_master_run(repos, scheduler, run)
    logging.warning("Master run %s cancelled by %s", master_run_id, current_user.id)
    return CancelResponse(master_run_id=master_run_id, status="cancelled")


@router.post("/retry/{master_run_id}", response_model=RetryResponse)
async def retry_computation(
    master_run_id: str,
    repos=Depends(get_repositories),
    scheduler=Depends(get_scheduler),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    """Relancer les départements en échec ou annulés"""
    run = await _get_run_or_404(repos, master_run_id)
    retried = await retry_master_run(repos, scheduler, run)
    if not retried:
        raise HTTPException(status_code=409, detail="No failed or cancelled department to retry")
    return RetryResponse(master_run_id=master_run_id, retried_departments=retried)


@router.get("/summaries/{summary_id}")
async def get_summary(
    summary_id: str,
    repos=Depends(get_repositories),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    summary = await repos.summaries.get(summary_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return summary.model_dump(mode="json")


@router.get("/summaries/{summary_id}/levels/{level}", response_model=LevelSheetResponse)
async def get_summary_level(
    summary_id: str,
    level: str,
    repos=Depends(get_repositories),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    """Résumé d'un niveau et sa feuille de délibération (master sheet)"""
    summary = await repos.summaries.get(summary_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    level_summary = summary.levels.get(level)
    if level_summary is None:
        raise HTTPException(status_code=404, detail=f"Level {level} not found in summary")
    sheet = summary.master_sheet_data_by_level.get(level)
    return LevelSheetResponse(
        summary_id=summary_id,
        level=level,
        level_summary=level_summary.model_dump(mode="json"),
        master_sheet=sheet.model_dump(mode="json") if sheet else {},
    )


@router.get("/carryovers/student/{student_id}", response_model=CarryoverListResponse)
async def student_carryovers(
    student_id: str,
    include_cleared: bool = Query(True),
    repos=Depends(get_repositories),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    records = await repos.carryovers.list_for_student(student_id, include_cleared=include_cleared)
    carryovers = [CarryoverOut.model_validate(r.model_dump()) for r in records]
    return CarryoverListResponse(
        total=len(carryovers),
        outstanding=sum(1 for c in carryovers if not c.cleared),
        carryovers=carryovers,
    )


@router.patch("/carryovers/{carryover_id}/clear", response_model=CarryoverOut)
async def clear_carryover(
    carryover_id: str,
    payload: ClearCarryoverRequest,
    repos=Depends(get_repositories),
    current_user: Any = Depends(require_permission(Permissions.ACADEMIC_DELIBERATION)),
) -> Any:
    tracker = CarryoverTracker(repos.carryovers)
    try:
        record = await tracker.clear(carryover_id, current_user.id, payload.remark, payload.result_id)
    except CarryoverNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except CarryoverAlreadyClearedError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return CarryoverOut.model_validate(record.model_dump())


@router.get("/health")
async def computation_health(scheduler=Depends(get_scheduler)) -> Any:
    return {
        "status": "healthy",
        "queued_jobs": scheduler.queue.qsize(),
        "running_jobs": scheduler.running,
    }
