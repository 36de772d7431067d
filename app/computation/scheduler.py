"""
In-process department job scheduler

One job per department on a bounded pool of asyncio workers, ordered by
priority, with a per-job retry limit and per-master-run cancellation.
"""
import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from app.computation.constants import ComputationStatus, MasterRunStatus
from app.computation.errors import DepartmentProcessingError
from app.computation.orchestrator import ComputationOrchestrator, DepartmentJob
from app.computation.persistence import ComputationMode
from app.models.computation import Department, MasterComputationRun


class JobQueue(ABC):
    @abstractmethod
    async def enqueue(self, job: DepartmentJob) -> None:
        ...

    @abstractmethod
    async def on_failure(self, job: DepartmentJob, error: Exception) -> bool:
        """Handle a failed job; True when it was queued again"""

    @abstractmethod
    def retry_count(self, job: DepartmentJob) -> int:
        ...


class InProcessJobScheduler(JobQueue):
    def __init__(self, orchestrator: ComputationOrchestrator, concurrency: int = 3, max_retries: int = 2):
        self.orchestrator = orchestrator
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._workers: List[asyncio.Task] = []
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._retries: Dict[Tuple[Optional[str], str], int] = {}
        # queued or running jobs per master run
        self._pending: Dict[str, int] = {}
        self.running = 0

    def start(self):
        if self._workers:
            return
        for n in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(n)))
        logging.info("Computation scheduler started with %d workers", self.concurrency)

    async def stop(self):
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logging.info("Computation scheduler stopped")

    async def join(self):
        await self.queue.join()

    async def enqueue(self, job: DepartmentJob) -> None:
        if job.max_attempts < self.max_retries + 1:
            job = job.model_copy(update={"max_attempts": self.max_retries + 1})
        if job.master_run_id:
            self._pending[job.master_run_id] = self._pending.get(job.master_run_id, 0) + 1
        await self.queue.put((job.priority, next(self._seq), job))
        logging.info("Queued department %s (master run %s, attempt %d)",
                     job.department_id, job.master_run_id, job.attempt)

    def retry_count(self, job: DepartmentJob) -> int:
        """Retries so far for a job of a run that still has jobs queued or running"""
        return self._retries.get((job.master_run_id, job.department_id), 0)

    @property
    def active_runs(self) -> Set[str]:
        return set(self._pending)

    def cancel_event(self, master_run_id: str) -> asyncio.Event:
        if master_run_id not in self._cancel_events:
            self._cancel_events[master_run_id] = asyncio.Event()
        return self._cancel_events[master_run_id]

    def cancel(self, master_run_id: str):
        """Queued jobs of the run are skipped; running jobs stop after their current batch"""
        if master_run_id not in self._pending:
            logging.info("Master run %s has no queued or running job here", master_run_id)
            return
        self.cancel_event(master_run_id).set()
        logging.warning("Master run %s cancellation requested", master_run_id)

    def resume(self, master_run_id: str):
        if master_run_id in self._cancel_events:
            self._cancel_events[master_run_id].clear()

    async def on_failure(self, job: DepartmentJob, error: Exception) -> bool:
        retriable = getattr(error, "retriable", True)
        if retriable and not job.is_last_attempt:
            key = (job.master_run_id, job.department_id)
            self._retries[key] = self._retries.get(key, 0) + 1
            logging.warning("Department %s failed (attempt %d/%d), retrying: %s",
                            job.department_id, job.attempt, job.max_attempts, error)
            await self.enqueue(job.model_copy(update={"attempt": job.attempt + 1, "retry": True}))
            return True
        logging.error("Department %s failed permanently after %d attempt(s): %s",
                      job.department_id, job.attempt, error)
        return False

    async def _worker(self, n: int):
        while True:
            _, _, job = await self.queue.get()
            try:
                await self._run(job)
            except Exception:
                logging.exception("Worker %d: unexpected error on department %s", n, job.department_id)
            finally:
                self._job_done(job)
                self.queue.task_done()

    def _job_done(self, job: DepartmentJob):
        run_id = job.master_run_id
        if not run_id:
            return
        left = self._pending.get(run_id, 0) - 1
        if left > 0:
            self._pending[run_id] = left
            return
        self._pending.pop(run_id, None)
        self._cancel_events.pop(run_id, None)
        for key in [k for k in self._retries if k[0] == run_id]:
            del self._retries[key]

    async def _run(self, job: DepartmentJob):
        event = self.cancel_event(job.master_run_id) if job.master_run_id else None
        if event is not None and event.is_set():
            await self.orchestrator.record_cancelled(job)
            return
        self.running += 1
        try:
            await self.orchestrator.run(job, event)
        except Exception as e:
            await self.on_failure(job, e)
        finally:
            self.running -= 1


async def _schedulable_departments(repos, mode: ComputationMode, department_id: Optional[str]) -> List[Department]:
    if department_id:
        department = await repos.departments.get(department_id)
        if department is None:
            raise DepartmentProcessingError(department_id, "Department not found", retriable=False)
        candidates = [department]
    else:
        candidates = await repos.departments.list_active()

    out = []
    for department in candidates:
        term = await repos.terms.active_term_for_department(department.id)
        if term is None:
            logging.info("Department %s has no active term; skipped", department.id)
            continue
        if term.is_locked and mode.is_final:
            logging.info("Department %s term %s already locked; skipped", department.id, term.id)
            continue
        out.append(department)
    return out


async def start_master_run(
    repos,
    scheduler: JobQueue,
    computed_by: Optional[str] = None,
    is_preview: bool = False,
    purpose: Optional[str] = None,
    department_id: Optional[str] = None,
) -> MasterComputationRun:
    """Create a master run and queue one job per department"""
    mode = ComputationMode.from_request(is_preview, purpose)
    departments = await _schedulable_departments(repos, mode, department_id)

    run = MasterComputationRun(
        purpose=mode.purpose,
        is_preview=mode.is_preview,
        status=MasterRunStatus.PROCESSING if departments else MasterRunStatus.COMPLETED,
        computed_by=computed_by,
        department_ids=[d.id for d in departments],
        total_departments=len(departments),
        started_at=datetime.utcnow(),
        completed_at=None if departments else datetime.utcnow(),
    )
    run = await repos.master_runs.create(run)
    logging.info("Master run %s (%s) created for %d departments", run.id, mode.purpose, len(departments))

    for priority, department in enumerate(departments):
        await scheduler.enqueue(DepartmentJob(
            department_id=department.id,
            master_run_id=run.id,
            computed_by=computed_by,
            is_preview=mode.is_preview,
            purpose=mode.purpose,
            priority=priority,
        ))
    return run


async def retry_master_run(repos, scheduler: InProcessJobScheduler, run: MasterComputationRun) -> List[str]:
    """Queue the failed and cancelled departments of a run again"""
    to_retry = [
        department_id for department_id, tally in run.department_results.items()
        if tally.status in (ComputationStatus.FAILED.value, ComputationStatus.CANCELLED.value)
    ]
    if not to_retry:
        return []

    scheduler.resume(run.id)
    await repos.master_runs.reopen(run.id, to_retry)
    for priority, department_id in enumerate(to_retry):
        await scheduler.enqueue(DepartmentJob(
            department_id=department_id,
            master_run_id=run.id,
            computed_by=run.computed_by,
            is_preview=run.is_preview,
            purpose=run.purpose,
            retry=True,
            priority=priority,
        ))
    logging.info("Master run %s: %d departments queued for retry", run.id, len(to_retry))
    return to_retry


async def cancel_master_run(repos, scheduler: InProcessJobScheduler, run: MasterComputationRun):
    scheduler.cancel(run.id)
    await repos.master_runs.update_status(run.id, MasterRunStatus.CANCELLED.value)
