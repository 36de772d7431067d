"""
Department computation job

processing -> completed | completed_with_errors | failed | cancelled

One job computes one department for its active term, in preview or final
mode. Students are streamed in fixed-size batches; each batch does three
concurrent reads and is then processed synchronously, student by student.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel

from app.computation.aggregator import aggregate
from app.computation.constants import (
    BATCH_SIZE,
    ComputationStatus,
    DEFAULT_LEVEL,
    FINISHED_STATUSES,
    FLUSH_THRESHOLD,
    Purpose,
    SUMMARY_LIST_LIMIT,
)
from app.computation.errors import (
    ComputationError,
    DepartmentProcessingError,
    PolicyConfigurationError,
    TermLockedError,
)
from app.computation.persistence import ComputationMode, PersistencePolicy, persistence_for
from app.computation.processor import ComputationContext, StudentProcessor
from app.computation.reports import build_department_digest, build_failure_digest
from app.computation.rules import StandingPolicy
from app.models.computation import (
    ComputationSummary,
    Department,
    DepartmentTally,
    FailedStudentEntry,
    Term,
)


class DepartmentJob(BaseModel):
    """Dispatch message: one department of a master run"""
    department_id: str
    master_run_id: Optional[str] = None
    computed_by: Optional[str] = None
    is_preview: bool = False
    purpose: Optional[Purpose] = None
    retry: bool = False
    attempt: int = 1
    max_attempts: int = 1
    priority: int = 0

    @property
    def mode(self) -> ComputationMode:
        return ComputationMode.from_request(self.is_preview, self.purpose)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


def _chunks(items: List[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class ComputationOrchestrator:
    def __init__(
        self,
        repos,
        batch_size: int = BATCH_SIZE,
        flush_threshold: int = FLUSH_THRESHOLD,
        list_limit: int = SUMMARY_LIST_LIMIT,
        policy: Optional[StandingPolicy] = None,
    ):
        self.repos = repos
        self.batch_size = batch_size
        self.flush_threshold = flush_threshold
        self.list_limit = list_limit
        self.policy = policy or StandingPolicy.get_default_policy()

    async def run(self, job: DepartmentJob, cancel_event: Optional[asyncio.Event] = None) -> ComputationSummary:
        mode = job.mode
        logging.info("Starting %s computation for department %s (master run %s, attempt %d)",
                     mode.purpose, job.department_id, job.master_run_id, job.attempt)

        try:
            policy = self.policy.validate_policy()
        except PolicyConfigurationError as e:
            logging.error("Standing policy rejected: %s", e.message)
            await self._tally(job, None, ComputationStatus.FAILED, e.message)
            raise

        department = await self.repos.departments.get(job.department_id)
        term = await self.repos.terms.active_term_for_department(job.department_id) if department else None
        if department is None or term is None:
            what = "Department not found" if department is None else "No active term"
            error = DepartmentProcessingError(job.department_id, what, retriable=False)
            logging.error(error.message)
            await self._tally(job, None, ComputationStatus.FAILED, error.message)
            raise error

        summary_id = ComputationSummary.make_id(department.id, term.id, job.master_run_id, mode.is_preview)
        existing = await self.repos.summaries.get(summary_id)
        if existing is not None and existing.status in FINISHED_STATUSES:
            logging.info("Summary %s already %s; nothing to do", summary_id, existing.status)
            return existing

        summary = self._initialize_summary(summary_id, existing, job, department, term, mode)
        await self.repos.summaries.save(summary)

        try:
            if mode.is_final and term.is_locked:
                raise TermLockedError(department.id, f"Term {term.id} is locked")
            cancelled = await self._compute(job, mode, policy, term, summary, cancel_event)
        except Exception as e:
            await self._fail(job, mode, department, term, summary, e)
            raise

        return await self._finalize(job, mode, department, term, summary, cancelled)

    def _initialize_summary(
        self,
        summary_id: str,
        existing: Optional[ComputationSummary],
        job: DepartmentJob,
        department: Department,
        term: Term,
        mode: ComputationMode,
    ) -> ComputationSummary:
        now = datetime.utcnow()
        retry_count = 0
        started_at = now
        last_retry_at = None
        if existing is not None:
            retry_count = existing.retry_count + (1 if job.retry else 0)
            started_at = existing.started_at or now
            last_retry_at = now if job.retry else existing.last_retry_at
            logging.info("Reusing summary %s (status %s, retry %d)", summary_id, existing.status, retry_count)

        return ComputationSummary(
            id=summary_id,
            department_id=department.id,
            department_name=department.name,
            term_id=term.id,
            master_run_id=job.master_run_id,
            computed_by=job.computed_by,
            is_preview=mode.is_preview,
            purpose=mode.purpose,
            status=ComputationStatus.PROCESSING,
            retry_count=retry_count,
            started_at=started_at,
            last_retry_at=last_retry_at,
        )

    async def _compute(
        self,
        job: DepartmentJob,
        mode: ComputationMode,
        policy: StandingPolicy,
        term: Term,
        summary: ComputationSummary,
        cancel_event: Optional[asyncio.Event],
    ) -> bool:
        """Run every batch; returns True when cancelled part-way"""
        context = ComputationContext(job.department_id, term.id, job.master_run_id)
        persistence = persistence_for(mode, self.repos.sink)
        processor = StudentProcessor(policy, is_final=mode.is_final, master_run_id=job.master_run_id)

        student_ids = await self.repos.students.list_eligible_student_ids(job.department_id, term.id)
        batches = list(_chunks(student_ids, self.batch_size))
        logging.info("Department %s: %d eligible students in %d batches",
                     job.department_id, len(student_ids), len(batches))

        cancelled = False
        for n, batch in enumerate(batches, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logging.warning("Department %s cancelled before batch %d/%d", job.department_id, n, len(batches))
                cancelled = True
                break
            await self._process_batch(batch, term, context, processor, persistence)
            logging.info("Department %s: batch %d/%d done (%d students)",
                         job.department_id, n, len(batches), len(batch))
            await persistence.maybe_flush(self.flush_threshold)

        aggregate(context, summary, self.list_limit)
        await persistence.flush()
        logging.info("Department %s: %d flushes", job.department_id, persistence.flush_count)
        return cancelled

    async def _process_batch(
        self,
        batch: List[str],
        term: Term,
        context: ComputationContext,
        processor: StudentProcessor,
        persistence: PersistencePolicy,
    ):
        students, results, registered = await asyncio.gather(
            self.repos.students.fetch_students_with_details(batch, term.id),
            self.repos.results.fetch_results_by_students(batch, term.id),
            self.repos.registrations.registered_among(batch, term.id),
        )
        by_id = {s.id: s for s in students}

        missing_levels = sorted({s.level for s in students if s.level not in context.core_courses})
        if missing_levels:
            fetched = await asyncio.gather(*[
                self.repos.results.core_courses_for_level(context.department_id, level)
                for level in missing_levels
            ])
            context.core_courses.update(zip(missing_levels, fetched))

        for student_id in batch:
            student = by_id.get(student_id)
            if student is None:
                logging.warning("Student %s listed but not found", student_id)
                context.record_missing(FailedStudentEntry(
                    student_id=student_id, level=DEFAULT_LEVEL, error="Student not found", code="STUDENT_NOT_FOUND",
                ))
                continue
            outcome = processor.process(
                student,
                results.get(student_id, []),
                student_id in registered,
                term.id,
                context.core_courses.get(student.level, []),
            )
            context.record(outcome)
            persistence.record(outcome)

    async def _finalize(
        self,
        job: DepartmentJob,
        mode: ComputationMode,
        department: Department,
        term: Term,
        summary: ComputationSummary,
        cancelled: bool,
    ) -> ComputationSummary:
        if cancelled:
            summary.status = ComputationStatus.CANCELLED
        elif summary.failed_students:
            summary.status = ComputationStatus.COMPLETED_WITH_ERRORS
        else:
            summary.status = ComputationStatus.COMPLETED

        if mode.is_final and not cancelled:
            if summary.failed_students:
                logging.warning("Term %s left unlocked: %d students failed processing",
                                term.id, summary.failed_students_count)
            else:
                await self.repos.terms.lock_term(term.id, job.computed_by)
                summary.term_locked = True
                logging.info("Term %s locked for department %s", term.id, department.id)

        summary.completed_at = datetime.utcnow()
        await self.repos.summaries.save(summary)
        logging.info("Department %s computation %s: %d students, %d failed",
                     department.id, summary.status, summary.students_processed, summary.failed_students_count)

        if mode.is_final and not cancelled:
            await self._notify_head(department, "department_results_computed", "Results computation complete",
                                    build_department_digest(department, term, summary), summary)

        await self._tally(job, summary, summary.status)
        return summary

    async def _fail(
        self,
        job: DepartmentJob,
        mode: ComputationMode,
        department: Department,
        term: Term,
        summary: ComputationSummary,
        error: Exception,
    ):
        err = ComputationError.from_error(error)
        logging.exception("Department %s computation failed: %s", department.id, err.message)
        summary.status = ComputationStatus.FAILED
        summary.error_message = err.message
        summary.completed_at = datetime.utcnow()
        try:
            await self.repos.summaries.save(summary)
        except Exception:
            logging.exception("Could not persist failed summary %s", summary.id)

        final_attempt = job.is_last_attempt or not err.retriable
        if final_attempt:
            if mode.is_final:
                await self._notify_head(department, "department_computation_failed", "Results computation failed",
                                        build_failure_digest(department, term, err.message), summary)
            await self._tally(job, summary, ComputationStatus.FAILED, err.message)

    async def _notify_head(self, department: Department, type: str, title: str, message: str,
                           summary: ComputationSummary):
        if not department.head_user_id:
            return
        try:
            await self.repos.notifier.notify(
                department.head_user_id, type, title, message,
                {
                    "department_id": department.id,
                    "summary_id": summary.id,
                    "term_id": summary.term_id,
                    "list_counts": dict(summary.list_counts),
                },
            )
        except Exception:
            logging.exception("Failed to notify head of department %s", department.id)

    async def _tally(
        self,
        job: DepartmentJob,
        summary: Optional[ComputationSummary],
        status: str,
        error: Optional[str] = None,
    ):
        if not job.master_run_id:
            return
        tally = DepartmentTally(
            status=status,
            summary_id=summary.id if summary else None,
            students_processed=summary.students_processed if summary else 0,
            failed_students=summary.failed_students_count if summary else 0,
            error=error,
        )
        try:
            run = await self.repos.master_runs.record_department(job.master_run_id, job.department_id, tally)
        except Exception:
            logging.exception("Failed to record department %s on master run %s", job.department_id, job.master_run_id)
            return
        if run is not None and run.departments_processed >= run.total_departments:
            logging.info("Master run %s finished with status %s", run.id, run.status)

    async def record_cancelled(self, job: DepartmentJob):
        """Tally a queued job that was cancelled before it started"""
        logging.info("Department %s skipped: master run %s cancelled", job.department_id, job.master_run_id)
        await self._tally(job, None, ComputationStatus.CANCELLED)
