import pytest

from app.computation.errors import DepartmentProcessingError
from app.computation.orchestrator import ComputationOrchestrator, DepartmentJob
from app.computation.rules import StandingPolicy
from app.computation.scheduler import (
    InProcessJobScheduler,
    cancel_master_run,
    retry_master_run,
    start_master_run,
)
from app.models.computation import DepartmentTally
from tests.conftest import build_department, enroll
from tests.fakes import FakeBulkWriteSink


async def _drain(scheduler):
    scheduler.start()
    try:
        await scheduler.join()
    finally:
        await scheduler.stop()


@pytest.fixture
def two_departments(store):
    build_department(store, "d2", "t2")
    enroll(store, "a", {"c101": 80, "c102": 72})
    enroll(store, "b", {"c101": 30, "c102": 55}, department_id="d2", term_id="t2")
    return store


async def test_master_run_computes_every_department(two_departments, repos):
    store = two_departments
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), concurrency=2, max_retries=0)

    run = await start_master_run(repos, scheduler, computed_by="admin-1")
    assert run.total_departments == 2
    await _drain(scheduler)

    stored = store.master_runs[run.id]
    assert stored.status == "completed"
    assert stored.departments_processed == 2
    assert stored.students_processed == 2
    assert stored.completed_at is not None
    assert {t.summary_id for t in stored.department_results.values()} == {
        f"d1_t1_{run.id}_final", f"d2_t2_{run.id}_final",
    }
    assert store.terms["t1"].is_locked and store.terms["t2"].is_locked


async def test_preview_master_run(two_departments, repos):
    store = two_departments
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), max_retries=0)

    run = await start_master_run(repos, scheduler, is_preview=True)
    await _drain(scheduler)

    stored = store.master_runs[run.id]
    assert stored.purpose == "preview"
    assert stored.status == "completed"
    assert not store.terms["t1"].is_locked


async def test_retriable_failure_is_retried(store):
    enroll(store, "a", {"c101": 80, "c102": 72})
    repos = store.repositories(sink=FakeBulkWriteSink(store, fail_on={1}))
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), max_retries=1)

    run = await start_master_run(repos, scheduler)
    await _drain(scheduler)

    summary = store.summaries[f"d1_t1_{run.id}_final"]
    assert summary.status == "completed"
    assert summary.retry_count == 1
    assert store.master_runs[run.id].status == "completed"
    assert [n.type for n in store.notifications] == ["department_results_computed"]
    # nothing is kept for a run once its last job is done
    assert scheduler.active_runs == set()
    assert scheduler.retry_count(DepartmentJob(department_id="d1", master_run_id=run.id)) == 0


async def test_retries_are_bounded(store):
    enroll(store, "a", {"c101": 80, "c102": 72})
    sink = FakeBulkWriteSink(store, fail_all=True)
    repos = store.repositories(sink=sink)
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), max_retries=2)

    run = await start_master_run(repos, scheduler)
    await _drain(scheduler)

    assert sink.student_update_calls == 3
    stored = store.master_runs[run.id]
    assert stored.status == "failed"
    assert stored.departments_failed == 1
    assert [n.type for n in store.notifications] == ["department_computation_failed"]


async def test_non_retriable_failure_is_not_retried(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    orchestrator = ComputationOrchestrator(repos, policy=StandingPolicy(probation_cgpa=4.5))
    scheduler = InProcessJobScheduler(orchestrator, max_retries=3)

    run = await start_master_run(repos, scheduler)
    await _drain(scheduler)

    assert scheduler.retry_count(DepartmentJob(department_id="d1", master_run_id=run.id)) == 0
    assert store.master_runs[run.id].department_results["d1"].status == "failed"


async def test_cancel_then_retry(two_departments, repos):
    store = two_departments
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), max_retries=0)

    run = await start_master_run(repos, scheduler)
    await cancel_master_run(repos, scheduler, run)
    await _drain(scheduler)

    stored = store.master_runs[run.id]
    assert stored.status == "cancelled"
    assert stored.departments_cancelled == 2
    assert not store.terms["t1"].is_locked

    retried = await retry_master_run(repos, scheduler, await repos.master_runs.get(run.id))
    assert sorted(retried) == ["d1", "d2"]
    await _drain(scheduler)

    stored = store.master_runs[run.id]
    assert stored.status == "completed"
    assert stored.departments_processed == 2
    assert stored.departments_cancelled == 0


async def test_retry_waits_for_every_retried_department(two_departments):
    store = two_departments
    sink = FakeBulkWriteSink(store, fail_all=True)
    repos = store.repositories(sink=sink)
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), max_retries=0)
    run = await start_master_run(repos, scheduler)
    await _drain(scheduler)
    assert store.master_runs[run.id].status == "failed"

    sink.fail_all = False
    await retry_master_run(repos, scheduler, await repos.master_runs.get(run.id))

    reopened = store.master_runs[run.id]
    assert reopened.status == "processing"
    assert reopened.departments_processed == 0
    assert reopened.completed_at is None
    reopened.apply_tally("d1", DepartmentTally(status="completed", students_processed=1))
    assert reopened.status == "processing"
    assert not reopened.is_finished

    await _drain(scheduler)
    stored = store.master_runs[run.id]
    assert stored.status == "completed"
    assert stored.departments_processed == 2
    assert stored.departments_failed == 0


async def test_retry_with_nothing_to_retry(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos), max_retries=0)
    run = await start_master_run(repos, scheduler)
    await _drain(scheduler)

    assert await retry_master_run(repos, scheduler, await repos.master_runs.get(run.id)) == []


async def test_locked_and_inactive_terms_are_skipped_in_final_mode(two_departments, repos):
    store = two_departments
    build_department(store, "d3", "t3")
    store.terms["t2"].is_locked = True
    store.terms["t3"].is_active = False
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos))

    final = await start_master_run(repos, scheduler)
    preview = await start_master_run(repos, scheduler, is_preview=True)

    assert final.department_ids == ["d1"]
    assert sorted(preview.department_ids) == ["d1", "d2"]


async def test_single_department_run(two_departments, repos):
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos))

    run = await start_master_run(repos, scheduler, department_id="d2")
    assert run.department_ids == ["d2"]

    with pytest.raises(DepartmentProcessingError):
        await start_master_run(repos, scheduler, department_id="nope")


async def test_run_without_departments_is_complete(store, repos):
    store.terms["t1"].is_active = False
    scheduler = InProcessJobScheduler(ComputationOrchestrator(repos))

    run = await start_master_run(repos, scheduler)

    assert run.total_departments == 0
    assert run.status == "completed"
    assert scheduler.queue.empty()
