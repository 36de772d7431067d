import asyncio

import pytest

from app.computation.errors import (
    BufferFlushError,
    DepartmentProcessingError,
    PolicyConfigurationError,
    TermLockedError,
)
from app.computation.orchestrator import ComputationOrchestrator, DepartmentJob
from app.computation.rules import StandingPolicy
from app.computation.standing import strip_preview_action
from app.models.computation import MasterComputationRun
from tests.conftest import build_department, enroll
from tests.fakes import FakeBulkWriteSink, FakeStore, RecordingNotifier


def _job(**kw):
    return DepartmentJob(department_id="d1", **kw)


async def _master_run(repos, departments=("d1",)):
    return await repos.master_runs.create(MasterComputationRun(
        status="processing", department_ids=list(departments), total_departments=len(departments),
    ))


def _populate(store):
    enroll(store, "a", {"c101": 80, "c102": 72, "e103": 65})
    enroll(store, "b", {"c101": 30, "c102": 55})
    enroll(store, "c", {"c101": 48, "e103": 20})
    enroll(store, "d", {"c201": 65, "c202": 41}, level="200")
    enroll(store, "e", {"c201": 20, "c202": 10}, level="200")
    enroll(store, "f", {}, registered=False, level="200")
    enroll(store, "g", {})
    store.add_semester_result("d", "t0", tcp=40, tnu=10, gpa=4.0, cgpa=4.0)
    store.add_semester_result("e", "t0", tcp=5, tnu=10, gpa=0.5, cgpa=0.5)


def _normalized(summary):
    def walk(value):
        if isinstance(value, dict):
            return {
                k: strip_preview_action(v) if k == "action_taken" else walk(v)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [walk(v) for v in value]
        return value

    content = summary.content()
    content.pop("term_locked")
    return walk(content)


async def test_scenario_failed_core_course(store, repos):
    del store.courses["d1-c102"]
    enroll(store, "s1", {"c101": 30})

    summary = await ComputationOrchestrator(repos).run(_job())

    student_summary = summary.levels["100"].student_summaries[0]
    assert summary.status == "completed"
    assert student_summary.current.gpa == 0.0
    assert student_summary.remark == "probation"
    assert student_summary.action_taken == "placed_on_probation"
    assert store.carryovers["s1_d1-c101_t1"].reason == "Failed"
    assert store.students["s1"].probation_status == "probation"
    assert store.students["s1"].total_carryovers == 1
    assert store.students["s1"].carryover_courses == ["d1-c101"]
    assert summary.list_counts["probation_list"] == 1
    assert summary.list_counts["carryover_list"] == 1


async def test_scenario_no_registration(store, repos):
    enroll(store, "s2", {}, registered=False, gpa=3.1, cgpa=3.2)

    summary = await ComputationOrchestrator(repos).run(_job())

    student_summary = summary.levels["100"].student_summaries[0]
    assert student_summary.remark == "suspended"
    assert student_summary.action_taken == "suspended_no_registration"
    assert student_summary.gpa_evaluated is False
    assert summary.list_counts["suspension_list"] == 1
    student = store.students["s2"]
    assert student.suspension.reason == "NO_REGISTRATION"
    assert (student.gpa, student.cgpa) == (3.1, 3.2)


async def test_final_run_locks_term_and_notifies_head(store, repos):
    _populate(store)

    summary = await ComputationOrchestrator(repos).run(_job(computed_by="admin-1"))

    # "g" is registered without results
    assert summary.status == "completed_with_errors"
    assert summary.failed_students[0].error == "No results found"
    assert store.terms["t1"].is_locked is False

    assert len(store.notifications) == 1
    note = store.notifications[0]
    assert note.recipient_id == "hod-1"
    assert note.type == "department_results_computed"
    assert "Termination: 0 students" in note.message


async def test_clean_final_run_locks_term(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})

    summary = await ComputationOrchestrator(repos).run(_job(computed_by="admin-1"))

    assert summary.status == "completed"
    assert summary.term_locked is True
    assert store.terms["t1"].is_locked is True
    assert store.locked_by["t1"] == "admin-1"


async def test_previous_terms_feed_cgpa_and_withdrawal(store, repos):
    _populate(store)

    summary = await ComputationOrchestrator(repos).run(_job())

    level_200 = {s.student_id: s for s in summary.levels["200"].student_summaries}
    # d: 4*3 + 1*3 = 15 over 6 this term, 40 over 10 before
    assert level_200["d"].current.gpa == 2.5
    assert level_200["d"].cumulative.gpa == 3.44
    assert level_200["e"].remark == "withdrawn"
    assert store.students["e"].termination_status == "withdrawn"
    assert not any(c.student_id == "e" for c in store.carryovers.values())


async def test_level_totals_add_up(store, repos):
    _populate(store)

    summary = await ComputationOrchestrator(repos).run(_job())

    assert summary.total_students == 7
    assert summary.students_processed == 7
    assert summary.total_students == sum(l.stats.total_students for l in summary.levels.values())
    assert summary.levels["100"].stats.total_students == 4
    assert summary.levels["200"].stats.total_students == 3
    for name, count in summary.list_counts.items():
        assert count == sum(len(getattr(l, name)) for l in summary.levels.values())


async def test_preview_matches_final():
    preview_store = build_department(FakeStore())
    final_store = build_department(FakeStore())
    _populate(preview_store)
    _populate(final_store)

    preview = await ComputationOrchestrator(preview_store.repositories()).run(_job(is_preview=True))
    final = await ComputationOrchestrator(final_store.repositories()).run(_job())

    assert preview.is_preview and not final.is_preview
    assert preview.id.endswith("_preview") and final.id.endswith("_final")
    assert any(s.action_taken.startswith("would_be_")
               for level in preview.levels.values() for s in level.student_summaries)
    assert _normalized(preview) == _normalized(final)


async def test_preview_writes_nothing(store, repos, sink):
    _populate(store)
    before = {sid: s.model_dump() for sid, s in store.students.items()}

    await ComputationOrchestrator(repos).run(_job(is_preview=True))

    assert sink.student_update_calls == 0
    assert store.carryovers == {}
    assert {sid: s.model_dump() for sid, s in store.students.items()} == before
    assert store.terms["t1"].is_locked is False
    assert store.notifications == []


async def test_batches_and_flushes(store, repos, sink):
    for n in range(150):
        enroll(store, f"s{n:03d}", {"c101": 75, "c102": 30})

    summary = await ComputationOrchestrator(repos, batch_size=100, flush_threshold=100).run(_job())

    assert store.calls["fetch_students_with_details"] == 2
    assert store.calls["fetch_results_by_students"] == 2
    assert store.calls["registered_among"] == 2
    assert store.calls["core_courses_for_level"] == 1
    assert sink.student_update_calls == 2
    assert summary.students_processed == 150
    assert len(store.carryovers) == 150


async def test_retry_after_flush_failure_is_idempotent(store):
    for n in range(150):
        enroll(store, f"s{n:03d}", {"c101": 75, "c102": 30})
    sink = FakeBulkWriteSink(store, fail_on={2})
    repos = store.repositories(sink=sink)
    orchestrator = ComputationOrchestrator(repos, batch_size=100, flush_threshold=100)

    with pytest.raises(BufferFlushError):
        await orchestrator.run(_job(max_attempts=2))
    failed = await repos.summaries.get("d1_t1_standalone_final")
    assert failed.status == "failed"
    assert store.terms["t1"].is_locked is False
    assert store.notifications == []

    summary = await orchestrator.run(_job(attempt=2, max_attempts=2, retry=True))

    assert summary.status == "completed"
    assert summary.retry_count == 1
    assert summary.last_retry_at is not None
    assert len(store.carryovers) == 150
    assert {s.total_carryovers for s in store.students.values()} == {1}
    assert all(s.carryover_courses == ["d1-c102"] for s in store.students.values())


def _mixed_cohort(store):
    """150 students; the withdrawn, probation and suspended ones fall in the first batch"""
    enroll(store, "a000", {"c201": 20, "c202": 10}, level="200")
    store.add_semester_result("a000", "t0", tcp=5, tnu=10, gpa=0.5, cgpa=0.5)
    enroll(store, "p000", {"c101": 30, "c102": 30})
    enroll(store, "s000", {}, registered=False)
    for n in range(1, 148):
        enroll(store, f"s{n:03d}", {"c101": 75, "c102": 30})
    return store


def _outcome(summary):
    standings = {
        s.student_id: (s.remark, s.action_taken)
        for level in summary.levels.values() for s in level.student_summaries
    }
    return summary.total_students, summary.list_counts, standings


async def test_retry_matches_a_clean_run():
    clean_store = _mixed_cohort(build_department(FakeStore()))
    clean = await ComputationOrchestrator(clean_store.repositories(), batch_size=100, flush_threshold=100).run(_job())

    store = _mixed_cohort(build_department(FakeStore()))
    repos = store.repositories(sink=FakeBulkWriteSink(store, fail_on={2}))
    orchestrator = ComputationOrchestrator(repos, batch_size=100, flush_threshold=100)
    with pytest.raises(BufferFlushError):
        await orchestrator.run(_job(max_attempts=2))
    # the first batch went through before the failure
    assert store.students["a000"].termination_status == "withdrawn"
    assert store.students["s000"].suspension.since_term_id == "t1"

    retried = await orchestrator.run(_job(attempt=2, max_attempts=2, retry=True))

    assert retried.total_students == 150
    assert retried.list_counts["withdrawal_list"] == 1
    assert _outcome(retried) == _outcome(clean)
    assert {sid: s.model_dump() for sid, s in store.students.items()} == {
        sid: s.model_dump() for sid, s in clean_store.students.items()
    }
    assert store.students["s000"].termination_status == "none"
    assert store.students["p000"].total_carryovers == 2


async def test_second_final_run_on_unlocked_term_keeps_standing(store, repos):
    enroll(store, "s2", {}, registered=False)
    # registered without results, so the term stays unlocked
    enroll(store, "g", {})
    orchestrator = ComputationOrchestrator(repos)

    first = await orchestrator.run(_job(master_run_id="m1"))
    assert store.terms["t1"].is_locked is False
    second = await orchestrator.run(_job(master_run_id="m2"))

    assert second.id != first.id
    assert _outcome(second) == _outcome(first)
    assert second.levels["100"].student_summaries[0].action_taken == "suspended_no_registration"
    assert store.students["s2"].termination_status == "none"
    assert store.students["s2"].suspension.reason == "NO_REGISTRATION"


async def test_failure_is_recorded_on_last_attempt(store):
    enroll(store, "a", {"c101": 80, "c102": 72})
    repos = store.repositories(sink=FakeBulkWriteSink(store, fail_all=True))
    run = await _master_run(repos)

    with pytest.raises(BufferFlushError):
        await ComputationOrchestrator(repos).run(_job(master_run_id=run.id))

    summary = await repos.summaries.get(f"d1_t1_{run.id}_final")
    assert summary.status == "failed"
    assert "Bulk write failed" in summary.error_message
    assert store.terms["t1"].is_locked is False
    assert [n.type for n in store.notifications] == ["department_computation_failed"]
    stored = store.master_runs[run.id]
    assert stored.department_results["d1"].status == "failed"
    assert stored.status == "failed"


async def test_invalid_policy_fails_before_any_read(store, repos):
    enroll(store, "a", {"c101": 80})
    orchestrator = ComputationOrchestrator(repos, policy=StandingPolicy(withdrawal_cgpa=2.0))

    with pytest.raises(PolicyConfigurationError):
        await orchestrator.run(_job())

    assert store.calls["list_eligible_student_ids"] == 0
    assert store.summaries == {}


async def test_department_without_active_term(store, repos):
    store.terms["t1"].is_active = False

    with pytest.raises(DepartmentProcessingError) as exc:
        await ComputationOrchestrator(repos).run(_job())
    assert exc.value.retriable is False


async def test_locked_term_rejects_final_but_allows_preview(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    store.terms["t1"].is_locked = True

    with pytest.raises(TermLockedError):
        await ComputationOrchestrator(repos).run(_job())

    preview = await ComputationOrchestrator(repos).run(_job(is_preview=True))
    assert preview.status == "completed"


async def test_cancelled_before_first_batch(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    run = await _master_run(repos)
    event = asyncio.Event()
    event.set()

    summary = await ComputationOrchestrator(repos).run(_job(master_run_id=run.id), event)

    assert summary.status == "cancelled"
    assert summary.students_processed == 0
    assert store.terms["t1"].is_locked is False
    assert store.notifications == []
    assert store.master_runs[run.id].status == "cancelled"


async def test_cancelled_between_batches_keeps_finished_batches(store, repos):
    for n in range(150):
        enroll(store, f"s{n:03d}", {"c101": 75, "c102": 30})
    event = asyncio.Event()
    fetch = repos.results.fetch_results_by_students

    async def fetch_then_cancel(student_ids, term_id):
        event.set()
        return await fetch(student_ids, term_id)

    repos.results.fetch_results_by_students = fetch_then_cancel

    summary = await ComputationOrchestrator(repos, batch_size=100).run(_job(), event)

    assert summary.status == "cancelled"
    assert summary.students_processed == 100
    assert len(store.carryovers) == 100
    assert store.terms["t1"].is_locked is False


async def test_finished_summary_is_not_recomputed(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    orchestrator = ComputationOrchestrator(repos)
    first = await orchestrator.run(_job())
    reads = store.calls["fetch_results_by_students"]

    again = await orchestrator.run(_job())

    assert again.id == first.id
    assert store.calls["fetch_results_by_students"] == reads


async def test_missing_student_document_is_reported(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    store.dangling_student_ids = ["ghost"]

    summary = await ComputationOrchestrator(repos).run(_job())

    assert summary.status == "completed_with_errors"
    assert [(f.student_id, f.code) for f in summary.failed_students] == [("ghost", "STUDENT_NOT_FOUND")]
    assert summary.total_students == 1


async def test_notification_failure_does_not_fail_the_job(store):
    enroll(store, "a", {"c101": 80, "c102": 72})
    repos = store.repositories(notifier=RecordingNotifier(store, fail=True))

    summary = await ComputationOrchestrator(repos).run(_job())

    assert summary.status == "completed"
    assert store.terms["t1"].is_locked is True
