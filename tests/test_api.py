import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from app.core.security import Permissions, get_current_user
from app.main import app
from app.models.computation import MasterComputationRun
from tests.conftest import enroll

API = "/api/v1/computation"

ADMIN = SimpleNamespace(id="admin-1", is_active=True, role=SimpleNamespace(name="admin"), permissions=set())
VIEWER = SimpleNamespace(id="viewer-1", is_active=True, role=SimpleNamespace(name="lecturer"),
                         permissions={"academic.view"})
EXAM_OFFICER = SimpleNamespace(id="officer-1", is_active=True, role=SimpleNamespace(name="exam_officer"),
                               permissions={Permissions.ACADEMIC_DELIBERATION})


@pytest.fixture
def client(store, repos):
    enroll(store, "a", {"c101": 80, "c102": 72})
    enroll(store, "b", {"c101": 30, "c102": 55})
    app.state.repos = repos
    app.dependency_overrides[get_current_user] = lambda: ADMIN
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.repos = None


def _wait_for(client, master_run_id):
    for _ in range(200):
        body = client.get(f"{API}/status/{master_run_id}").json()
        if body["run"]["status"] not in ("pending", "processing"):
            return body
        time.sleep(0.01)
    raise AssertionError("master run did not finish")


def test_preview_run_end_to_end(client, store):
    response = client.post(f"{API}/compute-all", json={"is_preview": True})
    assert response.status_code == 202
    run_id = response.json()["master_run_id"]
    assert response.json()["department_ids"] == ["d1"]

    status = _wait_for(client, run_id)
    assert status["run"]["status"] == "completed"
    assert status["run"]["purpose"] == "preview"
    department = status["digest"]["departments"][0]
    assert department["students_processed"] == 2

    summary = client.get(f"{API}/summaries/{department['summary_id']}").json()
    assert summary["is_preview"] is True
    assert summary["list_counts"]["carryover_list"] == 1
    assert store.carryovers == {}

    level = client.get(f"{API}/summaries/{department['summary_id']}/levels/100").json()
    assert [c["course_code"] for c in level["master_sheet"]["key_to_courses"]] == ["CSC101", "CSC102"]
    assert len(level["level_summary"]["student_summaries"]) == 2

    assert client.get(f"{API}/summaries/{department['summary_id']}/levels/900").status_code == 404
    assert client.get(f"{API}/summaries/nope").status_code == 404


def test_final_run_and_carryover_clearing(client, store):
    run_id = client.post(f"{API}/compute-all", json={}).json()["master_run_id"]
    assert _wait_for(client, run_id)["run"]["status"] == "completed"
    assert store.terms["t1"].is_locked

    carryovers = client.get(f"{API}/carryovers/student/b").json()
    assert carryovers["total"] == 1
    assert carryovers["outstanding"] == 1
    carryover_id = carryovers["carryovers"][0]["id"]
    assert carryover_id == "b_d1-c101_t1"

    response = client.patch(f"{API}/carryovers/{carryover_id}/clear", json={"remark": "resit passed"})
    assert response.status_code == 200
    assert response.json()["cleared"] is True
    assert response.json()["cleared_by"] == "admin-1"
    assert store.students["b"].total_carryovers == 0

    assert client.patch(f"{API}/carryovers/{carryover_id}/clear", json={}).status_code == 409
    assert client.patch(f"{API}/carryovers/nope/clear", json={}).status_code == 404
    assert client.get(f"{API}/carryovers/student/b", params={"include_cleared": False}).json()["total"] == 0


def test_finished_run_cannot_be_cancelled_or_retried(client):
    run_id = client.post(f"{API}/compute-all", json={"is_preview": True}).json()["master_run_id"]
    _wait_for(client, run_id)

    assert client.post(f"{API}/cancel/{run_id}").status_code == 409
    assert client.post(f"{API}/retry/{run_id}").status_code == 409


def test_cancel_running_master_run(client, store):
    store.master_runs["run-x"] = MasterComputationRun(
        id="run-x", status="processing", department_ids=["d1"], total_departments=1,
    )

    response = client.post(f"{API}/cancel/run-x")

    assert response.status_code == 200
    assert store.master_runs["run-x"].status == "cancelled"


def test_unknown_ids(client):
    assert client.get(f"{API}/status/nope").status_code == 404
    assert client.post(f"{API}/cancel/nope").status_code == 404
    assert client.post(f"{API}/compute-all", json={"department_id": "nope"}).status_code == 404


def test_invalid_purpose_is_rejected(client):
    assert client.post(f"{API}/compute-all", json={"purpose": "bogus"}).status_code == 422


def test_permission_required(client):
    app.dependency_overrides[get_current_user] = lambda: VIEWER
    assert client.post(f"{API}/compute-all", json={}).status_code == 403
    assert client.get(f"{API}/status/nope").status_code == 403


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    body = client.get(f"{API}/health").json()
    assert body["status"] == "healthy"
    assert body["running_jobs"] == 0


def test_deliberation_permission_is_enough(client):
    app.dependency_overrides[get_current_user] = lambda: EXAM_OFFICER
    run_id = client.post(f"{API}/compute-all", json={"is_preview": True}).json()["master_run_id"]
    assert _wait_for(client, run_id)["run"]["status"] == "completed"
