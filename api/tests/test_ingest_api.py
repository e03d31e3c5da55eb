from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from policy_api.main import app
from policy_api.services.repository import get_repository
from policy_api.services.store import InMemoryRepository


@pytest.fixture
def repository() -> InMemoryRepository:
    store = InMemoryRepository()
    app.dependency_overrides[get_repository] = lambda: store
    yield store
    app.dependency_overrides.clear()


@pytest.fixture
def client(repository: InMemoryRepository) -> TestClient:
    return TestClient(app)


def _start_run(client: TestClient, config: dict | None = None) -> tuple[str, str]:
    policy = client.post("/admin/catalog-policies", json={"config": config or {}}).json()
    prepared = client.post(f"/admin/catalog-policies/{policy['id']}/prepare").json()
    return prepared["run_id"], prepared["job_id"]


def test_run_context_exposes_policy_config_and_cursor(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1")
    run_id, _ = _start_run(client, {"allowed_countries": ["US"]})

    response = client.get(f"/internal/runs/{run_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == run_id
    assert body["status"] == "running"
    assert body["target_policy_version"] == 1
    assert body["policy_config"] == {"allowed_countries": ["US"], "blocked_countries": []}
    assert body["total_ready_snapshot"] == 1
    assert body["cursor"] is None

    assert client.get("/internal/runs/missing").status_code == 404


def test_catalog_pages_follow_cursor_and_cursor_is_persisted(
    client: TestClient,
    repository: InMemoryRepository,
) -> None:
    repository.add_media_item("a", title="A", attributes={"origin_countries": ["US"]})
    repository.add_media_item("b", title="B")
    repository.add_media_item("c", title="C")
    repository.add_media_item("draft", ingestion_status="pending")
    run_id, _ = _start_run(client)

    first = client.get(f"/internal/runs/{run_id}/catalog", params={"limit": 2})
    assert first.status_code == 200
    assert [item["id"] for item in first.json()["items"]] == ["a", "b"]
    assert first.json()["items"][0]["attributes"] == {"origin_countries": ["US"]}
    assert first.json()["next_cursor"] == "b"

    cursor = client.put(f"/internal/runs/{run_id}/cursor", json={"cursor": "b"})
    assert cursor.json() == {"run_id": run_id, "applied": True, "count": None}
    assert client.get(f"/internal/runs/{run_id}").json()["cursor"] == "b"

    second = client.get(f"/internal/runs/{run_id}/catalog", params={"cursor": "b", "limit": 2})
    assert [item["id"] for item in second.json()["items"]] == ["c"]

    empty = client.get(f"/internal/runs/{run_id}/catalog", params={"cursor": "c"})
    assert empty.json() == {"items": [], "next_cursor": None}


def test_counter_increments_reject_negative_values(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1")
    run_id, _ = _start_run(client)

    rejected = client.post(f"/internal/runs/{run_id}/counters", json={"processed": -1})
    assert rejected.status_code == 422

    missing = client.post("/internal/runs/missing/counters", json={"processed": 1})
    assert missing.status_code == 404

    accepted = client.post(f"/internal/runs/{run_id}/counters", json={"processed": 1, "ineligible": 1})
    assert accepted.json()["applied"] is True
    progress = client.get(f"/admin/catalog-policies/runs/{run_id}").json()["progress"]
    assert progress["processed"] == 1
    assert progress["ineligible"] == 1


def test_error_reports_land_in_sample_and_count(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1")
    run_id, _ = _start_run(client)

    response = client.post(
        f"/internal/runs/{run_id}/errors",
        json={"media_item_id": "m1", "error": "boom", "stack": "Traceback"},
    )

    assert response.json()["applied"] is True
    body = client.get(f"/admin/catalog-policies/runs/{run_id}").json()
    assert body["progress"]["errors"] == 1
    assert body["error_sample"][0]["media_item_id"] == "m1"
    assert body["error_sample"][0]["error"] == "boom"


def test_evaluations_are_written_under_target_version(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1")
    repository.add_media_item("m2")
    run_id, _ = _start_run(client)

    response = client.post(
        f"/internal/runs/{run_id}/evaluations",
        json={
            "evaluations": [
                {"media_item_id": "m1", "status": "eligible", "details": {"reason": "ALLOWED_COUNTRY"}},
                {"media_item_id": "m2", "status": "pending"},
            ]
        },
    )

    assert response.status_code == 200
    assert response.json()["count"] == 2
    assert repository.evaluations[("m1", 1)].status == "eligible"
    assert repository.evaluations[("m1", 1)].details == {"reason": "ALLOWED_COUNTRY"}
    assert repository.evaluations[("m2", 1)].run_id == run_id

    invalid = client.post(
        f"/internal/runs/{run_id}/evaluations",
        json={"evaluations": [{"media_item_id": "m1", "status": "approved"}]},
    )
    assert invalid.status_code == 422


def test_finalize_is_idempotent_over_http(client: TestClient, repository: InMemoryRepository) -> None:
    run_id, _ = _start_run(client)

    first = client.post(f"/internal/runs/{run_id}/finalize")
    second = client.post(f"/internal/runs/{run_id}/finalize")
    missing = client.post("/internal/runs/missing/finalize")

    assert first.json()["finalized"] is True
    assert first.json()["reason"] == "Successfully finalized"
    assert second.json()["finalized"] is False
    assert second.json()["reason"] == "Run already in terminal state: prepared"
    assert missing.json() == {"run_id": "missing", "finalized": False, "reason": "Run not found", "counters": None}

    late = client.post(f"/internal/runs/{run_id}/counters", json={"processed": 1})
    assert late.json()["applied"] is False


def test_job_queue_claim_and_result_over_http(client: TestClient, repository: InMemoryRepository) -> None:
    run_id, job_id = _start_run(client)

    queued = client.get("/jobs", params={"limit": 5})
    assert queued.status_code == 200
    assert [job["id"] for job in queued.json()] == [job_id]
    assert queued.json()[0]["name"] == "re-evaluate-all"
    assert queued.json()[0]["job_key"] == f"reeval:1:{run_id}"
    assert queued.json()[0]["payload"]["run_id"] == run_id

    claimed = client.post(f"/jobs/{job_id}/claim", json={"worker_id": "worker-a", "lease_seconds": 60})
    assert claimed.status_code == 200
    assert claimed.json()["status"] == "claimed"
    assert claimed.json()["locked_by"] == "worker-a"

    assert client.post(f"/jobs/{job_id}/claim", json={"worker_id": "worker-b"}).status_code == 409
    assert client.post("/jobs/missing/claim", json={"worker_id": "worker-b"}).status_code == 404

    wrong_worker = client.post(f"/jobs/{job_id}/result", json={"worker_id": "worker-b", "status": "done"})
    assert wrong_worker.status_code == 409

    invalid_status = client.post(f"/jobs/{job_id}/result", json={"worker_id": "worker-a", "status": "queued"})
    assert invalid_status.status_code == 422

    done = client.post(
        f"/jobs/{job_id}/result",
        json={"worker_id": "worker-a", "status": "done", "result_json": {"processed": 0}},
    )
    assert done.status_code == 200
    assert done.json()["status"] == "done"
    assert client.get("/jobs").json() == []
