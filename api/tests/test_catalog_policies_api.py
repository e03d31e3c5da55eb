from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from policy_api.core.config import get_settings
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


def _create_policy(client: TestClient, config: dict | None = None) -> dict:
    response = client.post("/admin/catalog-policies", json={"config": config or {}})
    assert response.status_code == 201
    return response.json()


def _prepare(client: TestClient, policy_id: str) -> dict:
    response = client.post(f"/admin/catalog-policies/{policy_id}/prepare")
    assert response.status_code == 202
    return response.json()


def test_create_list_and_get_policies(client: TestClient) -> None:
    first = _create_policy(client, {"allowed_countries": ["US"]})
    second = _create_policy(client)

    listed = client.get("/admin/catalog-policies")
    assert listed.status_code == 200
    assert [policy["version"] for policy in listed.json()] == [2, 1]

    fetched = client.get(f"/admin/catalog-policies/{first['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["config"] == {"allowed_countries": ["US"], "blocked_countries": []}
    assert fetched.json()["is_active"] is False
    assert second["version"] == 2

    assert client.get("/admin/catalog-policies/missing").status_code == 404


def test_prepare_returns_accepted_with_run_and_job(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1")
    policy = _create_policy(client)

    body = _prepare(client, policy["id"])

    assert body["status"] == "running"
    assert body["run_id"]
    assert body["job_id"] in repository.jobs
    assert body["message"]

    conflict = client.post(f"/admin/catalog-policies/{policy['id']}/prepare")
    assert conflict.status_code == 409


def test_create_policy_normalizes_country_codes(client: TestClient) -> None:
    policy = _create_policy(client, {"allowed_countries": [" us ", "Gb"], "blocked_countries": ["fr"]})

    assert policy["config"] == {"allowed_countries": ["US", "GB"], "blocked_countries": ["FR"]}


@pytest.mark.parametrize(
    "config",
    [
        {"allowed_countries": ["USA"]},
        {"blocked_countries": ["1A"]},
        {"allowed_countries": "US"},
    ],
)
def test_create_policy_rejects_invalid_config(client: TestClient, repository: InMemoryRepository, config: dict) -> None:
    response = client.post("/admin/catalog-policies", json={"config": config})

    assert response.status_code == 422
    assert repository.policies == {}


def test_prepare_active_policy_returns_409(client: TestClient, repository: InMemoryRepository) -> None:
    policy = _create_policy(client)
    asyncio.run(repository.activate_policy(policy["id"]))

    response = client.post(f"/admin/catalog-policies/{policy['id']}/prepare")

    assert response.status_code == 409
    assert "already active" in response.json()["detail"]
    assert repository.runs == {}


def test_prepare_unknown_policy_returns_404(client: TestClient) -> None:
    response = client.post("/admin/catalog-policies/missing/prepare")
    assert response.status_code == 404


def test_run_status_shape_and_listing(client: TestClient, repository: InMemoryRepository) -> None:
    for media_item_id in ("m1", "m2"):
        repository.add_media_item(media_item_id)
    policy = _create_policy(client)
    run_id = _prepare(client, policy["id"])["run_id"]

    response = client.get(f"/admin/catalog-policies/runs/{run_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == run_id
    assert body["status"] == "running"
    assert body["progress"] == {
        "processed": 0,
        "total": 2,
        "eligible": 0,
        "ineligible": 0,
        "pending": 0,
        "errors": 0,
    }
    assert body["coverage"] == 0.0
    assert body["ready_to_promote"] is False
    assert body["blocking_reasons"] == ["RUN_NOT_SUCCESS", "COVERAGE_NOT_MET"]
    assert body["error_sample"] == []

    listed = client.get("/admin/catalog-policies/runs", params={"status": "running"})
    assert listed.status_code == 200
    assert [run["id"] for run in listed.json()] == [run_id]
    assert client.get("/admin/catalog-policies/runs", params={"status": "prepared"}).json() == []

    assert client.get("/admin/catalog-policies/runs/missing").status_code == 404


def test_promote_and_cancel_report_failures_with_201(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1")
    policy = _create_policy(client)
    run_id = _prepare(client, policy["id"])["run_id"]

    promote = client.post(f"/admin/catalog-policies/runs/{run_id}/promote")
    assert promote.status_code == 201
    assert promote.json()["success"] is False
    assert "expected prepared" in promote.json()["error"]

    missing = client.post("/admin/catalog-policies/runs/missing/cancel")
    assert missing.status_code == 201
    assert missing.json()["success"] is False

    cancel = client.post(f"/admin/catalog-policies/runs/{run_id}/cancel")
    assert cancel.status_code == 201
    assert cancel.json()["success"] is True

    again = client.post(f"/admin/catalog-policies/runs/{run_id}/cancel")
    assert again.json() == {
        "success": False,
        "message": None,
        "error": "can only cancel running/prepared runs (status is cancelled)",
    }


def test_full_prepare_finalize_promote_flow(client: TestClient, repository: InMemoryRepository) -> None:
    repository.add_media_item("m1", title="Only Item", trending_score=5.0)
    policy = _create_policy(client)
    run_id = _prepare(client, policy["id"])["run_id"]

    evaluations = client.post(
        f"/internal/runs/{run_id}/evaluations",
        json={"evaluations": [{"media_item_id": "m1", "status": "eligible"}]},
    )
    assert evaluations.status_code == 200
    counters = client.post(f"/internal/runs/{run_id}/counters", json={"processed": 1, "eligible": 1})
    assert counters.json()["applied"] is True

    diff_running = client.get(f"/admin/catalog-policies/runs/{run_id}/diff")
    assert diff_running.status_code == 400
    assert "running" in diff_running.json()["detail"]

    finalize = client.post(f"/internal/runs/{run_id}/finalize")
    assert finalize.json()["finalized"] is True

    status_body = client.get(f"/admin/catalog-policies/runs/{run_id}").json()
    assert status_body["ready_to_promote"] is True
    assert status_body["blocking_reasons"] == []

    diff = client.get(f"/admin/catalog-policies/runs/{run_id}/diff", params={"sample_size": 5})
    assert diff.status_code == 200
    assert diff.json()["current_policy_version"] is None
    assert diff.json()["counts"] == {"regressions": 0, "improvements": 1, "net_change": 1}
    assert diff.json()["top_improvements"] == [
        {"media_item_id": "m1", "title": "Only Item", "reason": "none→eligible"}
    ]

    promote = client.post(
        f"/admin/catalog-policies/runs/{run_id}/promote",
        headers={"X-Actor-Id": "operator-7"},
    )
    assert promote.status_code == 201
    assert promote.json() == {"success": True, "message": "Policy activated successfully", "error": None}

    promoted = client.get(f"/admin/catalog-policies/runs/{run_id}").json()
    assert promoted["status"] == "promoted"
    assert promoted["promoted_by"] == "operator-7"
    assert client.get(f"/admin/catalog-policies/{policy['id']}").json()["is_active"] is True


def test_diff_unknown_run_returns_404_and_sample_size_is_bounded(client: TestClient) -> None:
    assert client.get("/admin/catalog-policies/runs/missing/diff").status_code == 404
    assert client.get("/admin/catalog-policies/runs/missing/diff", params={"sample_size": 501}).status_code == 422


def test_storage_unavailable_maps_to_503(monkeypatch) -> None:
    monkeypatch.setenv("CP_STORAGE_BACKEND", "postgres")
    monkeypatch.delenv("CP_DATABASE_URL", raising=False)
    app.dependency_overrides.clear()
    get_settings.cache_clear()
    get_repository.cache_clear()
    try:
        client = TestClient(app)
        response = client.get("/admin/catalog-policies")
    finally:
        get_repository.cache_clear()
        get_settings.cache_clear()

    assert response.status_code == 503
    assert "CP_DATABASE_URL" in response.json()["detail"]
