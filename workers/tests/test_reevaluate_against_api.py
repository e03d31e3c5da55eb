from __future__ import annotations

import asyncio
from typing import Any

import httpx

from policy_api.api.deps import get_activation_service
from policy_api.main import app
from policy_api.services.activation import ActivationService
from policy_api.services.repository import get_repository
from policy_api.services.store import InMemoryRepository
from policy_workers.jobs.eligibility import evaluate_eligibility
from policy_workers.jobs.reevaluate import execute_reevaluate_all
from policy_workers.services.job_client import PolicyApiClient


def flaky_on_b(item: dict[str, Any], policy_config: dict[str, Any]) -> dict[str, Any]:
    if item["id"] == "b":
        raise RuntimeError("metadata lookup failed")
    return evaluate_eligibility(item, policy_config)


def _run(error_budget: int):
    repository = InMemoryRepository()
    for media_item_id in ("a", "b", "c"):
        repository.add_media_item(media_item_id, attributes={"origin_countries": ["US"]})
    service = ActivationService(repository, error_budget=error_budget)
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_activation_service] = lambda: service
    client = PolicyApiClient(
        "http://policy-api.test",
        "worker-e2e",
        transport=httpx.ASGITransport(app=app),
    )

    async def scenario():
        policy = await repository.create_policy(config={"allowed_countries": ["US"]})
        outcome = await service.prepare(policy.id)
        job = {"id": outcome.job_id, "name": "re-evaluate-all", "payload": {"run_id": outcome.run_id, "batch_size": 2}}
        summary = await execute_reevaluate_all(job, client=client, evaluator=flaky_on_b)
        report = await service.status(outcome.run_id)
        promoted = await service.promote(outcome.run_id)
        return summary, report, promoted, await repository.get_active_policy()

    try:
        return asyncio.run(scenario())
    finally:
        app.dependency_overrides.clear()


def test_failed_item_counts_toward_coverage_and_fits_error_budget() -> None:
    summary, report, promoted, active = _run(error_budget=1)

    assert summary["finalized"] is True
    assert summary["processed"] == 3
    assert summary["errors"] == 1
    assert report.run.processed == 3
    assert report.run.eligible == 2
    assert report.run.errors == 1
    assert report.coverage == 1.0
    assert report.blocking_reasons == []
    assert report.ready_to_promote is True
    assert [entry.media_item_id for entry in report.run.error_sample] == ["b"]
    assert promoted.success is True
    assert active is not None and active.is_active is True


def test_failed_item_over_error_budget_blocks_promotion() -> None:
    summary, report, promoted, active = _run(error_budget=0)

    assert summary["processed"] == 3
    assert report.coverage == 1.0
    assert report.blocking_reasons == ["ERRORS_EXCEEDED"]
    assert promoted.success is False
    assert promoted.error == "Errors 1 exceed error budget 0"
    assert active is None
