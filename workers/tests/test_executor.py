from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

import policy_workers.main as worker_main
from policy_workers.jobs import executor
from policy_workers.services.job_client import PolicyApiClient


def test_execute_job_dispatches_reevaluate_all(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_execute_reevaluate_all(
        job: dict[str, Any],
        *,
        client: Any,
        evaluator: Any | None = None,
        batch_size: int | None = None,
    ) -> dict[str, Any]:
        captured["job"] = job
        captured["batch_size"] = batch_size
        captured["client"] = client
        return {"handled": True, "name": job.get("name")}

    monkeypatch.setattr(executor, "execute_reevaluate_all", fake_execute_reevaluate_all)
    result = asyncio.run(
        executor.execute_job(
            {"name": "re-evaluate-all", "payload": {"run_id": "run-1"}},
            client="client-sentinel",
            batch_size=25,
        )
    )

    assert result["handled"] is True
    assert captured["job"]["payload"]["run_id"] == "run-1"
    assert captured["batch_size"] == 25
    assert captured["client"] == "client-sentinel"


def test_execute_job_reports_unsupported_job() -> None:
    result = asyncio.run(executor.execute_job({"name": "something-else"}, client=None))

    assert result == {"handled": False, "name": "something-else", "reason": "unsupported_job"}


def test_process_job_claims_then_submits_failure(monkeypatch) -> None:
    submitted: list[dict[str, Any]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        if request.url.path == "/jobs/job-1/claim":
            return httpx.Response(
                200,
                json={"id": "job-1", "name": "re-evaluate-all", "payload": {"run_id": "run-1"}, "status": "claimed"},
            )
        if request.url.path == "/jobs/job-1/result":
            submitted.append(body)
            return httpx.Response(200, json={"id": "job-1", "status": body["status"]})
        return httpx.Response(404, json={"detail": "not found"})

    async def exploding_execute_job(job: dict[str, Any], **_: Any) -> dict[str, Any]:
        raise RuntimeError("api went away")

    monkeypatch.setattr(worker_main, "execute_job", exploding_execute_job)
    client = PolicyApiClient("http://policy-api.test", "worker-a", transport=httpx.MockTransport(handler))

    result = asyncio.run(worker_main.process_job(client, {"id": "job-1"}, lease_seconds=30))

    assert result["status"] == "failed"
    assert submitted == [
        {
            "worker_id": "worker-a",
            "status": "failed",
            "result_json": None,
            "error_json": {"error": "api went away", "type": "RuntimeError"},
        }
    ]
