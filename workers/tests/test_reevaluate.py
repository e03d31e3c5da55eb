from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from policy_workers.jobs.reevaluate import execute_reevaluate_all
from policy_workers.services.job_client import PolicyApiClient

RUN_ID = "run-1"


class FakeRunApi:
    def __init__(self, items: list[dict[str, Any]], *, cursor: str | None = None) -> None:
        self.items = sorted(items, key=lambda item: item["id"])
        self.status = "running"
        self.cursor = cursor
        self.evaluations: list[dict[str, Any]] = []
        self.counters = {"processed": 0, "eligible": 0, "ineligible": 0, "pending": 0, "errors": 0}
        self.errors: list[dict[str, Any]] = []
        self.finalize_calls = 0
        self.catalog_limits: list[int] = []
        self.cancel_after_batches: int | None = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        base = f"/internal/runs/{RUN_ID}"

        if request.method == "GET" and path == base:
            return httpx.Response(
                200,
                json={
                    "id": RUN_ID,
                    "status": self.status,
                    "target_policy_version": 3,
                    "policy_config": {"allowed_countries": ["US"], "blocked_countries": ["XX"]},
                    "cursor": self.cursor,
                },
                request=request,
            )
        if request.method == "GET" and path == f"{base}/catalog":
            after = request.url.params.get("cursor")
            limit = int(request.url.params["limit"])
            self.catalog_limits.append(limit)
            page = [item for item in self.items if after is None or item["id"] > after][:limit]
            return httpx.Response(200, json={"items": page, "next_cursor": page[-1]["id"] if page else None})
        if request.method == "PUT" and path == f"{base}/cursor":
            self.cursor = body["cursor"]
            if self.cancel_after_batches is not None and len(self.catalog_limits) >= self.cancel_after_batches:
                self.status = "cancelled"
            return httpx.Response(200, json={"run_id": RUN_ID, "applied": True})
        if request.method == "POST" and path == f"{base}/evaluations":
            self.evaluations.extend(body["evaluations"])
            return httpx.Response(200, json={"run_id": RUN_ID, "applied": True, "count": len(body["evaluations"])})
        if request.method == "POST" and path == f"{base}/counters":
            for key, value in body.items():
                self.counters[key] += value
            return httpx.Response(200, json={"run_id": RUN_ID, "applied": True})
        if request.method == "POST" and path == f"{base}/errors":
            self.errors.append(body)
            self.counters["errors"] += 1
            return httpx.Response(200, json={"run_id": RUN_ID, "applied": True})
        if request.method == "POST" and path == f"{base}/finalize":
            self.finalize_calls += 1
            finalized = self.status == "running"
            self.status = "prepared"
            return httpx.Response(
                200,
                json={
                    "run_id": RUN_ID,
                    "finalized": finalized,
                    "reason": "Successfully finalized" if finalized else "Run already in terminal state: prepared",
                },
            )
        return httpx.Response(404, json={"detail": "not found"})

    def client(self) -> PolicyApiClient:
        return PolicyApiClient(
            "http://policy-api.test",
            "worker-test",
            transport=httpx.MockTransport(self.handler),
        )


def _job(**payload: Any) -> dict[str, Any]:
    return {"id": "job-1", "name": "re-evaluate-all", "payload": {"run_id": RUN_ID, **payload}}


def _item(media_item_id: str, *countries: str) -> dict[str, Any]:
    return {"id": media_item_id, "title": media_item_id.upper(), "attributes": {"origin_countries": list(countries)}}


def test_reevaluate_walks_catalog_and_finalizes() -> None:
    api = FakeRunApi([_item("c", "XX"), _item("a", "US"), _item("b"), _item("d", "FR")])

    result = asyncio.run(execute_reevaluate_all(_job(batch_size=2), client=api.client()))

    assert result["reason"] == "completed"
    assert result["finalized"] is True
    assert result["finalize_reason"] == "Successfully finalized"
    assert result["batches"] == 2
    assert result["processed"] == 4
    assert result["errors"] == 0
    assert api.catalog_limits == [2, 2, 2]
    assert api.cursor == "d"
    assert api.counters == {"processed": 4, "eligible": 1, "ineligible": 2, "pending": 1, "errors": 0}
    assert [(row["media_item_id"], row["status"]) for row in api.evaluations] == [
        ("a", "eligible"),
        ("b", "pending"),
        ("c", "ineligible"),
        ("d", "ineligible"),
    ]
    assert api.evaluations[2]["details"] == {"reason": "BLOCKED_COUNTRY"}


def test_reevaluate_resumes_from_stored_cursor() -> None:
    api = FakeRunApi([_item("a", "US"), _item("b", "US"), _item("c", "US")], cursor="b")

    result = asyncio.run(execute_reevaluate_all(_job(), client=api.client()))

    assert result["processed"] == 1
    assert [row["media_item_id"] for row in api.evaluations] == ["c"]


def test_evaluator_failures_are_reported_and_run_still_finalizes() -> None:
    api = FakeRunApi([_item("a", "US"), _item("b", "US"), _item("c", "US")])

    def flaky_evaluator(item: dict[str, Any], policy_config: dict[str, Any]) -> dict[str, Any]:
        if item["id"] == "b":
            raise RuntimeError("bad attributes")
        if item["id"] == "c":
            return {"status": "approved"}
        return {"status": "eligible"}

    result = asyncio.run(execute_reevaluate_all(_job(), client=api.client(), evaluator=flaky_evaluator))

    assert result["finalized"] is True
    assert result["processed"] == 3
    assert result["errors"] == 2
    assert [row["media_item_id"] for row in api.evaluations] == ["a"]
    assert [error["media_item_id"] for error in api.errors] == ["b", "c"]
    assert api.errors[0]["error"] == "bad attributes"
    assert api.errors[0]["stack"].startswith("Traceback")
    assert len(api.errors[0]["stack"]) <= 500
    assert api.counters["processed"] == 3
    assert api.counters["eligible"] == 1
    assert api.counters["errors"] == 2


def test_reevaluate_stops_when_run_is_cancelled() -> None:
    api = FakeRunApi([_item(f"m{index}", "US") for index in range(6)])
    api.cancel_after_batches = 1

    result = asyncio.run(execute_reevaluate_all(_job(), client=api.client(), batch_size=2))

    assert result["reason"] == "run_cancelled"
    assert result["batches"] == 1
    assert api.finalize_calls == 0
    assert len(api.evaluations) == 2


def test_reevaluate_without_run_id_is_a_noop() -> None:
    api = FakeRunApi([])

    result = asyncio.run(execute_reevaluate_all({"name": "re-evaluate-all", "payload": {}}, client=api.client()))

    assert result == {"handled": True, "name": "re-evaluate-all", "reason": "missing_run_id"}
    assert api.finalize_calls == 0
