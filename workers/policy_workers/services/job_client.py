from __future__ import annotations

from typing import Any

import httpx


class PolicyApiClient:
    """HTTP client for the job queue and run ingestion endpoints of the policy API."""

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {"X-Worker-Id": worker_id}

    # job queue

    async def get_jobs(self, limit: int = 10) -> list[dict[str, Any]]:
        return await self._request("GET", "/jobs", params={"limit": limit})

    async def claim_job(self, job_id: str, lease_seconds: int = 600) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/jobs/{job_id}/claim",
            json={"worker_id": self.worker_id, "lease_seconds": lease_seconds},
        )

    async def submit_result(
        self,
        job_id: str,
        *,
        status: str,
        result_json: dict[str, Any] | None = None,
        error_json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "worker_id": self.worker_id,
            "status": status,
            "result_json": result_json,
            "error_json": error_json,
        }
        return await self._request("POST", f"/jobs/{job_id}/result", json=payload)

    # run ingestion

    async def get_run(self, run_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/internal/runs/{run_id}")

    async def get_catalog_batch(self, run_id: str, *, cursor: str | None, limit: int) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        return await self._request("GET", f"/internal/runs/{run_id}/catalog", params=params)

    async def update_cursor(self, run_id: str, cursor: str) -> bool:
        payload = await self._request("PUT", f"/internal/runs/{run_id}/cursor", json={"cursor": cursor})
        return bool(payload.get("applied"))

    async def increment_counters(self, run_id: str, counters: dict[str, int]) -> bool:
        payload = await self._request("POST", f"/internal/runs/{run_id}/counters", json=counters)
        return bool(payload.get("applied"))

    async def record_error(self, run_id: str, entry: dict[str, Any]) -> bool:
        payload = await self._request("POST", f"/internal/runs/{run_id}/errors", json=entry)
        return bool(payload.get("applied"))

    async def record_evaluations(self, run_id: str, evaluations: list[dict[str, Any]]) -> int:
        payload = await self._request(
            "POST",
            f"/internal/runs/{run_id}/evaluations",
            json={"evaluations": evaluations},
        )
        return int(payload.get("count") or 0)

    async def finalize_run(self, run_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/internal/runs/{run_id}/finalize")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
    ) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()
