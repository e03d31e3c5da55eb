from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from opentelemetry import trace

from policy_workers.core.config import get_settings
from policy_workers.core.telemetry import (
    configure_worker_logging,
    job_span_attributes,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from policy_workers.jobs.executor import execute_job
from policy_workers.services.job_client import PolicyApiClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(getattr(logging, settings.log_level.upper(), logging.INFO))
    telemetry_runtime = setup_worker_telemetry(settings)
    client = PolicyApiClient(
        base_url=settings.api_base_url,
        worker_id=settings.worker_id,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    logger.info("policy worker started worker_id=%s api=%s", settings.worker_id, settings.api_base_url)

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    jobs = await client.get_jobs(limit=5)
                    if not jobs:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    for job in jobs:
                        await process_job(
                            client,
                            job,
                            lease_seconds=settings.claim_lease_seconds,
                            batch_size=settings.batch_size,
                        )

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


async def process_job(
    client: PolicyApiClient,
    job: dict[str, Any],
    *,
    lease_seconds: int,
    batch_size: int | None = None,
) -> dict[str, Any]:
    with tracer.start_as_current_span("worker.process_job") as job_span:
        claimed = await client.claim_job(str(job["id"]), lease_seconds=lease_seconds)
        for key, value in job_span_attributes(claimed).items():
            job_span.set_attribute(key, value)
        try:
            result = await execute_job(claimed, client=client, batch_size=batch_size)
        except Exception as exc:
            logger.exception("job execution failed for id=%s", claimed["id"])
            return await client.submit_result(
                claimed["id"],
                status="failed",
                error_json={"error": str(exc), "type": type(exc).__name__},
            )

        return await client.submit_result(claimed["id"], status="done", result_json=result)


if __name__ == "__main__":
    asyncio.run(run_worker())
