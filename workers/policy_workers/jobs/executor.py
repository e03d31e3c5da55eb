from __future__ import annotations

from typing import Any

from policy_workers.jobs.eligibility import Evaluator
from policy_workers.jobs.reevaluate import execute_reevaluate_all
from policy_workers.services.job_client import PolicyApiClient

REEVALUATE_ALL_JOB = "re-evaluate-all"


async def execute_job(
    job: dict[str, Any],
    *,
    client: PolicyApiClient,
    evaluator: Evaluator | None = None,
    batch_size: int | None = None,
) -> dict[str, Any]:
    if job.get("name") == REEVALUATE_ALL_JOB:
        return await execute_reevaluate_all(job, client=client, evaluator=evaluator, batch_size=batch_size)

    return {
        "handled": False,
        "name": job.get("name"),
        "reason": "unsupported_job",
    }
