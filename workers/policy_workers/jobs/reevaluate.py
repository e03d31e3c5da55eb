from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from policy_workers.jobs.eligibility import Evaluator, evaluate_eligibility, validate_evaluation
from policy_workers.services.job_client import PolicyApiClient

logger = logging.getLogger(__name__)

STACK_MAX_LENGTH = 500
DEFAULT_BATCH_SIZE = 100


async def execute_reevaluate_all(
    job: dict[str, Any],
    *,
    client: PolicyApiClient,
    evaluator: Evaluator | None = None,
    batch_size: int | None = None,
) -> dict[str, Any]:
    """Walk the run's frozen catalog universe in id order and stream results back to the API.

    Resumes from the run's stored cursor. Stops early once the run leaves ``running``.
    """
    evaluate = evaluator or evaluate_eligibility
    payload = job.get("payload") if isinstance(job.get("payload"), dict) else {}
    run_id = _as_text(payload.get("run_id"))
    if not run_id:
        return {"handled": True, "name": job.get("name"), "reason": "missing_run_id"}

    limit = _bounded_int(batch_size if batch_size is not None else payload.get("batch_size"), DEFAULT_BATCH_SIZE)
    context = await client.get_run(run_id)
    policy_config = context.get("policy_config") if isinstance(context.get("policy_config"), dict) else {}
    cursor = _as_text(context.get("cursor"))
    logger.info(
        "re-evaluate-all started run_id=%s policy_version=%s cursor=%s",
        run_id,
        context.get("target_policy_version"),
        cursor,
    )

    totals = {"batches": 0, "processed": 0, "errors": 0}
    while True:
        current = await client.get_run(run_id)
        if current.get("status") != "running":
            logger.info("run_id=%s is %s; stopping re-evaluation", run_id, current.get("status"))
            return _summary(job, run_id, totals, reason=f"run_{current.get('status')}")

        page = await client.get_catalog_batch(run_id, cursor=cursor, limit=limit)
        items = page.get("items") or []
        if not items:
            finalized = await client.finalize_run(run_id)
            logger.info(
                "run_id=%s finalize finalized=%s reason=%s",
                run_id,
                finalized.get("finalized"),
                finalized.get("reason"),
            )
            summary = _summary(job, run_id, totals, reason="completed")
            summary["finalized"] = bool(finalized.get("finalized"))
            summary["finalize_reason"] = finalized.get("reason")
            return summary

        evaluations, counters, failed = await _evaluate_batch(client, run_id, items, policy_config, evaluate)
        if evaluations:
            await client.record_evaluations(run_id, evaluations)
        if any(counters.values()):
            await client.increment_counters(run_id, counters)

        cursor = str(items[-1]["id"])
        await client.update_cursor(run_id, cursor)

        totals["batches"] += 1
        totals["processed"] += counters["processed"]
        totals["errors"] += failed
        logger.debug("run_id=%s batch=%s size=%s cursor=%s", run_id, totals["batches"], len(items), cursor)


async def _evaluate_batch(
    client: PolicyApiClient,
    run_id: str,
    items: list[dict[str, Any]],
    policy_config: dict[str, Any],
    evaluate: Evaluator,
) -> tuple[list[dict[str, Any]], dict[str, int], int]:
    """Evaluate one page. Every attempted item counts as processed; failures are also reported as errors."""
    evaluations: list[dict[str, Any]] = []
    counters = {"processed": 0, "eligible": 0, "ineligible": 0, "pending": 0}
    failed = 0
    for item in items:
        media_item_id = str(item.get("id"))
        counters["processed"] += 1
        try:
            result = validate_evaluation(evaluate(item, policy_config))
        except Exception as exc:
            logger.warning("evaluation failed run_id=%s media_item_id=%s: %s", run_id, media_item_id, exc)
            await client.record_error(
                run_id,
                {
                    "media_item_id": media_item_id,
                    "error": str(exc) or type(exc).__name__,
                    "stack": traceback.format_exc()[:STACK_MAX_LENGTH],
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            failed += 1
            continue

        status = result["status"]
        evaluations.append(
            {
                "media_item_id": media_item_id,
                "status": status,
                "details": {"reason": result.get("reason")} if result.get("reason") else {},
            }
        )
        if status in counters:
            counters[status] += 1
    return evaluations, counters, failed


def _summary(job: dict[str, Any], run_id: str, totals: dict[str, int], *, reason: str) -> dict[str, Any]:
    return {
        "handled": True,
        "name": job.get("name"),
        "run_id": run_id,
        "reason": reason,
        **totals,
    }


def _as_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _bounded_int(value: Any, default: int, *, minimum: int = 1, maximum: int = 1000) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(parsed, maximum))
