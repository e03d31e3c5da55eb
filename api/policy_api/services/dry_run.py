"""Preview a proposed policy config against a bounded catalog selection.

Nothing is persisted: items are evaluated in memory with the same evaluator the re-evaluation
worker uses and compared with their statuses under the currently active policy version.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from policy_api.services.contracts import PolicyRepository
from policy_api.services.errors import RepositoryValidationError
from policy_api.services.records import MediaSummary
from policy_workers.jobs.eligibility import Evaluator, evaluate_eligibility, validate_evaluation

logger = logging.getLogger(__name__)

DRY_RUN_MODES = ("sample", "top", "by_type", "by_country")
MEDIA_TYPES = ("movie", "show")
DEFAULT_LIMIT = 1000
MAX_ITEMS = 10000


@dataclass(slots=True)
class DryRunOptions:
    mode: str
    limit: int = DEFAULT_LIMIT
    media_type: str | None = None
    country: str | None = None
    sample_percent: float | None = None


@dataclass(slots=True)
class DryRunItem:
    media_item_id: str
    title: str
    current_status: str | None
    proposed_status: str
    reasons: list[str]
    status_changed: bool


@dataclass(slots=True)
class DryRunSummary:
    mode: str
    limit: int
    total_evaluated: int = 0
    eligible: int = 0
    ineligible: int = 0
    pending: int = 0
    review: int = 0
    newly_eligible: int = 0
    newly_ineligible: int = 0
    unchanged: int = 0
    reason_breakdown: list[tuple[str, int]] = field(default_factory=list)
    execution_time_ms: float = 0.0
    truncated: bool = False


@dataclass(slots=True)
class DryRunResult:
    summary: DryRunSummary
    items: list[DryRunItem]
    current_policy_version: int | None


class DryRunService:
    def __init__(
        self,
        repository: PolicyRepository,
        *,
        evaluator: Evaluator | None = None,
        max_items: int = MAX_ITEMS,
        time_budget_seconds: float = 60.0,
    ) -> None:
        self.repository = repository
        self.evaluator = evaluator or evaluate_eligibility
        self.max_items = max(1, max_items)
        self.time_budget_seconds = time_budget_seconds

    async def execute(self, policy_config: dict[str, Any], options: DryRunOptions) -> DryRunResult:
        self._validate(options)
        started = time.monotonic()
        limit = min(options.limit, self.max_items)
        logger.info("dry-run started mode=%s limit=%s", options.mode, limit)

        media = await self.repository.select_preview_media_items(
            mode=options.mode,
            limit=limit,
            media_type=options.media_type,
            country=options.country.upper() if options.country else None,
            sample_percent=options.sample_percent,
        )
        active = await self.repository.get_active_policy()
        current: dict[str, str] = {}
        if active is not None and media:
            current = await self.repository.get_statuses_for_media_items(
                active.version,
                [item.id for item in media],
            )

        summary = DryRunSummary(mode=options.mode, limit=limit)
        reasons: Counter[str] = Counter()
        items: list[DryRunItem] = []
        for item in media:
            if time.monotonic() - started > self.time_budget_seconds:
                logger.warning("dry-run time budget reached after %s items", len(items))
                summary.truncated = True
                break
            items.append(self._evaluate(item, policy_config, current.get(item.id), summary, reasons))

        summary.total_evaluated = len(items)
        summary.reason_breakdown = sorted(reasons.items(), key=lambda pair: (-pair[1], pair[0]))
        summary.execution_time_ms = (time.monotonic() - started) * 1000.0
        logger.info(
            "dry-run complete items=%s eligible=%s ineligible=%s pending=%s",
            summary.total_evaluated,
            summary.eligible,
            summary.ineligible,
            summary.pending,
        )
        return DryRunResult(
            summary=summary,
            items=items,
            current_policy_version=active.version if active else None,
        )

    def _evaluate(
        self,
        item: MediaSummary,
        policy_config: dict[str, Any],
        current_status: str | None,
        summary: DryRunSummary,
        reasons: Counter[str],
    ) -> DryRunItem:
        payload = {
            "id": item.id,
            "title": item.title,
            "trending_score": item.trending_score,
            "attributes": item.attributes,
        }
        result = validate_evaluation(self.evaluator(payload, policy_config))
        proposed = result["status"]
        item_reasons = [result["reason"]] if result.get("reason") else []
        reasons.update(item_reasons)

        setattr(summary, proposed, getattr(summary, proposed) + 1)
        if current_status is not None and current_status != proposed:
            if proposed == "eligible":
                summary.newly_eligible += 1
            elif proposed == "ineligible":
                summary.newly_ineligible += 1
        if current_status == proposed:
            summary.unchanged += 1

        return DryRunItem(
            media_item_id=item.id,
            title=item.title or "Unknown",
            current_status=current_status,
            proposed_status=proposed,
            reasons=item_reasons,
            status_changed=current_status != proposed,
        )

    def _validate(self, options: DryRunOptions) -> None:
        if options.mode not in DRY_RUN_MODES:
            raise RepositoryValidationError(f"mode must be one of: {', '.join(DRY_RUN_MODES)}")
        if not 1 <= options.limit <= self.max_items:
            raise RepositoryValidationError(f"limit must be between 1 and {self.max_items}")
        if options.mode == "by_type" and options.media_type not in MEDIA_TYPES:
            raise RepositoryValidationError("media_type is required for by_type mode")
        if options.mode == "by_country" and not options.country:
            raise RepositoryValidationError("country is required for by_country mode")
        if options.sample_percent is not None and not 1 <= options.sample_percent <= 100:
            raise RepositoryValidationError("sample_percent must be between 1 and 100")
