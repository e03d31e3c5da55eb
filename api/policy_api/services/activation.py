"""Two-phase activation of catalog policies.

``prepare`` freezes the ready catalog universe into a run and queues one bulk evaluation job.
The worker streams counters and evaluations back through the ingestion methods and flips the
run to ``prepared`` via ``finalize``. ``promote`` and ``cancel`` are operator commands: they
report expected failures as an ``ActionResult`` instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from policy_api.services.contracts import PolicyRepository
from policy_api.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from policy_api.services.records import (
    CANCELLABLE_RUN_STATUSES,
    ELIGIBILITY_STATUSES,
    REEVALUATE_ALL_JOB,
    BlockingReason,
    CounterIncrements,
    ErrorEntry,
    EvaluationRecord,
    EvaluationRunRecord,
    MediaSummary,
    PolicyRecord,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ActionResult:
    success: bool
    message: str | None = None
    error: str | None = None


@dataclass(slots=True)
class PrepareOutcome:
    run_id: str
    status: str
    job_id: str


@dataclass(slots=True)
class RunStatusReport:
    run: EvaluationRunRecord
    coverage: float
    ready_to_promote: bool
    blocking_reasons: list[BlockingReason] = field(default_factory=list)


@dataclass(slots=True)
class FinalizeResult:
    run_id: str
    finalized: bool
    reason: str
    counters: dict[str, int] | None = None


def compute_coverage(run: EvaluationRunRecord) -> float:
    """Attempted share of the frozen universe, clamped to [0, 1].

    A resumed worker can re-count a batch, so ``processed`` may overshoot the snapshot.
    """
    if run.total_ready_snapshot <= 0:
        return 1.0
    return max(0.0, min(1.0, run.processed / run.total_ready_snapshot))


def build_job_key(policy_version: int, run_id: str) -> str:
    return f"reeval:{policy_version}:{run_id}"


def _run_counters(run: EvaluationRunRecord) -> dict[str, int]:
    return {
        "total_ready_snapshot": run.total_ready_snapshot,
        "processed": run.processed,
        "eligible": run.eligible,
        "ineligible": run.ineligible,
        "pending": run.pending,
        "errors": run.errors,
    }


class ActivationService:
    def __init__(
        self,
        repository: PolicyRepository,
        *,
        error_budget: int = 0,
        coverage_threshold: float = 1.0,
        error_sample_capacity: int = 10,
        batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.error_budget = max(0, error_budget)
        self.coverage_threshold = coverage_threshold
        self.error_sample_capacity = max(0, error_sample_capacity)
        self.batch_size = max(1, batch_size)

    # policies

    async def list_policies(self) -> list[PolicyRecord]:
        return await self.repository.list_policies()

    async def get_policy(self, policy_id: str) -> PolicyRecord:
        policy = await self.repository.get_policy(policy_id)
        if policy is None:
            raise RepositoryNotFoundError(f"Policy {policy_id} not found")
        return policy

    async def create_policy(self, config: dict[str, Any]) -> PolicyRecord:
        policy = await self.repository.create_policy(config=config)
        logger.info("created catalog policy id=%s version=%s", policy.id, policy.version)
        return policy

    # run lifecycle

    async def prepare(self, policy_id: str) -> PrepareOutcome:
        policy = await self.get_policy(policy_id)
        if policy.is_active:
            raise RepositoryConflictError(f"Policy {policy_id} is already active")

        existing_runs = await self.repository.find_runs_by_policy(policy_id)
        running = next((run for run in existing_runs if run.status == "running"), None)
        if running is not None:
            raise RepositoryConflictError(f"A run is already in progress for this policy (run_id: {running.id})")

        snapshot_cutoff = datetime.now(timezone.utc)
        total_ready_snapshot = await self.repository.count_ready_media_items(snapshot_cutoff=snapshot_cutoff)
        logger.info(
            "preparing policy version=%s total_ready_snapshot=%s",
            policy.version,
            total_ready_snapshot,
        )

        run = await self.repository.create_run(
            target_policy_id=policy.id,
            target_policy_version=policy.version,
            total_ready_snapshot=total_ready_snapshot,
            snapshot_cutoff=snapshot_cutoff,
        )
        job = await self.repository.enqueue_job(
            REEVALUATE_ALL_JOB,
            {
                "run_id": run.id,
                "target_policy_id": policy.id,
                "target_policy_version": policy.version,
                "snapshot_cutoff": snapshot_cutoff.isoformat(),
                "batch_size": self.batch_size,
            },
            job_key=build_job_key(policy.version, run.id),
        )
        logger.info("created run id=%s job_id=%s for policy version=%s", run.id, job.id, policy.version)
        return PrepareOutcome(run_id=run.id, status=run.status, job_id=job.id)

    async def status(self, run_id: str) -> RunStatusReport:
        run = await self._require_run(run_id)
        return self._report(run)

    async def list_runs(self, *, limit: int = 50, offset: int = 0, status: str | None = None) -> list[RunStatusReport]:
        runs = await self.repository.list_runs(limit=limit, offset=offset, status=status)
        return [self._report(run) for run in runs]

    def _report(self, run: EvaluationRunRecord) -> RunStatusReport:
        coverage = compute_coverage(run)

        blocking_reasons: list[BlockingReason] = []
        if run.status != "prepared":
            blocking_reasons.append("RUN_NOT_SUCCESS")
        if coverage < self.coverage_threshold:
            blocking_reasons.append("COVERAGE_NOT_MET")
        if run.errors > self.error_budget:
            blocking_reasons.append("ERRORS_EXCEEDED")
        if run.promoted_at is not None:
            blocking_reasons.append("ALREADY_PROMOTED")

        return RunStatusReport(
            run=run,
            coverage=coverage,
            ready_to_promote=not blocking_reasons,
            blocking_reasons=blocking_reasons,
        )

    async def promote(self, run_id: str, promoted_by: str = "system") -> ActionResult:
        run = await self.repository.get_run(run_id)
        if run is None:
            return ActionResult(success=False, error=f"Run {run_id} not found")

        if run.status != "prepared":
            return ActionResult(success=False, error=f"expected prepared, got {run.status}")

        coverage = compute_coverage(run)
        if coverage < self.coverage_threshold:
            return ActionResult(
                success=False,
                error=(
                    f"Coverage {coverage * 100:.1f}% is below threshold "
                    f"{self.coverage_threshold * 100:.1f}%"
                ),
            )

        if run.errors > self.error_budget:
            return ActionResult(
                success=False,
                error=f"Errors {run.errors} exceed error budget {self.error_budget}",
            )

        try:
            promoted = await self.repository.mark_promoted(
                run.id,
                promoted_by=promoted_by,
                promoted_at=datetime.now(timezone.utc),
            )
        except RepositoryError as exc:
            logger.exception("failed to promote run id=%s", run.id)
            return ActionResult(success=False, error=str(exc) or "promotion failed")

        if promoted is None:
            current = await self.repository.get_run(run.id)
            current_status = current.status if current else "missing"
            return ActionResult(
                success=False,
                error=f"expected prepared, got {current_status}",
            )

        logger.info(
            "promoted run id=%s policy version=%s promoted_by=%s",
            promoted.id,
            promoted.target_policy_version,
            promoted_by,
        )
        return ActionResult(success=True, message="Policy activated successfully")

    async def cancel(self, run_id: str) -> ActionResult:
        run = await self.repository.get_run(run_id)
        if run is None:
            return ActionResult(success=False, error=f"Run {run_id} not found")

        if run.status not in CANCELLABLE_RUN_STATUSES:
            return ActionResult(
                success=False,
                error=f"can only cancel running/prepared runs (status is {run.status})",
            )

        cancelled = await self.repository.mark_cancelled(run.id, finished_at=datetime.now(timezone.utc))
        if cancelled is None:
            current = await self.repository.get_run(run.id)
            current_status = current.status if current else "missing"
            return ActionResult(
                success=False,
                error=f"can only cancel running/prepared runs (status is {current_status})",
            )

        logger.info("cancelled run id=%s", run.id)
        return ActionResult(success=True, message="Run cancelled")

    # worker ingestion

    async def get_run(self, run_id: str) -> EvaluationRunRecord:
        return await self._require_run(run_id)

    async def increment_counters(self, run_id: str, increments: CounterIncrements) -> bool:
        negative = [name for name, value in increments.as_dict().items() if value < 0]
        if negative:
            raise RepositoryValidationError(f"counter increments must be non-negative: {', '.join(negative)}")
        await self._require_run(run_id)
        if increments.is_empty():
            return True

        applied = await self.repository.increment_counters(run_id, increments)
        if not applied:
            logger.info("ignored counter increments for run id=%s that is no longer running", run_id)
        return applied

    async def record_error(self, run_id: str, entry: ErrorEntry) -> bool:
        await self._require_run(run_id)
        applied = await self.repository.append_error(run_id, entry, capacity=self.error_sample_capacity)
        if not applied:
            logger.info("ignored error report for run id=%s that is no longer running", run_id)
        return applied

    async def record_evaluations(self, run_id: str, evaluations: list[dict[str, Any]]) -> int:
        run = await self._require_run(run_id)
        if run.status != "running":
            logger.info("ignored %s evaluations for run id=%s status=%s", len(evaluations), run_id, run.status)
            return 0

        now = datetime.now(timezone.utc)
        records: list[EvaluationRecord] = []
        for item in evaluations:
            status = item.get("status")
            if status not in ELIGIBILITY_STATUSES:
                raise RepositoryValidationError(f"invalid eligibility status: {status}")
            records.append(
                EvaluationRecord(
                    media_item_id=str(item["media_item_id"]),
                    policy_version=run.target_policy_version,
                    status=status,
                    evaluated_at=item.get("evaluated_at") or now,
                    details=dict(item.get("details") or {}),
                    run_id=run.id,
                )
            )
        return await self.repository.upsert_evaluations(records)

    async def list_catalog_batch(
        self,
        run_id: str,
        *,
        cursor: str | None,
        limit: int,
    ) -> list[MediaSummary]:
        """Ready catalog items of the run's frozen universe, in id order after ``cursor``."""
        run = await self._require_run(run_id)
        return await self.repository.list_ready_media_items(
            snapshot_cutoff=run.snapshot_cutoff,
            after_id=cursor,
            limit=limit,
        )

    async def update_cursor(self, run_id: str, cursor: str) -> bool:
        await self._require_run(run_id)
        return await self.repository.update_cursor(run_id, cursor)

    async def finalize(self, run_id: str) -> FinalizeResult:
        run = await self.repository.get_run(run_id)
        if run is None:
            return FinalizeResult(run_id=run_id, finalized=False, reason="Run not found")

        if run.status != "running":
            return FinalizeResult(
                run_id=run_id,
                finalized=False,
                reason=f"Run already in terminal state: {run.status}",
                counters=_run_counters(run),
            )

        if run.processed > run.total_ready_snapshot:
            logger.warning(
                "run id=%s processed=%s exceeds total_ready_snapshot=%s",
                run.id,
                run.processed,
                run.total_ready_snapshot,
            )

        prepared = await self.repository.mark_prepared(run.id, finished_at=datetime.now(timezone.utc))
        if prepared is None:
            return FinalizeResult(
                run_id=run_id,
                finalized=False,
                reason="Run was already transitioned by another process",
                counters=_run_counters(run),
            )

        logger.info(
            "finalized run id=%s processed=%s total=%s errors=%s",
            prepared.id,
            prepared.processed,
            prepared.total_ready_snapshot,
            prepared.errors,
        )
        return FinalizeResult(
            run_id=run_id,
            finalized=True,
            reason="Successfully finalized",
            counters=_run_counters(prepared),
        )

    async def _require_run(self, run_id: str) -> EvaluationRunRecord:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RepositoryNotFoundError(f"Run {run_id} not found")
        return run
