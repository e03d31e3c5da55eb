"""Storage contracts consumed by the activation and diff services.

Implementations carry no business rules. Conditional transitions (``mark_*``) return the
updated run when their status guard matched and ``None`` otherwise, so callers can decide how
to report a lost race.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from policy_api.services.records import (
    CounterIncrements,
    ErrorEntry,
    EvaluationRecord,
    EvaluationRunRecord,
    JobHandle,
    MediaSummary,
    PolicyRecord,
)


class PolicyStore(Protocol):
    async def get_policy(self, policy_id: str) -> PolicyRecord | None: ...

    async def get_active_policy(self) -> PolicyRecord | None: ...

    async def list_policies(self) -> list[PolicyRecord]: ...

    async def create_policy(self, *, config: dict[str, Any]) -> PolicyRecord: ...

    async def activate_policy(self, policy_id: str) -> PolicyRecord:
        """Deactivate every policy and activate ``policy_id`` as one atomic unit."""
        ...


class RunStore(Protocol):
    async def create_run(
        self,
        *,
        target_policy_id: str,
        target_policy_version: int,
        total_ready_snapshot: int,
        snapshot_cutoff: datetime,
    ) -> EvaluationRunRecord:
        """Insert a running run. Raises ``RepositoryConflictError`` if the policy already has one."""
        ...

    async def get_run(self, run_id: str) -> EvaluationRunRecord | None: ...

    async def list_runs(self, *, limit: int, offset: int, status: str | None = None) -> list[EvaluationRunRecord]: ...

    async def find_runs_by_policy(self, policy_id: str) -> list[EvaluationRunRecord]: ...

    async def update_cursor(self, run_id: str, cursor: str) -> bool: ...

    async def increment_counters(self, run_id: str, increments: CounterIncrements) -> bool:
        """Add ``increments`` to a running run in one atomic update."""
        ...

    async def append_error(self, run_id: str, entry: ErrorEntry, *, capacity: int) -> bool:
        """Increment ``errors`` and prepend ``entry`` to the capped sample of a running run."""
        ...

    async def mark_prepared(self, run_id: str, *, finished_at: datetime) -> EvaluationRunRecord | None: ...

    async def mark_cancelled(self, run_id: str, *, finished_at: datetime) -> EvaluationRunRecord | None: ...

    async def mark_promoted(
        self,
        run_id: str,
        *,
        promoted_by: str,
        promoted_at: datetime,
    ) -> EvaluationRunRecord | None:
        """Activate the run's target policy and flip the run to promoted in one unit."""
        ...


class EvaluationStore(Protocol):
    async def upsert_evaluations(self, evaluations: list[EvaluationRecord]) -> int: ...

    async def get_statuses_by_policy_version(self, policy_version: int) -> dict[str, str]: ...

    async def get_statuses_for_media_items(
        self,
        policy_version: int,
        media_item_ids: list[str],
    ) -> dict[str, str]: ...

    async def count_by_status_and_policy_version(self, policy_version: int) -> dict[str, int]: ...


class CatalogStore(Protocol):
    async def count_ready_media_items(self, *, snapshot_cutoff: datetime) -> int: ...

    async def list_ready_media_items(
        self,
        *,
        snapshot_cutoff: datetime,
        after_id: str | None,
        limit: int,
    ) -> list[MediaSummary]: ...

    async def get_media_summaries(self, media_item_ids: list[str]) -> dict[str, MediaSummary]: ...

    async def select_preview_media_items(
        self,
        *,
        mode: str,
        limit: int,
        media_type: str | None = None,
        country: str | None = None,
        sample_percent: float | None = None,
    ) -> list[MediaSummary]:
        """Ready, non-deleted items chosen by a dry-run selection mode.

        ``top``, ``by_type`` and ``by_country`` order by trending score descending with nulls last;
        ``sample`` returns a random subset.
        """
        ...


class JobQueue(Protocol):
    async def enqueue_job(self, name: str, payload: dict[str, Any], *, job_key: str | None = None) -> JobHandle: ...

    async def list_queued_jobs(self, limit: int) -> list[dict[str, Any]]: ...

    async def claim_job(self, job_id: str, *, worker_id: str, lease_seconds: int) -> dict[str, Any]: ...

    async def submit_job_result(
        self,
        job_id: str,
        *,
        worker_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]: ...


class PolicyRepository(PolicyStore, RunStore, EvaluationStore, CatalogStore, JobQueue, Protocol):
    """Everything a single storage backend provides."""

    async def close(self) -> None: ...
