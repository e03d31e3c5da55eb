from __future__ import annotations

import random
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from policy_api.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from policy_api.services.records import (
    JOB_RESULT_STATUSES,
    CounterIncrements,
    ErrorEntry,
    EvaluationRecord,
    EvaluationRunRecord,
    JobHandle,
    MediaSummary,
    PolicyRecord,
)


class InMemoryRepository:
    """Process-local backend for development and tests.

    Every mutation runs under one lock, so each call is atomic with respect to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.policies: dict[str, PolicyRecord] = {}
        self.runs: dict[str, EvaluationRunRecord] = {}
        self.evaluations: dict[tuple[str, int], EvaluationRecord] = {}
        self.media_items: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.job_queue: deque[str] = deque()

    async def close(self) -> None:
        return None

    # catalog seeding

    def add_media_item(
        self,
        media_item_id: str,
        *,
        title: str | None = None,
        trending_score: float | None = 0.0,
        attributes: dict[str, Any] | None = None,
        ingestion_status: str = "ready",
        updated_at: datetime | None = None,
        deleted_at: datetime | None = None,
    ) -> None:
        with self._lock:
            self.media_items[media_item_id] = {
                "id": media_item_id,
                "title": title,
                "trending_score": trending_score,
                "attributes": dict(attributes or {}),
                "ingestion_status": ingestion_status,
                "updated_at": updated_at or datetime.now(timezone.utc) - timedelta(minutes=1),
                "deleted_at": deleted_at,
            }

    # policies

    async def get_policy(self, policy_id: str) -> PolicyRecord | None:
        with self._lock:
            policy = self.policies.get(policy_id)
            return replace(policy) if policy else None

    async def get_active_policy(self) -> PolicyRecord | None:
        with self._lock:
            for policy in self.policies.values():
                if policy.is_active:
                    return replace(policy)
            return None

    async def list_policies(self) -> list[PolicyRecord]:
        with self._lock:
            return [replace(policy) for policy in sorted(self.policies.values(), key=lambda p: -p.version)]

    async def create_policy(self, *, config: dict[str, Any]) -> PolicyRecord:
        with self._lock:
            next_version = max((policy.version for policy in self.policies.values()), default=0) + 1
            policy = PolicyRecord(
                id=str(uuid4()),
                version=next_version,
                is_active=False,
                config=dict(config),
                created_at=datetime.now(timezone.utc),
            )
            self.policies[policy.id] = policy
            return replace(policy)

    async def activate_policy(self, policy_id: str) -> PolicyRecord:
        with self._lock:
            return replace(self._activate_locked(policy_id))

    def _activate_locked(self, policy_id: str) -> PolicyRecord:
        target = self.policies.get(policy_id)
        if target is None:
            raise RepositoryNotFoundError(f"policy {policy_id} not found")
        for policy in self.policies.values():
            if policy.is_active:
                policy.is_active = False
                policy.activated_at = None
        target.is_active = True
        target.activated_at = datetime.now(timezone.utc)
        return target

    # runs

    async def create_run(
        self,
        *,
        target_policy_id: str,
        target_policy_version: int,
        total_ready_snapshot: int,
        snapshot_cutoff: datetime,
    ) -> EvaluationRunRecord:
        run = EvaluationRunRecord(
            id=str(uuid4()),
            status="running",
            target_policy_id=target_policy_id,
            target_policy_version=target_policy_version,
            total_ready_snapshot=total_ready_snapshot,
            snapshot_cutoff=snapshot_cutoff,
            started_at=datetime.now(timezone.utc),
        )
        with self._lock:
            if any(
                existing.target_policy_id == target_policy_id and existing.status == "running"
                for existing in self.runs.values()
            ):
                raise RepositoryConflictError(f"A run is already in progress for policy {target_policy_id}")
            self.runs[run.id] = run
            return self._copy_run(run)

    async def get_run(self, run_id: str) -> EvaluationRunRecord | None:
        with self._lock:
            run = self.runs.get(run_id)
            return self._copy_run(run) if run else None

    async def list_runs(self, *, limit: int, offset: int, status: str | None = None) -> list[EvaluationRunRecord]:
        with self._lock:
            rows = sorted(self.runs.values(), key=lambda run: run.started_at, reverse=True)
            if status:
                rows = [run for run in rows if run.status == status]
            return [self._copy_run(run) for run in rows[offset : offset + limit]]

    async def find_runs_by_policy(self, policy_id: str) -> list[EvaluationRunRecord]:
        with self._lock:
            rows = [run for run in self.runs.values() if run.target_policy_id == policy_id]
            rows.sort(key=lambda run: run.started_at, reverse=True)
            return [self._copy_run(run) for run in rows]

    async def update_cursor(self, run_id: str, cursor: str) -> bool:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status != "running":
                return False
            run.cursor = cursor
            return True

    async def increment_counters(self, run_id: str, increments: CounterIncrements) -> bool:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status != "running":
                return False
            for name, value in increments.as_dict().items():
                setattr(run, name, getattr(run, name) + value)
            return True

    async def append_error(self, run_id: str, entry: ErrorEntry, *, capacity: int) -> bool:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status != "running":
                return False
            run.errors += 1
            run.error_sample = [entry, *run.error_sample][: max(0, capacity)]
            return True

    async def mark_prepared(self, run_id: str, *, finished_at: datetime) -> EvaluationRunRecord | None:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status != "running":
                return None
            run.status = "prepared"
            run.finished_at = finished_at
            return self._copy_run(run)

    async def mark_cancelled(self, run_id: str, *, finished_at: datetime) -> EvaluationRunRecord | None:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status not in {"running", "prepared"}:
                return None
            run.status = "cancelled"
            if run.finished_at is None:
                run.finished_at = finished_at
            return self._copy_run(run)

    async def mark_promoted(
        self,
        run_id: str,
        *,
        promoted_by: str,
        promoted_at: datetime,
    ) -> EvaluationRunRecord | None:
        with self._lock:
            run = self.runs.get(run_id)
            if run is None or run.status != "prepared":
                return None
            self._activate_locked(run.target_policy_id)
            run.status = "promoted"
            run.promoted_at = promoted_at
            run.promoted_by = promoted_by
            return self._copy_run(run)

    @staticmethod
    def _copy_run(run: EvaluationRunRecord) -> EvaluationRunRecord:
        return replace(run, error_sample=list(run.error_sample))

    # evaluations

    async def upsert_evaluations(self, evaluations: list[EvaluationRecord]) -> int:
        with self._lock:
            for evaluation in evaluations:
                key = (evaluation.media_item_id, evaluation.policy_version)
                existing = self.evaluations.get(key)
                run_id = evaluation.run_id
                if run_id is None and existing is not None:
                    run_id = existing.run_id
                self.evaluations[key] = replace(evaluation, details=dict(evaluation.details), run_id=run_id)
            return len(evaluations)

    async def get_statuses_by_policy_version(self, policy_version: int) -> dict[str, str]:
        with self._lock:
            return {
                media_item_id: evaluation.status
                for (media_item_id, version), evaluation in self.evaluations.items()
                if version == policy_version
            }

    async def get_statuses_for_media_items(self, policy_version: int, media_item_ids: list[str]) -> dict[str, str]:
        with self._lock:
            return {
                media_item_id: self.evaluations[(media_item_id, policy_version)].status
                for media_item_id in media_item_ids
                if (media_item_id, policy_version) in self.evaluations
            }

    async def count_by_status_and_policy_version(self, policy_version: int) -> dict[str, int]:
        counts = {"pending": 0, "eligible": 0, "ineligible": 0, "review": 0}
        for status in (await self.get_statuses_by_policy_version(policy_version)).values():
            counts[status] = counts.get(status, 0) + 1
        return counts

    # catalog

    async def count_ready_media_items(self, *, snapshot_cutoff: datetime) -> int:
        with self._lock:
            return sum(1 for item in self.media_items.values() if self._is_ready(item, snapshot_cutoff))

    async def list_ready_media_items(
        self,
        *,
        snapshot_cutoff: datetime,
        after_id: str | None,
        limit: int,
    ) -> list[MediaSummary]:
        with self._lock:
            rows = sorted(
                (
                    item
                    for item in self.media_items.values()
                    if self._is_ready(item, snapshot_cutoff) and (after_id is None or item["id"] > after_id)
                ),
                key=lambda item: item["id"],
            )
            return [self._summary(item) for item in rows[:limit]]

    async def get_media_summaries(self, media_item_ids: list[str]) -> dict[str, MediaSummary]:
        with self._lock:
            return {
                media_item_id: self._summary(self.media_items[media_item_id])
                for media_item_id in media_item_ids
                if media_item_id in self.media_items
            }

    async def select_preview_media_items(
        self,
        *,
        mode: str,
        limit: int,
        media_type: str | None = None,
        country: str | None = None,
        sample_percent: float | None = None,
    ) -> list[MediaSummary]:
        with self._lock:
            rows = [
                item
                for item in self.media_items.values()
                if item["ingestion_status"] == "ready" and item["deleted_at"] is None
            ]
        if mode == "sample":
            probability = (sample_percent or 10.0) / 100.0
            picked = [item for item in rows if random.random() < probability]
            return [self._summary(item) for item in picked[:limit]]
        if mode == "by_type":
            rows = [item for item in rows if item["attributes"].get("media_type") == media_type]
        elif mode == "by_country":
            code = (country or "").upper()
            rows = [item for item in rows if code in (item["attributes"].get("origin_countries") or [])]
        elif mode != "top":
            raise RepositoryValidationError(f"unknown dry-run mode: {mode}")
        rows.sort(key=lambda item: (item["trending_score"] is None, -(item["trending_score"] or 0.0), item["id"]))
        return [self._summary(item) for item in rows[:limit]]

    @staticmethod
    def _is_ready(item: dict[str, Any], snapshot_cutoff: datetime) -> bool:
        return (
            item["ingestion_status"] == "ready"
            and item["deleted_at"] is None
            and item["updated_at"] <= snapshot_cutoff
        )

    @staticmethod
    def _summary(item: dict[str, Any]) -> MediaSummary:
        return MediaSummary(
            id=item["id"],
            title=item["title"],
            trending_score=item["trending_score"],
            attributes=dict(item["attributes"]),
        )

    # jobs

    async def enqueue_job(self, name: str, payload: dict[str, Any], *, job_key: str | None = None) -> JobHandle:
        with self._lock:
            if job_key is not None:
                for job in self.jobs.values():
                    if job["job_key"] == job_key:
                        return self._job_handle(job)
            now = datetime.now(timezone.utc)
            job = {
                "id": str(uuid4()),
                "name": name,
                "job_key": job_key,
                "payload": dict(payload),
                "status": "queued",
                "attempt": 0,
                "locked_by": None,
                "lease_expires_at": None,
                "result_json": None,
                "error_json": None,
                "created_at": now,
                "updated_at": now,
            }
            self.jobs[job["id"]] = job
            self.job_queue.append(job["id"])
            return self._job_handle(job)

    async def list_queued_jobs(self, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            queued = [self.jobs[job_id] for job_id in self.job_queue if self.jobs[job_id]["status"] == "queued"]
            return [dict(job) for job in queued[:limit]]

    async def claim_job(self, job_id: str, *, worker_id: str, lease_seconds: int) -> dict[str, Any]:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                raise RepositoryNotFoundError("job not found")
            if job["status"] != "queued":
                raise RepositoryConflictError("job is not claimable")
            now = datetime.now(timezone.utc)
            job["status"] = "claimed"
            job["locked_by"] = worker_id
            job["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            job["attempt"] += 1
            job["updated_at"] = now
            if job_id in self.job_queue:
                self.job_queue.remove(job_id)
            return dict(job)

    async def submit_job_result(
        self,
        job_id: str,
        *,
        worker_id: str,
        status: str,
        result_json: dict[str, Any] | None,
        error_json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if status not in JOB_RESULT_STATUSES:
            raise RepositoryValidationError("status must be one of: done, failed")
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                raise RepositoryNotFoundError("job not found")
            if job["status"] != "claimed" or job["locked_by"] != worker_id:
                raise RepositoryConflictError("job is not claimed by this worker")
            job["status"] = status
            job["result_json"] = result_json
            job["error_json"] = error_json
            job["lease_expires_at"] = None
            job["updated_at"] = datetime.now(timezone.utc)
            return dict(job)

    @staticmethod
    def _job_handle(job: dict[str, Any]) -> JobHandle:
        return JobHandle(id=job["id"], name=job["name"], job_key=job["job_key"], status=job["status"])
