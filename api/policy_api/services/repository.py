from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from policy_api.core.config import get_settings
from policy_api.services.contracts import PolicyRepository
from policy_api.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    RunStateError,
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
from policy_api.services.store import InMemoryRepository

__all__ = [
    "PostgresRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "RunStateError",
    "get_repository",
]

ACTIVATION_LOCK_KEY = "catalog_policies_activation"

_POLICY_COLUMNS = """
  id::text as id,
  version,
  is_active,
  config,
  created_at,
  activated_at
"""

_RUN_COLUMNS = """
  id::text as id,
  status,
  target_policy_id::text as target_policy_id,
  target_policy_version,
  total_ready_snapshot,
  snapshot_cutoff,
  cursor,
  processed,
  eligible,
  ineligible,
  pending,
  errors,
  error_sample,
  started_at,
  finished_at,
  promoted_at,
  promoted_by
"""

_JOB_COLUMNS = """
  id::text as id,
  name,
  job_key,
  payload,
  status,
  attempt,
  locked_by,
  lease_expires_at,
  result_json,
  error_json,
  created_at,
  updated_at
"""

_INVALID_ID_ERRORS = (pg_exc.InvalidTextRepresentationError, asyncpg.DataError)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # policies

    async def get_policy(self, policy_id: str) -> PolicyRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_POLICY_COLUMNS} from catalog_policies where id = $1::uuid",
                policy_id,
            )
        except _INVALID_ID_ERRORS:
            return None
        return self._policy_row_to_record(row) if row else None

    async def get_active_policy(self) -> PolicyRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_POLICY_COLUMNS} from catalog_policies where is_active = true")
        return self._policy_row_to_record(row) if row else None

    async def list_policies(self) -> list[PolicyRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(f"select {_POLICY_COLUMNS} from catalog_policies order by version desc")
        return [self._policy_row_to_record(row) for row in rows]

    async def create_policy(self, *, config: dict[str, Any]) -> PolicyRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("select pg_advisory_xact_lock(hashtext($1))", ACTIVATION_LOCK_KEY)
                    row = await conn.fetchrow(
                        f"""
                        insert into catalog_policies (version, is_active, config)
                        select coalesce(max(version), 0) + 1, false, $1::jsonb
                        from catalog_policies
                        returning {_POLICY_COLUMNS}
                        """,
                        json.dumps(config),
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("policy version already exists") from exc
        return self._policy_row_to_record(row)

    async def activate_policy(self, policy_id: str) -> PolicyRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("select pg_advisory_xact_lock(hashtext($1))", ACTIVATION_LOCK_KEY)
                    return await self._activate_policy(conn, policy_id)
        except _INVALID_ID_ERRORS as exc:
            raise RepositoryNotFoundError(f"policy {policy_id} not found") from exc

    async def _activate_policy(self, conn: asyncpg.Connection, policy_id: str) -> PolicyRecord:
        exists = await conn.fetchval("select 1 from catalog_policies where id = $1::uuid", policy_id)
        if not exists:
            raise RepositoryNotFoundError(f"policy {policy_id} not found")

        await conn.execute(
            """
            update catalog_policies
            set is_active = false, activated_at = null
            where is_active = true and id <> $1::uuid
            """,
            policy_id,
        )
        row = await conn.fetchrow(
            f"""
            update catalog_policies
            set is_active = true, activated_at = now()
            where id = $1::uuid
            returning {_POLICY_COLUMNS}
            """,
            policy_id,
        )
        return self._policy_row_to_record(row)

    # runs

    async def create_run(
        self,
        *,
        target_policy_id: str,
        target_policy_version: int,
        total_ready_snapshot: int,
        snapshot_cutoff: datetime,
    ) -> EvaluationRunRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into catalog_evaluation_runs (
                  status,
                  target_policy_id,
                  target_policy_version,
                  total_ready_snapshot,
                  snapshot_cutoff
                )
                values ('running', $1::uuid, $2, $3, $4)
                returning {_RUN_COLUMNS}
                """,
                target_policy_id,
                target_policy_version,
                total_ready_snapshot,
                snapshot_cutoff,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError(f"policy {target_policy_id} not found") from exc
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"A run is already in progress for policy {target_policy_id}") from exc
        return self._run_row_to_record(row)

    async def get_run(self, run_id: str) -> EvaluationRunRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_RUN_COLUMNS} from catalog_evaluation_runs where id = $1::uuid",
                run_id,
            )
        except _INVALID_ID_ERRORS:
            return None
        return self._run_row_to_record(row) if row else None

    async def list_runs(self, *, limit: int, offset: int, status: str | None = None) -> list[EvaluationRunRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_RUN_COLUMNS}
            from catalog_evaluation_runs
            where ($3::text is null or status = $3::text)
            order by started_at desc, id desc
            limit $1 offset $2
            """,
            limit,
            offset,
            status,
        )
        return [self._run_row_to_record(row) for row in rows]

    async def find_runs_by_policy(self, policy_id: str) -> list[EvaluationRunRecord]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_RUN_COLUMNS}
                from catalog_evaluation_runs
                where target_policy_id = $1::uuid
                order by started_at desc
                """,
                policy_id,
            )
        except _INVALID_ID_ERRORS:
            return []
        return [self._run_row_to_record(row) for row in rows]

    async def update_cursor(self, run_id: str, cursor: str) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update catalog_evaluation_runs
            set cursor = $2
            where id = $1::uuid and status = 'running'
            returning 1
            """,
            run_id,
            cursor,
        )
        return bool(updated)

    async def increment_counters(self, run_id: str, increments: CounterIncrements) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update catalog_evaluation_runs
            set
              processed = processed + $2,
              eligible = eligible + $3,
              ineligible = ineligible + $4,
              pending = pending + $5,
              errors = errors + $6
            where id = $1::uuid and status = 'running'
            returning 1
            """,
            run_id,
            increments.processed,
            increments.eligible,
            increments.ineligible,
            increments.pending,
            increments.errors,
        )
        return bool(updated)

    async def append_error(self, run_id: str, entry: ErrorEntry, *, capacity: int) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update catalog_evaluation_runs
            set
              errors = errors + 1,
              error_sample = (
                select coalesce(jsonb_agg(sample.elem order by sample.ord), '[]'::jsonb)
                from jsonb_array_elements(jsonb_build_array($2::jsonb) || error_sample)
                  with ordinality as sample(elem, ord)
                where sample.ord <= $3
              )
            where id = $1::uuid and status = 'running'
            returning 1
            """,
            run_id,
            json.dumps(entry.to_json()),
            max(0, capacity),
        )
        return bool(updated)

    async def mark_prepared(self, run_id: str, *, finished_at: datetime) -> EvaluationRunRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update catalog_evaluation_runs
            set status = 'prepared', finished_at = $2
            where id = $1::uuid and status = 'running'
            returning {_RUN_COLUMNS}
            """,
            run_id,
            finished_at,
        )
        return self._run_row_to_record(row) if row else None

    async def mark_cancelled(self, run_id: str, *, finished_at: datetime) -> EvaluationRunRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update catalog_evaluation_runs
            set status = 'cancelled', finished_at = coalesce(finished_at, $2)
            where id = $1::uuid and status in ('running', 'prepared')
            returning {_RUN_COLUMNS}
            """,
            run_id,
            finished_at,
        )
        return self._run_row_to_record(row) if row else None

    async def mark_promoted(
        self,
        run_id: str,
        *,
        promoted_by: str,
        promoted_at: datetime,
    ) -> EvaluationRunRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", ACTIVATION_LOCK_KEY)
                row = await conn.fetchrow(
                    f"""
                    update catalog_evaluation_runs
                    set status = 'promoted', promoted_at = $2, promoted_by = $3
                    where id = $1::uuid and status = 'prepared'
                    returning {_RUN_COLUMNS}
                    """,
                    run_id,
                    promoted_at,
                    promoted_by,
                )
                if not row:
                    return None
                await self._activate_policy(conn, row["target_policy_id"])
                return self._run_row_to_record(row)

    # evaluations

    async def upsert_evaluations(self, evaluations: list[EvaluationRecord]) -> int:
        if not evaluations:
            return 0
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(
                        """
                        insert into media_catalog_evaluations (
                          media_item_id,
                          policy_version,
                          status,
                          evaluated_at,
                          details,
                          run_id
                        )
                        values ($1::uuid, $2, $3, $4, $5::jsonb, $6::uuid)
                        on conflict (media_item_id, policy_version) do update
                        set
                          status = excluded.status,
                          evaluated_at = excluded.evaluated_at,
                          details = excluded.details,
                          run_id = coalesce(excluded.run_id, media_catalog_evaluations.run_id)
                        """,
                        [
                            (
                                evaluation.media_item_id,
                                evaluation.policy_version,
                                evaluation.status,
                                evaluation.evaluated_at,
                                json.dumps(evaluation.details),
                                evaluation.run_id,
                            )
                            for evaluation in evaluations
                        ],
                    )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryValidationError("evaluation references an unknown media item or run") from exc
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError("evaluation status is invalid") from exc
        except _INVALID_ID_ERRORS as exc:
            raise RepositoryValidationError("evaluation contains an invalid identifier") from exc
        return len(evaluations)

    async def get_statuses_by_policy_version(self, policy_version: int) -> dict[str, str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select media_item_id::text as media_item_id, status
            from media_catalog_evaluations
            where policy_version = $1
            """,
            policy_version,
        )
        return {row["media_item_id"]: row["status"] for row in rows}

    async def get_statuses_for_media_items(self, policy_version: int, media_item_ids: list[str]) -> dict[str, str]:
        if not media_item_ids:
            return {}
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select media_item_id::text as media_item_id, status
            from media_catalog_evaluations
            where policy_version = $1
              and media_item_id = any($2::uuid[])
            """,
            policy_version,
            media_item_ids,
        )
        return {row["media_item_id"]: row["status"] for row in rows}

    async def count_by_status_and_policy_version(self, policy_version: int) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, count(*)::int as total
            from media_catalog_evaluations
            where policy_version = $1
            group by status
            """,
            policy_version,
        )
        counts = {"pending": 0, "eligible": 0, "ineligible": 0, "review": 0}
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    # catalog

    async def count_ready_media_items(self, *, snapshot_cutoff: datetime) -> int:
        pool = await self._get_pool()
        total = await pool.fetchval(
            """
            select count(*)::int
            from media_items
            where ingestion_status = 'ready'
              and deleted_at is null
              and updated_at <= $1
            """,
            snapshot_cutoff,
        )
        return int(total or 0)

    async def list_ready_media_items(
        self,
        *,
        snapshot_cutoff: datetime,
        after_id: str | None,
        limit: int,
    ) -> list[MediaSummary]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select id::text as id, title, trending_score, attributes
                from media_items
                where ingestion_status = 'ready'
                  and deleted_at is null
                  and updated_at <= $1
                  and ($2::uuid is null or id > $2::uuid)
                order by id asc
                limit $3
                """,
                snapshot_cutoff,
                after_id,
                limit,
            )
        except _INVALID_ID_ERRORS as exc:
            raise RepositoryValidationError("cursor must be a media item id") from exc
        return [self._media_row_to_summary(row) for row in rows]

    async def get_media_summaries(self, media_item_ids: list[str]) -> dict[str, MediaSummary]:
        if not media_item_ids:
            return {}
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, title, trending_score, attributes
            from media_items
            where id = any($1::uuid[])
            """,
            media_item_ids,
        )
        return {row["id"]: self._media_row_to_summary(row) for row in rows}

    async def select_preview_media_items(
        self,
        *,
        mode: str,
        limit: int,
        media_type: str | None = None,
        country: str | None = None,
        sample_percent: float | None = None,
    ) -> list[MediaSummary]:
        pool = await self._get_pool()
        if mode == "sample":
            rows = await pool.fetch(
                """
                select id::text as id, title, trending_score, attributes
                from media_items tablesample bernoulli ($1)
                where ingestion_status = 'ready' and deleted_at is null
                limit $2
                """,
                float(sample_percent or 10.0),
                limit,
            )
            return [self._media_row_to_summary(row) for row in rows]

        filters = ["ingestion_status = 'ready'", "deleted_at is null"]
        args: list[Any] = [limit]
        if mode == "by_type":
            args.append(media_type)
            filters.append(f"attributes ->> 'media_type' = ${len(args)}")
        elif mode == "by_country":
            args.append(json.dumps([(country or "").upper()]))
            filters.append(f"attributes -> 'origin_countries' @> ${len(args)}::jsonb")
        elif mode != "top":
            raise RepositoryValidationError(f"unknown dry-run mode: {mode}")

        rows = await pool.fetch(
            f"""
            select id::text as id, title, trending_score, attributes
            from media_items
            where {" and ".join(filters)}
            order by trending_score desc nulls last, id asc
            limit $1
            """,
            *args,
        )
        return [self._media_row_to_summary(row) for row in rows]

    # jobs

    async def enqueue_job(self, name: str, payload: dict[str, Any], *, job_key: str | None = None) -> JobHandle:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    insert into jobs (name, job_key, payload, status)
                    values ($1, $2, $3::jsonb, 'queued')
                    on conflict (job_key) do nothing
                    returning id::text as id, name, job_key, status
                    """,
                    name,
                    job_key,
                    json.dumps(payload),
                )
                if not row:
                    row = await conn.fetchrow(
                        "select id::text as id, name, job_key, status from jobs where job_key = $1",
                        job_key,
                    )
        return JobHandle(id=row["id"], name=row["name"], job_key=row["job_key"], status=row["status"])

    async def list_queued_jobs(self, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where status = 'queued'
            order by created_at asc
            limit $1
            """,
            limit,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def claim_job(self, job_id: str, *, worker_id: str, lease_seconds: int) -> dict[str, Any]:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'claimed',
                          locked_by = $2,
                          locked_at = now(),
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          attempt = attempt + 1,
                          updated_at = now()
                        where id = $1::uuid and status = 'queued'
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        worker_id,
                        lease_seconds,
                    )

                    if not row:
                        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not claimable")
                    return self._job_row_to_dict(row)
        except _INVALID_ID_ERRORS as exc:
            raise RepositoryNotFoundError("job not found") from exc

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
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $3,
                          result_json = $4::jsonb,
                          error_json = $5::jsonb,
                          lease_expires_at = null,
                          updated_at = now()
                        where id = $1::uuid and status = 'claimed' and locked_by = $2
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        worker_id,
                        status,
                        json.dumps(result_json) if result_json is not None else None,
                        json.dumps(error_json) if error_json is not None else None,
                    )
                    if not row:
                        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not claimed by this worker")
                    return self._job_row_to_dict(row)
        except _INVALID_ID_ERRORS as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}

    @staticmethod
    def _coerce_json_list(value: Any) -> list[Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if isinstance(value, list):
            return value
        return []

    @classmethod
    def _policy_row_to_record(cls, row: asyncpg.Record) -> PolicyRecord:
        return PolicyRecord(
            id=row["id"],
            version=row["version"],
            is_active=row["is_active"],
            config=cls._coerce_json_dict(row["config"]),
            created_at=row["created_at"],
            activated_at=row["activated_at"],
        )

    @classmethod
    def _run_row_to_record(cls, row: asyncpg.Record) -> EvaluationRunRecord:
        return EvaluationRunRecord(
            id=row["id"],
            status=row["status"],
            target_policy_id=row["target_policy_id"],
            target_policy_version=row["target_policy_version"],
            total_ready_snapshot=row["total_ready_snapshot"],
            snapshot_cutoff=row["snapshot_cutoff"],
            started_at=row["started_at"],
            cursor=row["cursor"],
            processed=row["processed"],
            eligible=row["eligible"],
            ineligible=row["ineligible"],
            pending=row["pending"],
            errors=row["errors"],
            error_sample=[
                ErrorEntry.from_json(item)
                for item in cls._coerce_json_list(row["error_sample"])
                if isinstance(item, dict)
            ],
            finished_at=row["finished_at"],
            promoted_at=row["promoted_at"],
            promoted_by=row["promoted_by"],
        )

    @classmethod
    def _media_row_to_summary(cls, row: asyncpg.Record) -> MediaSummary:
        trending_score = row["trending_score"]
        return MediaSummary(
            id=row["id"],
            title=row["title"],
            trending_score=float(trending_score) if trending_score is not None else None,
            attributes=cls._coerce_json_dict(row["attributes"]),
        )

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        result_json = row["result_json"]
        error_json = row["error_json"]
        return {
            "id": row["id"],
            "name": row["name"],
            "job_key": row["job_key"],
            "payload": cls._coerce_json_dict(row["payload"]),
            "status": row["status"],
            "attempt": row["attempt"],
            "locked_by": row["locked_by"],
            "lease_expires_at": row["lease_expires_at"],
            "result_json": cls._coerce_json_dict(result_json) if result_json is not None else None,
            "error_json": cls._coerce_json_dict(error_json) if error_json is not None else None,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


@lru_cache
def get_repository() -> PolicyRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository()
    if settings.storage_backend != "postgres":
        raise RepositoryUnavailableError(f"unsupported CP_STORAGE_BACKEND: {settings.storage_backend}")
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
