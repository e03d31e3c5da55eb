from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from policy_api.schemas.runs import RunStatus

EligibilityStatus = Literal["pending", "eligible", "ineligible", "review"]


class RunContextOut(BaseModel):
    id: str
    status: RunStatus
    target_policy_id: str
    target_policy_version: int
    policy_config: dict[str, Any] = Field(default_factory=dict)
    snapshot_cutoff: datetime
    total_ready_snapshot: int
    cursor: str | None = None


class CatalogItemOut(BaseModel):
    id: str
    title: str | None = None
    trending_score: float | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class CatalogPageOut(BaseModel):
    items: list[CatalogItemOut] = Field(default_factory=list)
    next_cursor: str | None = None


class CursorUpdateRequest(BaseModel):
    cursor: str = Field(min_length=1)


class CounterIncrementRequest(BaseModel):
    processed: int = 0
    eligible: int = 0
    ineligible: int = 0
    pending: int = 0
    errors: int = 0


class ErrorReportRequest(BaseModel):
    media_item_id: str = Field(min_length=1)
    error: str
    stack: str | None = None
    timestamp: datetime | None = None


class EvaluationIn(BaseModel):
    media_item_id: str = Field(min_length=1)
    status: EligibilityStatus
    details: dict[str, Any] = Field(default_factory=dict)
    evaluated_at: datetime | None = None


class EvaluationBatchRequest(BaseModel):
    evaluations: list[EvaluationIn] = Field(default_factory=list)


class IngestAckOut(BaseModel):
    run_id: str
    applied: bool
    count: int | None = None


class FinalizeOut(BaseModel):
    run_id: str
    finalized: bool
    reason: str
    counters: dict[str, int] | None = None
