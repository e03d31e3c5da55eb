from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

RunStatus = Literal["running", "prepared", "promoted", "cancelled"]
BlockingReason = Literal["RUN_NOT_SUCCESS", "COVERAGE_NOT_MET", "ERRORS_EXCEEDED", "ALREADY_PROMOTED"]


class PrepareOut(BaseModel):
    run_id: str
    status: RunStatus
    job_id: str
    message: str


class ErrorEntryOut(BaseModel):
    media_item_id: str
    error: str
    stack: str | None = None
    timestamp: datetime


class RunProgressOut(BaseModel):
    processed: int
    total: int
    eligible: int
    ineligible: int
    pending: int
    errors: int


class RunStatusOut(BaseModel):
    id: str
    status: RunStatus
    target_policy_id: str
    target_policy_version: int
    progress: RunProgressOut
    coverage: float
    ready_to_promote: bool
    blocking_reasons: list[BlockingReason] = Field(default_factory=list)
    error_sample: list[ErrorEntryOut] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None
    promoted_at: datetime | None = None
    promoted_by: str | None = None


class ActionResultOut(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None


class DiffCountsOut(BaseModel):
    regressions: int
    improvements: int
    net_change: int


class DiffSampleOut(BaseModel):
    media_item_id: str
    title: str
    reason: str


class DiffReportOut(BaseModel):
    run_id: str
    target_policy_version: int
    current_policy_version: int | None = None
    counts: DiffCountsOut
    top_regressions: list[DiffSampleOut] = Field(default_factory=list)
    top_improvements: list[DiffSampleOut] = Field(default_factory=list)
