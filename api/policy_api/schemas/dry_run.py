from typing import Literal

from pydantic import BaseModel, Field, model_validator

from policy_api.schemas.policies import CountryCode, PolicyConfig

DryRunMode = Literal["sample", "top", "by_type", "by_country"]
MediaType = Literal["movie", "show"]


class DryRunOptionsIn(BaseModel):
    mode: DryRunMode
    limit: int = Field(default=1000, ge=1, le=10000)
    media_type: MediaType | None = None
    country: CountryCode | None = None
    sample_percent: float | None = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def _require_mode_filter(self) -> "DryRunOptionsIn":
        if self.mode == "by_type" and self.media_type is None:
            raise ValueError("media_type is required for by_type mode")
        if self.mode == "by_country" and self.country is None:
            raise ValueError("country is required for by_country mode")
        return self


class DryRunRequest(BaseModel):
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    options: DryRunOptionsIn


class ReasonCountOut(BaseModel):
    reason: str
    count: int


class DryRunSummaryOut(BaseModel):
    mode: DryRunMode
    limit: int
    total_evaluated: int
    eligible: int
    ineligible: int
    pending: int
    review: int
    newly_eligible: int
    newly_ineligible: int
    unchanged: int
    reason_breakdown: list[ReasonCountOut] = Field(default_factory=list)
    execution_time_ms: float
    truncated: bool = False


class DryRunItemOut(BaseModel):
    media_item_id: str
    title: str
    current_status: str | None = None
    proposed_status: str
    reasons: list[str] = Field(default_factory=list)
    status_changed: bool


class DryRunOut(BaseModel):
    summary: DryRunSummaryOut
    items: list[DryRunItemOut] = Field(default_factory=list)


class DryRunDiffOut(DryRunOut):
    current_policy_version: int | None = None
