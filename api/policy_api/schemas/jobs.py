from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["queued", "claimed", "done", "failed"]


class JobOut(BaseModel):
    id: str
    name: str
    job_key: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    attempt: int = 0
    locked_by: str | None = None
    lease_expires_at: datetime | None = None


class ClaimRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    lease_seconds: int = Field(default=120, ge=1, le=3600)


class ResultRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    result_json: dict[str, Any] | None = None
    error_json: dict[str, Any] | None = None
    status: str
