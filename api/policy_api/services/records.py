from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

RunStatus = Literal["running", "prepared", "promoted", "cancelled"]
EligibilityStatus = Literal["pending", "eligible", "ineligible", "review"]
BlockingReason = Literal["RUN_NOT_SUCCESS", "COVERAGE_NOT_MET", "ERRORS_EXCEEDED", "ALREADY_PROMOTED"]
JobStatus = Literal["queued", "claimed", "done", "failed"]

RUN_STATUSES = {"running", "prepared", "promoted", "cancelled"}
CANCELLABLE_RUN_STATUSES = ("running", "prepared")
TERMINAL_RUN_STATUSES = {"promoted", "cancelled"}
ELIGIBILITY_STATUSES = {"pending", "eligible", "ineligible", "review"}
JOB_STATUSES = {"queued", "claimed", "done", "failed"}
JOB_RESULT_STATUSES = {"done", "failed"}
COUNTER_FIELDS = ("processed", "eligible", "ineligible", "pending", "errors")

REEVALUATE_ALL_JOB = "re-evaluate-all"
DIFF_STATUS_NONE = "none"


@dataclass(slots=True)
class PolicyRecord:
    id: str
    version: int
    is_active: bool
    config: dict[str, Any]
    created_at: datetime
    activated_at: datetime | None = None


@dataclass(slots=True)
class ErrorEntry:
    media_item_id: str
    error: str
    timestamp: datetime
    stack: str | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "media_item_id": self.media_item_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.stack is not None:
            payload["stack"] = self.stack
        return payload

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> ErrorEntry:
        timestamp = raw.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        return cls(
            media_item_id=str(raw.get("media_item_id", "")),
            error=str(raw.get("error", "")),
            timestamp=timestamp,
            stack=raw.get("stack"),
        )


@dataclass(slots=True)
class CounterIncrements:
    processed: int = 0
    eligible: int = 0
    ineligible: int = 0
    pending: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in COUNTER_FIELDS}

    def is_empty(self) -> bool:
        return not any(self.as_dict().values())


@dataclass(slots=True)
class EvaluationRunRecord:
    id: str
    status: RunStatus
    target_policy_id: str
    target_policy_version: int
    total_ready_snapshot: int
    snapshot_cutoff: datetime
    started_at: datetime
    cursor: str | None = None
    processed: int = 0
    eligible: int = 0
    ineligible: int = 0
    pending: int = 0
    errors: int = 0
    error_sample: list[ErrorEntry] = field(default_factory=list)
    finished_at: datetime | None = None
    promoted_at: datetime | None = None
    promoted_by: str | None = None


@dataclass(slots=True)
class EvaluationRecord:
    media_item_id: str
    policy_version: int
    status: EligibilityStatus
    evaluated_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None


@dataclass(slots=True)
class MediaSummary:
    id: str
    title: str | None
    trending_score: float | None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobHandle:
    id: str
    name: str
    job_key: str | None
    status: JobStatus
