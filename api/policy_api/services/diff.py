from __future__ import annotations

from dataclasses import dataclass, field

from policy_api.services.contracts import PolicyRepository
from policy_api.services.errors import RepositoryNotFoundError, RepositoryValidationError, RunStateError
from policy_api.services.records import DIFF_STATUS_NONE, MediaSummary

UNKNOWN_TITLE = "Unknown"


@dataclass(slots=True)
class DiffCounts:
    regressions: int = 0
    improvements: int = 0

    @property
    def net_change(self) -> int:
        return self.improvements - self.regressions


@dataclass(slots=True)
class DiffSample:
    media_item_id: str
    title: str
    reason: str
    trending_score: float | None = None


@dataclass(slots=True)
class DiffReport:
    run_id: str
    target_policy_version: int
    current_policy_version: int | None
    counts: DiffCounts
    top_regressions: list[DiffSample] = field(default_factory=list)
    top_improvements: list[DiffSample] = field(default_factory=list)


def is_regression(old_status: str, new_status: str) -> bool:
    """An item leaves the catalog: eligible under the current policy, not eligible under the target."""
    return old_status == "eligible" and new_status != "eligible"


def is_improvement(old_status: str, new_status: str) -> bool:
    """An item enters the catalog: not eligible (or never evaluated) before, eligible under the target."""
    return old_status != "eligible" and new_status == "eligible"


class DiffService:
    def __init__(
        self,
        repository: PolicyRepository,
        *,
        default_sample_size: int = 50,
        max_sample_size: int = 500,
    ) -> None:
        self.repository = repository
        self.default_sample_size = default_sample_size
        self.max_sample_size = max_sample_size

    async def diff(self, run_id: str, sample_size: int | None = None) -> DiffReport:
        if sample_size is None:
            sample_size = self.default_sample_size
        if sample_size < 0 or sample_size > self.max_sample_size:
            raise RepositoryValidationError(f"sample_size must be between 0 and {self.max_sample_size}")

        run = await self.repository.get_run(run_id)
        if run is None:
            raise RepositoryNotFoundError(f"Run {run_id} not found")
        if run.status == "running":
            raise RunStateError(f"Run {run_id} is still running; diff is available once it is prepared")

        active_policy = await self.repository.get_active_policy()
        current_version = active_policy.version if active_policy is not None else None

        target_statuses = await self.repository.get_statuses_by_policy_version(run.target_policy_version)
        current_statuses: dict[str, str] = {}
        if current_version is not None:
            current_statuses = await self.repository.get_statuses_by_policy_version(current_version)

        counts = DiffCounts()
        regressions: list[tuple[str, str, str]] = []
        improvements: list[tuple[str, str, str]] = []
        for media_item_id, new_status in target_statuses.items():
            old_status = current_statuses.get(media_item_id, DIFF_STATUS_NONE)
            if is_regression(old_status, new_status):
                counts.regressions += 1
                regressions.append((media_item_id, old_status, new_status))
            elif is_improvement(old_status, new_status):
                counts.improvements += 1
                improvements.append((media_item_id, old_status, new_status))

        summaries = await self.repository.get_media_summaries(
            [media_item_id for media_item_id, _, _ in [*regressions, *improvements]]
        )

        return DiffReport(
            run_id=run.id,
            target_policy_version=run.target_policy_version,
            current_policy_version=current_version,
            counts=counts,
            top_regressions=self._top_samples(regressions, summaries, sample_size),
            top_improvements=self._top_samples(improvements, summaries, sample_size),
        )

    @staticmethod
    def _top_samples(
        changes: list[tuple[str, str, str]],
        summaries: dict[str, MediaSummary],
        limit: int,
    ) -> list[DiffSample]:
        samples = []
        for media_item_id, old_status, new_status in changes:
            summary = summaries.get(media_item_id)
            samples.append(
                DiffSample(
                    media_item_id=media_item_id,
                    title=(summary.title if summary and summary.title else UNKNOWN_TITLE),
                    reason=f"{old_status}→{new_status}",
                    trending_score=summary.trending_score if summary else None,
                )
            )
        samples.sort(key=lambda sample: (-(sample.trending_score or 0.0), sample.media_item_id))
        return samples[:limit]
