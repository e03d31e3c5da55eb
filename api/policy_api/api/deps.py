from fastapi import Depends

from policy_api.core.config import get_settings
from policy_api.services.activation import ActivationService
from policy_api.services.diff import DiffService
from policy_api.services.dry_run import DryRunService
from policy_api.services.repository import get_repository


def get_activation_service(repository=Depends(get_repository)) -> ActivationService:
    settings = get_settings()
    return ActivationService(
        repository,
        error_budget=settings.promote_error_budget,
        coverage_threshold=settings.promote_coverage_threshold,
        error_sample_capacity=settings.error_sample_capacity,
        batch_size=settings.reevaluate_batch_size,
    )


def get_diff_service(repository=Depends(get_repository)) -> DiffService:
    settings = get_settings()
    return DiffService(
        repository,
        default_sample_size=settings.diff_sample_size,
        max_sample_size=settings.diff_max_sample_size,
    )


def get_dry_run_service(repository=Depends(get_repository)) -> DryRunService:
    settings = get_settings()
    return DryRunService(
        repository,
        max_items=settings.dry_run_max_items,
        time_budget_seconds=settings.dry_run_time_budget_seconds,
    )
