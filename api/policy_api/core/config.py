from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "catalog-policy-api"
    environment: str = "dev"
    storage_backend: str = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    promote_error_budget: int = 0
    promote_coverage_threshold: float = 1.0
    error_sample_capacity: int = 10
    diff_sample_size: int = 50
    diff_max_sample_size: int = 500
    reevaluate_batch_size: int = 100
    dry_run_max_items: int = 10000
    dry_run_time_budget_seconds: float = 60.0
    otel_enabled: bool = True
    otel_service_name: str = "catalog-policy-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
