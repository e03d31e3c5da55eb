from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    worker_id: str = "local-policy-worker"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 600
    batch_size: int | None = None
    request_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "catalog-policy-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CP_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
