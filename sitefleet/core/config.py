from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "sitefleet-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_pool_warning_ratio: float = 0.8
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 60
    job_retry_max_seconds: int = 1800
    job_purge_after_days: int = 30
    qa_require_all_required_checked: bool = True
    idempotency_ttl_seconds: int = 24 * 60 * 60
    idempotency_in_flight_ttl_seconds: int = 5 * 60
    queue_slo_pending_age_seconds: int = 30 * 60
    queue_slo_error_rate_pct: float = 10.0
    queue_slo_worker_idle_seconds: int = 15 * 60
    queue_slo_pending_backlog: int = 500
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "sitefleet-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SF_", extra="ignore")


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    worker_id: str | None = None
    concurrency: int = 2
    job_types: str | None = None
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    claim_lease_seconds: int = 300
    maintenance_interval_seconds: float = 60.0
    collaborator_base_url: str | None = None
    collaborator_api_key: str | None = None
    collaborator_timeout_seconds: float = 120.0
    otel_enabled: bool = True
    otel_service_name: str = "sitefleet-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SF_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()
