from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "load-hunter-api"
    environment: str = "dev"
    log_level: str = "INFO"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    queue_max_attempts: int = 5
    queue_lease_seconds: int = 900
    queue_backlog_cutoff_minutes: int | None = 60
    queue_claim_max_batch: int = 100
    match_default_radius_miles: float = 200.0
    match_lookback_minutes: int = 240
    match_ttl_minutes: int = 240
    initial_backfill_minutes: int = 30
    broker_check_window_minutes: int = 60
    broker_check_leader_lease_seconds: int = 120
    archive_retention_hours: int = 72
    archive_batch_size: int = 2000
    archive_max_batches: int = 50
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "load-hunter-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LH_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
