from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    api_timeout_seconds: float = 10.0
    module_id: str = "local-worker"
    api_key: str = "local-worker-key"
    worker_id: str | None = None
    log_level: str = "INFO"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_batch_size: int = 10
    processing_concurrency: int = 4
    reconcile_enabled: bool = False
    reconcile_interval_seconds: float = 300.0
    reconcile_batch_size: int = 25
    maintenance_enabled: bool = True
    maintenance_interval_seconds: float = 60.0
    extractor_url: str = "http://localhost:8100/extract"
    extractor_timeout_seconds: float = 30.0
    geocoder_url: str | None = None
    geocoder_timeout_seconds: float = 5.0
    credit_check_url: str | None = None
    credit_check_timeout_seconds: float = 10.0
    broker_follower_poll_attempts: int = 5
    broker_follower_poll_interval_seconds: float = 1.0
    broker_leader_lease_seconds: int = 120
    otel_enabled: bool = True
    otel_service_name: str = "load-hunter-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LH_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
