from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "integrations-api"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    redis_url: str | None = None
    broker_stream: str = "integrations:jobs"
    broker_group: str = "scrapers"
    broker_dead_letter_stream: str = "integrations:jobs:dead"
    broker_max_deliveries: int = 5
    broker_block_ms: int = 5000
    broker_claim_idle_ms: int = 60000
    broker_dead_letter_maxlen: int = 10000
    worker_concurrency: int = 4
    worker_poll_interval_seconds: float = 0.5
    worker_max_backoff_seconds: float = 15.0
    embedded_worker: bool = False
    worker_metrics_port: int | None = None
    registry_timeout_seconds: float = 10.0
    registry_max_attempts: int = 3
    registry_backoff_base_seconds: float = 0.5
    registry_backoff_max_seconds: float = 8.0
    registry_user_agent: str = "integrations-api/0.1 (package metadata scraper)"
    crates_io_base_url: str = "https://crates.io"
    jsr_api_base_url: str = "https://api.jsr.io"
    s3_endpoint_url: str | None = None
    s3_bucket: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_region: str = "us-east-1"
    otel_enabled: bool = True
    otel_service_name: str = "integrations-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="IA_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
