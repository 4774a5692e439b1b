from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "leadflow-pipeline"
    environment: str = "dev"
    version: str = "0.4.0"
    git_commit: str = "unknown"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    run_workers: bool = True

    worker_concurrency: int = 4
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 300
    lease_reaper_interval_seconds: float = 30.0
    lease_reaper_batch_size: int = 100
    job_max_attempts: int = 3
    job_retry_base_seconds: float = 2.0
    job_retry_max_seconds: float = 60.0
    scrape_source_urls: dict[str, str] = {
        "zillow": "http://localhost:7001",
        "auction": "http://localhost:7002",
    }
    scrape_timeout_seconds: float = 30.0
    matchmaking_auto_trigger_score: float = 85.0

    webhook_concurrency: int = 4
    webhook_max_attempts: int = 3
    webhook_timeout_seconds: float = 5.0
    webhook_retry_base_seconds: float = 0.5
    webhook_retry_max_seconds: float = 8.0
    webhook_replay_batch_limit: int = 500

    vendor_timeout_seconds: float = 10.0
    vendor_max_attempts: int = 3
    vendor_retry_base_ms: float = 250.0
    vendor_retry_cap_ms: float = 4000.0
    vendor_cache_ttl_seconds: float = 900.0
    vendor_cache_max_entries: int = 10_000
    attom_base_url: str = "https://api.gateway.attomdata.com/propertyapi/v1"
    attom_api_key: str | None = None
    attom_daily_cap_cents: int = 1000
    attom_cost_per_call_cents: int = 5
    batchdata_base_url: str = "https://api.batchdata.com/api/v1"
    batchdata_api_key: str | None = None
    batchdata_daily_cap_cents: int = 2000
    batchdata_cost_per_call_cents: int = 10

    metrics_prefix: str = "leadflow"
    metrics_alias_prefix: str | None = "convexa"

    otel_enabled: bool = True
    otel_service_name: str = "leadflow-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
