from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-maintenance"
    api_key: str = "local-maintenance-key"
    request_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    repair_batch_size: int = 100
    link_candidates_interval_seconds: float = 60.0
    replay_events_interval_seconds: float = 120.0
    recount_metrics_interval_seconds: float = 900.0
    otel_enabled: bool = True
    otel_service_name: str = "jobsboard-intake-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="JB_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
