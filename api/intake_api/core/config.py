from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobsboard-intake-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    repository_backend: Literal["postgres", "memory"] = "postgres"
    serialize_admission: bool = False
    notification_webhook_url: str | None = None
    notification_api_key: str | None = None
    notification_timeout_seconds: float = 5.0
    notification_template: str = "application-confirmation"
    repair_grace_seconds: int = 300
    otel_enabled: bool = True
    otel_service_name: str = "jobsboard-intake-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="JB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
