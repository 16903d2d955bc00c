"""
Queue configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Queue settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "q"

    # Promotion of delayed jobs
    promotion_interval_ms: int = 5000
    promotion_batch_size: int = 20

    # Job defaults
    default_max_attempts: int = 1

    # Worker Configuration
    worker_poll_interval_seconds: float = 0.1
    worker_poll_max_interval_seconds: float = 2.0
    worker_claim_batch: int = 10
    worker_max_store_failures: int = 10
    worker_concurrency: int = 1
    # Modules imported by the worker process so their @register_handler calls run
    handler_modules: list[str] = []
    # Also run the promoter inside worker processes
    worker_promote: bool = True
    shutdown_timeout_seconds: float = 30.0

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "redis-job-queue"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
