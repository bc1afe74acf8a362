"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

import os
import socket
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    redis_url: str = "redis://localhost:6379/0"

    # Queue keys
    queue_stream_key: str = "mail:stream:v1"
    queue_group_name: str = "mailers"
    queue_schedule_key: str | None = None
    queue_dead_letter_key: str | None = None
    queue_dedupe_key_prefix: str | None = None

    # Job defaults
    queue_max_attempts: int = 5
    queue_dedupe_enabled: bool = True
    queue_dedupe_from_payload: bool = False
    queue_dedupe_ttl_ms: int = 6 * 60 * 60 * 1000
    queue_dedupe_grace_ms: int = 15 * 60 * 1000

    # Retry policy
    retry_backoff_strategy: Literal["exponential", "linear", "fixed"] = "exponential"
    retry_base_delay_ms: int = 15_000
    retry_max_delay_ms: int = 5 * 60_000

    # Worker Configuration
    worker_id: str | None = None
    worker_concurrency: int = 3
    worker_batch_size: int = 10
    worker_block_ms: int = 5_000
    worker_error_backoff_seconds: float = 1.0

    # Scheduler / recovery / monitor loops
    scheduler_interval_seconds: float = 1.0
    scheduler_batch_limit: int = 100
    recovery_interval_seconds: float = 30.0
    visibility_timeout_ms: int = 180_000
    metrics_interval_seconds: float = 15.0

    # Mail transport
    transport_relay_url: str | None = None
    transport_api_key: str | None = None
    transport_timeout_seconds: float = 30.0

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "mailqueue"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    @model_validator(mode="after")
    def _check_timeouts(self) -> "Settings":
        # Claims must outlive the slowest delivery
        if self.visibility_timeout_ms <= self.transport_timeout_seconds * 1000:
            raise ValueError(
                "visibility_timeout_ms must be greater than transport_timeout_seconds"
            )
        if self.queue_max_attempts < 1:
            raise ValueError("queue_max_attempts must be at least 1")
        return self

    @property
    def schedule_key(self) -> str:
        """Sorted set holding delayed jobs."""
        return self.queue_schedule_key or f"{self.queue_stream_key}:scheduled"

    @property
    def dead_letter_key(self) -> str:
        """Stream holding dead-lettered jobs."""
        return self.queue_dead_letter_key or f"{self.queue_stream_key}:dlq"

    @property
    def dedupe_key_prefix(self) -> str:
        """Key prefix for dedupe markers."""
        return self.queue_dedupe_key_prefix or f"{self.queue_stream_key}:dedupe"

    @property
    def consumer_name(self) -> str:
        """Consumer identity inside the group. Defaults to hostname + PID."""
        return self.worker_id or f"{socket.gethostname()}:{os.getpid()}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
