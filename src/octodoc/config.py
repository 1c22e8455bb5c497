"""Runtime configuration for the OctoDoc services."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="octodoc_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Backing stores; empty means an in-process backend
    primary_store_url: str | None = None
    cache_url: str | None = None

    # Failure tracking and retries
    failure_threshold: int = Field(default=3, ge=1)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.2, ge=0.0)
    retry_max_delay_seconds: float = Field(default=2.0, ge=0.0)
    call_timeout_seconds: float = Field(default=10.0, gt=0.0)
    probe_interval_seconds: float = Field(default=15.0, gt=0.0)

    # Explicit degraded mode switch (offline showcase)
    degraded_mode_override: bool = False
    degraded_mode_reason: str = "Explicitly enabled via OCTODOC_DEGRADED_MODE_OVERRIDE"

    # Sessions
    session_ttl_seconds: int = Field(default=30 * 60, ge=1)
    sweep_interval_seconds: float = Field(default=60.0, gt=0.0)

    # Pipeline
    max_jobs_per_session: int = Field(default=20, ge=1)
    max_upload_size_mb: int = Field(default=25, ge=1)
    min_document_size_bytes: int = Field(default=10 * 1024, ge=0)
    stage_failure_probability: float = Field(default=0.05, ge=0.0, le=1.0)
    ocr_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    pipeline_seed: int | None = None

    # Progress stream
    heartbeat_seconds: float = Field(default=4.0, gt=0.0)
    subscriber_queue_size: int = Field(default=32, ge=1)

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
