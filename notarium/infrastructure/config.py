"""Centralized configuration loaded from environment variables.

Nested groups are addressed with a double underscore, e.g.
``NOTARIUM_NOTARY__BASE_URL`` or ``NOTARIUM_RECONCILIATION__MAX_RETRIES``.
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./notarium.db"
    echo: bool = False
    pool_size: int = Field(default=10, ge=1)
    max_overflow: int = Field(default=20, ge=0)
    pool_timeout: int = Field(default=30, ge=1)
    pool_recycle: int = Field(default=1800, ge=60)
    sqlite_busy_timeout: float = Field(default=30.0, gt=0)


class NotarySettings(BaseModel):
    base_url: str = "http://localhost:9000"
    api_key: SecretStr | None = None
    network_name: str = "integrationnet"
    timeout_seconds: float = Field(default=30.0, gt=0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_seconds: float = Field(default=30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ReconciliationSettings(BaseModel):
    workers: int = Field(default=4, ge=1)
    max_retries: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=30.0, gt=0)
    lease_seconds: float = Field(default=120.0, gt=0)
    attempt_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_attempts: int = Field(default=5, ge=1)
    poll_interval_seconds: float = Field(default=2.0, ge=0)
    idle_sleep_seconds: float = Field(default=1.0, ge=0)
    claim_batch_size: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def lease_outlives_attempt(self) -> ReconciliationSettings:
        # A lease that lapses mid-attempt lets a second worker submit the same hash.
        if self.lease_seconds <= self.attempt_timeout_seconds:
            raise ValueError(
                f"lease_seconds ({self.lease_seconds}) must exceed "
                f"attempt_timeout_seconds ({self.attempt_timeout_seconds})"
            )
        return self


class BatchSettings(BaseModel):
    enabled: bool = False
    target_size: int = Field(default=100, ge=1)
    flush_interval_seconds: float = Field(default=30.0, gt=0)
    cycle_interval_seconds: float = Field(default=5.0, gt=0)


class VerificationSettings(BaseModel):
    quality_threshold: int = Field(default=80, ge=0, le=100)
    risk_threshold: int = Field(default=50, ge=0, le=100)
    sweep_interval_seconds: float = Field(default=600.0, gt=0)
    rebuild_page_size: int = Field(default=500, ge=1)


class ConsistencySettings(BaseModel):
    check_interval_seconds: float = Field(default=900.0, gt=0)
    auto_heal: bool = True
    page_size: int = Field(default=500, ge=1)


class NetworkSettings(BaseModel):
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    staleness_seconds: float = Field(default=120.0, gt=0)


class AuditSettings(BaseModel):
    retention_days: int = Field(default=2555, ge=1)
    archive_interval_seconds: float = Field(default=86400.0, gt=0)


class LoggingSettings(BaseModel):
    level: str = "info"
    json_output: bool = False
    log_file: str | None = None


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables."""

    app_name: str = "notarium"
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    notary: NotarySettings = Field(default_factory=NotarySettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    batching: BatchSettings = Field(default_factory=BatchSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    consistency: ConsistencySettings = Field(default_factory=ConsistencySettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="NOTARIUM_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = [
    "AuditSettings",
    "BatchSettings",
    "ConsistencySettings",
    "DatabaseSettings",
    "LoggingSettings",
    "NetworkSettings",
    "NotarySettings",
    "ReconciliationSettings",
    "Settings",
    "VerificationSettings",
    "get_settings",
]
