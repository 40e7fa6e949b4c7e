"""
Marketplace Analytics - Configuration.

Centralized configuration management for analytics service components.
Every group is externally supplied through environment variables (or a
``.env`` file) and validated at startup.

Architecture Layer: Infrastructure
Principles: 12-Factor App, Configuration Externalization, Type Safety
"""
from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)

# Lowest retention accepted for any raw-data category.
MIN_RETENTION_DAYS = 7


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ServiceConfiguration(BaseSettings):
    """Core service configuration."""
    name: str = Field(default="marketplace-analytics")
    version: str = Field(default="1.0.0")
    env: Environment = Field(default=Environment.DEVELOPMENT)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    debug: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_SERVICE_",
        env_file=".env",
        extra="ignore",
    )


class DatabaseConfig(BaseSettings):
    """Record store configuration."""
    backend: Literal["memory", "postgres"] = Field(default="memory")
    host: str = Field(default="localhost")
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(default="marketplace_analytics")
    user: str = Field(default="analytics")
    password: SecretStr = Field(default=SecretStr(""))
    pool_size: int = Field(default=10, ge=0, le=100)
    max_overflow: int = Field(default=5, ge=0, le=100)
    pool_timeout: int = Field(default=30, ge=1, le=300)
    echo_sql: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_DB_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def connection_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RetentionConfig(BaseSettings):
    """Unified data retention policy, in days per record category."""
    page_views_days: int = Field(default=90, ge=MIN_RETENTION_DAYS)
    sessions_days: int = Field(default=365, ge=MIN_RETENTION_DAYS)
    interactions_days: int = Field(default=180, ge=MIN_RETENTION_DAYS)
    business_interactions_days: int = Field(default=365, ge=MIN_RETENTION_DAYS)
    business_events_days: int = Field(default=1095, ge=MIN_RETENTION_DAYS)
    performance_days: int = Field(default=30, ge=MIN_RETENTION_DAYS)
    daily_metrics_days: int = Field(default=1825, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_RETENTION_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("daily_metrics_days")
    @classmethod
    def validate_daily_metrics_days(cls, v: int) -> int:
        """Rollups are either kept forever (0) or for at least a year."""
        if 0 < v < 365:
            raise ValueError("daily_metrics_days must be 0 (keep forever) or at least 365")
        return v

    @model_validator(mode="after")
    def validate_business_horizons(self) -> RetentionConfig:
        """Business data must outlive generic interactions."""
        if self.business_interactions_days < self.interactions_days:
            raise ValueError("business_interactions_days must be >= interactions_days")
        if self.business_events_days < self.interactions_days:
            raise ValueError("business_events_days must be >= interactions_days")
        return self


class PerformanceConfig(BaseSettings):
    """Batching and caching configuration."""
    batch_size: int = Field(default=1000, ge=100, le=10000)
    max_concurrent_queries: int = Field(default=5, ge=1, le=50)
    enable_caching: bool = Field(default=True)
    cache_ttl_seconds: int = Field(default=300, ge=1, le=3600)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_PERFORMANCE_",
        env_file=".env",
        extra="ignore",
    )


class SamplingConfig(BaseSettings):
    """Sampling for high-traffic scenarios."""
    enabled: bool = Field(default=False)
    rate: float = Field(default=1.0, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_SAMPLING_",
        env_file=".env",
        extra="ignore",
    )


class TrackingConfig(BaseSettings):
    """Request tracking configuration."""
    enabled: bool = Field(default=True)
    cookie_name: str = Field(default="sessionId", min_length=1)
    session_header: str = Field(default="x-session-id")
    # Country code set by the CDN edge, if any. Never inferred from the IP.
    country_header: str = Field(default="cf-ipcountry")
    idle_timeout_minutes: int = Field(default=30, ge=1, le=1440)
    timeout_ms: int = Field(default=250, ge=10, le=5000)
    api_prefix: str = Field(default="/api/")
    max_error_message_length: int = Field(default=500, ge=50, le=10000)
    notable_interaction_limit: int = Field(default=50, ge=1, le=500)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_TRACKING_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.idle_timeout_minutes)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class SchedulerConfig(BaseSettings):
    """Background job schedule."""
    enabled: bool = Field(default=True)
    rollup_hour_utc: int = Field(default=1, ge=0, le=23)
    cleanup_interval_seconds: int = Field(default=3600, ge=60, le=86400)
    run_rollup_on_startup: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_SCHEDULER_",
        env_file=".env",
        extra="ignore",
    )


class AlertConfig(BaseSettings):
    """Alert thresholds reported by the health check."""
    error_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    response_time_ms: int = Field(default=5000, ge=1, le=600000)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_ALERT_",
        env_file=".env",
        extra="ignore",
    )


class ObservabilityConfig(BaseSettings):
    """Observability configuration."""
    prometheus_enabled: bool = Field(default=True)
    prometheus_endpoint: str = Field(default="/metrics")
    log_format: Literal["json", "console"] | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_OBSERVABILITY_",
        env_file=".env",
        extra="ignore",
    )


class AnalyticsServiceConfig(BaseSettings):
    """Aggregate analytics service configuration."""
    service: ServiceConfiguration = Field(default_factory=ServiceConfiguration)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    alert: AlertConfig = Field(default_factory=AlertConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @staticmethod
    def load() -> AnalyticsServiceConfig:
        """Load configuration from environment."""
        config = AnalyticsServiceConfig()
        logger.info(
            "analytics_config_loaded",
            service=config.service.name,
            env=config.service.env.value,
            database_backend=config.database.backend,
            sampling_enabled=config.sampling.enabled,
            scheduler_enabled=config.scheduler.enabled,
        )
        return config

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.service.env == Environment.PRODUCTION


_config: AnalyticsServiceConfig | None = None


def get_config() -> AnalyticsServiceConfig:
    """Get singleton configuration instance."""
    global _config
    if _config is None:
        _config = AnalyticsServiceConfig.load()
    return _config


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    global _config
    _config = None
