"""
Unit tests for analytics configuration.
"""
import pytest
from datetime import timedelta

from pydantic import ValidationError

from marketplace_analytics.config import (
    AnalyticsServiceConfig,
    DatabaseConfig,
    Environment,
    PerformanceConfig,
    RetentionConfig,
    SamplingConfig,
    SchedulerConfig,
    TrackingConfig,
    get_config,
    reset_config,
)


class TestRetentionConfig:
    """Tests for RetentionConfig."""

    def test_default_horizons(self):
        """Test default retention horizons per category."""
        config = RetentionConfig()

        assert config.page_views_days == 90
        assert config.sessions_days == 365
        assert config.interactions_days == 180
        assert config.business_interactions_days == 365
        assert config.business_events_days == 1095
        assert config.performance_days == 30
        assert config.daily_metrics_days == 1825

    def test_rejects_short_horizon(self):
        """Test raw data horizons below the minimum are rejected."""
        with pytest.raises(ValidationError):
            RetentionConfig(page_views_days=3)

    def test_daily_metrics_zero_keeps_forever(self):
        """Test zero is accepted for rollups."""
        assert RetentionConfig(daily_metrics_days=0).daily_metrics_days == 0

    def test_daily_metrics_under_a_year_rejected(self):
        """Test rollup horizon must be at least a year when set."""
        with pytest.raises(ValidationError):
            RetentionConfig(daily_metrics_days=100)

    def test_business_data_outlives_interactions(self):
        """Test business horizons cannot be shorter than generic interactions."""
        with pytest.raises(ValidationError):
            RetentionConfig(interactions_days=400, business_interactions_days=365)


class TestTrackingConfig:
    """Tests for TrackingConfig."""

    def test_defaults(self):
        """Test default tracking settings."""
        config = TrackingConfig()

        assert config.enabled is True
        assert config.cookie_name == "sessionId"
        assert config.idle_timeout == timedelta(minutes=30)
        assert config.timeout_seconds == 0.25
        assert config.api_prefix == "/api/"

    def test_env_override(self, monkeypatch):
        """Test environment variables override defaults."""
        monkeypatch.setenv("ANALYTICS_TRACKING_IDLE_TIMEOUT_MINUTES", "45")
        assert TrackingConfig().idle_timeout == timedelta(minutes=45)


class TestPerformanceAndSampling:
    """Tests for PerformanceConfig and SamplingConfig."""

    def test_batch_size_bounds(self):
        """Test batch size must be between 100 and 10000."""
        assert PerformanceConfig().batch_size == 1000
        with pytest.raises(ValidationError):
            PerformanceConfig(batch_size=50)
        with pytest.raises(ValidationError):
            PerformanceConfig(batch_size=20000)

    def test_sampling_rate_bounds(self):
        """Test sampling rate must lie in [0, 1]."""
        with pytest.raises(ValidationError):
            SamplingConfig(rate=1.5)
        assert SamplingConfig(rate=0.0).rate == 0.0


class TestSchedulerConfig:
    """Tests for SchedulerConfig."""

    def test_defaults(self):
        """Test default schedule."""
        config = SchedulerConfig()

        assert config.enabled is True
        assert config.rollup_hour_utc == 1
        assert config.cleanup_interval_seconds == 3600

    def test_invalid_hour(self):
        """Test rollup hour must be a valid UTC hour."""
        with pytest.raises(ValidationError):
            SchedulerConfig(rollup_hour_utc=24)


class TestDatabaseConfig:
    """Tests for DatabaseConfig."""

    def test_connection_url(self):
        """Test asyncpg connection URL."""
        config = DatabaseConfig(host="db", port=5433, database="analytics", user="svc", password="pw")

        assert config.connection_url == "postgresql+asyncpg://svc:pw@db:5433/analytics"

    def test_default_backend_is_memory(self):
        """Test the default backend."""
        assert DatabaseConfig().backend == "memory"


class TestAnalyticsServiceConfig:
    """Tests for the aggregate configuration."""

    def test_is_production(self, monkeypatch):
        """Test production detection."""
        monkeypatch.setenv("ANALYTICS_SERVICE_ENV", "production")
        config = AnalyticsServiceConfig()

        assert config.service.env == Environment.PRODUCTION
        assert config.is_production() is True

    def test_get_config_is_cached(self):
        """Test get_config returns a singleton until reset."""
        first = get_config()
        assert get_config() is first

        reset_config()
        assert get_config() is not first
