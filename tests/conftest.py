"""
Pytest configuration and fixtures for marketplace analytics tests.
"""
import pytest
from datetime import datetime, timedelta, timezone

from marketplace_analytics.config import (
    AnalyticsServiceConfig,
    ObservabilityConfig,
    SchedulerConfig,
    reset_config,
)
from marketplace_analytics.models import (
    BusinessEvent,
    BusinessEventType,
    DeviceInfo,
    DeviceType,
    Interaction,
    InteractionCategory,
    PageView,
    Session,
)
from marketplace_analytics.repository import InMemoryRepository
from marketplace_analytics.tracking import RequestFacts

FIXED_NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)

DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)


class FakeClock:
    """Settable clock injected wherever the code asks for the current time."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture(autouse=True)
def _reset_config():
    """Drop the cached configuration between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    """Create a fixed, advanceable clock."""
    return FakeClock()


@pytest.fixture
def repository():
    """Create an in-memory repository."""
    return InMemoryRepository()


@pytest.fixture
def config():
    """Create a service configuration without background jobs."""
    return AnalyticsServiceConfig(
        scheduler=SchedulerConfig(enabled=False, run_rollup_on_startup=False),
        observability=ObservabilityConfig(prometheus_enabled=False),
    )


@pytest.fixture
def make_session():
    """Factory for sessions with sensible defaults."""
    def _make(session_id="s1", start=FIXED_NOW, duration=0, page_views=1, device=DeviceType.DESKTOP, **kwargs):
        return Session(
            session_id=session_id,
            start_time=start,
            last_activity=start + timedelta(seconds=duration),
            duration=duration,
            total_page_views=page_views,
            pages=["/"] * page_views,
            device=DeviceInfo(type=device),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_page_view():
    """Factory for page views."""
    def _make(session_id="s1", page="/", timestamp=FIXED_NOW, **kwargs):
        return PageView(session_id=session_id, page=page, timestamp=timestamp, **kwargs)
    return _make


@pytest.fixture
def make_interaction():
    """Factory for interactions."""
    def _make(session_id="s1", event_type="click", category=InteractionCategory.INTERACTION,
              timestamp=FIXED_NOW, **kwargs):
        return Interaction(
            session_id=session_id, event_type=event_type, category=category, timestamp=timestamp, **kwargs,
        )
    return _make


@pytest.fixture
def make_business_event():
    """Factory for business events."""
    def _make(event_type=BusinessEventType.LISTING_VIEW, session_id="s1", timestamp=FIXED_NOW,
              conversion_value=0.0, **kwargs):
        return BusinessEvent(
            session_id=session_id, event_type=event_type, timestamp=timestamp,
            conversion_value=conversion_value, **kwargs,
        )
    return _make


@pytest.fixture
def make_facts():
    """Factory for request facts."""
    def _make(path="/listings", method="GET", headers=None, cookies=None, query=None, user_id=None):
        base_headers = {"user-agent": DESKTOP_UA}
        base_headers.update(headers or {})
        return RequestFacts(
            method=method,
            path=path,
            headers=base_headers,
            cookies=cookies or {},
            query=query or {},
            client_host="10.0.0.1",
            user_id=user_id,
        )
    return _make
