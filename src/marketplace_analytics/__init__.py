"""
Marketplace Analytics.

Analytics and telemetry for the vehicle marketplace:
- Session tracking with a sliding idle timeout
- Best-effort capture of page views, interactions, business and performance events
- Idempotent daily rollups and a retention job
- Real-time, dashboard and report queries over rollups and raw records
"""

from .aggregations import RollupAggregator, derive_breakdown, derive_metrics
from .config import AnalyticsServiceConfig, get_config, reset_config
from .dashboard import DashboardQueryService
from .models import (
    BusinessEvent,
    BusinessEventType,
    DailyMetrics,
    DeviceInfo,
    DeviceType,
    Interaction,
    InteractionCategory,
    PageView,
    PerformanceMetric,
    Session,
)
from .realtime import RealTimeQueryService
from .recorders import BackgroundDispatcher, EventRecorder
from .reports import ReportService
from .repository import (
    AnalyticsRepository,
    DuplicateKeyError,
    InMemoryRepository,
    QueryError,
    RepositoryConnectionError,
    RepositoryError,
    create_repository,
)
from .retention import CleanupReport, RetentionJob
from .scheduler import AnalyticsScheduler
from .service import AnalyticsService
from .tracking import RequestFacts, SessionHandle, SessionTracker

__all__ = [
    "AnalyticsRepository",
    "AnalyticsScheduler",
    "AnalyticsService",
    "AnalyticsServiceConfig",
    "BackgroundDispatcher",
    "BusinessEvent",
    "BusinessEventType",
    "CleanupReport",
    "DailyMetrics",
    "DashboardQueryService",
    "DeviceInfo",
    "DeviceType",
    "DuplicateKeyError",
    "EventRecorder",
    "InMemoryRepository",
    "Interaction",
    "InteractionCategory",
    "PageView",
    "PerformanceMetric",
    "QueryError",
    "RealTimeQueryService",
    "ReportService",
    "RepositoryConnectionError",
    "RepositoryError",
    "RequestFacts",
    "RetentionJob",
    "RollupAggregator",
    "Session",
    "SessionHandle",
    "SessionTracker",
    "create_repository",
    "derive_breakdown",
    "derive_metrics",
    "get_config",
    "reset_config",
]
