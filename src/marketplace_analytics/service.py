"""
Marketplace Analytics - Service Component.

Process-wide component that owns the repository and every analytics
collaborator, with an explicit ``initialize()``/``shutdown()`` lifecycle and
an injectable clock.

Architecture Layer: Application
Principles: Explicit Lifecycle, Dependency Injection, Graceful Degradation
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
import structlog

from .aggregations import RollupAggregator, as_number, mean_of, round_half_up
from .config import AnalyticsServiceConfig
from .dashboard import DashboardQueryService
from .models import InteractionCategory, TableName, utc_now
from .realtime import RealTimeQueryService
from .recorders import BackgroundDispatcher, EventRecorder
from .reports import ReportService
from .repository import AnalyticsRepository, RepositoryError, create_repository
from .retention import RetentionJob
from .scheduler import AnalyticsScheduler, Sleep
from .tracking import SessionTracker

logger = structlog.get_logger(__name__)

RECENT_ACTIVITY_WINDOW = timedelta(hours=1)


class AnalyticsService:
    """Owns and wires the analytics components."""

    def __init__(
        self,
        config: AnalyticsServiceConfig | None = None,
        repository: AnalyticsRepository | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config or AnalyticsServiceConfig()
        self._clock = clock
        self._repository = repository or create_repository(self._config.database)
        tracking = self._config.tracking

        self.tracker = SessionTracker(self._repository, tracking, clock=clock)
        self.recorder = EventRecorder(
            self._repository,
            tracking=tracking,
            sampling=self._config.sampling,
            performance=self._config.performance,
            production=self._config.is_production(),
            clock=clock,
        )
        self.dispatcher = BackgroundDispatcher(tracking.timeout_seconds)
        self.aggregator = RollupAggregator(self._repository, clock=clock)
        self.retention = RetentionJob(self._repository, self._config.retention, tracking, clock=clock)
        self.realtime = RealTimeQueryService(self._repository, tracking.notable_interaction_limit, clock=clock)
        self.dashboard = DashboardQueryService(self._repository, self._config.performance, clock=clock)
        self.reports = ReportService(self._repository, self._config.performance, clock=clock)
        self.scheduler = AnalyticsScheduler(
            self.aggregator, self.retention, self._config.scheduler, clock=clock, sleep=sleep,
        )
        self._initialized = False

    @property
    def config(self) -> AnalyticsServiceConfig:
        return self._config

    @property
    def repository(self) -> AnalyticsRepository:
        return self._repository

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def now(self) -> datetime:
        return self._clock()

    async def initialize(self) -> None:
        """Connect storage, run the startup rollup and start the scheduler. Idempotent."""
        if self._initialized:
            return
        await self._repository.connect()
        if self._config.scheduler.run_rollup_on_startup:
            await self.aggregator.compute_daily_metrics(self._clock())
        if self._config.scheduler.enabled:
            await self.scheduler.start()
        self._initialized = True
        logger.info(
            "analytics_service_initialized",
            scheduler_enabled=self._config.scheduler.enabled,
            tracking_enabled=self._config.tracking.enabled,
        )

    async def shutdown(self) -> None:
        """Stop the scheduler, drain in-flight writes and disconnect."""
        await self.scheduler.stop()
        await self.dispatcher.drain()
        await self._repository.disconnect()
        self._initialized = False
        logger.info("analytics_service_shutdown")

    async def health_check(self, now: datetime | None = None) -> dict[str, Any]:
        """Per-record-type counts, recent activity and alert thresholds."""
        now = now or self._clock()
        since = now - RECENT_ACTIVITY_WINDOW
        try:
            sessions, page_views, interactions, recent, telemetry = await asyncio.gather(
                self._repository.count(TableName.SESSIONS),
                self._repository.count(TableName.PAGE_VIEWS),
                self._repository.count(TableName.INTERACTIONS),
                self._repository.count(TableName.INTERACTIONS, since=since),
                self._repository.list_interactions(since, now, event_types=["api_call", "error"]),
            )
        except (RepositoryError, ValidationError) as e:
            logger.error("analytics_health_check_failed", error=str(e))
            return {"healthy": False, "error": str(e), "timestamp": now.isoformat()}

        # Server telemetry is recorded under the system category; metadata values may be client-supplied.
        api_calls = [
            i for i in telemetry
            if i.event_type == "api_call" and i.category == InteractionCategory.SYSTEM
        ]
        status_codes = [c for c in (as_number(i.metadata.get("statusCode")) for i in api_calls) if c is not None]
        latencies = [v for v in (as_number(i.metadata.get("responseTime")) for i in api_calls) if v is not None]
        server_errors = sum(1 for c in status_codes if c >= 500)
        error_rate = server_errors / len(status_codes) if status_codes else 0.0
        avg_response_ms = round_half_up(mean_of(latencies), 2)

        alerts = []
        if error_rate > self._config.alert.error_rate:
            alerts.append("error_rate")
        if avg_response_ms > self._config.alert.response_time_ms:
            alerts.append("response_time")

        return {
            "healthy": True,
            "collections": {
                "sessions": sessions,
                "pageViews": page_views,
                "interactions": interactions,
            },
            "recentActivity": recent,
            "errorRate": round_half_up(error_rate, 4),
            "avgResponseTime": avg_response_ms,
            "alerts": alerts,
            "timestamp": now.isoformat(),
        }

    def get_status(self) -> dict[str, Any]:
        last_report = self.retention.last_report
        last_rollup = self.aggregator.last_run
        return {
            "initialized": self._initialized,
            "environment": self._config.service.env.value,
            "scheduler": self.scheduler.status(),
            "lastRollup": last_rollup.isoformat() if last_rollup else None,
            "lastCleanup": last_report.started_at.isoformat() if last_report else None,
            "pendingWrites": self.dispatcher.pending,
            "writes": self.dispatcher.stats,
            "dashboard": self.dashboard.stats,
        }
