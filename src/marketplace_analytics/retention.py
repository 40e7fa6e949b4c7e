"""
Marketplace Analytics - Retention and Cleanup.

Ages out raw records per category horizon and closes idle sessions. Steps run
in isolation: a failed deletion is logged and recorded in the report while
the remaining steps still run.

Architecture Layer: Application
Principles: Advisory Housekeeping, Per-Step Isolation
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import BaseModel, Field
import structlog

from .config import RetentionConfig, TrackingConfig
from .models import LONG_LIVED_CATEGORIES, TableName, utc_now
from .repository import AnalyticsRepository, RepositoryError

logger = structlog.get_logger(__name__)


class CleanupReport(BaseModel):
    """Outcome of one retention run."""
    started_at: datetime
    idle_sessions_closed: int = 0
    deleted: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    @property
    def succeeded(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RetentionStep:
    """One deletion: a name, a horizon in days and the call that performs it."""
    name: str
    days: int
    run: Callable[[datetime], Awaitable[int]] = field(compare=False)


class RetentionJob:
    """Marks idle sessions inactive and hard-deletes records past their horizon."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        retention: RetentionConfig | None = None,
        tracking: TrackingConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._retention = retention or RetentionConfig()
        self._idle_timeout = (tracking or TrackingConfig()).idle_timeout
        self._clock = clock
        self._last_report: CleanupReport | None = None

    @property
    def last_report(self) -> CleanupReport | None:
        return self._last_report

    async def sweep_idle_sessions(self, now: datetime | None = None) -> int:
        """Close active sessions whose last activity is at least the idle timeout ago."""
        now = now or self._clock()
        closed = await self._repository.close_idle_sessions(now - self._idle_timeout, now)
        if closed:
            logger.info("idle_sessions_closed", count=closed)
        return closed

    def steps(self) -> list[RetentionStep]:
        r = self._retention
        repo = self._repository
        steps = [
            RetentionStep("sessions", r.sessions_days,
                          lambda cutoff: repo.delete_before(TableName.SESSIONS, cutoff)),
            RetentionStep("page_views", r.page_views_days,
                          lambda cutoff: repo.delete_before(TableName.PAGE_VIEWS, cutoff)),
            RetentionStep("interactions", r.interactions_days,
                          lambda cutoff: repo.delete_before(
                              TableName.INTERACTIONS, cutoff, exclude_categories=LONG_LIVED_CATEGORIES)),
            RetentionStep("business_interactions", r.business_interactions_days,
                          lambda cutoff: repo.delete_before(
                              TableName.INTERACTIONS, cutoff, include_categories=LONG_LIVED_CATEGORIES)),
            RetentionStep("business_events", r.business_events_days,
                          lambda cutoff: repo.delete_before(TableName.BUSINESS_EVENTS, cutoff)),
            RetentionStep("performance_metrics", r.performance_days,
                          lambda cutoff: repo.delete_before(TableName.PERFORMANCE_METRICS, cutoff)),
        ]
        if r.daily_metrics_days > 0:
            steps.append(RetentionStep("daily_metrics", r.daily_metrics_days,
                                       lambda cutoff: repo.delete_before(TableName.DAILY_METRICS, cutoff)))
        return steps

    async def run(self, now: datetime | None = None) -> CleanupReport:
        """Sweep idle sessions, then apply every retention step."""
        now = now or self._clock()
        report = CleanupReport(started_at=now)

        try:
            report.idle_sessions_closed = await self.sweep_idle_sessions(now)
        except RepositoryError as e:
            report.errors["idle_sessions"] = str(e)
            logger.error("retention_step_failed", step="idle_sessions", error=str(e))

        for step in self.steps():
            cutoff = now - timedelta(days=step.days)
            try:
                report.deleted[step.name] = await step.run(cutoff)
            except RepositoryError as e:
                report.errors[step.name] = str(e)
                logger.error("retention_step_failed", step=step.name, cutoff=cutoff.isoformat(), error=str(e))

        self._last_report = report
        logger.info(
            "retention_completed",
            idle_sessions_closed=report.idle_sessions_closed,
            total_deleted=report.total_deleted,
            failed_steps=sorted(report.errors),
        )
        return report
