"""
Marketplace Analytics - Scheduler.

Drives the nightly rollup (for the prior UTC day) and the periodic cleanup
on independent asyncio tasks. Clock and sleep are injectable; a failing job
is logged and never stops its loop.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

import structlog

from .aggregations import RollupAggregator, day_start
from .config import SchedulerConfig
from .models import DailyMetrics, utc_now
from .retention import CleanupReport, RetentionJob

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

ROLLUP_JOB = "daily_rollup"
CLEANUP_JOB = "retention_cleanup"


@dataclass
class JobState:
    """Bookkeeping for one scheduled job."""
    name: str
    runs: int = 0
    failures: int = 0
    last_run: datetime | None = None
    next_run: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "runs": self.runs,
            "failures": self.failures,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "lastError": self.last_error,
        }


def next_rollup_time(now: datetime, hour_utc: int) -> datetime:
    """First ``hour_utc``:00 UTC strictly after ``now``."""
    candidate = day_start(now) + timedelta(hours=hour_utc)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class AnalyticsScheduler:
    """Runs the rollup and cleanup jobs on their own timers."""

    def __init__(
        self,
        aggregator: RollupAggregator,
        retention: RetentionJob,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._aggregator = aggregator
        self._retention = retention
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._sleep = sleep
        self._running = False
        self._tasks: list[asyncio.Task[None]] = []
        self._jobs = {ROLLUP_JOB: JobState(ROLLUP_JOB), CLEANUP_JOB: JobState(CLEANUP_JOB)}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def job_count(self) -> int:
        return len(self._tasks)

    def job(self, name: str) -> JobState:
        return self._jobs[name]

    async def start(self) -> None:
        """Start both job loops."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._rollup_loop(), name=ROLLUP_JOB),
            asyncio.create_task(self._cleanup_loop(), name=CLEANUP_JOB),
        ]
        logger.info(
            "analytics_scheduler_started",
            rollup_hour_utc=self._config.rollup_hour_utc,
            cleanup_interval_seconds=self._config.cleanup_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop both job loops."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("analytics_scheduler_stopped")

    async def run_rollup_now(self, day: date | datetime | None = None) -> DailyMetrics | None:
        """Compute one rollup immediately; defaults to the prior UTC day."""
        target = day if day is not None else self._clock() - timedelta(days=1)
        state = self._jobs[ROLLUP_JOB]
        state.runs += 1
        state.last_run = self._clock()
        record = await self._aggregator.compute_daily_metrics(target)
        if record is None:
            state.failures += 1
            state.last_error = f"rollup failed for {day_start(target).date().isoformat()}"
        else:
            state.last_error = None
        return record

    async def run_cleanup_now(self) -> CleanupReport:
        """Run the retention job once."""
        state = self._jobs[CLEANUP_JOB]
        state.runs += 1
        state.last_run = self._clock()
        report = await self._retention.run(state.last_run)
        if report.errors:
            state.failures += 1
            state.last_error = "; ".join(f"{k}: {v}" for k, v in sorted(report.errors.items()))
        else:
            state.last_error = None
        return report

    async def _rollup_loop(self) -> None:
        state = self._jobs[ROLLUP_JOB]
        while self._running:
            now = self._clock()
            state.next_run = next_rollup_time(now, self._config.rollup_hour_utc)
            await self._sleep((state.next_run - now).total_seconds())
            try:
                await self.run_rollup_now()
            except Exception as e:
                state.failures += 1
                state.last_error = str(e)
                logger.error("scheduled_job_failed", job=ROLLUP_JOB, error=str(e))

    async def _cleanup_loop(self) -> None:
        state = self._jobs[CLEANUP_JOB]
        interval = self._config.cleanup_interval_seconds
        while self._running:
            state.next_run = self._clock() + timedelta(seconds=interval)
            await self._sleep(interval)
            try:
                await self.run_cleanup_now()
            except Exception as e:
                state.failures += 1
                state.last_error = str(e)
                logger.error("scheduled_job_failed", job=CLEANUP_JOB, error=str(e))

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "scheduledJobs": self.job_count,
            "jobs": [state.to_dict() for state in self._jobs.values()],
        }
