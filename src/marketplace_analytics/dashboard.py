"""
Marketplace Analytics - Dashboard Query.

Two-tier query: answer from stored daily rollups when any exist for the
window, otherwise scan raw sessions, page views and business events and
derive the same metric set with :func:`derive_metrics`.

Architecture Layer: Application
Principles: Rollup-First Reads, Shared Metric Definitions, Graceful Degradation
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
import structlog

from .aggregations import day_start, derive_metrics, round_half_up
from .config import PerformanceConfig
from .models import DailyMetricValues, DailyMetrics, utc_now
from .repository import AnalyticsRepository, RepositoryError

logger = structlog.get_logger(__name__)

SOURCE_ROLLUP = "rollup"
SOURCE_RAW = "raw"
SOURCE_EMPTY = "empty"

# Rollup fields averaged across days; every other numeric field is summed.
AVERAGED_FIELDS = ("avg_session_duration", "bounce_rate", "conversion_rate")
SUMMED_FIELDS = (
    "unique_visitors", "total_sessions", "total_page_views",
    "listings_viewed", "dealer_contacts", "phone_call_clicks", "search_queries",
    "news_articles_read", "favorites_added", "total_conversion_value",
    "mobile_users", "tablet_users", "desktop_users",
)


def combine_rollups(records: Sequence[DailyMetrics]) -> DailyMetricValues:
    """Sum counters and take the arithmetic mean of per-day averages."""
    combined: dict[str, Any] = {}
    for name in SUMMED_FIELDS:
        combined[name] = sum(getattr(r.metrics, name) for r in records)
    combined["total_conversion_value"] = round_half_up(combined["total_conversion_value"], 2)
    for name in AVERAGED_FIELDS:
        mean = sum(getattr(r.metrics, name) for r in records) / len(records)
        combined[name] = int(round_half_up(mean)) if name == "avg_session_duration" else round_half_up(mean, 2)
    return DailyMetricValues(**combined)


def dashboard_shape(values: DailyMetricValues, source: str, days: int, start: datetime, end: datetime) -> dict[str, Any]:
    return {
        "overview": {
            "uniqueVisitors": values.unique_visitors,
            "pageViews": values.total_page_views,
            "sessions": values.total_sessions,
            "avgSessionDuration": values.avg_session_duration,
            "bounceRate": values.bounce_rate,
        },
        "content": {
            "listingsViewed": values.listings_viewed,
            "articlesRead": values.news_articles_read,
            "searchQueries": values.search_queries,
        },
        "conversions": {
            "dealerContacts": values.dealer_contacts,
            "phoneCallClicks": values.phone_call_clicks,
            "favoritesAdded": values.favorites_added,
            "conversionRate": values.conversion_rate,
            "totalConversionValue": values.total_conversion_value,
        },
        "breakdown": {
            "devices": {
                "mobile": values.mobile_users,
                "tablet": values.tablet_users,
                "desktop": values.desktop_users,
            },
        },
        "source": source,
        "period": {"days": days, "start": start.isoformat(), "end": end.isoformat()},
    }


class DashboardQueryService:
    """Aggregated dashboard metrics over the last N days."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        performance: PerformanceConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        performance = performance or PerformanceConfig()
        self._caching = performance.enable_caching
        self._cache_ttl = timedelta(seconds=performance.cache_ttl_seconds)
        self._clock = clock
        self._cache: dict[int, tuple[datetime, dict[str, Any]]] = {}
        self._stats = {"queries": 0, "cache_hits": 0, "rollup": 0, "raw": 0, "empty": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("dashboard_cache_cleared")

    async def get_dashboard(self, days: int = 30, now: datetime | None = None, use_cache: bool = True) -> dict[str, Any]:
        now = now or self._clock()
        self._stats["queries"] += 1
        if self._caching and use_cache:
            cached = self._cache.get(days)
            if cached is not None and cached[0] > now:
                self._stats["cache_hits"] += 1
                return cached[1]

        result = await self._query(days, now)
        self._stats[result["source"]] += 1
        if self._caching and result["source"] != SOURCE_EMPTY:
            self._cache[days] = (now + self._cache_ttl, result)
        return result

    async def _query(self, days: int, now: datetime) -> dict[str, Any]:
        rollup_start = day_start(now - timedelta(days=days))
        raw_start = now - timedelta(days=days)
        try:
            rollups = await self._repository.list_daily_metrics(rollup_start, now)
            if rollups:
                logger.debug("dashboard_from_rollups", days=days, rollups=len(rollups))
                return dashboard_shape(combine_rollups(rollups), SOURCE_ROLLUP, days, rollup_start, now)

            sessions, page_views, business_events = await asyncio.gather(
                self._repository.list_sessions(raw_start, now),
                self._repository.list_page_views(raw_start, now),
                self._repository.list_business_events(raw_start, now),
            )
        except (RepositoryError, ValidationError) as e:
            logger.error("dashboard_query_failed", days=days, error=str(e))
            return dashboard_shape(DailyMetricValues(), SOURCE_EMPTY, days, raw_start, now)

        logger.debug("dashboard_from_raw", days=days, sessions=len(sessions))
        values = derive_metrics(sessions, page_views, business_events)
        return dashboard_shape(values, SOURCE_RAW, days, raw_start, now)
