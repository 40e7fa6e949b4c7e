"""
Marketplace Analytics - Reports.

Traffic, content, performance and conversion reports computed from raw
records over the last N days, plus the page-view export. Storage errors
degrade to the empty report shape.

Architecture Layer: Application
Principles: Read-Only Queries, Arena Lookup by Key, Graceful Degradation
"""
from __future__ import annotations

import asyncio
import csv
import functools
import io
import json
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from pydantic import ValidationError
import structlog

from .aggregations import as_number, as_utc, day_start, mean_of, percentage, round_half_up
from .config import PerformanceConfig
from .models import PerformanceMetric, utc_now
from .repository import AnalyticsRepository, RepositoryError, rank_pages

logger = structlog.get_logger(__name__)

T = TypeVar("T")

POPULAR_PAGES_LIMIT = 50
EXPORT_LIMIT = 10000
EXPORT_HEADERS = ("Page", "Timestamp", "Session ID", "User Agent", "Device", "Country")
UNKNOWN = "unknown"


class ExportFormat(str, Enum):
    """Output formats for the page-view export."""
    CSV = "csv"
    JSON = "json"


@dataclass(frozen=True)
class ExportResult:
    """Rendered export body with its download metadata."""
    content: str
    media_type: str
    filename: str
    rows: int


def degrade_to(empty: Callable[..., Any]) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Coroutine[Any, Any, T]]]:
    """Return ``empty(*args)`` instead of raising when storage fails."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Coroutine[Any, Any, T]]:
        @functools.wraps(func)
        async def wrapper(self: ReportService, *args: Any, **kwargs: Any) -> T:
            try:
                return await func(self, *args, **kwargs)
            except (RepositoryError, ValidationError) as e:
                logger.error("report_query_failed", report=func.__name__, error=str(e))
                return empty(self, *args, **kwargs)
        return wrapper
    return decorator


def _average_field(samples: list[PerformanceMetric], field: str, ndigits: int = 0) -> float | int | None:
    values = [v for v in (getattr(s.metrics, field) for s in samples) if v is not None]
    if not values:
        return None
    mean = round_half_up(mean_of(values), ndigits)
    return int(mean) if ndigits == 0 else mean


class ReportService:
    """Service for generating analytics reports from raw records."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        performance: PerformanceConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._semaphore = asyncio.Semaphore((performance or PerformanceConfig()).max_concurrent_queries)
        self._stats = {"reports_generated": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def _window(self, days: int) -> tuple[datetime, datetime]:
        now = self._clock()
        return now - timedelta(days=days), now

    async def _limited(self, coro: Awaitable[T]) -> T:
        async with self._semaphore:
            return await coro

    def _empty_traffic(self, days: int = 30) -> dict[str, Any]:
        return {"trafficOverTime": [], "deviceBreakdown": {}, "geographicData": [], "geoAvailable": False}

    @degrade_to(_empty_traffic)
    async def traffic_over_time(self, days: int = 30) -> dict[str, Any]:
        """Per-UTC-day page views and distinct sessions, plus device and country breakdowns."""
        start, end = self._window(days)
        page_views, sessions = await asyncio.gather(
            self._limited(self._repository.list_page_views(start, end)),
            self._limited(self._repository.list_sessions(start, end)),
        )
        views: dict[datetime, int] = defaultdict(int)
        visitors: dict[datetime, set[str]] = defaultdict(set)
        for pv in page_views:
            day = day_start(pv.timestamp)
            views[day] += 1
            visitors[day].add(pv.session_id)

        countries = Counter(s.country for s in sessions if s.country)
        self._stats["reports_generated"] += 1
        return {
            "trafficOverTime": [
                {
                    "date": day.date().isoformat(),
                    "pageViews": views[day],
                    "uniqueVisitors": len(visitors[day]),
                    "sessions": len(visitors[day]),
                }
                for day in sorted(views)
            ],
            "deviceBreakdown": dict(Counter(s.device.type.value for s in sessions)),
            "geographicData": [
                {"country": country, "uniqueVisitors": count}
                for country, count in countries.most_common()
            ],
            "geoAvailable": bool(countries),
        }

    def _empty_content(self, days: int = 30) -> dict[str, Any]:
        return {"popularPages": [], "searchAnalytics": []}

    @degrade_to(_empty_content)
    async def content_report(self, days: int = 30) -> dict[str, Any]:
        """Popular pages and per-query search analytics."""
        start, end = self._window(days)
        page_views, searches = await asyncio.gather(
            self._limited(self._repository.list_page_views(start, end)),
            self._limited(self._repository.list_interactions(start, end, event_types=["search"])),
        )
        grouped: dict[str, list[float]] = defaultdict(list)
        for interaction in searches:
            query = interaction.metadata.get("query")
            results = interaction.metadata.get("resultsCount")
            grouped[str(query) if query is not None else ""].append(
                as_number(results) or 0.0
            )
        search_analytics = [
            {
                "query": query,
                "searches": len(results),
                "avgResults": int(round_half_up(mean_of(results))),
                "successRate": percentage(sum(1 for r in results if r > 0), len(results), 1),
            }
            for query, results in grouped.items()
        ]
        search_analytics.sort(key=lambda row: (-row["searches"], row["query"]))
        self._stats["reports_generated"] += 1
        return {
            "popularPages": [p.model_dump(by_alias=True) for p in rank_pages(page_views, POPULAR_PAGES_LIMIT)],
            "searchAnalytics": search_analytics,
        }

    def _empty_performance(self, days: int = 7) -> list[dict[str, Any]]:
        return []

    @degrade_to(_empty_performance)
    async def performance_report(self, days: int = 7) -> list[dict[str, Any]]:
        """Per-page timing averages; samples missing a field are skipped for that field."""
        start, end = self._window(days)
        samples = await self._limited(self._repository.list_performance_metrics(start, end))
        by_page: dict[str, list[PerformanceMetric]] = defaultdict(list)
        for sample in samples:
            by_page[sample.page].append(sample)
        rows = [
            {
                "page": page,
                "avgLoadTime": _average_field(group, "load_time"),
                "avgFCP": _average_field(group, "first_contentful_paint"),
                "avgLCP": _average_field(group, "largest_contentful_paint"),
                "avgFID": _average_field(group, "first_input_delay"),
                "avgCLS": _average_field(group, "cumulative_layout_shift", 3),
                "sampleSize": len(group),
            }
            for page, group in by_page.items()
        ]
        rows.sort(key=lambda row: (-row["sampleSize"], row["page"]))
        self._stats["reports_generated"] += 1
        return rows

    def _empty_funnel(self, days: int = 30) -> list[dict[str, Any]]:
        return []

    @degrade_to(_empty_funnel)
    async def conversion_funnel(self, days: int = 30) -> list[dict[str, Any]]:
        """Business events grouped by type with count and total conversion value."""
        start, end = self._window(days)
        events = await self._limited(self._repository.list_business_events(start, end))
        counts: Counter[str] = Counter()
        values: dict[str, float] = defaultdict(float)
        for event in events:
            counts[event.event_type.value] += 1
            values[event.event_type.value] += event.conversion_value
        self._stats["reports_generated"] += 1
        return [
            {"eventType": event_type, "count": count, "totalValue": round_half_up(values[event_type], 2)}
            for event_type, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    async def export_page_views(self, days: int = 30, fmt: ExportFormat = ExportFormat.CSV) -> ExportResult:
        """Newest page views joined by session id to device type and country."""
        start, end = self._window(days)
        try:
            page_views = await self._repository.list_page_views(start, end, limit=EXPORT_LIMIT, newest_first=True)
            sessions = await self._repository.get_sessions({pv.session_id for pv in page_views})
        except (RepositoryError, ValidationError) as e:
            logger.error("report_query_failed", report="export_page_views", error=str(e))
            page_views, sessions = [], {}

        rows = []
        for pv in page_views:
            session = sessions.get(pv.session_id)
            rows.append({
                "page": pv.page,
                "timestamp": as_utc(pv.timestamp).isoformat(),
                "sessionId": pv.session_id,
                "userAgent": pv.user_agent,
                "device": session.device.type.value if session else UNKNOWN,
                "country": (session.country if session and session.country else UNKNOWN),
            })

        stamp = end.date().isoformat()
        logger.info("page_views_exported", rows=len(rows), format=fmt.value)
        if fmt == ExportFormat.JSON:
            return ExportResult(json.dumps(rows), "application/json", f"analytics-{stamp}.json", len(rows))
        return ExportResult(_to_csv(rows), "text/csv", f"analytics-{stamp}.csv", len(rows))


def _to_csv(rows: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for row in rows:
        writer.writerow([
            row["page"], row["timestamp"], row["sessionId"], row["userAgent"], row["device"], row["country"],
        ])
    return buffer.getvalue()
