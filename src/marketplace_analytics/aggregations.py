"""
Marketplace Analytics - Daily Rollup Aggregation.

Computes one DailyMetrics record per UTC calendar day from raw events. The
metric derivation is a pure function shared with the dashboard's raw-scan
fallback so both query tiers use identical definitions.

Architecture Layer: Domain
Principles: Idempotent Aggregation, Pure Derivation, All-or-Nothing Replace
"""
from __future__ import annotations

import asyncio
import math
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pydantic import ValidationError
import structlog

from .models import (
    BusinessEvent,
    BusinessEventType,
    CountryShare,
    DailyBreakdown,
    DailyMetricValues,
    DailyMetrics,
    DeviceType,
    Interaction,
    PageView,
    PerformanceMetric,
    Session,
    TopSearch,
    TrafficSources,
    as_utc,
    utc_now,
)
from .repository import RepositoryError, rank_pages

if TYPE_CHECKING:
    from .repository import AnalyticsRepository

logger = structlog.get_logger(__name__)

TOP_PAGES_LIMIT = 20
TOP_SEARCHES_LIMIT = 20
TOP_COUNTRIES_LIMIT = 10
SEARCH_EVENT_TYPE = "search"


@dataclass(frozen=True)
class TimeWindow:
    """Immutable half-open UTC day window ``[start, end)``."""
    start: datetime
    end: datetime

    @classmethod
    def for_day(cls, value: date | datetime) -> TimeWindow:
        """Create the UTC day window containing given date or datetime."""
        start = day_start(value)
        return cls(start=start, end=start + timedelta(days=1))


def day_start(value: date | datetime) -> datetime:
    """Midnight UTC of the day containing ``value``."""
    if isinstance(value, datetime):
        value = as_utc(value).date()
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def round_half_up(value: float, ndigits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-ndigits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def percentage(part: int, whole: int, ndigits: int = 2) -> float:
    if whole <= 0:
        return 0.0
    return round_half_up(part / whole * 100, ndigits)


def as_number(value: Any) -> float | None:
    """Finite float from client-supplied metadata, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def mean_of(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _mean_ms(values: Sequence[float]) -> int:
    return int(round_half_up(mean_of(values)))


def _present(samples: Iterable[PerformanceMetric], field: str) -> list[float]:
    """Values of one timing field, skipping samples that lack it."""
    values = []
    for sample in samples:
        value = getattr(sample.metrics, field)
        if value is not None:
            values.append(value)
    return values


def derive_metrics(
    sessions: Sequence[Session],
    page_views: Sequence[PageView],
    business_events: Sequence[BusinessEvent],
    performance_metrics: Sequence[PerformanceMetric] = (),
) -> DailyMetricValues:
    """Derive the scalar metric set for one window of raw records."""
    unique_visitors = len({s.session_id for s in sessions})
    total_sessions = len(sessions)
    durations = [s.duration for s in sessions if s.duration > 0]
    bounced = sum(1 for s in sessions if s.total_page_views == 1)

    by_type = Counter(e.event_type for e in business_events)
    dealer_contacts = by_type[BusinessEventType.DEALER_CONTACT]
    phone_call_clicks = by_type[BusinessEventType.PHONE_CALL]

    conversion_values = [e.conversion_value for e in business_events]
    total_conversion_value = sum(conversion_values)

    devices = Counter(s.device.type for s in sessions)

    return DailyMetricValues(
        unique_visitors=unique_visitors,
        total_sessions=total_sessions,
        total_page_views=len(page_views),
        avg_session_duration=int(round_half_up(mean_of(durations))),
        bounce_rate=percentage(bounced, total_sessions),
        listings_viewed=by_type[BusinessEventType.LISTING_VIEW],
        dealer_contacts=dealer_contacts,
        phone_call_clicks=phone_call_clicks,
        search_queries=by_type[BusinessEventType.SEARCH_PERFORMED],
        news_articles_read=by_type[BusinessEventType.NEWS_READ],
        favorites_added=by_type[BusinessEventType.LISTING_FAVORITE],
        conversion_rate=percentage(dealer_contacts + phone_call_clicks, unique_visitors),
        total_conversion_value=round_half_up(total_conversion_value, 2),
        avg_conversion_value=(
            round_half_up(total_conversion_value / (dealer_contacts + phone_call_clicks), 2)
            if dealer_contacts + phone_call_clicks else 0.0
        ),
        mobile_users=devices[DeviceType.MOBILE],
        tablet_users=devices[DeviceType.TABLET],
        desktop_users=devices[DeviceType.DESKTOP],
        avg_load_time=_mean_ms(_present(performance_metrics, "load_time")),
        avg_fcp=_mean_ms(_present(performance_metrics, "first_contentful_paint")),
        avg_lcp=_mean_ms(_present(performance_metrics, "largest_contentful_paint")),
        avg_fid=_mean_ms(_present(performance_metrics, "first_input_delay")),
        avg_cls=round_half_up(mean_of(_present(performance_metrics, "cumulative_layout_shift")), 3),
    )


SEARCH_ENGINES = ("google.", "bing.", "yahoo.", "duckduckgo.", "yandex.", "baidu.", "ecosia.")
SOCIAL_NETWORKS = (
    "facebook.", "fb.", "instagram.", "twitter.", "t.co", "x.com", "linkedin.",
    "tiktok.", "youtube.", "pinterest.", "reddit.", "whatsapp.", "telegram.",
)
EMAIL_HOSTS = ("mail.", "outlook.", "webmail.")
PAID_MEDIUMS = frozenset({"cpc", "ppc", "paid", "paidsearch", "paid_search", "display", "cpm", "banner"})
SOCIAL_MEDIUMS = frozenset({"social", "social-network", "social_media", "sm"})


def _host_matches(host: str, needles: Iterable[str]) -> bool:
    return any(host == n.rstrip(".") or host.startswith(n) or f".{n}" in f".{host}" for n in needles)


def classify_traffic_source(session: Session) -> str:
    """Bucket a session into an acquisition channel from its UTM tags and referrer."""
    medium = (session.utm_medium or "").lower()
    if medium in PAID_MEDIUMS:
        return "paid"
    if medium == "email":
        return "email"
    if medium in SOCIAL_MEDIUMS:
        return "social"
    if medium == "organic":
        return "organic"
    if medium:
        return "referral"

    host = urlparse(session.referrer or "").hostname or ""
    host = host.lower().removeprefix("www.")
    if not host:
        return "direct"
    if _host_matches(host, EMAIL_HOSTS):
        return "email"
    if _host_matches(host, SEARCH_ENGINES):
        return "organic"
    if _host_matches(host, SOCIAL_NETWORKS):
        return "social"
    return "referral"


def _top_searches(interactions: Iterable[Interaction], limit: int) -> list[TopSearch]:
    counts: dict[str | None, int] = defaultdict(int)
    successes: dict[str | None, int] = defaultdict(int)
    for interaction in interactions:
        if interaction.event_type != SEARCH_EVENT_TYPE:
            continue
        query = interaction.metadata.get("query")
        key = str(query) if query is not None else None
        counts[key] += 1
        results = interaction.metadata.get("resultsCount")
        if (as_number(results) or 0.0) > 0:
            successes[key] += 1
    ranked = sorted(counts, key=lambda q: (-counts[q], q or ""))[:limit]
    return [
        TopSearch(query=q, count=counts[q], success_rate=percentage(successes[q], counts[q], 1))
        for q in ranked
    ]


def _top_countries(sessions: Sequence[Session], limit: int) -> list[CountryShare]:
    countries = Counter(s.country for s in sessions if s.country)
    known = sum(countries.values())
    ranked = sorted(countries, key=lambda c: (-countries[c], c))[:limit]
    return [
        CountryShare(country=c, visitors=countries[c], percentage=percentage(countries[c], known))
        for c in ranked
    ]


def derive_breakdown(
    sessions: Sequence[Session],
    page_views: Sequence[PageView],
    interactions: Sequence[Interaction],
) -> DailyBreakdown:
    """Derive ranked breakdowns; countries only from data sessions actually carry."""
    sources = Counter(classify_traffic_source(s) for s in sessions)
    return DailyBreakdown(
        top_pages=rank_pages(page_views, TOP_PAGES_LIMIT),
        top_searches=_top_searches(interactions, TOP_SEARCHES_LIMIT),
        top_countries=_top_countries(sessions, TOP_COUNTRIES_LIMIT),
        geo_available=any(s.country for s in sessions),
        traffic_sources=TrafficSources(**sources),
    )


class RollupAggregator:
    """Builds and stores the DailyMetrics rollup for a given day."""

    def __init__(self, repository: AnalyticsRepository, clock: Callable[[], datetime] = utc_now) -> None:
        self._repository = repository
        self._clock = clock
        self._last_run: datetime | None = None

    @property
    def last_run(self) -> datetime | None:
        return self._last_run

    async def build_daily_metrics(self, day: date | datetime) -> DailyMetrics:
        """Compute the rollup for ``day`` without storing it."""
        window = TimeWindow.for_day(day)
        sessions, page_views, interactions, business_events, performance = await asyncio.gather(
            self._repository.list_sessions(window.start, window.end),
            self._repository.list_page_views(window.start, window.end),
            self._repository.list_interactions(window.start, window.end),
            self._repository.list_business_events(window.start, window.end),
            self._repository.list_performance_metrics(window.start, window.end),
        )
        return DailyMetrics(
            date=window.start,
            metrics=derive_metrics(sessions, page_views, business_events, performance),
            breakdown=derive_breakdown(sessions, page_views, interactions),
        )

    async def compute_daily_metrics(self, day: date | datetime) -> DailyMetrics | None:
        """Compute and fully replace the rollup for ``day``; None when the run failed."""
        window = TimeWindow.for_day(day)
        try:
            record = await self.build_daily_metrics(day)
            await self._repository.replace_daily_metrics(record)
        except (RepositoryError, ValidationError) as e:
            logger.error("daily_metrics_failed", date=window.start.date().isoformat(), error=str(e))
            return None
        self._last_run = self._clock()
        logger.info(
            "daily_metrics_generated",
            date=window.start.date().isoformat(),
            sessions=record.metrics.total_sessions,
            page_views=record.metrics.total_page_views,
        )
        return record

    async def compute_range(self, start: date | datetime, days: int) -> list[DailyMetrics]:
        """Recompute ``days`` consecutive rollups starting at ``start``; failed days are skipped."""
        first = day_start(start)
        results = []
        for offset in range(days):
            record = await self.compute_daily_metrics(first + timedelta(days=offset))
            if record is not None:
                results.append(record)
        return results
