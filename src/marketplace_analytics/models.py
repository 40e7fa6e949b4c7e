"""
Marketplace Analytics - Data Models.

Record types for sessions, raw events and daily rollups. All raw records
join on the opaque ``session_id`` string; there is no referential
integrity between record types.

Architecture Layer: Domain
Principles: Data Transfer Objects, Immutable Raw Events, Type Safety
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any
from uuid import UUID, uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to already be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Stored timestamps are always aware UTC; naive input is read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class TableName(str, Enum):
    """Analytics table names."""
    SESSIONS = "analytics_sessions"
    PAGE_VIEWS = "analytics_page_views"
    INTERACTIONS = "analytics_interactions"
    BUSINESS_EVENTS = "analytics_business_events"
    PERFORMANCE_METRICS = "analytics_performance_metrics"
    DAILY_METRICS = "analytics_daily_metrics"


class DeviceType(str, Enum):
    """Device classes a session can be bucketed into."""
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


class InteractionCategory(str, Enum):
    """Categories of generic interactions."""
    INTERACTION = "interaction"
    CONTENT = "content"
    CONVERSION = "conversion"
    NAVIGATION = "navigation"
    SYSTEM = "system"
    ENGAGEMENT = "engagement"
    BUSINESS = "business"


# Interactions in these categories are kept for the longer business horizon.
LONG_LIVED_CATEGORIES: frozenset[InteractionCategory] = frozenset(
    {InteractionCategory.CONVERSION, InteractionCategory.BUSINESS}
)


class BusinessEventType(str, Enum):
    """Closed vocabulary of measurable business actions."""
    LISTING_VIEW = "listing_view"
    LISTING_INQUIRY = "listing_inquiry"
    DEALER_CONTACT = "dealer_contact"
    PHONE_CALL = "phone_call"
    LISTING_FAVORITE = "listing_favorite"
    SEARCH_PERFORMED = "search_performed"
    FILTER_APPLIED = "filter_applied"
    NEWS_READ = "news_read"
    FORM_SUBMISSION = "form_submission"
    USER_REGISTRATION = "user_registration"
    USER_LOGIN = "user_login"


class EntityType(str, Enum):
    """Kinds of entity a business event can point at."""
    LISTING = "listing"
    DEALER = "dealer"
    ARTICLE = "article"
    USER = "user"
    SEARCH = "search"


class AnalyticsModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class DeviceInfo(AnalyticsModel):
    """Device facts parsed from a user-agent string."""
    type: DeviceType = DeviceType.DESKTOP
    os: str = "Unknown"
    browser: str = "Unknown"
    model: str = "Unknown"


class Session(AnalyticsModel):
    """A bounded run of activity from one visitor."""
    session_id: str
    user_id: str | None = None
    start_time: UtcDatetime = Field(default_factory=utc_now)
    last_activity: UtcDatetime = Field(default_factory=utc_now)
    end_time: UtcDatetime | None = None
    is_active: bool = True
    duration: int = 0
    user_agent: str = ""
    ip: str | None = None
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    pages: list[str] = Field(default_factory=list)
    total_page_views: int = 0
    referrer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    country: str | None = None

    def touch(self, now: datetime) -> None:
        """Record activity at ``now`` and recompute the derived duration."""
        self.last_activity = now
        self.duration = max(0, int((now - self.start_time).total_seconds()))

    def close(self, now: datetime) -> None:
        """Mark the session ended."""
        self.is_active = False
        self.end_time = now

    @property
    def is_open(self) -> bool:
        return self.is_active and self.end_time is None


class PageView(AnalyticsModel):
    """One qualifying page request."""
    record_id: UUID = Field(default_factory=uuid4)
    session_id: str
    user_id: str | None = None
    page: str
    title: str | None = None
    referrer: str | None = None
    user_agent: str = ""
    ip: str | None = None
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    query: dict[str, Any] | None = None
    load_time: float | None = None
    time_on_page: float | None = None
    bounced: bool = False
    exit_page: bool = False


class Interaction(AnalyticsModel):
    """Generic UI or system event."""
    record_id: UUID = Field(default_factory=uuid4)
    session_id: str
    user_id: str | None = None
    event_type: str = Field(min_length=1, max_length=100)
    category: InteractionCategory
    page: str = "/"
    element_id: str | None = None
    element_text: str | None = None
    value: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime = Field(default_factory=utc_now)


class BusinessEventDetails(AnalyticsModel):
    """Typed context attached to a business event."""
    listing_price: float | None = None
    listing_make: str | None = None
    listing_model: str | None = None
    listing_year: int | None = None
    dealer_id: str | None = None
    search_query: str | None = None
    search_category: str | None = None
    search_results: int | None = None
    search_filters: dict[str, Any] | None = None
    contact_method: str | None = None
    phone_number: str | None = None
    form_type: str | None = None
    form_fields: list[str] | None = None
    source: str | None = None
    campaign: str | None = None
    medium: str | None = None


class BusinessEvent(AnalyticsModel):
    """A monetizable or measurable user action."""
    record_id: UUID = Field(default_factory=uuid4)
    session_id: str
    user_id: str | None = None
    event_type: BusinessEventType
    entity_id: str | None = None
    entity_type: EntityType | None = None
    value: float | None = None
    conversion_value: float = 0.0
    details: BusinessEventDetails = Field(default_factory=BusinessEventDetails)
    timestamp: UtcDatetime = Field(default_factory=utc_now)


class PerformanceTimings(AnalyticsModel):
    """Client-side timing sample; any field may be absent."""
    first_contentful_paint: float | None = None
    largest_contentful_paint: float | None = None
    first_input_delay: float | None = None
    cumulative_layout_shift: float | None = None
    load_time: float | None = None
    dom_content_loaded: float | None = None
    time_to_first_byte: float | None = None
    time_to_interactive: float | None = None
    speed_index: float | None = None


class ConnectionInfo(AnalyticsModel):
    """Network hints reported by the browser."""
    effective_type: str | None = None
    downlink: float | None = None
    rtt: float | None = None
    save_data: bool | None = None


class DeviceHints(AnalyticsModel):
    """Hardware hints reported by the browser."""
    type: str | None = None
    memory: float | None = None
    hardware_concurrency: int | None = None


class PerformanceMetric(AnalyticsModel):
    """A stored client performance sample."""
    record_id: UUID = Field(default_factory=uuid4)
    session_id: str
    page: str
    metrics: PerformanceTimings = Field(default_factory=PerformanceTimings)
    connection: ConnectionInfo = Field(default_factory=ConnectionInfo)
    device: DeviceHints = Field(default_factory=DeviceHints)
    timestamp: UtcDatetime = Field(default_factory=utc_now)


class DailyMetricValues(AnalyticsModel):
    """Scalar metrics for one day (or one raw-scan window)."""
    unique_visitors: int = 0
    total_sessions: int = 0
    total_page_views: int = 0
    avg_session_duration: int = 0
    bounce_rate: float = 0.0
    listings_viewed: int = 0
    dealer_contacts: int = 0
    phone_call_clicks: int = 0
    search_queries: int = 0
    news_articles_read: int = 0
    favorites_added: int = 0
    conversion_rate: float = 0.0
    total_conversion_value: float = 0.0
    avg_conversion_value: float = 0.0
    mobile_users: int = 0
    tablet_users: int = 0
    desktop_users: int = 0
    avg_load_time: int = 0
    avg_fcp: int = Field(default=0, alias="avgFCP")
    avg_lcp: int = Field(default=0, alias="avgLCP")
    avg_fid: int = Field(default=0, alias="avgFID")
    avg_cls: float = Field(default=0.0, alias="avgCLS")


class TopPage(AnalyticsModel):
    """Page ranked by views."""
    page: str
    views: int
    unique_visitors: int


class TopSearch(AnalyticsModel):
    """Search query ranked by frequency."""
    query: str | None
    count: int
    success_rate: float


class CountryShare(AnalyticsModel):
    """Share of visitors from one country."""
    country: str
    visitors: int
    percentage: float


class TrafficSources(AnalyticsModel):
    """Sessions per acquisition channel."""
    direct: int = 0
    organic: int = 0
    social: int = 0
    referral: int = 0
    email: int = 0
    paid: int = 0


class DailyBreakdown(AnalyticsModel):
    """Ranked breakdowns for one day.

    ``top_countries`` is only filled from country data already present on
    sessions; ``geo_available`` is False when no session carried any.
    """
    top_pages: list[TopPage] = Field(default_factory=list)
    top_searches: list[TopSearch] = Field(default_factory=list)
    top_countries: list[CountryShare] = Field(default_factory=list)
    geo_available: bool = False
    traffic_sources: TrafficSources = Field(default_factory=TrafficSources)


class DailyMetrics(AnalyticsModel):
    """Rollup for one UTC calendar day, keyed by its midnight."""
    date: UtcDatetime
    metrics: DailyMetricValues = Field(default_factory=DailyMetricValues)
    breakdown: DailyBreakdown = Field(default_factory=DailyBreakdown)


class ClientEvent(AnalyticsModel):
    """Event posted by client-side instrumentation."""
    event_type: str = Field(min_length=1, max_length=100)
    category: InteractionCategory = InteractionCategory.INTERACTION
    page: str | None = None
    element_id: str | None = None
    element_text: str | None = None
    value: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    user_id: str | None = None
    timestamp: UtcDatetime | None = None


class SearchReport(AnalyticsModel):
    """Search submitted by the listing search page."""
    query: str = Field(min_length=1, max_length=500)
    category: str = "general"
    results_count: int = Field(default=0, ge=0)
    filters: dict[str, Any] = Field(default_factory=dict)
    search_time: float = 0.0
    timestamp: UtcDatetime | None = None


class PerformanceReport(AnalyticsModel):
    """Client timing payload."""
    page: str = Field(min_length=1)
    metrics: PerformanceTimings
    connection: ConnectionInfo = Field(default_factory=ConnectionInfo)
    device: DeviceHints = Field(default_factory=DeviceHints)
    timestamp: UtcDatetime | None = None


class BusinessEventReport(AnalyticsModel):
    """Typed business event posted directly by a caller."""
    event_type: BusinessEventType
    entity_id: str | None = None
    entity_type: EntityType | None = None
    value: float | None = None
    conversion_value: float | None = None
    details: BusinessEventDetails = Field(default_factory=BusinessEventDetails)
    session_id: str | None = None
    user_id: str | None = None
    timestamp: UtcDatetime | None = None
