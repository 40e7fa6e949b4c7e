"""
Marketplace Analytics - Event Recorders.

Append-only writers for page views, interactions, business events and
performance samples. Every write is best-effort: failures are logged and
reported as ``False``, never raised to the request that triggered them.

Architecture Layer: Application
Principles: Fire-and-Forget Writes, Graceful Degradation, Sampling
"""
from __future__ import annotations

import asyncio
import functools
import traceback
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime
from http import HTTPStatus
from typing import Any

from pydantic import ValidationError
import structlog

from .aggregations import as_number
from .config import PerformanceConfig, SamplingConfig, TrackingConfig
from .models import (
    BusinessEvent,
    BusinessEventDetails,
    BusinessEventReport,
    BusinessEventType,
    ClientEvent,
    EntityType,
    Interaction,
    InteractionCategory,
    PageView,
    PerformanceMetric,
    PerformanceReport,
    SearchReport,
    utc_now,
)
from .repository import AnalyticsRepository, RepositoryError
from .tracking import Clock, RequestFacts, SessionHandle

logger = structlog.get_logger(__name__)

ANONYMOUS_SESSION = "anonymous"

# Client event types that also produce a business event.
BUSINESS_EVENT_MAP: dict[str, BusinessEventType] = {
    "listing_view": BusinessEventType.LISTING_VIEW,
    "dealer_contact": BusinessEventType.DEALER_CONTACT,
    "phone_call": BusinessEventType.PHONE_CALL,
    "listing_favorite": BusinessEventType.LISTING_FAVORITE,
    "search": BusinessEventType.SEARCH_PERFORMED,
    "news_read": BusinessEventType.NEWS_READ,
    "form_submission": BusinessEventType.FORM_SUBMISSION,
    "user_registration": BusinessEventType.USER_REGISTRATION,
}

ENTITY_TYPES: dict[BusinessEventType, EntityType] = {
    BusinessEventType.LISTING_VIEW: EntityType.LISTING,
    BusinessEventType.LISTING_FAVORITE: EntityType.LISTING,
    BusinessEventType.DEALER_CONTACT: EntityType.DEALER,
    BusinessEventType.NEWS_READ: EntityType.ARTICLE,
    BusinessEventType.SEARCH_PERFORMED: EntityType.SEARCH,
    BusinessEventType.USER_REGISTRATION: EntityType.USER,
}

CONVERSION_VALUES: dict[BusinessEventType, float] = {
    BusinessEventType.DEALER_CONTACT: 50.0,
    BusinessEventType.PHONE_CALL: 75.0,
    BusinessEventType.LISTING_VIEW: 5.0,
    BusinessEventType.LISTING_FAVORITE: 10.0,
    BusinessEventType.SEARCH_PERFORMED: 2.0,
    BusinessEventType.NEWS_READ: 3.0,
}
DEFAULT_CONVERSION_VALUE = 1.0

_DETAIL_KEYS: dict[str, str] = {
    "price": "listing_price",
    "make": "listing_make",
    "model": "listing_model",
    "year": "listing_year",
    "dealerId": "dealer_id",
    "query": "search_query",
    "contactMethod": "contact_method",
    "phoneNumber": "phone_number",
    "formType": "form_type",
    "formFields": "form_fields",
    "campaign": "campaign",
    "medium": "medium",
}


def conversion_value_for(event_type: BusinessEventType) -> float:
    return CONVERSION_VALUES.get(event_type, DEFAULT_CONVERSION_VALUE)


def best_effort(event: str) -> Callable[[Callable[..., Awaitable[bool]]], Callable[..., Coroutine[Any, Any, bool]]]:
    """Log storage and validation failures under ``event`` and return False."""
    def decorator(func: Callable[..., Awaitable[bool]]) -> Callable[..., Coroutine[Any, Any, bool]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> bool:
            try:
                return await func(*args, **kwargs)
            except (RepositoryError, ValidationError) as e:
                logger.warning(event, error=str(e), error_type=type(e).__name__)
                return False
        return wrapper
    return decorator


class Sampler:
    """Deterministic counter-based sampler."""

    def __init__(self, config: SamplingConfig | None = None) -> None:
        config = config or SamplingConfig()
        self._rate = config.rate if config.enabled else 1.0
        self._counter = 0

    @property
    def rate(self) -> float:
        return self._rate

    def should_keep(self) -> bool:
        if self._rate >= 1.0:
            return True
        if self._rate <= 0.0:
            return False
        self._counter += 1
        return self._counter % int(1 / self._rate) == 0


class BackgroundDispatcher:
    """Runs writes off the response path with a timeout, keeping task references."""

    def __init__(self, timeout_seconds: float) -> None:
        self._timeout = timeout_seconds
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stats = {"dispatched": 0, "failed": 0, "timed_out": 0}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def dispatch(self, coro: Coroutine[Any, Any, Any], name: str = "analytics_write") -> asyncio.Task[Any]:
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._stats["dispatched"] += 1
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            self._stats["timed_out"] += 1
            logger.warning("analytics_write_timeout", write=name, timeout_seconds=self._timeout)
        except Exception as e:
            self._stats["failed"] += 1
            logger.error("analytics_write_failed", write=name, error=str(e))

    async def drain(self) -> None:
        """Wait for every in-flight write to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class EventRecorder:
    """Writes raw analytics records to the repository."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        tracking: TrackingConfig | None = None,
        sampling: SamplingConfig | None = None,
        performance: PerformanceConfig | None = None,
        production: bool = False,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._tracking = tracking or TrackingConfig()
        self._batch_size = (performance or PerformanceConfig()).batch_size
        self._sampler = Sampler(sampling)
        self._production = production
        self._clock = clock

    def is_page_request(self, facts: RequestFacts) -> bool:
        return facts.method.upper() == "GET" and not facts.path.startswith(self._tracking.api_prefix)

    @best_effort("page_view_tracking_failed")
    async def record_page_view(self, handle: SessionHandle, facts: RequestFacts) -> bool:
        """Append the path to the session and store a page view; two separate writes.

        Sampling drops only the page view record; the session page count
        always advances.
        """
        if not self.is_page_request(facts):
            return False
        now = self._clock()
        await self._repository.append_session_page(handle.session_id, facts.path, now)
        if not self._sampler.should_keep():
            return False
        page_view = PageView(
            session_id=handle.session_id,
            user_id=facts.user_id,
            page=facts.path,
            title=facts.query.get("title"),
            referrer=facts.referrer,
            user_agent=facts.user_agent,
            ip=facts.client_ip,
            timestamp=now,
            query=dict(facts.query) or None,
        )
        await self._repository.insert_page_view(page_view)
        return True

    @best_effort("interaction_tracking_failed")
    async def record_interaction(
        self,
        session_id: str,
        event_type: str,
        category: InteractionCategory,
        page: str = "/",
        user_id: str | None = None,
        element_id: str | None = None,
        element_text: str | None = None,
        value: float | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
        sampled: bool = True,
    ) -> bool:
        if sampled and not self._sampler.should_keep():
            return False
        interaction = Interaction(
            session_id=session_id,
            user_id=user_id,
            event_type=event_type,
            category=category,
            page=page,
            element_id=element_id,
            element_text=element_text,
            value=value,
            metadata=metadata or {},
            timestamp=timestamp or self._clock(),
        )
        await self._repository.insert_interaction(interaction)
        return True

    async def record_api_call(
        self, handle: SessionHandle, facts: RequestFacts, status_code: int, response_time_ms: float,
    ) -> bool:
        """System interaction describing one internal API response."""
        return await self.record_interaction(
            handle.session_id,
            "api_call",
            InteractionCategory.SYSTEM,
            page=facts.path,
            user_id=facts.user_id,
            metadata={
                "method": facts.method,
                "endpoint": facts.path,
                "statusCode": status_code,
                "responseTime": round(response_time_ms, 2),
                "userAgent": facts.user_agent,
                "hasAuth": facts.has_auth,
            },
        )

    async def record_error(
        self, handle: SessionHandle, facts: RequestFacts, status_code: int, exc: BaseException | None = None,
    ) -> bool:
        """System interaction for a 4xx/5xx response; errors are never sampled."""
        if status_code < 400:
            return False
        if exc is not None:
            error_type = type(exc).__name__
            message = str(exc) or error_type
        else:
            error_type = "ServerError" if status_code >= 500 else "ClientError"
            message = _status_phrase(status_code)
        metadata: dict[str, Any] = {
            "errorType": error_type,
            "errorMessage": message[: self._tracking.max_error_message_length],
            "statusCode": status_code,
            "method": facts.method,
            "query": dict(facts.query),
        }
        if exc is not None and not self._production:
            metadata["stack"] = "".join(traceback.format_exception(exc))
        return await self.record_interaction(
            handle.session_id,
            "error",
            InteractionCategory.SYSTEM,
            page=facts.path,
            user_id=facts.user_id,
            metadata=metadata,
            sampled=False,
        )

    @best_effort("business_event_tracking_failed")
    async def record_business_event(
        self,
        session_id: str,
        event_type: BusinessEventType,
        user_id: str | None = None,
        entity_id: str | None = None,
        entity_type: EntityType | None = None,
        value: float | None = None,
        conversion_value: float = 0.0,
        details: BusinessEventDetails | None = None,
        timestamp: datetime | None = None,
    ) -> bool:
        event = BusinessEvent(
            session_id=session_id,
            user_id=user_id,
            event_type=event_type,
            entity_id=entity_id,
            entity_type=entity_type,
            value=value,
            conversion_value=conversion_value,
            details=details or BusinessEventDetails(),
            timestamp=timestamp or self._clock(),
        )
        await self._repository.insert_business_event(event)
        logger.debug("business_event_recorded", event_type=event_type.value, session_id=session_id)
        return True

    @best_effort("performance_tracking_failed")
    async def record_performance(self, session_id: str, report: PerformanceReport) -> bool:
        metric = PerformanceMetric(
            session_id=session_id,
            page=report.page,
            metrics=report.metrics,
            connection=report.connection,
            device=report.device,
            timestamp=report.timestamp or self._clock(),
        )
        await self._repository.insert_performance_metric(metric)
        return True

    @best_effort("batch_tracking_failed")
    async def record_batch(
        self, events: list[ClientEvent], session_id: str | None = None, user_id: str | None = None,
        default_page: str = "/",
    ) -> bool:
        """Bulk-insert client events as interactions, in chunks of the configured batch size."""
        now = self._clock()
        interactions = [
            Interaction(
                session_id=event.session_id or session_id or ANONYMOUS_SESSION,
                user_id=event.user_id or user_id,
                event_type=event.event_type,
                category=event.category,
                page=event.page or default_page,
                element_id=event.element_id,
                element_text=event.element_text,
                value=event.value,
                metadata=event.metadata,
                timestamp=event.timestamp or now,
            )
            for event in events
        ]
        stored = 0
        for start in range(0, len(interactions), self._batch_size):
            stored += await self._repository.insert_interactions_batch(interactions[start:start + self._batch_size])
        logger.info("event_batch_recorded", count=stored)
        return True

    async def track_client_event(
        self, event: ClientEvent, facts: RequestFacts | None = None, session_id: str | None = None,
    ) -> bool:
        """Store a client event; business-relevant types also produce a business event."""
        sid = event.session_id or session_id or ANONYMOUS_SESSION
        user_id = event.user_id or (facts.user_id if facts else None)
        referrer = facts.referrer if facts else None
        page = event.page or referrer or "/"
        metadata = dict(event.metadata)
        if facts is not None:
            metadata.setdefault("userAgent", facts.user_agent)
            metadata.setdefault("ip", facts.client_ip)
            metadata.setdefault("referrer", referrer)
        stored = await self.record_interaction(
            sid, event.event_type, event.category, page=page, user_id=user_id,
            element_id=event.element_id, element_text=event.element_text,
            value=event.value, metadata=metadata, timestamp=event.timestamp,
        )
        business_type = BUSINESS_EVENT_MAP.get(event.event_type)
        if business_type is None:
            return stored
        return await self.record_business_event(
            sid,
            business_type,
            user_id=user_id,
            entity_id=_entity_id(event.metadata),
            entity_type=ENTITY_TYPES.get(business_type),
            value=as_number(event.metadata.get("price", event.metadata.get("value", event.value))),
            conversion_value=conversion_value_for(business_type),
            details=_details_from_metadata(event.metadata, source=page),
            timestamp=event.timestamp,
        )

    async def track_search(
        self, search: SearchReport, session_id: str, facts: RequestFacts | None = None,
    ) -> bool:
        """Store a search interaction plus a ``search_performed`` business event."""
        user_id = facts.user_id if facts else None
        referrer = facts.referrer if facts else None
        metadata = {
            "query": search.query,
            "category": search.category,
            "resultsCount": search.results_count,
            "filters": search.filters,
            "searchTime": search.search_time,
            "hasResults": search.results_count > 0,
        }
        if facts is not None:
            metadata["userAgent"] = facts.user_agent
        stored = await self.record_interaction(
            session_id, "search", InteractionCategory.NAVIGATION, page=referrer or "/",
            user_id=user_id, metadata=metadata, timestamp=search.timestamp, sampled=False,
        )
        recorded = await self.record_business_event(
            session_id,
            BusinessEventType.SEARCH_PERFORMED,
            user_id=user_id,
            entity_type=EntityType.SEARCH,
            details=BusinessEventDetails(
                search_query=search.query,
                search_category=search.category,
                search_results=search.results_count,
                search_filters=search.filters,
                source=referrer,
            ),
            timestamp=search.timestamp,
        )
        return stored and recorded

    async def track_business_report(self, report: BusinessEventReport, session_id: str) -> bool:
        conversion_value = report.conversion_value
        if conversion_value is None:
            conversion_value = conversion_value_for(report.event_type)
        return await self.record_business_event(
            report.session_id or session_id,
            report.event_type,
            user_id=report.user_id,
            entity_id=report.entity_id,
            entity_type=report.entity_type or ENTITY_TYPES.get(report.event_type),
            value=report.value,
            conversion_value=conversion_value,
            details=report.details,
            timestamp=report.timestamp,
        )


def _status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return f"HTTP {status_code}"


def _entity_id(metadata: dict[str, Any]) -> str | None:
    for key in ("listingId", "dealerId", "articleId", "entityId"):
        if metadata.get(key):
            return str(metadata[key])
    return None


def _details_from_metadata(metadata: dict[str, Any], source: str | None) -> BusinessEventDetails:
    """Lift known metadata keys into typed details; unknown keys are dropped."""
    fields: dict[str, Any] = {"source": source}
    for key, attr in _DETAIL_KEYS.items():
        if metadata.get(key) is not None:
            fields[attr] = metadata[key]
    try:
        return BusinessEventDetails(**fields)
    except ValidationError:
        logger.debug("business_event_details_dropped", keys=sorted(fields))
        return BusinessEventDetails(source=source)
