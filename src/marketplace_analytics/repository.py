"""
Marketplace Analytics - Record Store.

Repository pattern over the six analytics record types. Records are looked
up by key (``session_id``, rollup ``date``); there are no joins and no
referential integrity between record types.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Collection
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from .models import (
    BusinessEvent,
    DailyMetrics,
    Interaction,
    InteractionCategory,
    PageView,
    PerformanceMetric,
    Session,
    TableName,
    TopPage,
)

if TYPE_CHECKING:
    from .config import DatabaseConfig

logger = structlog.get_logger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""


class RepositoryConnectionError(RepositoryError):
    """Raised when connection to storage fails."""


class DuplicateKeyError(RepositoryError):
    """Raised when a unique key (session id, rollup date) already exists."""


class QueryError(RepositoryError):
    """Raised when a query fails."""


def rank_pages(page_views: Collection[PageView], limit: int) -> list[TopPage]:
    """Group page views by path, most viewed first, with distinct sessions."""
    views: dict[str, int] = {}
    visitors: dict[str, set[str]] = {}
    for pv in page_views:
        views[pv.page] = views.get(pv.page, 0) + 1
        visitors.setdefault(pv.page, set()).add(pv.session_id)
    ranked = sorted(views, key=lambda page: (-views[page], page))[:limit]
    return [
        TopPage(page=page, views=views[page], unique_visitors=len(visitors[page]))
        for page in ranked
    ]


class AnalyticsRepository(ABC):
    """Abstract base class for the analytics record store."""

    @abstractmethod
    async def connect(self) -> None: ...
    @abstractmethod
    async def disconnect(self) -> None: ...
    @abstractmethod
    async def health_check(self) -> bool: ...

    # Sessions
    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None: ...
    @abstractmethod
    async def get_active_session(self, session_id: str) -> Session | None: ...
    @abstractmethod
    async def get_sessions(self, session_ids: Collection[str]) -> dict[str, Session]: ...
    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        """Insert a new session; raises DuplicateKeyError if the id exists."""
    @abstractmethod
    async def save_session(self, session: Session) -> None: ...
    @abstractmethod
    async def append_session_page(self, session_id: str, page: str, now: datetime) -> None: ...
    @abstractmethod
    async def close_idle_sessions(self, idle_before: datetime, now: datetime) -> int: ...
    @abstractmethod
    async def list_sessions(self, start_time: datetime, end_time: datetime) -> list[Session]: ...
    @abstractmethod
    async def count_active_sessions(self, active_since: datetime) -> int: ...

    # Raw events
    @abstractmethod
    async def insert_page_view(self, page_view: PageView) -> None: ...
    @abstractmethod
    async def insert_interaction(self, interaction: Interaction) -> None: ...
    @abstractmethod
    async def insert_interactions_batch(self, interactions: list[Interaction]) -> int: ...
    @abstractmethod
    async def insert_business_event(self, event: BusinessEvent) -> None: ...
    @abstractmethod
    async def insert_performance_metric(self, metric: PerformanceMetric) -> None: ...
    @abstractmethod
    async def list_page_views(
        self, start_time: datetime, end_time: datetime,
        limit: int | None = None, newest_first: bool = False,
    ) -> list[PageView]: ...
    @abstractmethod
    async def list_interactions(
        self, start_time: datetime, end_time: datetime,
        event_types: Collection[str] | None = None,
        limit: int | None = None, newest_first: bool = False,
    ) -> list[Interaction]: ...
    @abstractmethod
    async def list_business_events(self, start_time: datetime, end_time: datetime) -> list[BusinessEvent]: ...
    @abstractmethod
    async def list_performance_metrics(self, start_time: datetime, end_time: datetime) -> list[PerformanceMetric]: ...
    @abstractmethod
    async def top_pages(self, start_time: datetime, end_time: datetime, limit: int) -> list[TopPage]: ...

    # Rollups
    @abstractmethod
    async def replace_daily_metrics(self, record: DailyMetrics) -> None:
        """Insert or fully replace the rollup stored under ``record.date``."""
    @abstractmethod
    async def get_daily_metrics(self, date: datetime) -> DailyMetrics | None: ...
    @abstractmethod
    async def list_daily_metrics(self, start_time: datetime, end_time: datetime) -> list[DailyMetrics]: ...

    # Housekeeping
    @abstractmethod
    async def count(self, table: TableName, since: datetime | None = None) -> int: ...
    @abstractmethod
    async def delete_before(
        self, table: TableName, cutoff: datetime,
        include_categories: Collection[InteractionCategory] | None = None,
        exclude_categories: Collection[InteractionCategory] | None = None,
    ) -> int:
        """Delete records whose timestamp is at or before ``cutoff``."""


class InMemoryRepository(AnalyticsRepository):
    """In-memory implementation for testing and development."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._page_views: list[PageView] = []
        self._interactions: list[Interaction] = []
        self._business_events: list[BusinessEvent] = []
        self._performance_metrics: list[PerformanceMetric] = []
        self._daily_metrics: dict[datetime, DailyMetrics] = {}
        self._connected = False
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._connected = True
        logger.info("inmemory_repository_connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("inmemory_repository_disconnected")

    async def health_check(self) -> bool:
        return self._connected

    async def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_sessions(self, session_ids: Collection[str]) -> dict[str, Session]:
        return {
            sid: self._sessions[sid].model_copy(deep=True)
            for sid in set(session_ids) if sid in self._sessions
        }

    async def get_active_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None or not session.is_open:
            return None
        return session.model_copy(deep=True)

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            if session.session_id in self._sessions:
                raise DuplicateKeyError(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def save_session(self, session: Session) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session.model_copy(deep=True)

    async def append_session_page(self, session_id: str, page: str, now: datetime) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session.pages.append(page)
            session.total_page_views += 1
            session.touch(now)

    async def close_idle_sessions(self, idle_before: datetime, now: datetime) -> int:
        closed = 0
        async with self._lock:
            for session in self._sessions.values():
                if session.is_active and session.last_activity <= idle_before:
                    session.close(now)
                    closed += 1
        return closed

    async def list_sessions(self, start_time: datetime, end_time: datetime) -> list[Session]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if start_time <= s.start_time < end_time
        ]

    async def count_active_sessions(self, active_since: datetime) -> int:
        return sum(
            1 for s in self._sessions.values()
            if s.is_active and s.last_activity >= active_since
        )

    async def insert_page_view(self, page_view: PageView) -> None:
        async with self._lock:
            self._page_views.append(page_view)

    async def insert_interaction(self, interaction: Interaction) -> None:
        async with self._lock:
            self._interactions.append(interaction)

    async def insert_interactions_batch(self, interactions: list[Interaction]) -> int:
        async with self._lock:
            self._interactions.extend(interactions)
            return len(interactions)

    async def insert_business_event(self, event: BusinessEvent) -> None:
        async with self._lock:
            self._business_events.append(event)

    async def insert_performance_metric(self, metric: PerformanceMetric) -> None:
        async with self._lock:
            self._performance_metrics.append(metric)

    async def list_page_views(
        self, start_time: datetime, end_time: datetime,
        limit: int | None = None, newest_first: bool = False,
    ) -> list[PageView]:
        results = [p for p in self._page_views if start_time <= p.timestamp < end_time]
        results.sort(key=lambda p: p.timestamp, reverse=newest_first)
        return results[:limit] if limit is not None else results

    async def list_interactions(
        self, start_time: datetime, end_time: datetime,
        event_types: Collection[str] | None = None,
        limit: int | None = None, newest_first: bool = False,
    ) -> list[Interaction]:
        results = [
            i for i in self._interactions
            if start_time <= i.timestamp < end_time
            and (event_types is None or i.event_type in event_types)
        ]
        results.sort(key=lambda i: i.timestamp, reverse=newest_first)
        return results[:limit] if limit is not None else results

    async def list_business_events(self, start_time: datetime, end_time: datetime) -> list[BusinessEvent]:
        results = [e for e in self._business_events if start_time <= e.timestamp < end_time]
        return sorted(results, key=lambda e: e.timestamp)

    async def list_performance_metrics(self, start_time: datetime, end_time: datetime) -> list[PerformanceMetric]:
        results = [m for m in self._performance_metrics if start_time <= m.timestamp < end_time]
        return sorted(results, key=lambda m: m.timestamp)

    async def top_pages(self, start_time: datetime, end_time: datetime, limit: int) -> list[TopPage]:
        return rank_pages(await self.list_page_views(start_time, end_time), limit)

    async def replace_daily_metrics(self, record: DailyMetrics) -> None:
        async with self._lock:
            self._daily_metrics[record.date] = record.model_copy(deep=True)

    async def get_daily_metrics(self, date: datetime) -> DailyMetrics | None:
        record = self._daily_metrics.get(date)
        return record.model_copy(deep=True) if record else None

    async def list_daily_metrics(self, start_time: datetime, end_time: datetime) -> list[DailyMetrics]:
        results = [
            r.model_copy(deep=True) for d, r in self._daily_metrics.items()
            if start_time <= d < end_time
        ]
        return sorted(results, key=lambda r: r.date)

    async def count(self, table: TableName, since: datetime | None = None) -> int:
        return sum(1 for ts in self._timestamps(table) if since is None or ts >= since)

    async def delete_before(
        self, table: TableName, cutoff: datetime,
        include_categories: Collection[InteractionCategory] | None = None,
        exclude_categories: Collection[InteractionCategory] | None = None,
    ) -> int:
        async with self._lock:
            if table == TableName.SESSIONS:
                doomed = [k for k, s in self._sessions.items() if s.start_time <= cutoff]
                for key in doomed:
                    del self._sessions[key]
                return len(doomed)
            if table == TableName.DAILY_METRICS:
                doomed_dates = [d for d in self._daily_metrics if d <= cutoff]
                for d in doomed_dates:
                    del self._daily_metrics[d]
                return len(doomed_dates)
            if table == TableName.INTERACTIONS:
                def expired(i: Interaction) -> bool:
                    if i.timestamp > cutoff:
                        return False
                    if include_categories is not None and i.category not in include_categories:
                        return False
                    if exclude_categories is not None and i.category in exclude_categories:
                        return False
                    return True

                kept = [i for i in self._interactions if not expired(i)]
                removed = len(self._interactions) - len(kept)
                self._interactions = kept
                return removed

            records = self._raw_list(table)
            kept_records = [r for r in records if r.timestamp > cutoff]
            removed = len(records) - len(kept_records)
            records[:] = kept_records
            return removed

    def _raw_list(self, table: TableName) -> list:
        if table == TableName.PAGE_VIEWS:
            return self._page_views
        if table == TableName.BUSINESS_EVENTS:
            return self._business_events
        if table == TableName.PERFORMANCE_METRICS:
            return self._performance_metrics
        if table == TableName.INTERACTIONS:
            return self._interactions
        raise QueryError(f"No raw event list for {table.value}")

    def _timestamps(self, table: TableName) -> list[datetime]:
        if table == TableName.SESSIONS:
            return [s.start_time for s in self._sessions.values()]
        if table == TableName.DAILY_METRICS:
            return list(self._daily_metrics)
        return [r.timestamp for r in self._raw_list(table)]


def create_repository(config: DatabaseConfig | None = None) -> AnalyticsRepository:
    """Factory function to create the configured repository."""
    if config is not None and config.backend == "postgres":
        from .postgres_repo import PostgresRepository

        logger.info("analytics_repository_created", type="postgres", host=config.host)
        return PostgresRepository(config)
    logger.info("analytics_repository_created", type="in_memory")
    return InMemoryRepository()
