"""
Marketplace Analytics - PostgreSQL Repository.

Async record store for sessions, raw events and rollups using SQLAlchemy and asyncpg.

Architecture Layer: Infrastructure (Persistence)
Principles: Repository Pattern, One Table per Record Type, UTC Timestamps
"""
from __future__ import annotations

import time
from collections.abc import Collection
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import MetaData, Table, Column, String, DateTime, Integer, Text, Boolean, Index
from sqlalchemy import select, insert, update, delete, and_, func, cast, literal, text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID, insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from .config import DatabaseConfig
from .models import (
    BusinessEvent, DailyMetrics, Interaction, InteractionCategory, PageView,
    PerformanceMetric, Session, TableName, TopPage,
)
from .repository import (
    AnalyticsRepository, DuplicateKeyError, QueryError, RepositoryConnectionError,
)

logger = structlog.get_logger(__name__)

metadata = MetaData()

sessions = Table(
    TableName.SESSIONS.value, metadata,
    Column("session_id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=True, index=True),
    Column("start_time", DateTime(timezone=True), nullable=False, index=True),
    Column("last_activity", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("duration", Integer, nullable=False, default=0),
    Column("user_agent", Text, default=""),
    Column("ip", String(64), nullable=True),
    Column("device", JSONB, default=dict),
    Column("pages", JSONB, default=list),
    Column("total_page_views", Integer, nullable=False, default=0),
    Column("referrer", Text, nullable=True),
    Column("utm_source", String(255), nullable=True),
    Column("utm_medium", String(255), nullable=True),
    Column("utm_campaign", String(255), nullable=True),
    Column("country", String(64), nullable=True),
    Index("ix_analytics_sessions_active_activity", "is_active", "last_activity"),
)

page_views = Table(
    TableName.PAGE_VIEWS.value, metadata,
    Column("record_id", PG_UUID(as_uuid=True), primary_key=True),
    Column("session_id", String(64), nullable=False, index=True),
    Column("page", Text, nullable=False, index=True),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("payload", JSONB, nullable=False),
)

interactions = Table(
    TableName.INTERACTIONS.value, metadata,
    Column("record_id", PG_UUID(as_uuid=True), primary_key=True),
    Column("session_id", String(64), nullable=False, index=True),
    Column("event_type", String(100), nullable=False, index=True),
    Column("category", String(50), nullable=False, index=True),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("payload", JSONB, nullable=False),
)

business_events = Table(
    TableName.BUSINESS_EVENTS.value, metadata,
    Column("record_id", PG_UUID(as_uuid=True), primary_key=True),
    Column("session_id", String(64), nullable=False, index=True),
    Column("event_type", String(50), nullable=False, index=True),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("payload", JSONB, nullable=False),
)

performance_metrics = Table(
    TableName.PERFORMANCE_METRICS.value, metadata,
    Column("record_id", PG_UUID(as_uuid=True), primary_key=True),
    Column("session_id", String(64), nullable=False, index=True),
    Column("page", Text, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False, index=True),
    Column("payload", JSONB, nullable=False),
)

daily_metrics = Table(
    TableName.DAILY_METRICS.value, metadata,
    Column("date", DateTime(timezone=True), primary_key=True),
    Column("metrics", JSONB, nullable=False),
    Column("breakdown", JSONB, nullable=False),
)

# Table and the column its retention horizon and counts are keyed on.
_TIMESTAMP_COLUMNS = {
    TableName.SESSIONS: (sessions, sessions.c.start_time),
    TableName.PAGE_VIEWS: (page_views, page_views.c.timestamp),
    TableName.INTERACTIONS: (interactions, interactions.c.timestamp),
    TableName.BUSINESS_EVENTS: (business_events, business_events.c.timestamp),
    TableName.PERFORMANCE_METRICS: (performance_metrics, performance_metrics.c.timestamp),
    TableName.DAILY_METRICS: (daily_metrics, daily_metrics.c.date),
}


class PostgresRepository(AnalyticsRepository):
    """Async PostgreSQL repository for analytics records."""

    def __init__(self, settings: DatabaseConfig | None = None) -> None:
        self._settings = settings or DatabaseConfig()
        engine_kwargs: dict[str, Any] = {
            "echo": self._settings.echo_sql,
        }
        if self._settings.pool_size == 0:
            engine_kwargs["poolclass"] = NullPool
        else:
            engine_kwargs["pool_size"] = self._settings.pool_size
            engine_kwargs["max_overflow"] = self._settings.max_overflow
            engine_kwargs["pool_timeout"] = self._settings.pool_timeout
        self._engine = create_async_engine(self._settings.connection_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self._stats = {"inserts": 0, "updates": 0, "deletes": 0, "queries": 0}

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional session scope, mapping driver errors to repository errors."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateKeyError(str(e.orig)) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise QueryError(str(e)) from e

    async def connect(self) -> None:
        """Create database tables if not exist."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except (OSError, SQLAlchemyError) as e:
            logger.error("postgres_connection_failed", host=self._settings.host, error=str(e))
            raise RepositoryConnectionError(f"Failed to connect to {self._settings.host}") from e
        logger.info("postgres_initialized", database=self._settings.database)

    async def disconnect(self) -> None:
        await self._engine.dispose()
        logger.info("postgres_closed")

    async def health_check(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (OSError, SQLAlchemyError) as e:
            logger.warning("postgres_health_check_failed", error=str(e))
            return False

    async def get_session(self, session_id: str) -> Session | None:
        self._stats["queries"] += 1
        async with self.session() as session:
            result = await session.execute(select(sessions).where(sessions.c.session_id == session_id))
            row = result.fetchone()
        return Session.model_validate(dict(row._mapping)) if row else None

    async def get_sessions(self, session_ids: Collection[str]) -> dict[str, Session]:
        ids = list(set(session_ids))
        if not ids:
            return {}
        self._stats["queries"] += 1
        async with self.session() as session:
            result = await session.execute(select(sessions).where(sessions.c.session_id.in_(ids)))
            records = [Session.model_validate(dict(row._mapping)) for row in result.fetchall()]
        return {s.session_id: s for s in records}

    async def get_active_session(self, session_id: str) -> Session | None:
        self._stats["queries"] += 1
        async with self.session() as session:
            stmt = select(sessions).where(and_(
                sessions.c.session_id == session_id,
                sessions.c.is_active.is_(True),
                sessions.c.end_time.is_(None),
            ))
            row = (await session.execute(stmt)).fetchone()
        return Session.model_validate(dict(row._mapping)) if row else None

    async def create_session(self, session_record: Session) -> Session:
        start = time.perf_counter()
        self._stats["inserts"] += 1
        async with self.session() as session:
            await session.execute(insert(sessions).values(**session_record.model_dump(mode="json")
                                                          | _session_times(session_record)))
        logger.debug("session_stored", session_id=session_record.session_id,
                     time_ms=int((time.perf_counter() - start) * 1000))
        return session_record

    async def save_session(self, session_record: Session) -> None:
        self._stats["updates"] += 1
        values = session_record.model_dump(mode="json") | _session_times(session_record)
        values.pop("session_id")
        async with self.session() as session:
            await session.execute(
                update(sessions).where(sessions.c.session_id == session_record.session_id).values(**values)
            )

    async def append_session_page(self, session_id: str, page: str, now: datetime) -> None:
        self._stats["updates"] += 1
        now_param = literal(now, DateTime(timezone=True))
        async with self.session() as session:
            stmt = update(sessions).where(sessions.c.session_id == session_id).values(
                pages=sessions.c.pages.op("||")(func.jsonb_build_array(page)),
                total_page_views=sessions.c.total_page_views + 1,
                last_activity=now_param,
                duration=func.greatest(
                    0, cast(func.extract("epoch", now_param - sessions.c.start_time), Integer)
                ),
            )
            await session.execute(stmt)

    async def close_idle_sessions(self, idle_before: datetime, now: datetime) -> int:
        self._stats["updates"] += 1
        async with self.session() as session:
            stmt = update(sessions).where(and_(
                sessions.c.is_active.is_(True),
                sessions.c.last_activity <= idle_before,
            )).values(is_active=False, end_time=now)
            result = await session.execute(stmt)
            return result.rowcount

    async def list_sessions(self, start_time: datetime, end_time: datetime) -> list[Session]:
        self._stats["queries"] += 1
        async with self.session() as session:
            stmt = select(sessions).where(and_(
                sessions.c.start_time >= start_time, sessions.c.start_time < end_time,
            )).order_by(sessions.c.start_time.asc())
            result = await session.execute(stmt)
            return [Session.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def count_active_sessions(self, active_since: datetime) -> int:
        self._stats["queries"] += 1
        async with self.session() as session:
            stmt = select(func.count()).select_from(sessions).where(and_(
                sessions.c.is_active.is_(True), sessions.c.last_activity >= active_since,
            ))
            return int((await session.execute(stmt)).scalar_one())

    async def insert_page_view(self, page_view: PageView) -> None:
        await self._insert_payload(page_views, page_view, page=page_view.page)

    async def insert_interaction(self, interaction: Interaction) -> None:
        await self._insert_payload(interactions, interaction, event_type=interaction.event_type,
                                   category=interaction.category.value)

    async def insert_interactions_batch(self, batch: list[Interaction]) -> int:
        if not batch:
            return 0
        self._stats["inserts"] += 1
        rows = [
            {"record_id": i.record_id, "session_id": i.session_id, "event_type": i.event_type,
             "category": i.category.value, "timestamp": i.timestamp, "payload": i.model_dump(mode="json")}
            for i in batch
        ]
        async with self.session() as session:
            await session.execute(insert(interactions), rows)
        logger.debug("interaction_batch_stored", count=len(rows))
        return len(rows)

    async def insert_business_event(self, event: BusinessEvent) -> None:
        await self._insert_payload(business_events, event, event_type=event.event_type.value)

    async def insert_performance_metric(self, metric: PerformanceMetric) -> None:
        await self._insert_payload(performance_metrics, metric, page=metric.page)

    async def list_page_views(
        self, start_time: datetime, end_time: datetime,
        limit: int | None = None, newest_first: bool = False,
    ) -> list[PageView]:
        rows = await self._select_payloads(page_views, start_time, end_time, limit=limit,
                                           newest_first=newest_first)
        return [PageView.model_validate(p) for p in rows]

    async def list_interactions(
        self, start_time: datetime, end_time: datetime,
        event_types: Collection[str] | None = None,
        limit: int | None = None, newest_first: bool = False,
    ) -> list[Interaction]:
        extra = [interactions.c.event_type.in_(list(event_types))] if event_types is not None else []
        rows = await self._select_payloads(interactions, start_time, end_time, extra,
                                           limit=limit, newest_first=newest_first)
        return [Interaction.model_validate(p) for p in rows]

    async def list_business_events(self, start_time: datetime, end_time: datetime) -> list[BusinessEvent]:
        rows = await self._select_payloads(business_events, start_time, end_time)
        return [BusinessEvent.model_validate(p) for p in rows]

    async def list_performance_metrics(self, start_time: datetime, end_time: datetime) -> list[PerformanceMetric]:
        rows = await self._select_payloads(performance_metrics, start_time, end_time)
        return [PerformanceMetric.model_validate(p) for p in rows]

    async def top_pages(self, start_time: datetime, end_time: datetime, limit: int) -> list[TopPage]:
        self._stats["queries"] += 1
        views = func.count().label("views")
        async with self.session() as session:
            stmt = (
                select(page_views.c.page, views,
                       func.count(func.distinct(page_views.c.session_id)).label("unique_visitors"))
                .where(and_(page_views.c.timestamp >= start_time, page_views.c.timestamp < end_time))
                .group_by(page_views.c.page)
                .order_by(views.desc(), page_views.c.page.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [
                TopPage(page=row.page, views=row.views, unique_visitors=row.unique_visitors)
                for row in result.fetchall()
            ]

    async def replace_daily_metrics(self, record: DailyMetrics) -> None:
        self._stats["updates"] += 1
        body = record.model_dump(mode="json")
        async with self.session() as session:
            stmt = pg_insert(daily_metrics).values(
                date=record.date, metrics=body["metrics"], breakdown=body["breakdown"],
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[daily_metrics.c.date],
                set_={"metrics": stmt.excluded.metrics, "breakdown": stmt.excluded.breakdown},
            )
            await session.execute(stmt)

    async def get_daily_metrics(self, date: datetime) -> DailyMetrics | None:
        self._stats["queries"] += 1
        async with self.session() as session:
            row = (await session.execute(select(daily_metrics).where(daily_metrics.c.date == date))).fetchone()
        return DailyMetrics.model_validate(dict(row._mapping)) if row else None

    async def list_daily_metrics(self, start_time: datetime, end_time: datetime) -> list[DailyMetrics]:
        self._stats["queries"] += 1
        async with self.session() as session:
            stmt = select(daily_metrics).where(and_(
                daily_metrics.c.date >= start_time, daily_metrics.c.date < end_time,
            )).order_by(daily_metrics.c.date.asc())
            result = await session.execute(stmt)
            return [DailyMetrics.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def count(self, table: TableName, since: datetime | None = None) -> int:
        self._stats["queries"] += 1
        target, ts_column = _TIMESTAMP_COLUMNS[table]
        stmt = select(func.count()).select_from(target)
        if since is not None:
            stmt = stmt.where(ts_column >= since)
        async with self.session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def delete_before(
        self, table: TableName, cutoff: datetime,
        include_categories: Collection[InteractionCategory] | None = None,
        exclude_categories: Collection[InteractionCategory] | None = None,
    ) -> int:
        self._stats["deletes"] += 1
        target, ts_column = _TIMESTAMP_COLUMNS[table]
        conditions = [ts_column <= cutoff]
        if table == TableName.INTERACTIONS:
            if include_categories is not None:
                conditions.append(interactions.c.category.in_([c.value for c in include_categories]))
            if exclude_categories is not None:
                conditions.append(interactions.c.category.notin_([c.value for c in exclude_categories]))
        async with self.session() as session:
            result = await session.execute(delete(target).where(and_(*conditions)))
            return result.rowcount

    async def _insert_payload(self, target: Table, record: Any, **columns: Any) -> None:
        self._stats["inserts"] += 1
        async with self.session() as session:
            await session.execute(insert(target).values(
                record_id=record.record_id, session_id=record.session_id,
                timestamp=record.timestamp, payload=record.model_dump(mode="json"), **columns,
            ))

    async def _select_payloads(self, target: Table, start_time: datetime, end_time: datetime,
                               extra: list[Any] | None = None, limit: int | None = None,
                               newest_first: bool = False) -> list[dict[str, Any]]:
        self._stats["queries"] += 1
        conditions = [target.c.timestamp >= start_time, target.c.timestamp < end_time, *(extra or [])]
        order = target.c.timestamp.desc() if newest_first else target.c.timestamp.asc()
        stmt = select(target.c.payload).where(and_(*conditions)).order_by(order)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session() as session:
            result = await session.execute(stmt)
            return [row.payload for row in result.fetchall()]

    @property
    def statistics(self) -> dict[str, Any]:
        return {**self._stats, "database": self._settings.database, "host": self._settings.host}


def _session_times(record: Session) -> dict[str, Any]:
    """Keep datetimes as datetimes for the timestamp columns."""
    return {
        "start_time": record.start_time,
        "last_activity": record.last_activity,
        "end_time": record.end_time,
    }
