"""
Marketplace Analytics - Real-Time Queries.

Short-window aggregations read straight from the raw stores, bypassing
rollups. On any storage error the zero-valued shape is returned.
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
import structlog

from .models import Interaction, TableName, utc_now
from .repository import AnalyticsRepository, RepositoryError

logger = structlog.get_logger(__name__)

ACTIVE_WINDOW = timedelta(minutes=5)
PAGE_VIEW_WINDOW = timedelta(hours=24)
NOTABLE_WINDOW = timedelta(hours=1)
TOP_PAGES_LIMIT = 10

NOTABLE_EVENT_DESCRIPTIONS: dict[str, str] = {
    "listing_view": "viewed a car listing",
    "dealer_contact": "contacted a dealer",
    "phone_call": "clicked a phone number",
    "search": "performed a search",
    "news_read": "read an article",
    "listing_favorite": "favorited a listing",
}


def describe_event(event_type: str) -> str:
    """Human-readable description of an interaction type."""
    return NOTABLE_EVENT_DESCRIPTIONS.get(event_type, f"performed {event_type.replace('_', ' ')}")


def _activity(interaction: Interaction) -> dict[str, Any]:
    return {
        "eventType": interaction.event_type,
        "description": describe_event(interaction.event_type),
        "page": interaction.page,
        "sessionId": interaction.session_id,
        "timestamp": interaction.timestamp.isoformat(),
    }


def empty_realtime_metrics() -> dict[str, Any]:
    return {"activeUsers": 0, "pageViews24h": 0, "recentEvents": [], "topPages": []}


class RealTimeQueryService:
    """Active-now and last-24h metrics for the live dashboard."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        notable_limit: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._notable_limit = notable_limit
        self._clock = clock

    async def get_realtime_metrics(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._clock()
        try:
            active, page_views, recent, top_pages = await asyncio.gather(
                self._repository.count_active_sessions(now - ACTIVE_WINDOW),
                self._repository.count(TableName.PAGE_VIEWS, since=now - PAGE_VIEW_WINDOW),
                self._repository.list_interactions(
                    now - NOTABLE_WINDOW, now,
                    event_types=list(NOTABLE_EVENT_DESCRIPTIONS),
                    limit=self._notable_limit,
                    newest_first=True,
                ),
                self._repository.top_pages(now - PAGE_VIEW_WINDOW, now, TOP_PAGES_LIMIT),
            )
        except (RepositoryError, ValidationError) as e:
            logger.error("realtime_metrics_failed", error=str(e))
            return empty_realtime_metrics()

        return {
            "activeUsers": active,
            "pageViews24h": page_views,
            "recentEvents": [_activity(i) for i in recent],
            "topPages": [p.model_dump(by_alias=True) for p in top_pages],
        }
