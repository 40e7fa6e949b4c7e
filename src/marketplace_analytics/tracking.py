"""
Marketplace Analytics - Session Tracker.

Resolves or creates the visitor session for each inbound request. Tracking is
best-effort: any storage failure or timeout yields a throwaway session id so
the request it rides on is never affected.

Architecture Layer: Application
Principles: Best-Effort Telemetry, Insert-With-Unique-Key, Injectable Clock
"""
from __future__ import annotations

import asyncio
import secrets
import string
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from .config import TrackingConfig
from .models import Session, utc_now
from .repository import AnalyticsRepository, DuplicateKeyError, RepositoryError
from .user_agent import parse_user_agent

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_BASE36 = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 11
_DEFAULT_IP = "127.0.0.1"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_session_id(now: datetime | None = None) -> str:
    """Millisecond timestamp prefix plus a random suffix, both base 36."""
    moment = now or utc_now()
    prefix = to_base36(int(moment.timestamp() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(_SUFFIX_LENGTH))
    return prefix + suffix


@dataclass(frozen=True)
class RequestFacts:
    """Tracking-relevant facts extracted from an inbound request."""
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None
    user_id: str | None = None

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def user_agent(self) -> str:
        return self.header("user-agent") or ""

    @property
    def referrer(self) -> str | None:
        return self.header("referer") or self.header("referrer")

    @property
    def has_auth(self) -> bool:
        return bool(self.header("authorization"))

    @property
    def client_ip(self) -> str:
        forwarded = self.header("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        return self.header("x-real-ip") or self.client_host or _DEFAULT_IP


@dataclass
class SessionHandle:
    """Result of resolving a request to a session."""
    session_id: str
    session: Session | None = None
    is_new: bool = False
    set_cookie: bool = False
    degraded: bool = False


class SessionTracker:
    """Resolves the active session for a request, creating one when needed."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        config: TrackingConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._config = config or TrackingConfig()
        self._clock = clock

    def presented_id(self, facts: RequestFacts) -> str | None:
        return facts.cookies.get(self._config.cookie_name) or facts.header(self._config.session_header)

    async def resolve(self, facts: RequestFacts) -> SessionHandle:
        """Resolve a session within the tracking timeout; never raises."""
        try:
            return await asyncio.wait_for(self._resolve(facts), timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("session_tracking_timeout", path=facts.path, timeout_ms=self._config.timeout_ms)
        except RepositoryError as e:
            logger.error("session_tracking_failed", path=facts.path, error=str(e))
        return SessionHandle(session_id=generate_session_id(self._clock()), degraded=True)

    async def _resolve(self, facts: RequestFacts) -> SessionHandle:
        now = self._clock()
        presented = self.presented_id(facts)
        from_cookie = self._config.cookie_name in facts.cookies

        if presented:
            session = await self._repository.get_active_session(presented)
            if session is not None and now - session.last_activity >= self._config.idle_timeout:
                session.close(session.last_activity + self._config.idle_timeout)
                await self._repository.save_session(session)
                logger.info("session_expired", session_id=presented)
                session = None
            elif session is not None:
                await self._touch(session, facts, now)
                return SessionHandle(session_id=presented, session=session, set_cookie=not from_cookie)
            elif await self._repository.get_session(presented) is None:
                return await self._create(presented, facts, now, set_cookie=not from_cookie)

        # Closed, expired or absent: start a fresh session under a new id.
        return await self._create(generate_session_id(now), facts, now, set_cookie=True)

    async def _touch(self, session: Session, facts: RequestFacts, now: datetime) -> None:
        session.touch(now)
        if session.user_id is None and facts.user_id:
            session.user_id = facts.user_id
        await self._repository.save_session(session)

    async def _create(self, session_id: str, facts: RequestFacts, now: datetime, set_cookie: bool) -> SessionHandle:
        session = Session(
            session_id=session_id,
            user_id=facts.user_id,
            start_time=now,
            last_activity=now,
            user_agent=facts.user_agent,
            ip=facts.client_ip,
            device=parse_user_agent(facts.user_agent),
            referrer=facts.referrer,
            utm_source=facts.query.get("utm_source"),
            utm_medium=facts.query.get("utm_medium"),
            utm_campaign=facts.query.get("utm_campaign"),
            country=self._country(facts),
        )
        try:
            await self._repository.create_session(session)
        except DuplicateKeyError:
            # A concurrent request created the same id first; join it.
            existing = await self._repository.get_active_session(session_id)
            if existing is None:
                raise
            await self._touch(existing, facts, now)
            logger.debug("session_create_conflict", session_id=session_id)
            return SessionHandle(session_id=session_id, session=existing, set_cookie=set_cookie)
        logger.info("session_created", session_id=session_id, device=session.device.type.value)
        return SessionHandle(session_id=session_id, session=session, is_new=True, set_cookie=set_cookie)

    def _country(self, facts: RequestFacts) -> str | None:
        value = facts.header(self._config.country_header)
        if not value or value.upper() in ("XX", "T1"):
            return None
        return value.upper()

    def cookie_settings(self, secure: bool) -> dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``; sliding expiry."""
        return {
            "key": self._config.cookie_name,
            "max_age": int(self._config.idle_timeout.total_seconds()),
            "httponly": True,
            "secure": secure,
            "samesite": "lax",
        }
