"""
Marketplace Analytics - Request Middleware.

Resolves the visitor session for every inbound request, then dispatches the
page-view, API-call and error writes off the response path. Analytics never
changes the response other than re-issuing the session cookie.
"""
from __future__ import annotations

import dataclasses
import time
from collections.abc import Awaitable, Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp
import structlog

from .service import AnalyticsService
from .tracking import RequestFacts

logger = structlog.get_logger(__name__)

DEFAULT_EXCLUDED_PATHS = ("/health", "/ready", "/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


def request_facts(request: Request) -> RequestFacts:
    """Extract the tracking-relevant facts from a Starlette request."""
    return RequestFacts(
        method=request.method,
        path=request.url.path,
        headers={k.lower(): v for k, v in request.headers.items()},
        cookies=dict(request.cookies),
        query=dict(request.query_params),
        client_host=request.client.host if request.client else None,
        user_id=getattr(request.state, "user_id", None),
    )


def get_analytics_service(request: Request) -> AnalyticsService | None:
    return getattr(request.app.state, "analytics", None)


class AnalyticsMiddleware(BaseHTTPMiddleware):
    """Session tracking and request telemetry."""

    def __init__(self, app: ASGIApp, excluded_paths: Iterable[str] = DEFAULT_EXCLUDED_PATHS) -> None:
        super().__init__(app)
        self.excluded_paths = tuple(excluded_paths)

    def is_excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.excluded_paths)

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        service = get_analytics_service(request)
        if service is None or not service.config.tracking.enabled or self.is_excluded(request.url.path):
            return await call_next(request)

        facts = request_facts(request)
        handle = await service.tracker.resolve(facts)
        request.state.analytics_session_id = handle.session_id
        recorder = service.recorder
        dispatcher = service.dispatcher

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            dispatcher.dispatch(recorder.record_error(handle, facts, 500, exc), name="error")
            raise
        elapsed_ms = (time.perf_counter() - start) * 1000

        # An auth layer may have identified the user while handling the request.
        user_id = getattr(request.state, "user_id", None)
        if user_id and user_id != facts.user_id:
            facts = dataclasses.replace(facts, user_id=user_id)

        if recorder.is_page_request(facts):
            dispatcher.dispatch(recorder.record_page_view(handle, facts), name="page_view")
        elif facts.path.startswith(service.config.tracking.api_prefix):
            dispatcher.dispatch(
                recorder.record_api_call(handle, facts, response.status_code, elapsed_ms), name="api_call"
            )
        if response.status_code >= 400:
            dispatcher.dispatch(recorder.record_error(handle, facts, response.status_code), name="error")

        if not handle.degraded:
            response.set_cookie(
                value=handle.session_id,
                **service.tracker.cookie_settings(secure=service.config.is_production()),
            )
        logger.debug(
            "request_tracked",
            session_id=handle.session_id,
            path=facts.path,
            status_code=response.status_code,
            new_session=handle.is_new,
        )
        return response
