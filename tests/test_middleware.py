"""
Tests for the analytics request middleware.
"""
import httpx
import pytest
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request

from marketplace_analytics.config import AnalyticsServiceConfig, SchedulerConfig, TrackingConfig
from marketplace_analytics.middleware import AnalyticsMiddleware, request_facts
from marketplace_analytics.repository import InMemoryRepository, RepositoryConnectionError
from marketplace_analytics.service import AnalyticsService

from conftest import DESKTOP_UA, FIXED_NOW


class BrokenRepository(InMemoryRepository):
    """Repository whose session store is down."""

    async def get_active_session(self, session_id):
        raise RepositoryConnectionError("database unavailable")

    async def create_session(self, session):
        raise RepositoryConnectionError("database unavailable")


def build_app(service: AnalyticsService | None) -> FastAPI:
    app = FastAPI()
    app.add_middleware(AnalyticsMiddleware)
    if service is not None:
        app.state.analytics = service

    @app.get("/listings")
    async def listings(request: Request):
        return {"sessionId": getattr(request.state, "analytics_session_id", None)}

    @app.get("/api/items")
    async def items():
        return {"items": []}

    @app.post("/api/items")
    async def create_item():
        raise HTTPException(status_code=400, detail="invalid")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


def client_for(app: FastAPI) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver",
                             headers={"user-agent": DESKTOP_UA})


@pytest.fixture
def service(config, repository, clock):
    """Create an analytics service over the in-memory repository."""
    return AnalyticsService(config, repository, clock=clock)


async def _interactions(repository, event_type):
    window = (FIXED_NOW - timedelta(minutes=1), FIXED_NOW + timedelta(minutes=1))
    return await repository.list_interactions(*window, event_types=[event_type])


class TestRequestFacts:
    """Tests for request fact extraction."""

    @pytest.mark.asyncio
    async def test_headers_cookies_and_query(self):
        """Test facts are extracted from the Starlette request."""
        captured = {}
        app = FastAPI()

        @app.get("/cars")
        async def cars(request: Request):
            captured["facts"] = request_facts(request)
            return {}

        async with client_for(app) as client:
            await client.get("/cars?make=vw", headers={"X-Session-Id": "abc", "Cookie": "sessionId=s1"})

        facts = captured["facts"]
        assert facts.method == "GET"
        assert facts.path == "/cars"
        assert facts.headers["x-session-id"] == "abc"
        assert facts.cookies == {"sessionId": "s1"}
        assert facts.query == {"make": "vw"}


class TestAnalyticsMiddleware:
    """Tests for AnalyticsMiddleware."""

    @pytest.mark.asyncio
    async def test_new_visitor_gets_cookie_and_page_view(self, service, repository):
        """Test a first GET creates a session, sets the cookie and records a page view."""
        async with client_for(build_app(service)) as client:
            response = await client.get("/listings")
        await service.dispatcher.drain()

        session_id = response.json()["sessionId"]
        assert session_id
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"sessionId={session_id}")
        assert "HttpOnly" in cookie
        assert "Max-Age=1800" in cookie

        page_views = await repository.list_page_views(FIXED_NOW - timedelta(minutes=1), FIXED_NOW + timedelta(minutes=1))
        assert [pv.page for pv in page_views] == ["/listings"]
        session = await repository.get_session(session_id)
        assert session.total_page_views == 1

    @pytest.mark.asyncio
    async def test_returning_visitor_keeps_session(self, service, repository, clock):
        """Test a presented cookie within the idle timeout continues the session."""
        app = build_app(service)
        async with client_for(app) as client:
            first = await client.get("/listings")
        session_id = first.json()["sessionId"]
        clock.advance(minutes=5)
        async with client_for(app) as client:
            second = await client.get("/listings", headers={"Cookie": f"sessionId={session_id}"})
        await service.dispatcher.drain()

        assert second.json()["sessionId"] == session_id
        session = await repository.get_session(session_id)
        assert session.total_page_views == 2
        assert session.duration == 300

    @pytest.mark.asyncio
    async def test_api_call_recorded(self, service, repository):
        """Test API responses are recorded as system interactions, not page views."""
        async with client_for(build_app(service)) as client:
            await client.get("/api/items")
        await service.dispatcher.drain()

        [call] = await _interactions(repository, "api_call")
        assert call.metadata["endpoint"] == "/api/items"
        assert call.metadata["statusCode"] == 200
        assert call.metadata["responseTime"] >= 0
        assert await repository.list_page_views(FIXED_NOW - timedelta(minutes=1), FIXED_NOW + timedelta(minutes=1)) == []

    @pytest.mark.asyncio
    async def test_client_error_recorded(self, service, repository):
        """Test 4xx responses produce an error interaction."""
        async with client_for(build_app(service)) as client:
            response = await client.post("/api/items")
        await service.dispatcher.drain()

        assert response.status_code == 400
        [error] = await _interactions(repository, "error")
        assert error.metadata["statusCode"] == 400
        assert error.metadata["errorType"] == "ClientError"
        assert error.metadata["method"] == "POST"

    @pytest.mark.asyncio
    async def test_not_found_recorded(self, service, repository):
        """Test unknown routes are recorded as errors."""
        async with client_for(build_app(service)) as client:
            response = await client.get("/nowhere")
        await service.dispatcher.drain()

        assert response.status_code == 404
        [error] = await _interactions(repository, "error")
        assert error.page == "/nowhere"

    @pytest.mark.asyncio
    async def test_unhandled_exception_recorded(self, service, repository):
        """Test a raising route is recorded with the exception details."""
        async with client_for(build_app(service)) as client:
            response = await client.get("/boom")
        await service.dispatcher.drain()

        assert response.status_code == 500
        [error] = await _interactions(repository, "error")
        assert error.metadata["errorType"] == "RuntimeError"
        assert error.metadata["errorMessage"] == "kaboom"
        assert "stack" in error.metadata

    @pytest.mark.asyncio
    async def test_excluded_paths_not_tracked(self, service, repository):
        """Test health endpoints skip tracking entirely."""
        async with client_for(build_app(service)) as client:
            response = await client.get("/health")
        await service.dispatcher.drain()

        assert "set-cookie" not in response.headers
        assert await repository.count_active_sessions(FIXED_NOW - timedelta(hours=1)) == 0

    @pytest.mark.asyncio
    async def test_tracking_disabled(self, repository, clock):
        """Test the middleware is a pass-through when tracking is off."""
        config = AnalyticsServiceConfig(
            scheduler=SchedulerConfig(enabled=False, run_rollup_on_startup=False),
            tracking=TrackingConfig(enabled=False),
        )
        service = AnalyticsService(config, repository, clock=clock)

        async with client_for(build_app(service)) as client:
            response = await client.get("/listings")

        assert response.json() == {"sessionId": None}
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_no_service(self):
        """Test requests succeed before the service is attached."""
        async with client_for(build_app(None)) as client:
            response = await client.get("/listings")

        assert response.status_code == 200
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_break_request(self, config, clock):
        """Test a broken session store degrades without a cookie."""
        service = AnalyticsService(config, BrokenRepository(), clock=clock)

        async with client_for(build_app(service)) as client:
            response = await client.get("/listings")
        await service.dispatcher.drain()

        assert response.status_code == 200
        assert response.json()["sessionId"]
        assert "set-cookie" not in response.headers
