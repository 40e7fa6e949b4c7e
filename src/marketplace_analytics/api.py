"""
Marketplace Analytics - API Endpoints.

REST API for client-side event ingestion, dashboard and report queries,
and the operator actions (rollup recompute, cleanup run).

Ingestion endpoints always answer ``{"success": true}``: storage failures
are logged by the recorders and never surfaced to the client.

Architecture Layer: Infrastructure (API)
Principles: Clean API Design, Request Validation, Graceful Degradation
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
import structlog

from .aggregations import day_start
from .middleware import get_analytics_service, request_facts
from .models import BusinessEventReport, ClientEvent, PerformanceReport, SearchReport
from .recorders import ANONYMOUS_SESSION
from .reports import ExportFormat
from .service import AnalyticsService
from .tracking import RequestFacts

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

MAX_BATCH_EVENTS = 1000


def get_service(request: Request) -> AnalyticsService:
    """Resolve the analytics component attached to the application."""
    service = get_analytics_service(request)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analytics service not initialized",
        )
    return service


def _session_id(request: Request, facts: RequestFacts, service: AnalyticsService) -> str:
    """Session tracked by the middleware, else the one the client presented."""
    tracked = getattr(request.state, "analytics_session_id", None)
    if tracked:
        return tracked
    return service.tracker.presented_id(facts) or ANONYMOUS_SESSION


class TrackResponse(BaseModel):
    """Response model for ingestion endpoints."""
    success: bool = True


class BatchRequest(BaseModel):
    """Request model for batched client events."""
    events: list[ClientEvent] = Field(default_factory=list, max_length=MAX_BATCH_EVENTS)


class DataResponse(BaseModel):
    """Envelope for query endpoints."""
    success: bool = True
    data: Any


@router.post("/track", response_model=TrackResponse)
async def track_event(
    event: ClientEvent,
    request: Request,
    service: AnalyticsService = Depends(get_service),
) -> TrackResponse:
    """Record a client-side event."""
    facts = request_facts(request)
    await service.recorder.track_client_event(event, facts, session_id=_session_id(request, facts, service))
    return TrackResponse()


@router.post("/track/search", response_model=TrackResponse)
async def track_search(
    search: SearchReport,
    request: Request,
    service: AnalyticsService = Depends(get_service),
) -> TrackResponse:
    """Record a search and its business event."""
    facts = request_facts(request)
    await service.recorder.track_search(search, _session_id(request, facts, service), facts)
    return TrackResponse()


@router.post("/track/performance", response_model=TrackResponse)
async def track_performance(
    report: PerformanceReport,
    request: Request,
    service: AnalyticsService = Depends(get_service),
) -> TrackResponse:
    """Record client timing metrics for a page."""
    facts = request_facts(request)
    await service.recorder.record_performance(_session_id(request, facts, service), report)
    return TrackResponse()


@router.post("/track/batch", response_model=TrackResponse)
async def track_batch(
    batch: BatchRequest,
    request: Request,
    service: AnalyticsService = Depends(get_service),
) -> TrackResponse:
    """Record a batch of client events as interactions."""
    facts = request_facts(request)
    if batch.events:
        await service.recorder.record_batch(
            batch.events,
            session_id=_session_id(request, facts, service),
            user_id=facts.user_id,
            default_page=facts.referrer or "/",
        )
    return TrackResponse()


@router.post("/track/business", response_model=TrackResponse)
async def track_business(
    report: BusinessEventReport,
    request: Request,
    service: AnalyticsService = Depends(get_service),
) -> TrackResponse:
    """Record a typed business event."""
    facts = request_facts(request)
    await service.recorder.track_business_report(report, _session_id(request, facts, service))
    return TrackResponse()


@router.get("/dashboard", response_model=DataResponse)
async def get_dashboard(
    days: int = Query(default=30, ge=1, le=365),
    service: AnalyticsService = Depends(get_service),
) -> DataResponse:
    """Dashboard summary over the last ``days`` days."""
    logger.info("dashboard_request", days=days)
    return DataResponse(data=await service.dashboard.get_dashboard(days))


@router.get("/realtime", response_model=DataResponse)
async def get_realtime(service: AnalyticsService = Depends(get_service)) -> DataResponse:
    return DataResponse(data=await service.realtime.get_realtime_metrics())


@router.get("/traffic", response_model=DataResponse)
async def get_traffic(
    days: int = Query(default=30, ge=1, le=365),
    service: AnalyticsService = Depends(get_service),
) -> DataResponse:
    return DataResponse(data=await service.reports.traffic_over_time(days))


@router.get("/content", response_model=DataResponse)
async def get_content(
    days: int = Query(default=30, ge=1, le=365),
    service: AnalyticsService = Depends(get_service),
) -> DataResponse:
    return DataResponse(data=await service.reports.content_report(days))


@router.get("/performance", response_model=DataResponse)
async def get_performance(
    days: int = Query(default=7, ge=1, le=365),
    service: AnalyticsService = Depends(get_service),
) -> DataResponse:
    return DataResponse(data=await service.reports.performance_report(days))


@router.get("/conversions", response_model=DataResponse)
async def get_conversions(
    days: int = Query(default=30, ge=1, le=365),
    service: AnalyticsService = Depends(get_service),
) -> DataResponse:
    return DataResponse(data=await service.reports.conversion_funnel(days))


@router.get("/export")
async def export_page_views(
    days: int = Query(default=30, ge=1, le=365),
    format: ExportFormat = Query(default=ExportFormat.CSV),
    service: AnalyticsService = Depends(get_service),
) -> Response:
    """Download recent page views as CSV or JSON."""
    result = await service.reports.export_page_views(days, format)
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@router.post("/rollups", response_model=DataResponse)
async def recompute_rollups(
    day: date | None = Query(default=None, alias="date"),
    days: int = Query(default=1, ge=1, le=31),
    service: AnalyticsService = Depends(get_service),
) -> DataResponse:
    """Recompute the rollup for ``date`` (default: yesterday) and the following days."""
    start = day if day is not None else (day_start(service.now()) - timedelta(days=1)).date()
    logger.info("rollup_recompute_requested", start=start.isoformat(), days=days)
    records = await service.aggregator.compute_range(start, days)
    computed = [record.date.date().isoformat() for record in records]
    return DataResponse(data={"computed": computed, "failed": days - len(computed)})


@router.post("/cleanup", response_model=DataResponse)
async def run_cleanup(service: AnalyticsService = Depends(get_service)) -> DataResponse:
    """Run the retention job once."""
    report = await service.scheduler.run_cleanup_now()
    return DataResponse(success=report.succeeded, data=report.model_dump(mode="json"))


@router.get("/health")
async def analytics_health(service: AnalyticsService = Depends(get_service)) -> JSONResponse:
    """Analytics-specific health check."""
    health = await service.health_check()
    code = status.HTTP_200_OK if health["healthy"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=health)


@router.get("/status")
async def analytics_status(service: AnalyticsService = Depends(get_service)) -> dict[str, Any]:
    return service.get_status()
