from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional
import logging

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from activity_ledger.config.settings import settings
from activity_ledger.models.analytics import (
    ActivityJourney,
    ActivitySummary,
    AnalyticsOverview,
    BehavioralPattern,
    BehaviorEpisodeMap,
    EngagementMetrics,
    TimeOfDayStats,
    TrendPoint,
)
from activity_ledger.services.analytics import AnalyticsEngine
from activity_ledger.services.database import DatabaseManager
from activity_ledger.services.errors import AnalyticsError, ServiceError
from activity_ledger.services.rollups import RollupAggregator
from activity_ledger.services.summary import SummaryProjector

logger = logging.getLogger(__name__)
app = FastAPI(title="Activity Ledger API")


@dataclass
class Services:
    db: DatabaseManager
    summary: SummaryProjector
    rollups: RollupAggregator
    analytics: AnalyticsEngine


def build_services(db: DatabaseManager) -> Services:
    return Services(
        db=db,
        summary=SummaryProjector(db),
        rollups=RollupAggregator(db),
        analytics=AnalyticsEngine(db),
    )


@lru_cache()
def get_services() -> Services:
    """Services bound to the configured database, created on first request"""
    settings.validate_paths()
    return build_services(DatabaseManager(settings.DB_PATH))


@app.get("/api/summary", response_model=ActivitySummary)
def get_summary(hours: int = 24, services: Services = Depends(get_services)):
    """Totals, hourly timeline and top contexts for the last N hours"""
    try:
        return services.summary.get_summary(hours)
    except ServiceError as e:
        logger.error(f"Error building summary: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/journey", response_model=ActivityJourney)
def get_journey(hours: int = 24, services: Services = Depends(get_services)):
    try:
        return services.summary.get_journey(hours)
    except ServiceError as e:
        logger.error(f"Error building journey: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/rollups/summary", response_model=ActivitySummary)
def get_rollup_summary(
    hours: int = 24,
    device_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Summary from stored rollups; all devices unless device_id is given"""
    try:
        return services.rollups.summary_from_rollups(hours, device_id=device_id)
    except ServiceError as e:
        logger.error(f"Error building rollup summary: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/analytics/time-of-day", response_model=List[TimeOfDayStats])
def get_time_of_day(days: int = 7, services: Services = Depends(get_services)):
    try:
        return services.analytics.get_time_of_day_analysis(days)
    except ServiceError as e:
        logger.error(f"Error in time-of-day analysis: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/analytics/patterns", response_model=List[BehavioralPattern])
def get_patterns(days: int = 30, services: Services = Depends(get_services)):
    """Stored transition patterns, recomputed when stale"""
    try:
        return services.analytics.get_behavioral_patterns(days)
    except ServiceError as e:
        logger.error(f"Error getting behavioral patterns: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/analytics/engagement/{domain}", response_model=EngagementMetrics)
def get_engagement(domain: str, days: int = 7, services: Services = Depends(get_services)):
    try:
        return services.analytics.get_engagement_metrics(domain, days)
    except ServiceError as e:
        logger.error(f"Error scoring engagement for {domain}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/analytics/episodes", response_model=BehaviorEpisodeMap)
def get_episodes(
    hours: int = 24,
    start: Optional[str] = None,
    end: Optional[str] = None,
    gap_minutes: Optional[int] = Query(None, alias="gapMinutes"),
    bin_seconds: Optional[int] = Query(None, alias="binSeconds"),
    max_episodes: int = Query(100, alias="maxEpisodes"),
    services: Services = Depends(get_services),
):
    try:
        return services.analytics.get_behavior_episodes(
            hours=hours,
            start=start,
            end=end,
            gap_minutes=gap_minutes,
            bin_seconds=bin_seconds,
            max_episodes=max_episodes,
        )
    except ServiceError as e:
        logger.error(f"Error segmenting episodes: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/analytics/overview", response_model=AnalyticsOverview)
def get_overview(days: int = 7, services: Services = Depends(get_services)):
    try:
        return services.analytics.get_overview(days)
    except ServiceError as e:
        logger.error(f"Error building overview: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/analytics/trends", response_model=List[TrendPoint])
def get_trends(granularity: str = "day", services: Services = Depends(get_services)):
    try:
        return services.analytics.get_trends(granularity)
    except AnalyticsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ServiceError as e:
        logger.error(f"Error building trends: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/behavior-events")
def post_behavior_events(
    events: List[Dict[str, Any]] = Body(...),
    services: Services = Depends(get_services),
):
    """Store a batch of behaviour events"""
    try:
        count = services.analytics.ingest_behavior_events(events)
        return {"success": True, "count": count}
    except AnalyticsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ServiceError as e:
        logger.error(f"Error storing behavior events: {e}")
        raise HTTPException(status_code=500, detail=str(e))


# Add error handlers
@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=404,
        content={"detail": "Not found"}
    )


@app.exception_handler(500)
async def server_error_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)}
    )
