import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config import Settings
from ...dependencies import ServiceContainer, get_container
from ...exceptions import UnknownAreaError, UnknownSourceError
from ...models import AreaResult, ConsolidatedSnapshot, PartialUpdate, RefreshStatus

logger = logging.getLogger(__name__)

# Create rate limiter for endpoints
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/api/v1", tags=["consolidation"])


_manual_refresh_limit = "6/minute"


def configure_limits(settings: Settings) -> None:
    """Apply the configured manual refresh limit to the refresh routes."""
    global _manual_refresh_limit
    _manual_refresh_limit = settings.MANUAL_REFRESH_RATE_LIMIT


def manual_refresh_limit() -> str:
    return _manual_refresh_limit


class RefreshRequest(BaseModel):
    sources: Optional[List[str]] = None
    force_refresh: bool = False


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.get("/snapshot", response_model=ConsolidatedSnapshot, summary="Last published consolidated snapshot")
async def get_snapshot(container: ServiceContainer = Depends(get_container)):
    return container.get_consolidated_snapshot()


@router.get("/snapshot/areas/{area}", response_model=AreaResult, summary="One area of the current snapshot")
async def get_snapshot_area(area: str, container: ServiceContainer = Depends(get_container)):
    snapshot = container.get_consolidated_snapshot()
    if area not in container.consolidator.area_keys():
        raise _not_found(UnknownAreaError(area))
    result = snapshot.areas.get(area)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Area {area} has not been refreshed yet")
    return result


@router.get("/refresh/status", response_model=RefreshStatus)
async def get_refresh_status(container: ServiceContainer = Depends(get_container)):
    return container.get_refresh_status()


@router.post("/refresh", response_model=RefreshStatus, summary="Refresh now (joins a run in progress)")
@limiter.limit(manual_refresh_limit)
async def refresh_now(
    request: Request,
    body: Optional[RefreshRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    body = body or RefreshRequest()
    try:
        return await container.refresh_now(sources=body.sources, force_refresh=body.force_refresh)
    except UnknownSourceError as e:
        raise _not_found(e)


@router.post("/refresh/retry-failed", response_model=RefreshStatus, summary="Forced refresh of last failed sources")
@limiter.limit(manual_refresh_limit)
async def retry_failed(request: Request, container: ServiceContainer = Depends(get_container)):
    return await container.retry_failed()


@router.post("/refresh/areas/{area}", response_model=PartialUpdate, summary="Re-fetch a single area")
@limiter.limit(manual_refresh_limit)
async def refresh_area(request: Request, area: str, container: ServiceContainer = Depends(get_container)):
    try:
        return await container.refresh_area(area)
    except UnknownAreaError as e:
        raise _not_found(e)


@router.post("/events/focus")
async def on_focus(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return {"refresh_started": container.on_focus()}


@router.post("/events/online")
async def on_online(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return {"refresh_started": container.on_reconnect(), "online": True}


@router.post("/events/offline")
async def on_offline(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    container.on_offline()
    return {"online": False}


@router.get("/monitoring/performance", summary="Latency and success-rate aggregates")
async def get_performance(
    source: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    try:
        return container.get_performance_summary(source)
    except UnknownSourceError as e:
        raise _not_found(e)


@router.get("/monitoring/alerts")
async def get_alerts(
    include_acknowledged: bool = True,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    alerts = container.get_alerts(include_acknowledged=include_acknowledged)
    return {"alerts": alerts, "count": len(alerts)}


@router.post("/monitoring/alerts/{alert_id}/ack")
async def acknowledge_alert(alert_id: str, container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    if not container.acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"No active alert {alert_id}")
    return {"acknowledged": alert_id}


@router.get("/monitoring/rate-limits")
async def get_all_rate_limit_status(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return container.get_rate_limit_status()


@router.get("/monitoring/rate-limits/{source}")
async def get_rate_limit_status(source: str, container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    try:
        return container.get_rate_limit_status(source)
    except UnknownSourceError as e:
        raise _not_found(e)


@router.get("/sources", summary="Configured sources with health")
async def list_sources(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    sources = container.list_sources()
    return {"sources": sources, "total_sources": len(sources)}


@router.post("/sources/{source}/enable")
async def enable_source(source: str, container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    try:
        return container.set_source_enabled(source, True)
    except UnknownSourceError as e:
        raise _not_found(e)


@router.post("/sources/{source}/disable")
async def disable_source(source: str, container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    try:
        return container.set_source_enabled(source, False)
    except UnknownSourceError as e:
        raise _not_found(e)


@router.get("/cache", summary="Cache statistics and the freshness of every key")
async def get_cache_status(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return container.get_cache_status()


@router.delete("/cache", summary="Invalidate cached responses (all, or by key prefix)")
async def clear_cache(prefix: str = "", container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.clear_cache(prefix)


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return container.health()
