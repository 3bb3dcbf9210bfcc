"""
Site Scan API.

POST   /api/v1/site-scan/scans                 - Start a scan (202, 409 if one is running)
GET    /api/v1/site-scan/scans/current         - Current scan session and its sites
POST   /api/v1/site-scan/scans/current/cancel  - Stop the current scan after the site in progress
GET    /api/v1/site-scan/scans/history         - Archived scans
GET    /api/v1/site-scan/scans/stream          - SSE stream for all scan events
GET    /api/v1/site-scan/scans/{id}/stream     - SSE stream for one scan
GET    /api/v1/site-scan/sites                 - Filtered sites (current scan or stored)
GET    /api/v1/site-scan/sites/clusters        - Map clusters
GET    /api/v1/site-scan/sites/stats           - Summary statistics
GET    /api/v1/site-scan/sites/export.csv      - CSV export
DELETE /api/v1/site-scan/sites                 - Delete stored sites
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from sitescan.core.api_errors import PersistenceError, ScanInProgressError
from sitescan.core.config import MissingServiceConfigError, get_settings
from sitescan.core.event_bus import ALL_SCANS_CHANNEL, EventBus, scan_channel
from sitescan.sources.site_scan.clustering import cluster_sites
from sitescan.sources.site_scan.enrichment import SiteContext
from sitescan.sources.site_scan.export import map_link, sites_to_csv
from sitescan.sources.site_scan.filters import filter_sites, sites_near
from sitescan.sources.site_scan.runner import ScanPipeline
from sitescan.sources.site_scan.stats import compute_stats
from sitescan.sources.site_scan.types import (
    CapacityBucket,
    ConfidenceBucket,
    FilterSpec,
    LocationQuery,
    SiteRecord,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/site-scan", tags=["Site Scan"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}

_pipeline: Optional[ScanPipeline] = None


def get_pipeline() -> ScanPipeline:
    """Shared pipeline; one active scan per process."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ScanPipeline()
    return _pipeline


# =============================================================================
# REQUEST MODELS
# =============================================================================


class ScanRequest(LocationQuery):
    """Location to scan plus optional per-site operator context."""
    context_overrides: Dict[str, SiteContext] = Field(
        default_factory=dict,
        description="Capacity service context keyed by site id",
    )


class SiteFilterParams(BaseModel):
    search: str = ""
    status: str = "all"
    capacity: CapacityBucket = CapacityBucket.ALL
    location: str = ""
    confidence: ConfidenceBucket = ConfidenceBucket.ALL
    source: str = "current"
    near_lat: Optional[float] = None
    near_lng: Optional[float] = None
    radius_km: Optional[float] = None


def site_filters(
    search: str = Query("", description="Name or address contains"),
    status: str = Query("all", description="pending, analyzing, completed, failed or all"),
    capacity: CapacityBucket = Query(CapacityBucket.ALL, description="Max MW bucket"),
    location: str = Query("", description="Address contains"),
    confidence: ConfidenceBucket = Query(ConfidenceBucket.ALL),
    source: str = Query("current", pattern="^(current|stored)$"),
    near_lat: Optional[float] = Query(None, ge=-90, le=90),
    near_lng: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0),
) -> SiteFilterParams:
    return SiteFilterParams(
        search=search,
        status=status,
        capacity=capacity,
        location=location,
        confidence=confidence,
        source=source,
        near_lat=near_lat,
        near_lng=near_lng,
        radius_km=radius_km,
    )


# =============================================================================
# HELPERS
# =============================================================================


def _select_sites(pipeline: ScanPipeline, params: SiteFilterParams) -> List[SiteRecord]:
    if params.source == "stored":
        sites = pipeline.load_stored()
    else:
        sites = list(pipeline.current_sites)

    spec = FilterSpec(
        search_term=params.search,
        status=params.status,
        capacity_bucket=params.capacity,
        location_substring=params.location,
        confidence_bucket=params.confidence,
    )
    sites = filter_sites(sites, spec)

    if params.near_lat is not None and params.near_lng is not None and params.radius_km:
        sites = sites_near(sites, params.near_lat, params.near_lng, params.radius_km)
    return sites


def _site_to_dict(site: SiteRecord) -> dict:
    data = site.model_dump(mode="json")
    data["map_link"] = map_link(site, get_settings().map_link_base)
    return data


# =============================================================================
# SCANS
# =============================================================================


@router.post("/scans", status_code=202)
async def start_scan(
    request: ScanRequest,
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    """
    Start a scan in the background.

    Progress is available from GET /scans/current or the SSE stream.
    """
    query = LocationQuery(**request.model_dump(exclude={"context_overrides"}))
    try:
        session = pipeline.start_scan(query, request.context_overrides)
    except ScanInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MissingServiceConfigError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "scan_id": session.scan_id,
        "phase": session.phase.value,
        "stream_url": f"/api/v1/site-scan/scans/{session.scan_id}/stream",
    }


@router.get("/scans/current")
async def get_current_scan(pipeline: ScanPipeline = Depends(get_pipeline)):
    """Current (or most recent) scan session with its sites."""
    session = pipeline.current_session
    if session is None:
        raise HTTPException(status_code=404, detail="No scan has been started")
    return {
        "session": session.model_dump(mode="json"),
        "sites": [_site_to_dict(s) for s in pipeline.current_sites],
    }


@router.post("/scans/current/cancel")
async def cancel_current_scan(pipeline: ScanPipeline = Depends(get_pipeline)):
    if not pipeline.cancel():
        raise HTTPException(status_code=409, detail="No scan is running")
    return {"scan_id": pipeline.current_session.scan_id, "cancelling": True}


@router.get("/scans/history")
async def get_scan_history(
    limit: int = Query(20, ge=1, le=200),
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    scans = pipeline.list_history(limit=limit)
    return {"total": len(scans), "scans": scans}


@router.get("/scans/stream")
async def stream_all_scans():
    """
    SSE stream of all scan events.

    Usage:
        const es = new EventSource('/api/v1/site-scan/scans/stream');
        es.addEventListener('scan_progress', e => { ... });
        es.addEventListener('site_updated', e => { ... });
        es.addEventListener('scan_completed', e => { ... });
    """
    return StreamingResponse(
        EventBus.subscribe_stream(ALL_SCANS_CHANNEL),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/scans/{scan_id}/stream")
async def stream_scan(scan_id: str):
    """SSE stream for a specific scan's events."""
    return StreamingResponse(
        EventBus.subscribe_stream(scan_channel(scan_id)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# =============================================================================
# SITES
# =============================================================================


@router.get("/sites")
async def list_sites(
    params: SiteFilterParams = Depends(site_filters),
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    sites = _select_sites(pipeline, params)
    return {
        "source": params.source,
        "total": len(sites),
        "sites": [_site_to_dict(s) for s in sites],
    }


@router.get("/sites/clusters")
async def get_clusters(
    radius: Optional[float] = Query(None, gt=0, description="Cluster radius in degrees"),
    params: SiteFilterParams = Depends(site_filters),
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    """Map clusters over the filtered sites."""
    radius = radius or get_settings().cluster_radius_degrees
    clusters = cluster_sites(_select_sites(pipeline, params), radius_degrees=radius)
    return {
        "radius_degrees": radius,
        "total": len(clusters),
        "clusters": [c.model_dump(mode="json") for c in clusters],
    }


@router.get("/sites/stats")
async def get_stats(
    params: SiteFilterParams = Depends(site_filters),
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    return compute_stats(_select_sites(pipeline, params)).model_dump()


@router.get("/sites/export.csv")
async def export_sites(
    params: SiteFilterParams = Depends(site_filters),
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    content = sites_to_csv(_select_sites(pipeline, params), get_settings().map_link_base)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=site_scan_export.csv"},
    )


@router.delete("/sites")
async def delete_sites(
    ids: Optional[List[str]] = Query(None, description="Stored site ids to delete"),
    delete_all: bool = Query(False, alias="all", description="Delete every stored site"),
    source: Optional[str] = Query(None, description="With all=true, only this coordinates source"),
    pipeline: ScanPipeline = Depends(get_pipeline),
):
    if not ids and not delete_all:
        raise HTTPException(status_code=400, detail="Pass ids or all=true")
    try:
        deleted = pipeline.delete_stored(site_ids=ids, source=source)
    except PersistenceError as e:
        logger.error(f"Delete failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"deleted": deleted}
