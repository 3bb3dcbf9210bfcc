"""
Site Discovery Client.

Issues one query to the remote discovery service and normalizes the
candidates it returns into pending SiteRecords.

Request:  {"location", "searchRadiusMeters", "maxResults"}
Response: {"substations": [{"id", "name", "latitude", "longitude", "place_id", "address"}]}
"""
import logging
import uuid
from typing import Optional, List, Dict, Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from sitescan.core.api_errors import APIError, DiscoveryError
from sitescan.core.config import Settings, get_settings
from sitescan.core.http_client import ServiceClient
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    Coordinates,
    LocationQuery,
    SiteRecord,
)

logger = logging.getLogger(__name__)


class DiscoveryClient(ServiceClient):
    """
    Client for the site discovery service.

    Never touches persisted state; the only side effect is the outbound call.
    """

    SOURCE_NAME = "discovery"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        default_radius_meters: int = 100_000,
        max_results: int = 100,
        coordinates_source: str = "discovery_service",
        **kwargs,
    ):
        super().__init__(url, api_key=api_key, **kwargs)
        self.default_radius_meters = default_radius_meters
        self.max_results = max_results
        self.coordinates_source = coordinates_source

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "DiscoveryClient":
        settings = settings or get_settings()
        return cls(
            url=settings.require_discovery_service_url(),
            api_key=settings.service_api_key,
            default_radius_meters=settings.default_search_radius_meters,
            max_results=settings.max_discovery_results,
            coordinates_source=settings.coordinates_source,
            max_retries=settings.max_retries,
            backoff_factor=settings.retry_backoff_factor,
            timeout=settings.request_timeout_seconds,
            client=client,
        )

    def build_request(self, query: LocationQuery) -> Dict[str, Any]:
        """Translate a LocationQuery into the service payload."""
        if query.is_region:
            location = f"{query.center_lat},{query.center_lng}"
            radius = int(query.radius_meters)
        else:
            location = query.location
            radius = self.default_radius_meters
        return {
            "location": location,
            "searchRadiusMeters": radius,
            "maxResults": query.max_results or self.max_results,
        }

    async def discover(self, query: LocationQuery) -> List[SiteRecord]:
        """
        Run one discovery query.

        Returns:
            Deduplicated pending SiteRecords in service order

        Raises:
            DiscoveryError: Service unreachable, timed out, errored, returned a
                malformed body, or produced zero usable candidates
        """
        label = query.describe()
        payload = self.build_request(query)
        logger.info(f"Discovering sites for {label} (radius={payload['searchRadiusMeters']}m)")

        try:
            data = await self._post(payload, resource_id=label)
        except APIError as e:
            logger.error(f"Discovery failed for {label}: {e}")
            raise DiscoveryError(f"Discovery service error: {e}", query=label) from e

        data = self.unwrap_result(data)
        candidates = data.get("substations")
        if not isinstance(candidates, list):
            raise DiscoveryError("Discovery response has no 'substations' list", query=label)

        sites = self.normalize(candidates)
        if not sites:
            raise DiscoveryError(f"No usable sites found for {label}", query=label)

        logger.info(f"Discovered {len(sites)} sites for {label} ({len(candidates)} raw candidates)")
        return sites

    def normalize(self, candidates: List[Any]) -> List[SiteRecord]:
        """Transform raw candidates and drop duplicates (first one wins)."""
        sites: List[SiteRecord] = []
        seen = set()
        seen_ids = set()
        for raw in candidates:
            site = self._transform_candidate(raw)
            if site is None:
                continue
            key = (
                site.name,
                site.coordinates.latitude if site.coordinates else None,
                site.coordinates.longitude if site.coordinates else None,
            )
            if key in seen:
                logger.debug(f"Skipping duplicate candidate {site.name}")
                continue
            seen.add(key)
            if site.id in seen_ids:
                site.id = uuid.uuid4().hex
            seen_ids.add(site.id)
            sites.append(site)
        return sites

    def _transform_candidate(self, raw: Any) -> Optional[SiteRecord]:
        """Transform one service candidate to a pending SiteRecord, or None if unusable."""
        if not isinstance(raw, dict):
            return None

        name = _clean_str(raw.get("name"))
        if not name:
            return None

        lat = _safe_float(raw.get("latitude"))
        lng = _safe_float(raw.get("longitude"))
        coordinates = None
        if lat is not None and lng is not None and -90 <= lat <= 90 and -180 <= lng <= 180:
            coordinates = Coordinates(latitude=lat, longitude=lng)

        kwargs: Dict[str, Any] = {}
        if raw.get("id") is not None:
            kwargs["id"] = str(raw["id"])

        try:
            return SiteRecord(
                name=name,
                address=_clean_str(raw.get("address")),
                place_id=_clean_str(raw.get("place_id")) or None,
                coordinates=coordinates,
                analysis_status=AnalysisStatus.PENDING,
                capacity_estimate=None,
                source=self.coordinates_source,
                **kwargs,
            )
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed candidate {name!r}: {e}")
            return None


def _clean_str(val: Any) -> str:
    """Strip strings, stringify numbers, and treat anything else as empty."""
    if isinstance(val, str):
        return val.strip()
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        return str(val)
    return ""


def _safe_float(val: Any) -> Optional[float]:
    """Convert a value to float, returning None if not possible."""
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (ValueError, TypeError):
        return None
