"""
Clients for the per-site analysis services.

CapacityClient:
    request  {"latitude", "longitude", "manualOverride"?: {"utilityContext": {"name", "notes"}}}
    response {"estimatedCapacity": {"min", "max"}, "detectionResults": {"confidence"},
              "voltageLevel"?, "substationType"?}

OwnershipClient:
    request  {"name", "latitude", "longitude", "address"}
    response {"owner", "confidence", "source"}

Both parse into small pydantic results; anything that does not parse is a
FatalError so the enrichment engine can mark the site failed.
"""
import logging
from typing import Optional, Dict, Any

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from sitescan.core.api_errors import FatalError
from sitescan.core.config import Settings, get_settings
from sitescan.core.http_client import ServiceClient
from sitescan.sources.site_scan.types import CapacityEstimate, normalize_confidence

logger = logging.getLogger(__name__)


class CapacityResult(BaseModel):
    estimate: CapacityEstimate
    voltage_level: Optional[str] = None
    substation_type: Optional[str] = None


class OwnershipResult(BaseModel):
    owner: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[str] = None


class CapacityClient(ServiceClient):
    """Client for the capacity estimation service."""

    SOURCE_NAME = "capacity"

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "CapacityClient":
        settings = settings or get_settings()
        return cls(
            url=settings.require_capacity_service_url(),
            api_key=settings.service_api_key,
            max_retries=settings.max_retries,
            backoff_factor=settings.retry_backoff_factor,
            timeout=settings.request_timeout_seconds,
            client=client,
        )

    async def estimate(
        self,
        latitude: float,
        longitude: float,
        name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CapacityResult:
        """
        Estimate capacity at a point.

        Args:
            latitude, longitude: Site coordinates
            name, notes: Operator context forwarded as manualOverride.utilityContext

        Raises:
            APIError: Remote failure or malformed response
        """
        payload: Dict[str, Any] = {"latitude": latitude, "longitude": longitude}
        if name or notes:
            payload["manualOverride"] = {
                "utilityContext": {"name": name, "notes": notes},
            }

        data = self.unwrap_result(
            await self._post(payload, resource_id=f"{latitude},{longitude}")
        )
        return self.parse(data)

    def parse(self, data: Dict[str, Any]) -> CapacityResult:
        capacity = data.get("estimatedCapacity")
        detection = data.get("detectionResults")
        if not isinstance(capacity, dict) or not isinstance(detection, dict):
            raise FatalError(
                "Capacity response missing estimatedCapacity/detectionResults",
                source=self.SOURCE_NAME,
                response_data=data,
            )
        try:
            estimate = CapacityEstimate(
                min=float(capacity["min"]),
                max=float(capacity["max"]),
                confidence=normalize_confidence(detection["confidence"]),
            )
        except (KeyError, TypeError, ValueError, PydanticValidationError) as e:
            raise FatalError(
                f"Malformed capacity response: {e}",
                source=self.SOURCE_NAME,
                response_data=data,
            )

        return CapacityResult(
            estimate=estimate,
            voltage_level=data.get("voltageLevel"),
            substation_type=data.get("substationType"),
        )


class OwnershipClient(ServiceClient):
    """Client for the ownership detection service."""

    SOURCE_NAME = "ownership"

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> Optional["OwnershipClient"]:
        """Build a client, or None when ownership detection is disabled."""
        settings = settings or get_settings()
        url = settings.get_ownership_service_url()
        if not url:
            return None
        return cls(
            url=url,
            api_key=settings.service_api_key,
            max_retries=settings.max_retries,
            backoff_factor=settings.retry_backoff_factor,
            timeout=settings.request_timeout_seconds,
            client=client,
        )

    async def detect(
        self,
        name: str,
        latitude: float,
        longitude: float,
        address: str = "",
    ) -> OwnershipResult:
        data = self.unwrap_result(
            await self._post(
                {"name": name, "latitude": latitude, "longitude": longitude, "address": address},
                resource_id=name,
            )
        )
        confidence = data.get("confidence")
        try:
            return OwnershipResult(
                owner=data.get("owner") or None,
                confidence=normalize_confidence(confidence) if confidence is not None else None,
                source=data.get("source"),
            )
        except (TypeError, ValueError, PydanticValidationError) as e:
            raise FatalError(
                f"Malformed ownership response: {e}",
                source=self.SOURCE_NAME,
                response_data=data,
            )
