"""
Site Scan - Types and Pydantic Models.

Defines enums, the site record and its analysis lifecycle, the scan session,
map clusters, filter specs and location queries used across the pipeline.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Tuple, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from sitescan.core.api_errors import InvalidTransitionError


# =============================================================================
# ENUMS
# =============================================================================

class AnalysisStatus(str, Enum):
    """Per-site analysis lifecycle."""
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {AnalysisStatus.COMPLETED, AnalysisStatus.FAILED}

_ALLOWED_TRANSITIONS = {
    AnalysisStatus.PENDING: {AnalysisStatus.ANALYZING},
    AnalysisStatus.ANALYZING: {AnalysisStatus.COMPLETED, AnalysisStatus.FAILED},
    AnalysisStatus.COMPLETED: set(),
    AnalysisStatus.FAILED: set(),
}


class ScanPhase(str, Enum):
    """Overall stage of a scan."""
    DISCOVERING = "discovering"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CapacityBucket(str, Enum):
    """Fixed MW ranges tested against capacity_estimate.max."""
    ALL = "all"
    UP_TO_50 = "0-50"
    FROM_50_TO_100 = "50-100"
    FROM_100_TO_250 = "100-250"
    FROM_250_TO_500 = "250-500"
    OVER_500 = "500+"


# Half-open [low, high) bounds in MW
CAPACITY_BUCKET_RANGES: Dict[CapacityBucket, Tuple[float, Optional[float]]] = {
    CapacityBucket.UP_TO_50: (0, 50),
    CapacityBucket.FROM_50_TO_100: (50, 100),
    CapacityBucket.FROM_100_TO_250: (100, 250),
    CapacityBucket.FROM_250_TO_500: (250, 500),
    CapacityBucket.OVER_500: (500, None),
}


class ConfidenceBucket(str, Enum):
    """Confidence levels on the 0-1 scale."""
    ALL = "all"
    HIGH = "high"  # >= 0.8
    MEDIUM = "medium"  # 0.6 - 0.79
    LOW = "low"  # < 0.6


HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6

# Matches Numeric(10, 7) on StoredSite.latitude/longitude
COORDINATE_DECIMALS = 7


def confidence_level(confidence: float) -> ConfidenceBucket:
    """Bucket a 0-1 confidence score."""
    if confidence >= HIGH_CONFIDENCE:
        return ConfidenceBucket.HIGH
    if confidence >= MEDIUM_CONFIDENCE:
        return ConfidenceBucket.MEDIUM
    return ConfidenceBucket.LOW


def normalize_confidence(value: Any) -> float:
    """
    Coerce a remote confidence value onto the 0-1 scale.

    Values above 1 are percentages (the capacity service reports e.g. 85).
    """
    confidence = float(value)
    if confidence > 1:
        confidence = confidence / 100.0
    return min(max(confidence, 0.0), 1.0)


# =============================================================================
# SITE RECORD
# =============================================================================

class Coordinates(BaseModel):
    """
    WGS84 point.

    Rounded to COORDINATE_DECIMALS, the scale of the stored lat/lng columns,
    so a site keeps the same natural key before and after a database round trip.
    """
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    @field_validator("latitude", "longitude")
    @classmethod
    def _round_to_storage_scale(cls, v: float) -> float:
        return round(v, COORDINATE_DECIMALS)


class CapacityEstimate(BaseModel):
    """Expected power capacity for a site, MW."""
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=1)

    @model_validator(mode="after")
    def _min_not_above_max(self):
        if self.min > self.max:
            raise ValueError(f"capacity min {self.min} exceeds max {self.max}")
        return self


class SiteDetails(BaseModel):
    """Ownership and grid details attached during enrichment."""
    utility_owner: Optional[str] = None
    voltage_level: Optional[str] = None
    interconnection_type: Optional[str] = None
    ownership_confidence: Optional[float] = None
    ownership_source: Optional[str] = None
    load_factor: Optional[float] = None


class SiteRecord(BaseModel):
    """A discovered site and its evolving analysis state."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    address: str = ""
    place_id: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    capacity_estimate: Optional[CapacityEstimate] = None
    details: Optional[SiteDetails] = None
    analysis_status: AnalysisStatus = AnalysisStatus.PENDING
    stored_at: Optional[datetime] = None
    source: str = "discovery_service"

    @model_validator(mode="after")
    def _capacity_requires_completed(self):
        if self.capacity_estimate is not None and self.analysis_status != AnalysisStatus.COMPLETED:
            raise ValueError("capacity_estimate is only allowed on completed sites")
        return self

    @property
    def natural_key(self) -> Optional[Tuple[str, float, float]]:
        """(name, latitude, longitude), or None without coordinates."""
        if self.coordinates is None:
            return None
        return (self.name, self.coordinates.latitude, self.coordinates.longitude)

    @property
    def is_terminal(self) -> bool:
        return self.analysis_status in TERMINAL_STATUSES

    def _transition(self, target: AnalysisStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.analysis_status]:
            raise InvalidTransitionError(
                f"Site {self.id}: cannot move from {self.analysis_status.value} to {target.value}"
            )
        self.analysis_status = target

    def mark_analyzing(self) -> None:
        self._transition(AnalysisStatus.ANALYZING)

    def mark_completed(self, estimate: CapacityEstimate, details: Optional[SiteDetails] = None) -> None:
        # Status first so the model never holds capacity on a non-completed site
        self._transition(AnalysisStatus.COMPLETED)
        self.capacity_estimate = estimate
        self.details = details

    def mark_failed(self) -> None:
        """Terminal failure; no partial capacity data is kept."""
        self._transition(AnalysisStatus.FAILED)
        self.capacity_estimate = None
        self.details = None


# =============================================================================
# QUERIES & FILTERS
# =============================================================================

class LocationQuery(BaseModel):
    """Either a free-text place name or a center point plus radius."""
    location: Optional[str] = None
    center_lat: Optional[float] = Field(None, ge=-90, le=90)
    center_lng: Optional[float] = Field(None, ge=-180, le=180)
    radius_meters: Optional[float] = Field(None, gt=0)
    max_results: Optional[int] = Field(None, ge=1, le=1000)

    @model_validator(mode="after")
    def _exactly_one_form(self):
        has_text = bool(self.location and self.location.strip())
        region_fields = (self.center_lat, self.center_lng, self.radius_meters)
        has_region = all(v is not None for v in region_fields)
        partial_region = any(v is not None for v in region_fields) and not has_region
        if partial_region:
            raise ValueError("center_lat, center_lng and radius_meters must be given together")
        if has_text == has_region:
            raise ValueError("Provide either a location or a center point with radius")
        if has_text:
            self.location = self.location.strip()
        return self

    @property
    def is_region(self) -> bool:
        return self.location is None

    def describe(self) -> str:
        """Human-readable query label for logs and enrichment notes."""
        if self.is_region:
            return f"{self.center_lat},{self.center_lng} (r={self.radius_meters:.0f}m)"
        return self.location


class FilterSpec(BaseModel):
    """Composable site filters, all ANDed. Defaults are unconstrained."""
    search_term: str = ""
    status: str = "all"
    capacity_bucket: CapacityBucket = CapacityBucket.ALL
    location_substring: str = ""
    confidence_bucket: ConfidenceBucket = ConfidenceBucket.ALL

    @classmethod
    def cleared(cls) -> "FilterSpec":
        return cls()

    @property
    def is_cleared(self) -> bool:
        return self == FilterSpec.cleared()


# =============================================================================
# AGGREGATES
# =============================================================================

class Cluster(BaseModel):
    """A spatial group of sites drawn as one map marker."""
    id: str
    centroid: Coordinates
    member_ids: List[str] = Field(default_factory=list)
    count: int = 0
    total_free_mw: float = 0.0
    average_confidence: int = 0

    # Per-member confidence (0-100) kept so the mean can be recomputed on add
    confidence_scores: List[float] = Field(default_factory=list, exclude=True)

    def add(self, site: SiteRecord) -> None:
        """Add a member and recompute the derived aggregates."""
        if site.id in self.member_ids:
            return
        self.member_ids.append(site.id)
        estimate = site.capacity_estimate
        self.total_free_mw += estimate.max if estimate else 0.0
        self.confidence_scores.append(estimate.confidence * 100 if estimate else 0.0)
        self.count = len(self.member_ids)
        self.average_confidence = round(sum(self.confidence_scores) / self.count)


class ScanSession(BaseModel):
    """Bookkeeping for one discovery-through-enrichment run."""
    scan_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    query: LocationQuery
    phase: ScanPhase = ScanPhase.DISCOVERING
    progress: int = Field(0, ge=0, le=100)
    discovered: int = 0
    analyzed: int = 0
    failed: int = 0
    stored: int = 0
    warnings: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.analyzed + self.failed

    @property
    def is_active(self) -> bool:
        return self.phase in (ScanPhase.DISCOVERING, ScanPhase.ANALYZING)


class ScanStats(BaseModel):
    """Summary statistics over a site collection."""
    total_sites: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    analyzing: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    average_confidence: int = 0  # 0-100 over sites with an estimate
    total_capacity_mw: float = 0.0
    total_capacity_min_mw: float = 0.0
    states: List[str] = Field(default_factory=list)
