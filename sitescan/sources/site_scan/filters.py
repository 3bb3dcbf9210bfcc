"""
Site Filter Engine.

Pure, order-preserving filtering of SiteRecords by a FilterSpec. Every
predicate is ANDed; a predicate left at its default lets everything through.
"""
from typing import List, Optional

from sitescan.core.geo import within_radius
from sitescan.sources.site_scan.types import (
    CAPACITY_BUCKET_RANGES,
    CapacityBucket,
    ConfidenceBucket,
    FilterSpec,
    SiteRecord,
    confidence_level,
)

ALL = "all"


def matches_search(site: SiteRecord, term: str) -> bool:
    """Case-insensitive substring match on name or address."""
    if not term:
        return True
    term = term.lower()
    return term in site.name.lower() or term in (site.address or "").lower()


def matches_status(site: SiteRecord, status: str) -> bool:
    if not status or status == ALL:
        return True
    return site.analysis_status.value == status


def matches_capacity(site: SiteRecord, bucket: CapacityBucket) -> bool:
    if bucket == CapacityBucket.ALL:
        return True
    if site.capacity_estimate is None:
        return False
    low, high = CAPACITY_BUCKET_RANGES[bucket]
    value = site.capacity_estimate.max
    return value >= low and (high is None or value < high)


def matches_location(site: SiteRecord, substring: str) -> bool:
    if not substring:
        return True
    return substring.lower() in (site.address or "").lower()


def matches_confidence(site: SiteRecord, bucket: ConfidenceBucket) -> bool:
    if bucket == ConfidenceBucket.ALL:
        return True
    if site.capacity_estimate is None:
        return False
    return confidence_level(site.capacity_estimate.confidence) == bucket


def filter_sites(sites: List[SiteRecord], spec: Optional[FilterSpec] = None) -> List[SiteRecord]:
    """
    Apply a FilterSpec to a list of sites.

    Returns a new list; the input list and its records are not modified.
    """
    spec = spec or FilterSpec.cleared()
    if spec.is_cleared:
        return list(sites)
    return [
        site for site in sites
        if matches_search(site, spec.search_term)
        and matches_status(site, spec.status)
        and matches_capacity(site, spec.capacity_bucket)
        and matches_location(site, spec.location_substring)
        and matches_confidence(site, spec.confidence_bucket)
    ]


def sites_near(
    sites: List[SiteRecord],
    latitude: float,
    longitude: float,
    radius_km: float,
) -> List[SiteRecord]:
    """Sites within radius_km (great-circle) of a point."""
    return within_radius(sites, latitude, longitude, radius_km)
