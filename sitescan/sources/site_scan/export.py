"""
CSV export and map links for site collections.

One denormalized row per site. Fields that can hold several values are joined
with ';' so the row stays one record wide.
"""
import csv
import io
from typing import Iterable, List, Optional

from sitescan.sources.site_scan.persister import split_address
from sitescan.sources.site_scan.types import SiteRecord

CSV_HEADER = [
    "Name",
    "Address",
    "City",
    "State",
    "Status",
    "Min MW",
    "Max MW",
    "Confidence",
    "Utility Owner",
    "Voltage Level",
    "Interconnection Type",
    "Latitude",
    "Longitude",
    "Map Link",
]

DEFAULT_MAP_LINK_BASE = "https://maps.google.com/"


def map_link(site: SiteRecord, base: str = DEFAULT_MAP_LINK_BASE) -> Optional[str]:
    """Map URL centred on the site, or None without coordinates."""
    if site.coordinates is None:
        return None
    return f"{base.rstrip('/')}/?q={site.coordinates.latitude},{site.coordinates.longitude}"


def multi_value(value: Optional[str]) -> str:
    """"138kV, 69kV" -> "138kV;69kV"."""
    if not value:
        return ""
    return ";".join(part.strip() for part in value.split(",") if part.strip())


def _num(value: Optional[float]) -> str:
    return "" if value is None else str(value)


def site_to_row(site: SiteRecord, map_link_base: str = DEFAULT_MAP_LINK_BASE) -> List[str]:
    city, state = split_address(site.address)
    estimate = site.capacity_estimate
    details = site.details
    coords = site.coordinates

    return [
        site.name,
        site.address or "",
        city or "",
        state,
        site.analysis_status.value,
        _num(estimate.min if estimate else None),
        _num(estimate.max if estimate else None),
        str(round(estimate.confidence * 100)) if estimate else "",
        (details.utility_owner or "") if details else "",
        multi_value(details.voltage_level) if details else "",
        (details.interconnection_type or "") if details else "",
        _num(coords.latitude if coords else None),
        _num(coords.longitude if coords else None),
        map_link(site, map_link_base) or "",
    ]


def sites_to_csv(sites: Iterable[SiteRecord], map_link_base: str = DEFAULT_MAP_LINK_BASE) -> str:
    """Render sites as CSV text, header first."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for site in sites:
        writer.writerow(site_to_row(site, map_link_base))
    return buffer.getvalue()
