"""
Geospatial distance helpers.

planar_distance_degrees is the cheap metric the clustering engine uses; its
default radius (0.1 degrees, roughly 11 km) is calibrated against it, so the
two must change together. haversine_km backs the proximity filter.
"""
import math
from typing import Any, Iterable, List

EARTH_RADIUS_KM = 6371.0


def planar_distance_degrees(
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
) -> float:
    """Euclidean distance between two points, measured in raw degrees."""
    return math.sqrt((lat1 - lat2) ** 2 + (lng1 - lng2) ** 2)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two points in kilometers.

    Args:
        lat1, lng1: First point coordinates
        lat2, lng2: Second point coordinates
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def within_radius(sites: Iterable[Any], center_lat: float, center_lng: float, radius_km: float) -> List[Any]:
    """
    Keep the sites whose coordinates lie within radius_km of the center.

    Works on anything with a `coordinates` attribute holding latitude and
    longitude; sites without coordinates are dropped. Order is preserved.
    """
    return [
        site for site in sites
        if site.coordinates is not None
        and haversine_km(
            center_lat, center_lng,
            site.coordinates.latitude, site.coordinates.longitude,
        ) <= radius_km
    ]
