"""
Site Clustering Engine.

Greedy grouping of nearby sites into map clusters. Each unprocessed site with
coordinates anchors a cluster and absorbs every later unprocessed site within
the radius of the anchor. Results depend on input order.
"""
import logging
from typing import List

from sitescan.core.geo import planar_distance_degrees
from sitescan.sources.site_scan.types import Cluster, SiteRecord

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_DEGREES = 0.1


def cluster_sites(sites: List[SiteRecord], radius_degrees: float = DEFAULT_RADIUS_DEGREES) -> List[Cluster]:
    """
    Group sites into clusters.

    Args:
        sites: Sites in display order
        radius_degrees: Planar distance (degrees) a member must be strictly
            within, measured from the anchor

    Returns:
        Clusters in anchor order; sites without coordinates are left out
    """
    if radius_degrees <= 0:
        raise ValueError("radius_degrees must be positive")

    clusters: List[Cluster] = []
    processed = set()

    for index, anchor in enumerate(sites):
        if anchor.id in processed or anchor.coordinates is None:
            continue

        cluster = Cluster(id=f"cluster-{len(clusters)}", centroid=anchor.coordinates)
        cluster.add(anchor)
        processed.add(anchor.id)

        for other in sites[index + 1:]:
            if other.id in processed or other.coordinates is None:
                continue
            distance = planar_distance_degrees(
                anchor.coordinates.latitude,
                anchor.coordinates.longitude,
                other.coordinates.latitude,
                other.coordinates.longitude,
            )
            if distance < radius_degrees:
                cluster.add(other)
                processed.add(other.id)

        clusters.append(cluster)

    logger.debug(f"Grouped {len(processed)} sites into {len(clusters)} clusters")
    return clusters
