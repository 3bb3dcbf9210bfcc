"""
Site Scan - Discovery, Enrichment and Aggregation of power infrastructure sites.

Turns a location query into candidate substations, analyzes each one for
available capacity and ownership, stores the results, and produces filtered
views, map clusters, statistics and CSV exports.

Usage:
    from sitescan.sources.site_scan import ScanPipeline, LocationQuery

    pipeline = ScanPipeline()
    session = await pipeline.run_scan(LocationQuery(location="Dallas, TX"))
"""

from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    CapacityBucket,
    CapacityEstimate,
    Cluster,
    ConfidenceBucket,
    Coordinates,
    FilterSpec,
    LocationQuery,
    ScanPhase,
    ScanSession,
    ScanStats,
    SiteDetails,
    SiteRecord,
)
from sitescan.sources.site_scan.clustering import cluster_sites
from sitescan.sources.site_scan.filters import filter_sites
from sitescan.sources.site_scan.runner import ScanPipeline

__all__ = [
    'AnalysisStatus',
    'CapacityBucket',
    'CapacityEstimate',
    'Cluster',
    'ConfidenceBucket',
    'Coordinates',
    'FilterSpec',
    'LocationQuery',
    'ScanPhase',
    'ScanSession',
    'ScanStats',
    'SiteDetails',
    'SiteRecord',
    'cluster_sites',
    'filter_sites',
    'ScanPipeline',
]
