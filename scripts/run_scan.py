#!/usr/bin/env python3
"""
Run a site scan from the command line.

Discovers substations around a location, analyzes each one for available
capacity, stores the results and prints every site as it finishes.

Usage:
    python scripts/run_scan.py "Dallas, TX"
    python scripts/run_scan.py --lat 32.78 --lng -96.80 --radius 25000
    python scripts/run_scan.py "Austin, TX" --csv austin.csv
    python scripts/run_scan.py "Austin, TX" --capacity 100-250 --confidence high
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from pydantic import ValidationError

from sitescan.core.config import MissingServiceConfigError, get_settings
from sitescan.core.database import create_tables
from sitescan.sources.site_scan.clustering import cluster_sites
from sitescan.sources.site_scan.export import sites_to_csv
from sitescan.sources.site_scan.filters import filter_sites
from sitescan.sources.site_scan.runner import ScanPipeline
from sitescan.sources.site_scan.stats import compute_stats
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    CapacityBucket,
    ConfidenceBucket,
    FilterSpec,
    LocationQuery,
    ScanPhase,
)

logger = logging.getLogger(__name__)


class C:
    G = "\033[92m"
    Y = "\033[93m"
    R = "\033[91m"
    B = "\033[94m"
    DIM = "\033[2m"
    BD = "\033[1m"
    E = "\033[0m"


def banner(text: str):
    print(f"\n{C.BD}{C.B}{'=' * 64}{C.E}")
    print(f"{C.BD}{C.B}  {text}{C.E}")
    print(f"{C.BD}{C.B}{'=' * 64}{C.E}\n")


def build_query(args) -> LocationQuery:
    if args.lat is not None or args.lng is not None:
        return LocationQuery(
            center_lat=args.lat,
            center_lng=args.lng,
            radius_meters=args.radius,
            max_results=args.max_results,
        )
    return LocationQuery(location=args.location, max_results=args.max_results)


async def run(args) -> int:
    settings = get_settings()
    create_tables()

    try:
        query = build_query(args)
    except ValidationError as e:
        print(f"{C.R}Invalid location: {e}{C.E}")
        return 2

    pipeline = ScanPipeline(settings=settings)
    try:
        session = pipeline.begin_scan(query)
    except MissingServiceConfigError as e:
        print(f"{C.R}{e}{C.E}")
        return 2

    banner(f"SITE SCAN: {query.describe()}")

    async for site in pipeline.run(session):
        if site.analysis_status == AnalysisStatus.COMPLETED:
            est = site.capacity_estimate
            print(
                f"  {C.G}done{C.E}  [{session.progress:3d}%] {site.name}: "
                f"{est.min:.0f}-{est.max:.0f} MW ({est.confidence * 100:.0f}% conf)"
            )
        elif site.analysis_status == AnalysisStatus.FAILED:
            print(f"  {C.R}fail{C.E}  [{session.progress:3d}%] {site.name}")

    if session.phase == ScanPhase.FAILED:
        print(f"\n{C.R}Scan failed: {session.error_message}{C.E}")
        return 1

    spec = FilterSpec(
        capacity_bucket=CapacityBucket(args.capacity),
        confidence_bucket=ConfidenceBucket(args.confidence),
    )
    sites = filter_sites(pipeline.current_sites, spec)
    stats = compute_stats(sites)
    clusters = cluster_sites(sites, settings.cluster_radius_degrees)

    banner(f"SCAN {session.phase.value.upper()}")
    print(f"  Sites discovered:   {session.discovered}")
    print(f"  Analyzed:           {session.analyzed}")
    print(f"  Failed:             {session.failed}")
    print(f"  Stored:             {session.stored}")
    print(f"  Matching filters:   {stats.total_sites}")
    print(f"  Total capacity:     {stats.total_capacity_mw:.0f} MW")
    print(f"  Avg confidence:     {stats.average_confidence}%")
    print(f"  Map clusters:       {len(clusters)}")
    for warning in session.warnings:
        print(f"  {C.Y}warning{C.E} {warning}")

    if args.csv:
        Path(args.csv).write_text(sites_to_csv(sites, settings.map_link_base), encoding="utf-8")
        print(f"\n  {C.DIM}CSV written to {args.csv}{C.E}")

    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Discover and analyze power infrastructure sites around a location"
    )
    parser.add_argument(
        "location", nargs="?", default=None,
        help="Free-text location, e.g. 'Dallas, TX'"
    )
    parser.add_argument("--lat", type=float, default=None, help="Center latitude")
    parser.add_argument("--lng", type=float, default=None, help="Center longitude")
    parser.add_argument(
        "--radius", type=float, default=None,
        help="Search radius in meters (with --lat/--lng)"
    )
    parser.add_argument("--max-results", type=int, default=None, help="Discovery result cap")
    parser.add_argument(
        "--capacity", default="all", choices=[b.value for b in CapacityBucket],
        help="Only report sites in this max-MW bucket"
    )
    parser.add_argument(
        "--confidence", default="all", choices=[b.value for b in ConfidenceBucket],
        help="Only report sites at this confidence level"
    )
    parser.add_argument("--csv", default=None, help="Write matching sites to this CSV file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    start = time.time()
    code = asyncio.run(run(args))
    print(f"\n  {C.DIM}Completed in {time.time() - start:.1f}s{C.E}\n")
    sys.exit(code)


if __name__ == "__main__":
    main()
