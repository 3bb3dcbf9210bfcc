"""
Summary statistics over a site collection.
"""
from typing import List

from sitescan.sources.site_scan.persister import UNKNOWN_STATE, split_address
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    ConfidenceBucket,
    ScanStats,
    SiteRecord,
    confidence_level,
)


def compute_stats(sites: List[SiteRecord]) -> ScanStats:
    """
    Count sites by status and confidence level and total their capacity.

    average_confidence is on the 0-100 scale, rounded, over sites that carry
    an estimate.
    """
    stats = ScanStats(total_sites=len(sites))
    confidences = []
    states = set()

    for site in sites:
        if site.analysis_status == AnalysisStatus.COMPLETED:
            stats.completed += 1
        elif site.analysis_status == AnalysisStatus.FAILED:
            stats.failed += 1
        elif site.analysis_status == AnalysisStatus.ANALYZING:
            stats.analyzing += 1
        else:
            stats.pending += 1

        _, state = split_address(site.address)
        if state != UNKNOWN_STATE:
            states.add(state)

        estimate = site.capacity_estimate
        if estimate is None:
            continue

        confidences.append(estimate.confidence)
        stats.total_capacity_mw += estimate.max
        stats.total_capacity_min_mw += estimate.min

        level = confidence_level(estimate.confidence)
        if level == ConfidenceBucket.HIGH:
            stats.high_confidence += 1
        elif level == ConfidenceBucket.MEDIUM:
            stats.medium_confidence += 1
        else:
            stats.low_confidence += 1

    if confidences:
        stats.average_confidence = round(sum(confidences) / len(confidences) * 100)
    stats.states = sorted(states)
    return stats
