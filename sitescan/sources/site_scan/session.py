"""
Scan Session Tracker.

Owns the phase label and 0-100 progress of one ScanSession. Progress is a
two-phase weighting: discovery jumps straight to DISCOVERY_WEIGHT, then the
enrichment phase crawls from there to 100 one site at a time. Progress never
moves backwards and only reaches 100 once every site has a terminal status.
"""
import logging
from datetime import datetime
from typing import Optional

from sitescan.core.event_bus import EventBus
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    ScanPhase,
    ScanSession,
    SiteRecord,
)

logger = logging.getLogger(__name__)

DISCOVERY_WEIGHT = 25


class ScanSessionTracker:
    """Mutates a ScanSession passed by reference and publishes progress events."""

    def __init__(self, session: ScanSession, discovery_weight: int = DISCOVERY_WEIGHT):
        self.session = session
        self.discovery_weight = discovery_weight
        self.enrichment_weight = 100 - discovery_weight

    # -------------------------------------------------------------------------
    # Phase changes
    # -------------------------------------------------------------------------

    def start_discovery(self) -> None:
        self.session.phase = ScanPhase.DISCOVERING
        self._publish("scan_started", {"query": self.session.query.describe()})

    def discovery_completed(self, discovered: int) -> None:
        self.session.discovered = discovered
        self.session.phase = ScanPhase.ANALYZING
        self._set_progress(self.discovery_weight)
        logger.info(f"Scan {self.session.scan_id}: {discovered} sites discovered")

    def complete(self) -> None:
        self.session.phase = ScanPhase.COMPLETED
        self.session.completed_at = datetime.utcnow()
        self._publish("scan_completed", self.summary())

    def fail(self, message: str) -> None:
        self.session.phase = ScanPhase.FAILED
        self.session.error_message = message
        self.session.completed_at = datetime.utcnow()
        self._publish("scan_failed", self.summary())

    def cancel(self) -> None:
        self.session.phase = ScanPhase.CANCELLED
        self.session.completed_at = datetime.utcnow()
        self._publish("scan_cancelled", self.summary())

    # -------------------------------------------------------------------------
    # Per-site bookkeeping
    # -------------------------------------------------------------------------

    def record_site(self, status: AnalysisStatus) -> int:
        """
        Count one terminal site and recompute progress.

        Returns:
            The new progress value
        """
        if status == AnalysisStatus.COMPLETED:
            self.session.analyzed += 1
        elif status == AnalysisStatus.FAILED:
            self.session.failed += 1
        else:
            raise ValueError(f"record_site expects a terminal status, got {status.value}")

        return self._set_progress(self.compute_progress(self.session.processed, self.session.discovered))

    def record_stored(self) -> None:
        self.session.stored += 1

    def add_warning(self, message: str) -> None:
        self.session.warnings.append(message)

    def site_updated(self, site: SiteRecord) -> None:
        self._publish("site_updated", {
            "site_id": site.id,
            "name": site.name,
            "status": site.analysis_status.value,
        })

    def compute_progress(self, processed: int, total: int) -> int:
        """
        discovery_weight + processed/total * enrichment_weight, floored.

        Flooring keeps a long scan from showing 100 before its last site.
        """
        if total <= 0:
            return self.discovery_weight
        processed = min(processed, total)
        return int(self.discovery_weight + (processed * self.enrichment_weight) // total)

    def _set_progress(self, value: int) -> int:
        value = max(0, min(100, value))
        if value > self.session.progress:
            self.session.progress = value
            self._publish("scan_progress", {
                "progress": value,
                "phase": self.session.phase.value,
                "processed": self.session.processed,
                "total": self.session.discovered,
            })
        return self.session.progress

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def summary(self) -> dict:
        s = self.session
        return {
            "scan_id": s.scan_id,
            "phase": s.phase.value,
            "progress": s.progress,
            "discovered": s.discovered,
            "analyzed": s.analyzed,
            "failed": s.failed,
            "stored": s.stored,
            "warnings": len(s.warnings),
            "error": s.error_message,
        }

    def _publish(self, event_type: str, data: dict) -> None:
        """Publish on the event bus (best-effort)."""
        payload = {"scan_id": self.session.scan_id, **data}
        try:
            EventBus.publish_scan_event(self.session.scan_id, event_type, payload)
        except Exception as e:
            logger.debug(f"Event publish skipped: {e}")
