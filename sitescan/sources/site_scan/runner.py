"""
Site Scan - Pipeline Orchestrator.

Runs one scan end to end: discovery, sequential enrichment, per-site
persistence, and archiving of the finished session. Only one scan can be
active per pipeline; starting another while it runs is rejected.
"""
import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sitescan.core.api_errors import DiscoveryError, PersistenceError, ScanInProgressError
from sitescan.core.config import MissingServiceConfigError, Settings, get_settings
from sitescan.core.database import get_session_factory
from sitescan.core.models import ScanSessionRecord
from sitescan.sources.site_scan.analysis_clients import CapacityClient, OwnershipClient
from sitescan.sources.site_scan.discovery_client import DiscoveryClient
from sitescan.sources.site_scan.enrichment import EnrichmentEngine, SiteContext
from sitescan.sources.site_scan.persister import SitePersister
from sitescan.sources.site_scan.session import ScanSessionTracker
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    LocationQuery,
    ScanPhase,
    ScanSession,
    SiteRecord,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class ScanPipeline:
    """
    Orchestrates site scans.

    Usage:
        pipeline = ScanPipeline()

        # Await a whole scan
        session = await pipeline.run_scan(LocationQuery(location="Dallas, TX"))

        # Or watch every site transition as it happens
        session = pipeline.begin_scan(query)
        async for site in pipeline.run(session):
            print(site.name, site.analysis_status)

        # Or run it in the background (API)
        session = pipeline.start_scan(query)
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        settings: Optional[Settings] = None,
        discovery_client: Optional[DiscoveryClient] = None,
        capacity_client: Optional[CapacityClient] = None,
        ownership_client: Optional[OwnershipClient] = None,
    ):
        """
        Args:
            session_factory: Returns a new DB session (defaults to the shared one)
            settings: Application settings (defaults to get_settings())
            discovery_client, capacity_client, ownership_client: Injected
                clients; when omitted they are built from settings per scan
        """
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.discovery_client = discovery_client
        self.capacity_client = capacity_client
        self.ownership_client = ownership_client

        self.current_session: Optional[ScanSession] = None
        self.current_sites: List[SiteRecord] = []
        self.history: List[ScanSession] = []

        self._tracker: Optional[ScanSessionTracker] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._context_overrides: Dict[str, SiteContext] = {}
        self._task: Optional[asyncio.Task] = None
        self._owned_clients: list = []

    @property
    def is_running(self) -> bool:
        return self.current_session is not None and self.current_session.is_active

    # -------------------------------------------------------------------------
    # Starting scans
    # -------------------------------------------------------------------------

    def begin_scan(
        self,
        query: LocationQuery,
        context_overrides: Optional[Dict[str, SiteContext]] = None,
    ) -> ScanSession:
        """
        Open a new scan session and make it current.

        Raises:
            ScanInProgressError: Another scan is still active
            MissingServiceConfigError: A required service URL is not set
        """
        if self.is_running:
            raise ScanInProgressError(self.current_session.scan_id)
        if self.discovery_client is None:
            self.settings.require_discovery_service_url()
        if self.capacity_client is None:
            self.settings.require_capacity_service_url()

        session = ScanSession(query=query)
        self.current_session = session
        self.current_sites = []
        self._tracker = ScanSessionTracker(session, discovery_weight=self.settings.discovery_weight)
        self._cancel_event = asyncio.Event()
        self._context_overrides = context_overrides or {}

        logger.info(f"Starting scan {session.scan_id} for {query.describe()}")
        return session

    async def run_scan(
        self,
        query: LocationQuery,
        context_overrides: Optional[Dict[str, SiteContext]] = None,
    ) -> ScanSession:
        """Run a scan to the end and return its final session."""
        session = self.begin_scan(query, context_overrides)
        async for _ in self.run(session):
            pass
        return session

    def start_scan(
        self,
        query: LocationQuery,
        context_overrides: Optional[Dict[str, SiteContext]] = None,
    ) -> ScanSession:
        """Start a scan as a background task on the running loop."""
        session = self.begin_scan(query, context_overrides)
        self._task = asyncio.create_task(self._run_in_background(session))
        return session

    async def _run_in_background(self, session: ScanSession) -> None:
        try:
            async for _ in self.run(session):
                pass
        except Exception as e:
            logger.error(f"Background scan {session.scan_id} crashed: {e}", exc_info=True)

    def cancel(self) -> bool:
        """
        Ask the active scan to stop after the site in progress.

        Returns:
            True if a scan was running
        """
        if not self.is_running or self._cancel_event is None:
            return False
        logger.info(f"Cancelling scan {self.current_session.scan_id}")
        self._cancel_event.set()
        return True

    # -------------------------------------------------------------------------
    # Scan execution
    # -------------------------------------------------------------------------

    async def run(self, session: ScanSession) -> AsyncIterator[SiteRecord]:
        """
        Execute a session opened by begin_scan, yielding every site transition.

        Discovery failures end the scan with phase=failed and yield nothing.
        Persistence failures are recorded as session warnings.
        """
        if session is not self.current_session or session.phase != ScanPhase.DISCOVERING:
            raise ValueError(f"Scan {session.scan_id} is not the pending current scan")

        tracker = self._tracker
        tracker.start_discovery()
        db = None
        try:
            try:
                discovery, capacity, ownership = self._build_clients()
                sites = await discovery.discover(session.query)
            except (DiscoveryError, MissingServiceConfigError) as e:
                logger.error(f"Scan {session.scan_id} aborted during discovery: {e}", exc_info=True)
                tracker.fail(str(e))
                return

            self.current_sites = sites
            tracker.discovery_completed(len(sites))

            engine = EnrichmentEngine(
                capacity_client=capacity,
                ownership_client=ownership,
                context_overrides=self._context_overrides,
                cancel_event=self._cancel_event,
            )
            sites_by_id = {site.id: site for site in sites}
            db = self.session_factory()
            persister = SitePersister(
                db,
                mva_per_mw=self.settings.mva_per_mw,
                default_load_factor=self.settings.default_load_factor,
            )

            async for update in engine.enrich(sites, tracker):
                if update.analysis_status == AnalysisStatus.COMPLETED:
                    self._store(persister, sites_by_id[update.id], tracker)
                    update.stored_at = sites_by_id[update.id].stored_at
                yield update

            if self._cancel_event.is_set() and any(
                s.analysis_status == AnalysisStatus.PENDING for s in sites
            ):
                tracker.cancel()
            else:
                tracker.complete()
            logger.info(
                f"Scan {session.scan_id} {session.phase.value}: "
                f"{session.analyzed} analyzed, {session.failed} failed, {session.stored} stored"
            )

        except Exception as e:
            logger.error(f"Scan {session.scan_id} failed: {e}", exc_info=True)
            tracker.fail(str(e))
            raise
        finally:
            if session.is_active:
                # Consumer stopped iterating before the scan finished
                tracker.cancel()
            if db is not None:
                db.close()
            await self._close_owned_clients()
            self._archive(session)

    def _store(self, persister: SitePersister, site: SiteRecord, tracker: ScanSessionTracker) -> None:
        try:
            persister.upsert(site)
            tracker.record_stored()
        except PersistenceError as e:
            logger.warning(f"Site {site.name} analyzed but not stored: {e.message}")
            tracker.add_warning(f"{site.name}: {e.message}")

    def _build_clients(self):
        """Use injected clients, building the missing ones from settings."""
        discovery = self.discovery_client
        if discovery is None:
            discovery = DiscoveryClient.from_settings(self.settings)
            self._owned_clients.append(discovery)

        capacity = self.capacity_client
        if capacity is None:
            capacity = CapacityClient.from_settings(self.settings)
            self._owned_clients.append(capacity)

        ownership = self.ownership_client
        if ownership is None:
            ownership = OwnershipClient.from_settings(self.settings)
            if ownership is not None:
                self._owned_clients.append(ownership)

        return discovery, capacity, ownership

    async def _close_owned_clients(self) -> None:
        while self._owned_clients:
            await self._owned_clients.pop().close()

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def _archive(self, session: ScanSession) -> None:
        """Record the finished session in memory and in site_scan_session."""
        self.history.insert(0, session.model_copy(deep=True))
        del self.history[HISTORY_LIMIT:]

        db = self.session_factory()
        try:
            record = db.query(ScanSessionRecord).filter(
                ScanSessionRecord.scan_id == session.scan_id
            ).first()
            if record is None:
                record = ScanSessionRecord(scan_id=session.scan_id)
                db.add(record)
            record.query = session.query.model_dump(mode="json", exclude_none=True)
            record.phase = session.phase.value
            record.progress = session.progress
            record.sites_discovered = session.discovered
            record.sites_analyzed = session.analyzed
            record.sites_failed = session.failed
            record.sites_stored = session.stored
            record.warnings = list(session.warnings)
            record.error_message = session.error_message
            record.started_at = session.started_at
            record.completed_at = session.completed_at or datetime.utcnow()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to archive scan {session.scan_id}: {e}")
        finally:
            db.close()

    def list_history(self, limit: int = 20) -> List[dict]:
        """
        Archived scans, newest first.

        Reads site_scan_session; when the database is unreachable, falls back
        to the sessions this pipeline archived in memory.
        """
        db = self.session_factory()
        try:
            records = (
                db.query(ScanSessionRecord)
                .order_by(ScanSessionRecord.started_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "scan_id": r.scan_id,
                    "query": r.query,
                    "phase": r.phase,
                    "progress": r.progress,
                    "discovered": r.sites_discovered,
                    "analyzed": r.sites_analyzed,
                    "failed": r.sites_failed,
                    "stored": r.sites_stored,
                    "warnings": r.warnings or [],
                    "error_message": r.error_message,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                }
                for r in records
            ]
        except SQLAlchemyError as e:
            logger.warning(f"Scan history unavailable from database, using in-memory history: {e}")
            return [
                {
                    "scan_id": s.scan_id,
                    "query": s.query.model_dump(mode="json", exclude_none=True),
                    "phase": s.phase.value,
                    "progress": s.progress,
                    "discovered": s.discovered,
                    "analyzed": s.analyzed,
                    "failed": s.failed,
                    "stored": s.stored,
                    "warnings": list(s.warnings),
                    "error_message": s.error_message,
                    "started_at": s.started_at.isoformat() if s.started_at else None,
                    "completed_at": s.completed_at.isoformat() if s.completed_at else None,
                }
                for s in self.history[:limit]
            ]
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Stored sites
    # -------------------------------------------------------------------------

    def load_stored(self, source: Optional[str] = None) -> List[SiteRecord]:
        db = self.session_factory()
        try:
            return SitePersister(db).load_all(source=source)
        finally:
            db.close()

    def delete_stored(self, site_ids: Optional[List[str]] = None, source: Optional[str] = None) -> int:
        """Delete the given stored sites, or every stored site when no ids are given."""
        db = self.session_factory()
        try:
            persister = SitePersister(db)
            if site_ids:
                return persister.delete_sites(site_ids)
            return persister.delete_all(source=source)
        finally:
            db.close()
