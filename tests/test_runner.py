"""
Unit tests for the ScanPipeline orchestrator.

Remote clients are mocked; persistence runs against in-memory SQLite.
"""
import pytest
from sqlalchemy.exc import OperationalError
from unittest.mock import AsyncMock, MagicMock, patch

from sitescan.core.api_errors import (
    DiscoveryError,
    PersistenceError,
    RetryableError,
    ScanInProgressError,
)
from sitescan.core.config import MissingServiceConfigError, Settings
from sitescan.core.models import ScanSessionRecord, StoredSite
from sitescan.sources.site_scan.analysis_clients import CapacityClient, CapacityResult
from sitescan.sources.site_scan.discovery_client import DiscoveryClient
from sitescan.sources.site_scan.persister import SitePersister
from sitescan.sources.site_scan.runner import ScanPipeline
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    CapacityEstimate,
    LocationQuery,
    ScanPhase,
    ScanSession,
    SiteRecord,
)

QUERY = LocationQuery(location="Dallas, TX")


def _capacity(max_mw=120.0):
    return CapacityResult(estimate=CapacityEstimate(min=max_mw / 2, max=max_mw, confidence=0.8))


@pytest.fixture
def settings(clean_env):
    return Settings(_env_file=None)


@pytest.fixture
def discovery(pending_sites):
    client = MagicMock(spec=DiscoveryClient)
    client.discover = AsyncMock(return_value=pending_sites)
    return client


@pytest.fixture
def capacity():
    client = MagicMock(spec=CapacityClient)
    client.estimate = AsyncMock(side_effect=[
        _capacity(80.0),
        RetryableError("Timed out", source="capacity"),
        _capacity(300.0),
    ])
    return client


@pytest.fixture
def pipeline(session_factory, settings, discovery, capacity):
    return ScanPipeline(
        session_factory=session_factory,
        settings=settings,
        discovery_client=discovery,
        capacity_client=capacity,
    )


@pytest.mark.unit
class TestRunScan:

    @pytest.mark.asyncio
    async def test_full_scan(self, pipeline, test_db):
        session = await pipeline.run_scan(QUERY)

        assert session.phase == ScanPhase.COMPLETED
        assert session.progress == 100
        assert session.discovered == 3
        assert session.analyzed == 2
        assert session.failed == 1
        assert session.stored == 2
        assert [s.analysis_status for s in pipeline.current_sites] == [
            AnalysisStatus.COMPLETED, AnalysisStatus.FAILED, AnalysisStatus.COMPLETED,
        ]
        assert pipeline.current_sites[0].stored_at is not None
        assert pipeline.current_sites[1].stored_at is None

        assert test_db.query(StoredSite).count() == 2
        record = test_db.query(ScanSessionRecord).one()
        assert record.scan_id == session.scan_id
        assert record.phase == "completed"
        assert record.sites_stored == 2
        assert record.query == {"location": "Dallas, TX"}

    @pytest.mark.asyncio
    async def test_run_yields_every_transition(self, pipeline):
        session = pipeline.begin_scan(QUERY)
        updates = [u async for u in pipeline.run(session)]

        assert len(updates) == 6
        completed = [u for u in updates if u.analysis_status == AnalysisStatus.COMPLETED]
        assert all(u.stored_at is not None for u in completed)

    @pytest.mark.asyncio
    async def test_discovery_failure_aborts(self, pipeline, discovery, capacity, test_db):
        discovery.discover.side_effect = DiscoveryError("No usable sites found for Dallas, TX")

        session = await pipeline.run_scan(QUERY)

        assert session.phase == ScanPhase.FAILED
        assert "No usable sites" in session.error_message
        assert pipeline.current_sites == []
        capacity.estimate.assert_not_awaited()
        assert test_db.query(ScanSessionRecord).one().phase == "failed"

    @pytest.mark.asyncio
    async def test_persistence_failure_is_a_warning(self, pipeline):
        with patch.object(SitePersister, "upsert", side_effect=PersistenceError("database is locked")):
            session = await pipeline.run_scan(QUERY)

        assert session.phase == ScanPhase.COMPLETED
        assert session.stored == 0
        assert len(session.warnings) == 2
        assert "database is locked" in session.warnings[0]

    @pytest.mark.asyncio
    async def test_rescan_updates_rows(self, pipeline, capacity, discovery, pending_sites, test_db):
        await pipeline.run_scan(QUERY)

        fresh = [
            SiteRecord(**s.model_dump(include={"id", "name", "address", "coordinates", "source"}))
            for s in pending_sites
        ]
        discovery.discover.return_value = fresh
        capacity.estimate.side_effect = [_capacity(90.0), _capacity(95.0), _capacity(99.0)]

        await pipeline.run_scan(QUERY)

        assert test_db.query(StoredSite).count() == 3


@pytest.mark.unit
class TestScanControl:

    @pytest.mark.asyncio
    async def test_second_scan_rejected_while_active(self, pipeline):
        session = pipeline.begin_scan(QUERY)
        with pytest.raises(ScanInProgressError) as exc_info:
            pipeline.begin_scan(QUERY)
        assert session.scan_id in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_new_scan_allowed_after_finish(self, pipeline, discovery):
        discovery.discover.side_effect = DiscoveryError("down")
        first = await pipeline.run_scan(QUERY)
        second = pipeline.begin_scan(QUERY)
        assert second.scan_id != first.scan_id

    @pytest.mark.asyncio
    async def test_cancel_between_sites(self, pipeline):
        session = pipeline.begin_scan(QUERY)
        async for update in pipeline.run(session):
            if update.is_terminal:
                assert pipeline.cancel()

        assert session.phase == ScanPhase.CANCELLED
        assert [s.analysis_status for s in pipeline.current_sites] == [
            AnalysisStatus.COMPLETED, AnalysisStatus.PENDING, AnalysisStatus.PENDING,
        ]
        assert not pipeline.cancel()

    @pytest.mark.asyncio
    async def test_background_scan(self, pipeline):
        session = pipeline.start_scan(QUERY)
        assert pipeline.is_running
        await pipeline._task
        assert session.phase == ScanPhase.COMPLETED
        assert not pipeline.is_running

    def test_missing_service_config(self, session_factory, settings):
        pipeline = ScanPipeline(session_factory=session_factory, settings=settings)
        with pytest.raises(MissingServiceConfigError):
            pipeline.begin_scan(QUERY)
        assert pipeline.current_session is None

    @pytest.mark.asyncio
    async def test_run_requires_current_session(self, pipeline):
        pipeline.begin_scan(QUERY)
        with pytest.raises(ValueError):
            async for _ in pipeline.run(ScanSession(query=QUERY)):
                pass


@pytest.mark.unit
class TestHistoryAndStorage:

    @pytest.mark.asyncio
    async def test_history(self, pipeline, discovery):
        await pipeline.run_scan(QUERY)
        discovery.discover.side_effect = DiscoveryError("down")
        await pipeline.run_scan(LocationQuery(location="Austin, TX"))

        history = pipeline.list_history()

        assert len(history) == 2
        assert {h["phase"] for h in history} == {"completed", "failed"}
        assert len(pipeline.history) == 2
        assert pipeline.history[0].query.location == "Austin, TX"

    @pytest.mark.asyncio
    async def test_history_falls_back_to_memory_when_database_fails(self, pipeline, discovery):
        await pipeline.run_scan(QUERY)
        discovery.discover.side_effect = DiscoveryError("down")
        await pipeline.run_scan(LocationQuery(location="Austin, TX"))

        broken = MagicMock()
        broken.query.side_effect = OperationalError("SELECT", {}, Exception("gone"))
        pipeline.session_factory = MagicMock(return_value=broken)

        history = pipeline.list_history(limit=1)

        assert len(history) == 1
        assert history[0]["phase"] == "failed"
        assert history[0]["query"] == {"location": "Austin, TX"}
        broken.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_load_and_delete_stored(self, pipeline):
        await pipeline.run_scan(QUERY)

        stored = pipeline.load_stored()
        assert [s.name for s in stored] == ["Oak Cliff Substation", "Irving North Substation"]

        assert pipeline.delete_stored([stored[0].id]) == 1
        assert pipeline.delete_stored() == 1
        assert pipeline.load_stored() == []
