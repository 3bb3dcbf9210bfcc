"""
Pytest configuration and shared fixtures.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sitescan.core.config import reset_settings
from sitescan.core.models import Base
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    CapacityEstimate,
    Coordinates,
    SiteDetails,
    SiteRecord,
)


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all app-related env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "DISCOVERY_SERVICE_URL",
        "CAPACITY_SERVICE_URL",
        "OWNERSHIP_SERVICE_URL",
        "SERVICE_API_KEY",
        "DETECT_OWNERSHIP",
        "LOG_LEVEL",
        "MAX_RETRIES",
        "RETRY_BACKOFF_FACTOR",
        "DISCOVERY_WEIGHT",
        "CLUSTER_RADIUS_DEGREES",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


@pytest.fixture(scope="function")
def test_engine():
    """
    In-memory SQLite engine shared by every session in a test.

    StaticPool keeps the single connection alive so separate sessions see the
    same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """
    Create an in-memory SQLite database session for testing.

    Fresh database for each test.
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Site fixtures
# =============================================================================


@pytest.fixture
def pending_sites():
    """Three freshly discovered sites around Dallas."""
    return [
        SiteRecord(
            id="site-1",
            name="Oak Cliff Substation",
            address="1200 W Davis St, Dallas, TX 75208, USA",
            coordinates=Coordinates(latitude=32.7490, longitude=-96.8420),
        ),
        SiteRecord(
            id="site-2",
            name="Mockingbird Substation",
            address="5500 E Mockingbird Ln, Dallas, TX 75206, USA",
            coordinates=Coordinates(latitude=32.8370, longitude=-96.7720),
        ),
        SiteRecord(
            id="site-3",
            name="Irving North Substation",
            address="800 N Belt Line Rd, Irving, TX 75061, USA",
            coordinates=Coordinates(latitude=32.8210, longitude=-96.9700),
        ),
    ]


@pytest.fixture
def completed_sites():
    """Analyzed sites spanning the capacity and confidence buckets."""
    return [
        SiteRecord(
            id="done-1",
            name="Oak Cliff Substation",
            address="1200 W Davis St, Dallas, TX 75208, USA",
            coordinates=Coordinates(latitude=32.7490, longitude=-96.8420),
            capacity_estimate=CapacityEstimate(min=40, max=80, confidence=0.9),
            details=SiteDetails(utility_owner="Oncor", voltage_level="138kV, 69kV"),
            analysis_status=AnalysisStatus.COMPLETED,
        ),
        SiteRecord(
            id="done-2",
            name="Mockingbird Substation",
            address="5500 E Mockingbird Ln, Dallas, TX 75206, USA",
            coordinates=Coordinates(latitude=32.8370, longitude=-96.7720),
            capacity_estimate=CapacityEstimate(min=100, max=150, confidence=0.7),
            analysis_status=AnalysisStatus.COMPLETED,
        ),
        SiteRecord(
            id="done-3",
            name="Fort Worth Central",
            address="300 Main St, Fort Worth, TX 76102, USA",
            coordinates=Coordinates(latitude=32.7555, longitude=-97.3308),
            capacity_estimate=CapacityEstimate(min=200, max=300, confidence=0.5),
            analysis_status=AnalysisStatus.COMPLETED,
        ),
        SiteRecord(
            id="failed-1",
            name="Garland East",
            address="900 State St, Garland, TX 75040, USA",
            coordinates=Coordinates(latitude=32.9126, longitude=-96.6389),
            analysis_status=AnalysisStatus.FAILED,
        ),
    ]


@pytest.fixture
def capacity_payload():
    """Factory for capacity service response bodies."""
    def _make(min_mw=50.0, max_mw=120.0, confidence=85, **extra):
        body = {
            "estimatedCapacity": {"min": min_mw, "max": max_mw},
            "detectionResults": {"confidence": confidence},
        }
        body.update(extra)
        return {"success": True, "result": body}
    return _make
