"""
Engine and session factory for the site scan tables.

Both are built lazily from settings and shared by the API, the background
scan task and the CLI. reset_engine() drops them so tests can point
DATABASE_URL somewhere else.
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from sitescan.core.config import get_settings
from sitescan.core.models import Base

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def get_engine() -> Engine:
    """
    Shared engine.

    SQLite is opened with check_same_thread=False because request handlers
    and the scan task use it from different threads. PostgreSQL gets a
    small pre-pinged pool.
    """
    global _engine
    if _engine is None:
        url = get_settings().database_url
        if url.startswith("sqlite"):
            _engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            _engine = create_engine(url, pool_size=5, max_overflow=10, pool_pre_ping=True)
        logger.debug(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def create_tables(engine=None) -> None:
    """Create site_scan_substation and site_scan_session if missing."""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Site scan tables ready")


def get_session_factory():
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the shared engine so the next call rebuilds it from settings."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
