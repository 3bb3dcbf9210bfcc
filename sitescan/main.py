"""
Site Scan Service.

Start scans, follow their progress over SSE, and query the discovered sites
as filtered lists, map clusters, stats and CSV.

Run with:
    uvicorn sitescan.main:app --reload
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from sitescan.api.v1 import site_scan
from sitescan.core.config import get_settings
from sitescan.core.database import create_tables, get_engine

SERVICE_NAME = "Site Scan Service"
VERSION = "0.1.0"

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _configured_services() -> dict:
    settings = get_settings()
    return {
        "discovery": bool(settings.discovery_service_url),
        "capacity": bool(settings.capacity_service_url),
        "ownership": bool(settings.get_ownership_service_url()),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; stop any running scan on shutdown."""
    logger.info(f"Starting {SERVICE_NAME} (log level {get_settings().log_level})")
    services = _configured_services()
    if not (services["discovery"] and services["capacity"]):
        logger.warning("Discovery/capacity service URLs not set; scans will be rejected until configured")

    create_tables()

    yield

    if site_scan.get_pipeline().cancel():
        logger.info("Cancelled running scan on shutdown")
    logger.info(f"{SERVICE_NAME} stopped")


app = FastAPI(
    title=SERVICE_NAME,
    description="Discovery, capacity enrichment and aggregation of power infrastructure sites",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(site_scan.router, prefix="/api/v1")


@app.get("/")
def root():
    return {"service": SERVICE_NAME, "version": VERSION, "docs": "/docs"}


@app.get("/health")
def health_check():
    """
    Database connectivity and which remote services are configured.

    status is "degraded" when the database cannot be reached.
    """
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.warning(f"Database health check failed: {e}")
        database = f"error: {e}"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "services": _configured_services(),
    }
