"""
SQLAlchemy models for the site scan store.

Two tables:
- site_scan_substation: analyzed sites, unique on (name, latitude, longitude)
- site_scan_session: archived scan sessions (scan history)
"""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
    Numeric,
    Float,
    Index,
    UniqueConstraint,
)
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()


class StoredSite(Base):
    """
    An analyzed site.

    Anything in this table has finished enrichment; rows are upserted on the
    natural key so re-scanning the same place overwrites rather than duplicates.
    """

    __tablename__ = "site_scan_substation"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100))  # remote-assigned id, informational only
    name = Column(String(255), nullable=False)
    address = Column(Text)
    latitude = Column(Numeric(10, 7, asdecimal=False), nullable=False)
    longitude = Column(Numeric(10, 7, asdecimal=False), nullable=False)
    city = Column(String(100))
    state = Column(String(100), index=True)

    # Capacity
    capacity_mva = Column(Float)
    capacity_min_mw = Column(Float)
    capacity_max_mw = Column(Float)
    confidence = Column(Float)  # 0-1
    load_factor = Column(Float)

    # Ownership / grid details
    voltage_level = Column(String(50))
    utility_owner = Column(String(255))
    interconnection_type = Column(String(50))  # transmission, distribution, unknown
    ownership_confidence = Column(Float)
    ownership_source = Column(String(100))

    status = Column(String(30), default="active")
    coordinates_source = Column(String(50), index=True)
    stored_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("name", "latitude", "longitude", name="uq_site_scan_natural_key"),
        Index("idx_site_scan_location", "latitude", "longitude"),
    )

    def __repr__(self) -> str:
        return (
            f"<StoredSite(id={self.id}, name={self.name}, "
            f"lat={self.latitude}, lng={self.longitude})>"
        )


class ScanSessionRecord(Base):
    """Archive of finished scans."""

    __tablename__ = "site_scan_session"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String(64), unique=True, nullable=False, index=True)
    query = Column(JSON, nullable=False)
    phase = Column(String(20), nullable=False, index=True)
    progress = Column(Integer, nullable=False, default=0)
    sites_discovered = Column(Integer, default=0)
    sites_analyzed = Column(Integer, default=0)
    sites_failed = Column(Integer, default=0)
    sites_stored = Column(Integer, default=0)
    warnings = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    def __repr__(self) -> str:
        return (
            f"<ScanSessionRecord(scan_id={self.scan_id}, phase={self.phase}, "
            f"progress={self.progress})>"
        )
