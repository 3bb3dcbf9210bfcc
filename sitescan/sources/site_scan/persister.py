"""
Site Persistence Adapter.

Writes enriched sites to the site_scan_substation table and reads them back.
Rows are keyed on (name, latitude, longitude); writing the same site twice
updates the existing row in place.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sitescan.core.api_errors import PersistenceError
from sitescan.core.models import StoredSite
from sitescan.sources.site_scan.types import (
    AnalysisStatus,
    CapacityEstimate,
    Coordinates,
    SiteDetails,
    SiteRecord,
)

logger = logging.getLogger(__name__)

NATURAL_KEY = ["name", "latitude", "longitude"]

UNKNOWN_STATE = "Unknown"
DEFAULT_VOLTAGE_LEVEL = "Estimated"
DEFAULT_UTILITY_OWNER = "Unknown"
DEFAULT_INTERCONNECTION_TYPE = "unknown"

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def split_address(address: str) -> Tuple[Optional[str], str]:
    """
    Pull (city, state) out of a formatted address.

    "123 Main St, Dallas, TX 75201, USA" -> ("123 Main St", "TX"): the city is
    the first comma part, the state the first token of the second-to-last part.
    """
    parts = [p.strip() for p in (address or "").split(",")]
    city = parts[0] or None
    state = UNKNOWN_STATE
    if len(parts) >= 2:
        tokens = parts[-2].split()
        if tokens:
            state = tokens[0]
    return city, state


class SitePersister:
    """
    Upserts SiteRecords into the database.

    Synchronous: each call commits before returning, so the enrichment loop
    never overlaps writes for consecutive sites.
    """

    def __init__(
        self,
        db: Session,
        mva_per_mw: float = 1.25,
        default_load_factor: float = 0.75,
    ):
        self.db = db
        self.mva_per_mw = mva_per_mw
        self.default_load_factor = default_load_factor

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect]
        except KeyError:
            raise PersistenceError(f"Upsert is not supported on the '{dialect}' dialect")

    def to_row(self, site: SiteRecord) -> Dict[str, Any]:
        """Map a completed SiteRecord to a site_scan_substation row."""
        if site.coordinates is None:
            raise PersistenceError("Site has no coordinates", site_name=site.name)
        if site.capacity_estimate is None:
            raise PersistenceError("Site has no capacity estimate", site_name=site.name)

        estimate = site.capacity_estimate
        details = site.details or SiteDetails()
        city, state = split_address(site.address)

        return {
            "external_id": site.id,
            "name": site.name,
            "address": site.address or None,
            "latitude": site.coordinates.latitude,
            "longitude": site.coordinates.longitude,
            "city": city,
            "state": state,
            "capacity_mva": estimate.max * self.mva_per_mw,
            "capacity_min_mw": estimate.min,
            "capacity_max_mw": estimate.max,
            "confidence": estimate.confidence,
            "load_factor": details.load_factor if details.load_factor is not None else self.default_load_factor,
            "voltage_level": details.voltage_level or DEFAULT_VOLTAGE_LEVEL,
            "utility_owner": details.utility_owner or DEFAULT_UTILITY_OWNER,
            "interconnection_type": details.interconnection_type or DEFAULT_INTERCONNECTION_TYPE,
            "ownership_confidence": details.ownership_confidence,
            "ownership_source": details.ownership_source,
            "status": "active",
            "coordinates_source": site.source,
            "stored_at": datetime.utcnow(),
        }

    def upsert(self, site: SiteRecord) -> datetime:
        """
        Insert or update one site on its natural key.

        Sets site.stored_at on success.

        Returns:
            The stored_at timestamp written

        Raises:
            PersistenceError: Site not storable, or the write failed
        """
        row = self.to_row(site)
        insert = self._insert()

        stmt = insert(StoredSite).values(row)
        update_columns = [col for col in row if col not in NATURAL_KEY]
        stmt = stmt.on_conflict_do_update(
            index_elements=NATURAL_KEY,
            set_={col: stmt.excluded[col] for col in update_columns},
        )

        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store site {site.name}: {e}")
            raise PersistenceError(f"Database write failed: {e}", site_name=site.name) from e

        site.stored_at = row["stored_at"]
        logger.debug(f"Stored site {site.name} ({row['latitude']}, {row['longitude']})")
        return site.stored_at

    def load_all(self, source: Optional[str] = None) -> List[SiteRecord]:
        """
        Load stored sites, oldest row first.

        Args:
            source: Only rows written with this coordinates_source
        """
        query = self.db.query(StoredSite)
        if source:
            query = query.filter(StoredSite.coordinates_source == source)
        return [self.from_row(row) for row in query.order_by(StoredSite.id).all()]

    @staticmethod
    def from_row(row: StoredSite) -> SiteRecord:
        """Rebuild a completed SiteRecord from a stored row."""
        estimate = None
        if row.capacity_max_mw is not None:
            max_mw = float(row.capacity_max_mw)
            min_mw = float(row.capacity_min_mw) if row.capacity_min_mw is not None else max_mw
            estimate = CapacityEstimate(
                min=min(min_mw, max_mw),
                max=max_mw,
                confidence=float(row.confidence or 0.0),
            )

        return SiteRecord(
            id=row.external_id or str(row.id),
            name=row.name,
            address=row.address or "",
            coordinates=Coordinates(latitude=float(row.latitude), longitude=float(row.longitude)),
            capacity_estimate=estimate,
            details=SiteDetails(
                utility_owner=row.utility_owner,
                voltage_level=row.voltage_level,
                interconnection_type=row.interconnection_type,
                ownership_confidence=row.ownership_confidence,
                ownership_source=row.ownership_source,
                load_factor=row.load_factor,
            ),
            analysis_status=AnalysisStatus.COMPLETED,
            stored_at=row.stored_at,
            source=row.coordinates_source or "discovery_service",
        )

    def delete_sites(self, site_ids: Iterable[str]) -> int:
        """
        Delete stored sites by id (external id or row id).

        Returns:
            Number of rows deleted
        """
        ids = [str(i) for i in site_ids]
        if not ids:
            return 0
        row_ids = [int(i) for i in ids if i.isdigit()]
        try:
            deleted = 0
            for row in self.db.query(StoredSite).filter(
                (StoredSite.external_id.in_(ids)) | (StoredSite.id.in_(row_ids))
            ).all():
                self.db.delete(row)
                deleted += 1
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to delete sites: {e}") from e

        logger.info(f"Deleted {deleted} stored sites")
        return deleted

    def delete_all(self, source: Optional[str] = None) -> int:
        """Delete every stored site, optionally only those from one source."""
        query = self.db.query(StoredSite)
        if source:
            query = query.filter(StoredSite.coordinates_source == source)
        try:
            deleted = query.delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to clear sites: {e}") from e

        logger.info(f"Deleted {deleted} stored sites" + (f" from {source}" if source else ""))
        return deleted
