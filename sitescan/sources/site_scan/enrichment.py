"""
Site Enrichment Engine.

Drives each pending site through capacity (and, when configured, ownership)
analysis, strictly one site at a time. For every site it emits two updates:
the interim `analyzing` state and the terminal `completed`/`failed` state.

A failure on one site never stops the queue: the site is marked failed with
no capacity data and enrichment moves on to the next one.
"""
import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional

from pydantic import BaseModel

from sitescan.core.api_errors import APIError, EnrichmentError
from sitescan.sources.site_scan.analysis_clients import (
    CapacityClient,
    CapacityResult,
    OwnershipClient,
    OwnershipResult,
)
from sitescan.sources.site_scan.session import ScanSessionTracker
from sitescan.sources.site_scan.types import AnalysisStatus, SiteDetails, SiteRecord

logger = logging.getLogger(__name__)


class SiteContext(BaseModel):
    """Operator-supplied context forwarded to the capacity service."""
    name: Optional[str] = None
    notes: Optional[str] = None


class EnrichmentEngine:
    """
    Sequential, single-flight enrichment of discovered sites.

    Usage:
        engine = EnrichmentEngine(capacity_client, ownership_client)
        async for update in engine.enrich(sites, tracker):
            render(update)
    """

    def __init__(
        self,
        capacity_client: CapacityClient,
        ownership_client: Optional[OwnershipClient] = None,
        context_overrides: Optional[Dict[str, SiteContext]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        """
        Args:
            capacity_client: Capacity estimation service client
            ownership_client: Ownership detection client (None disables it)
            context_overrides: Operator context keyed by site id
            cancel_event: Checked between sites; when set, the remaining
                sites are left pending
        """
        self.capacity_client = capacity_client
        self.ownership_client = ownership_client
        self.context_overrides = context_overrides or {}
        self.cancel_event = cancel_event
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def enrich(
        self,
        sites: List[SiteRecord],
        tracker: ScanSessionTracker,
    ) -> AsyncIterator[SiteRecord]:
        """
        Enrich sites in order, yielding a snapshot after every status change.

        The sites are mutated in place; yielded values are copies, so a
        consumer can keep them as a history of transitions.

        Raises:
            RuntimeError: The engine is already enriching another batch
            ValueError: A site is not pending or appears twice
        """
        if self._running:
            raise RuntimeError("Enrichment already in progress on this engine")
        self._validate_batch(sites)

        self._running = True
        try:
            total = len(sites)
            query_label = tracker.session.query.describe()
            for index, site in enumerate(sites, 1):
                if self.cancel_event is not None and self.cancel_event.is_set():
                    logger.info(f"Enrichment cancelled with {total - index + 1} sites left pending")
                    return

                site.mark_analyzing()
                tracker.site_updated(site)
                yield site.model_copy(deep=True)

                logger.info(f"Analyzing site {index}/{total}: {site.name}")
                await self._analyze(site, query_label)

                tracker.site_updated(site)
                yield site.model_copy(deep=True)
                tracker.record_site(site.analysis_status)
        finally:
            self._running = False

    def _validate_batch(self, sites: List[SiteRecord]) -> None:
        seen = set()
        for site in sites:
            if site.id in seen:
                raise ValueError(f"Site {site.id} appears more than once in the batch")
            seen.add(site.id)
            if site.analysis_status != AnalysisStatus.PENDING:
                raise ValueError(
                    f"Site {site.id} is {site.analysis_status.value}; only pending sites can be enriched"
                )

    async def _analyze(self, site: SiteRecord, query_label: str) -> None:
        """Run the analysis for one site and apply the terminal transition."""
        try:
            capacity = await self._estimate_capacity(site, query_label)
        except EnrichmentError as e:
            logger.warning(f"Failed to analyze {site.name}: {e.message}")
            site.mark_failed()
            return
        except Exception as e:
            logger.error(f"Unexpected error analyzing {site.name}: {e}", exc_info=True)
            site.mark_failed()
            return

        ownership = await self._detect_ownership(site)
        site.mark_completed(capacity.estimate, self._build_details(capacity, ownership))

    async def _estimate_capacity(self, site: SiteRecord, query_label: str) -> CapacityResult:
        if site.coordinates is None:
            raise EnrichmentError("Site has no coordinates", site_id=site.id)

        context = self.context_overrides.get(site.id) or SiteContext(
            name=site.name,
            notes=f"Auto-discovered via {site.source} from {query_label}",
        )
        try:
            return await self.capacity_client.estimate(
                latitude=site.coordinates.latitude,
                longitude=site.coordinates.longitude,
                name=context.name or site.name,
                notes=context.notes,
            )
        except APIError as e:
            raise EnrichmentError(str(e), site_id=site.id) from e

    async def _detect_ownership(self, site: SiteRecord) -> Optional[OwnershipResult]:
        """Best-effort ownership lookup; failures leave owner fields empty."""
        if self.ownership_client is None or site.coordinates is None:
            return None
        try:
            return await self.ownership_client.detect(
                name=site.name,
                latitude=site.coordinates.latitude,
                longitude=site.coordinates.longitude,
                address=site.address,
            )
        except APIError as e:
            logger.warning(f"Ownership detection failed for {site.name}: {e}")
            return None
        except Exception as e:
            logger.warning(f"Unexpected ownership detection error for {site.name}: {e}", exc_info=True)
            return None

    @staticmethod
    def _build_details(
        capacity: CapacityResult,
        ownership: Optional[OwnershipResult],
    ) -> SiteDetails:
        return SiteDetails(
            utility_owner=ownership.owner if ownership else None,
            voltage_level=capacity.voltage_level,
            interconnection_type=capacity.substation_type,
            ownership_confidence=ownership.confidence if ownership else None,
            ownership_source=ownership.source if ownership else None,
        )
