"""
Audit service.

Entry points for callers: live audit (per-sku fetch), bulk audit (full
catalog export) and fix application.
"""
from typing import Iterable, Optional, Sequence

import structlog

from catalog_reconciliation.core.events import EventChannel
from catalog_reconciliation.engine.bulk_export import BulkExporter
from catalog_reconciliation.engine.comparator import (
    CLEARANCE_TAG,
    DEFAULT_EXCLUDED_LOCATION_ID,
    compare,
    duplicate_skus,
)
from catalog_reconciliation.engine.fetcher import BatchFetcher
from catalog_reconciliation.engine.remediator import Remediator
from catalog_reconciliation.models import (
    AuditReport,
    AuditResult,
    CacheStatus,
    MismatchKind,
    Record,
    RemediationReport,
)

logger = structlog.get_logger(__name__)


class Auditor:
    """Runs audits and applies fixes."""

    def __init__(
        self,
        fetcher: BatchFetcher,
        exporter: BulkExporter,
        remediator: Remediator,
        events: Optional[EventChannel] = None,
        excluded_location_id: str = DEFAULT_EXCLUDED_LOCATION_ID,
        clearance_template: str = CLEARANCE_TAG,
    ):
        self.fetcher = fetcher
        self.exporter = exporter
        self.remediator = remediator
        self.events = events or EventChannel()
        self.excluded_location_id = excluded_location_id
        self.clearance_template = clearance_template

    def _report(
        self,
        supplier_records: Sequence[Record],
        remote_records: Sequence[Record],
        source_label: str,
    ) -> AuditReport:
        results, summary = compare(
            supplier_records,
            remote_records,
            source_label,
            excluded_location_id=self.excluded_location_id,
            clearance_template=self.clearance_template,
        )
        self.events.publish("compare", "Comparison complete", **summary.model_dump())
        return AuditReport(
            source_label=source_label,
            results=results,
            summary=summary,
            duplicates=duplicate_skus(results),
        )

    async def run_live_audit(
        self,
        supplier_records: Sequence[Record],
        source_label: str,
    ) -> AuditReport:
        """
        Audit the supplier feed against store records fetched by sku.

        Raises:
            FetchAbortedError: The store could not be queried
        """
        if not supplier_records:
            logger.info("audit_skipped_empty_feed", source=source_label)
            return AuditReport(source_label=source_label)

        logger.info("live_audit_started", source=source_label, records=len(supplier_records))
        remote_records = await self.fetcher.fetch(r.sku for r in supplier_records)
        return self._report(supplier_records, remote_records, source_label)

    async def run_bulk_audit(
        self,
        supplier_records: Sequence[Record],
        source_label: str,
        use_cache: bool = False,
    ) -> AuditReport:
        """
        Audit the supplier feed against a full catalog export.

        Raises:
            BulkOperationError: The export FAILED, was CANCELED or timed out
        """
        if not supplier_records:
            logger.info("audit_skipped_empty_feed", source=source_label)
            return AuditReport(source_label=source_label)

        logger.info("bulk_audit_started", source=source_label, records=len(supplier_records), use_cache=use_cache)
        remote_records = await self.exporter.export(use_cache=use_cache)
        return self._report(supplier_records, remote_records, source_label)

    async def apply_fixes(
        self,
        results: Iterable[AuditResult],
        kinds: Optional[Iterable[MismatchKind]] = None,
        source_label: str = "",
    ) -> RemediationReport:
        return await self.remediator.apply(results, kinds, source_label=source_label)

    async def cache_status(self) -> CacheStatus:
        return await self.exporter.cache_status()

    async def delete_stale(self, results: Sequence[AuditResult]) -> RemediationReport:
        """Delete store variants the supplier feed no longer lists."""
        return await self.remediator.delete_stale(results)
