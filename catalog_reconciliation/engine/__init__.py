"""
Engine modules for reconciliation logic.

- BatchFetcher: Fetch store records by sku
- BulkExporter: Export the full catalog through a bulk operation
- compare: Classify supplier records against store records
- Remediator: Apply fixes to the store
- Auditor: Live/bulk audit entry points
"""
from catalog_reconciliation.engine.auditor import Auditor
from catalog_reconciliation.engine.bulk_export import BulkExporter, BulkOperationError
from catalog_reconciliation.engine.comparator import compare
from catalog_reconciliation.engine.fetcher import BatchFetcher, FetchAbortedError
from catalog_reconciliation.engine.remediator import Remediator

__all__ = [
    "Auditor",
    "BatchFetcher",
    "BulkExporter",
    "BulkOperationError",
    "FetchAbortedError",
    "Remediator",
    "compare",
]
