"""
Catalog comparator.

Classifies supplier records against store records: matched, mismatched,
missing in the store, duplicated in the store, or present in the store but
not in the supplier feed. Pure function, no I/O.
"""
import re
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from catalog_reconciliation.models import (
    AuditResult,
    AuditStatus,
    DuplicateSku,
    Mismatch,
    MismatchKind,
    MissingType,
    Record,
    Summary,
)

logger = structlog.get_logger(__name__)

GRAMS_PER_POUND = 453.592
# 50 lb
HEAVY_PRODUCT_THRESHOLD_GRAMS = 22679.6
# The storefront never shows more than this many units
INVENTORY_DISPLAY_CAP = 10
DEFAULT_EXCLUDED_LOCATION_ID = "gid://shopify/Location/86376317245"
CLEARANCE_TAG = "clearance"

_H1_PATTERN = re.compile(r"<h1", re.IGNORECASE)


def is_clearance_feed(source_label: str) -> bool:
    return CLEARANCE_TAG in (source_label or "").lower()


def heavy_product_mismatch(supplier: Record) -> Optional[Mismatch]:
    """Informational flag for products over 50 lb."""
    if supplier.weight_grams and supplier.weight_grams > HEAVY_PRODUCT_THRESHOLD_GRAMS:
        return Mismatch(
            field=MismatchKind.HEAVY_PRODUCT_FLAG,
            supplier_value=f"{supplier.weight_grams / GRAMS_PER_POUND:.2f} lbs",
            remote_value=None,
        )
    return None


def find_mismatches(
    supplier: Record,
    remote: Record,
    source_label: str,
    excluded_location_id: str = DEFAULT_EXCLUDED_LOCATION_ID,
    clearance_template: str = CLEARANCE_TAG,
) -> List[Mismatch]:
    """
    Compare one supplier record with one store record.

    Args:
        supplier: Record from the supplier feed
        remote: Record from the store with the same sku
        source_label: Supplier file name; clearance rules apply when it mentions clearance
        excluded_location_id: Location whose stock is deliberately out of sync
        clearance_template: Template suffix clearance products must use

    Returns:
        Mismatches in rule order (empty means matched)
    """
    if excluded_location_id and excluded_location_id in remote.location_ids:
        return []

    mismatches: List[Mismatch] = []

    if supplier.price != remote.price:
        mismatches.append(Mismatch(
            field=MismatchKind.PRICE,
            supplier_value=supplier.price,
            remote_value=remote.price,
        ))

    if supplier.inventory is not None and supplier.inventory != remote.inventory:
        is_capped = (
            supplier.inventory > INVENTORY_DISPLAY_CAP
            and remote.inventory == INVENTORY_DISPLAY_CAP
        )
        if not is_capped:
            mismatches.append(Mismatch(
                field=MismatchKind.INVENTORY,
                supplier_value=supplier.inventory,
                remote_value=remote.inventory,
            ))

    if remote.description_html and _H1_PATTERN.search(remote.description_html):
        mismatches.append(Mismatch(
            field=MismatchKind.H1_TAG,
            supplier_value="No H1 Expected",
            remote_value="H1 Found",
        ))

    heavy = heavy_product_mismatch(supplier)
    if heavy:
        mismatches.append(heavy)

    remote_tags = remote.tag_set()

    if is_clearance_feed(source_label):
        if supplier.compare_at_price is not None and supplier.price == supplier.compare_at_price:
            mismatches.append(Mismatch(
                field=MismatchKind.CLEARANCE_PRICE_MISMATCH,
                supplier_value=f"Price: {supplier.price}",
                remote_value=f"Compare At: {supplier.compare_at_price}",
            ))
        else:
            if CLEARANCE_TAG not in remote_tags:
                mismatches.append(Mismatch(
                    field=MismatchKind.MISSING_CLEARANCE_TAG,
                    supplier_value="Clearance",
                    remote_value=remote.tags or "No Tags",
                ))
            if remote.template_suffix != clearance_template:
                mismatches.append(Mismatch(
                    field=MismatchKind.INCORRECT_TEMPLATE_SUFFIX,
                    supplier_value=clearance_template,
                    remote_value=remote.template_suffix or "Default Template",
                ))

    if supplier.category and supplier.category.strip():
        if supplier.category.strip().lower() not in remote_tags:
            mismatches.append(Mismatch(
                field=MismatchKind.MISSING_CATEGORY_TAG,
                supplier_value=supplier.category,
                remote_value=remote.tags or "No Tags",
            ))

    return mismatches


def _classified(supplier: Record, remote: Record, mismatches: List[Mismatch]) -> AuditResult:
    return AuditResult(
        sku=supplier.sku,
        supplier_records=(supplier,),
        remote_records=(remote,),
        status=AuditStatus.MISMATCHED if mismatches else AuditStatus.MATCHED,
        mismatches=tuple(mismatches),
    )


def _missing(supplier: Record, handle_exists: bool) -> AuditResult:
    mismatches = [Mismatch(
        field=MismatchKind.MISSING_IN_REMOTE,
        supplier_value=f"SKU: {supplier.sku}",
        remote_value=None,
        missing_type=MissingType.VARIANT if handle_exists else MissingType.PRODUCT,
    )]
    heavy = heavy_product_mismatch(supplier)
    if heavy:
        mismatches.append(heavy)
    return AuditResult(
        sku=supplier.sku,
        supplier_records=(supplier,),
        status=AuditStatus.MISSING_IN_REMOTE,
        mismatches=tuple(mismatches),
    )


def compare(
    supplier_records: Sequence[Record],
    remote_records: Sequence[Record],
    source_label: str,
    excluded_location_id: str = DEFAULT_EXCLUDED_LOCATION_ID,
    clearance_template: str = CLEARANCE_TAG,
) -> Tuple[List[AuditResult], Summary]:
    """
    Reconcile the supplier feed with the store catalog.

    Args:
        supplier_records: Records parsed from the supplier feed
        remote_records: Records fetched from the store
        source_label: Supplier file name
        excluded_location_id: Location whose stock is deliberately out of sync
        clearance_template: Template suffix clearance products must use

    Returns:
        (results sorted by handle then sku, summary counts)
    """
    by_sku: Dict[str, List[Record]] = defaultdict(list)
    for record in remote_records:
        by_sku[record.sku_key].append(record)
    remote_handles = {record.handle for record in remote_records}

    results: List[AuditResult] = []
    counts: Dict[AuditStatus, int] = defaultdict(int)
    processed = set()

    def rules(supplier: Record, remote: Record) -> List[Mismatch]:
        return find_mismatches(
            supplier, remote, source_label, excluded_location_id, clearance_template
        )

    for supplier in supplier_records:
        key = supplier.sku_key
        group = by_sku.get(key)

        if not group:
            results.append(_missing(supplier, supplier.handle in remote_handles))
            counts[AuditStatus.MISSING_IN_REMOTE] += 1
            continue

        processed.add(key)

        if len(group) > 1:
            results.append(AuditResult(
                sku=supplier.sku,
                supplier_records=(supplier,),
                remote_records=tuple(group),
                status=AuditStatus.DUPLICATE_IN_REMOTE,
                mismatches=(Mismatch(
                    field=MismatchKind.DUPLICATE_IN_REMOTE,
                    supplier_value=None,
                    remote_value=f"Used in {len(group)} products",
                ),),
            ))
            # Per-duplicate rows let each copy be fixed on its own; they are
            # not counted, the duplicate row already is.
            results.extend(_classified(supplier, remote, rules(supplier, remote)) for remote in group)
            counts[AuditStatus.DUPLICATE_IN_REMOTE] += 1
            continue

        result = _classified(supplier, group[0], rules(supplier, group[0]))
        results.append(result)
        counts[result.status] += 1

    for key, group in by_sku.items():
        if key in processed:
            continue
        for remote in group:
            results.append(AuditResult(
                sku=remote.sku,
                remote_records=(remote,),
                status=AuditStatus.NOT_IN_SUPPLIER_FEED,
            ))
            counts[AuditStatus.NOT_IN_SUPPLIER_FEED] += 1

    results.sort(key=lambda r: (r.handle, r.sku))

    summary = Summary(**{status.value: counts[status] for status in AuditStatus})
    logger.info("comparison_complete", results=len(results), **summary.model_dump())
    return results, summary


def duplicate_skus(results: Sequence[AuditResult]) -> List[DuplicateSku]:
    """Skus attached to more than one store variant."""
    return [
        DuplicateSku(sku=r.sku, count=len(r.remote_records))
        for r in results
        if r.status == AuditStatus.DUPLICATE_IN_REMOTE
    ]
