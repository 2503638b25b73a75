"""
Remediation orchestrator.

Applies fixes for audit mismatches against the store. Results are grouped by
store product so several fixes to one product run back to back, groups run
through a small worker pool, and every call's outcome is reported on its own.
"""
import asyncio
import re
from collections import OrderedDict, defaultdict
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from catalog_reconciliation.clients.shopify_client import ShopifyClient
from catalog_reconciliation.config import Settings
from catalog_reconciliation.core.events import EventChannel
from catalog_reconciliation.core.worker_pool import Sleep, run_bounded
from catalog_reconciliation.models import (
    AuditResult,
    AuditStatus,
    FixOutcome,
    MismatchKind,
    MissingType,
    RemediationReport,
)

logger = structlog.get_logger(__name__)

CLEARANCE_TAG = "Clearance"

# Kinds that only warn; fixing them means acknowledging them
ACKNOWLEDGE_ONLY = {MismatchKind.DUPLICATE_IN_REMOTE, MismatchKind.HEAVY_PRODUCT_FLAG}

# Kinds fixed with one call per variant rather than one per product
PER_VARIANT = {MismatchKind.PRICE, MismatchKind.INVENTORY}

Group = Tuple[str, List[AuditResult]]


def downgrade_h1(html: str) -> str:
    """Rewrite <h1> elements as <h2>."""
    html = re.sub(r"<h1", "<h2", html, flags=re.IGNORECASE)
    return re.sub(r"</h1>", "</h2>", html, flags=re.IGNORECASE)


def _remote_id(result: AuditResult) -> Optional[str]:
    return result.remote_records[0].remote_id if result.remote_records else None


def _variant_id(result: AuditResult) -> Optional[str]:
    return result.remote_records[0].variant_id if result.remote_records else None


def _outcome(result: AuditResult, kind: Optional[MismatchKind], success: bool, message: str) -> FixOutcome:
    return FixOutcome(
        sku=result.sku,
        field=kind,
        remote_id=_remote_id(result),
        variant_id=_variant_id(result),
        success=success,
        message=message,
    )


def select_fixes(
    results: Iterable[AuditResult],
    kinds: Optional[Iterable[MismatchKind]] = None,
) -> List[AuditResult]:
    """
    Keep only the requested mismatch kinds, dropping results left with none.

    Returns new results; the inputs are not modified.
    """
    wanted = set(kinds) if kinds else None
    selected = []
    for result in results:
        mismatches = tuple(
            m for m in result.mismatches if wanted is None or m.field in wanted
        )
        if mismatches:
            selected.append(result.model_copy(update={"mismatches": mismatches}))
    return selected


def group_by_product(results: Iterable[AuditResult]) -> "OrderedDict[str, List[AuditResult]]":
    """
    Group results by store product id.

    Results with no store record (missing in the store) are grouped by the
    supplier handle, so one product creation covers all its variants.
    """
    groups: "OrderedDict[str, List[AuditResult]]" = OrderedDict()
    for result in results:
        remote_id = _remote_id(result)
        if remote_id:
            key = remote_id
        else:
            key = f"handle:{result.handle}"
        groups.setdefault(key, []).append(result)
    return groups


class Remediator:
    """Applies audit fixes to the store."""

    def __init__(
        self,
        client: ShopifyClient,
        concurrency: int = 2,
        group_delay: float = 1.0,
        clearance_template: str = "clearance",
        events: Optional[EventChannel] = None,
        sleep: Optional[Sleep] = None,
    ):
        """
        Initialize remediator.

        Args:
            client: Shopify API client
            concurrency: Product groups processed at once
            group_delay: Pause after each group
            clearance_template: Template suffix applied to clearance products
            events: Progress channel
            sleep: Sleep coroutine (asyncio.sleep by default)
        """
        self.client = client
        self.concurrency = concurrency
        self.group_delay = group_delay
        self.clearance_template = clearance_template
        self.events = events or EventChannel()
        self._sleep = sleep or asyncio.sleep
        self._handlers: Dict[MismatchKind, Callable[[Sequence[AuditResult]], Awaitable[str]]] = {
            MismatchKind.NAME: self._fix_name,
            MismatchKind.PRICE: self._fix_price,
            MismatchKind.INVENTORY: self._fix_inventory,
            MismatchKind.H1_TAG: self._fix_h1,
            MismatchKind.MISSING_CLEARANCE_TAG: self._fix_clearance_tag,
            MismatchKind.CLEARANCE_PRICE_MISMATCH: self._fix_clearance_price,
            MismatchKind.INCORRECT_TEMPLATE_SUFFIX: self._fix_template,
            MismatchKind.MISSING_CATEGORY_TAG: self._fix_category_tag,
        }

    @classmethod
    def from_settings(
        cls,
        client: ShopifyClient,
        settings: Settings,
        events: Optional[EventChannel] = None,
    ) -> "Remediator":
        return cls(
            client,
            concurrency=settings.remediation_concurrency,
            group_delay=settings.remediation_delay,
            clearance_template=settings.clearance_template,
            events=events,
        )

    def supported_kinds(self) -> set:
        """Every kind this remediator can act on."""
        return set(self._handlers) | ACKNOWLEDGE_ONLY | {MismatchKind.MISSING_IN_REMOTE}

    # =========================================================================
    # Field handlers: each makes one call for the results of one product
    # and returns a success message
    # =========================================================================

    async def _fix_name(self, results: Sequence[AuditResult]) -> str:
        supplier, remote = results[0].supplier_record, results[0].remote_record
        await self.client.update_product(remote.remote_id, title=supplier.name)
        return f"Renamed to '{supplier.name}'"

    async def _fix_price(self, results: Sequence[AuditResult]) -> str:
        supplier, remote = results[0].supplier_record, results[0].remote_record
        await self.client.update_variant_price(remote.remote_id, remote.variant_id, supplier.price)
        return f"Price set to {supplier.price}"

    async def _fix_inventory(self, results: Sequence[AuditResult]) -> str:
        supplier, remote = results[0].supplier_record, results[0].remote_record
        if supplier.inventory is None:
            raise ValueError("Supplier inventory is empty")
        if not remote.inventory_item_id:
            raise ValueError("Store variant has no inventory item")
        location_id = await self.client.primary_location_id()
        await self.client.set_inventory(remote.inventory_item_id, location_id, supplier.inventory)
        return f"Inventory set to {supplier.inventory}"

    async def _fix_h1(self, results: Sequence[AuditResult]) -> str:
        remote = results[0].remote_record
        await self.client.update_product(
            remote.remote_id, description_html=downgrade_h1(remote.description_html or "")
        )
        return "Replaced H1 headings with H2"

    async def _fix_clearance_tag(self, results: Sequence[AuditResult]) -> str:
        await self.client.add_tags(results[0].remote_record.remote_id, [CLEARANCE_TAG])
        return f"Added tag '{CLEARANCE_TAG}'"

    async def _fix_clearance_price(self, results: Sequence[AuditResult]) -> str:
        await self.client.remove_tags(results[0].remote_record.remote_id, [CLEARANCE_TAG])
        return f"Removed tag '{CLEARANCE_TAG}'"

    async def _fix_template(self, results: Sequence[AuditResult]) -> str:
        await self.client.update_product(
            results[0].remote_record.remote_id, template_suffix=self.clearance_template
        )
        return f"Template set to '{self.clearance_template}'"

    async def _fix_category_tag(self, results: Sequence[AuditResult]) -> str:
        categories: List[str] = []
        for result in results:
            category = result.supplier_record.category.strip()
            if category not in categories:
                categories.append(category)
        await self.client.add_tags(results[0].remote_record.remote_id, categories)
        return f"Added tag(s) {', '.join(repr(c) for c in categories)}"

    async def _create_missing(self, results: Sequence[AuditResult], source_label: str) -> str:
        """Create a missing product, or add missing variants to an existing one."""
        records = [r.supplier_record for r in results]
        handle = records[0].handle
        missing_type = next(
            m.missing_type for m in results[0].mismatches
            if m.field == MismatchKind.MISSING_IN_REMOTE
        )

        if missing_type == MissingType.VARIANT:
            product_id = await self.client.product_id_by_handle(handle)
            if product_id is None:
                raise ValueError(f"No store product with handle '{handle}'")
            await self.client.create_variants(product_id, records)
            return f"Added {len(records)} variant(s) to '{handle}'"

        extra_tags = [CLEARANCE_TAG] if "clearance" in source_label.lower() else []
        await self.client.create_product(records, extra_tags=extra_tags)
        return f"Created product '{handle}' with {len(records)} variant(s)"

    # =========================================================================
    # Orchestration
    # =========================================================================

    async def _attempt(
        self,
        kind: Optional[MismatchKind],
        covered: Sequence[AuditResult],
        call: Callable[[], Awaitable[str]],
    ) -> List[FixOutcome]:
        """
        Run one remediation call; its outcome applies to every covered result.

        A kind of None marks a stale-variant deletion.
        """
        try:
            message = await call()
            success = True
        except Exception as e:
            logger.error(
                "fix_failed",
                kind=kind.value if kind else "delete_stale",
                skus=[r.sku for r in covered],
                remote_id=_remote_id(covered[0]),
                error=str(e),
            )
            message = str(e) or e.__class__.__name__
            success = False

        return [_outcome(r, kind, success, message) for r in covered]

    async def _fix_group(self, group: Group, source_label: str = "") -> List[FixOutcome]:
        key, results = group
        outcomes: List[FixOutcome] = []

        kinds: List[MismatchKind] = []
        for result in results:
            for mismatch in result.mismatches:
                if mismatch.field not in kinds:
                    kinds.append(mismatch.field)

        for kind in kinds:
            covered = [r for r in results if any(m.field == kind for m in r.mismatches)]

            if kind in ACKNOWLEDGE_ONLY:
                outcomes.extend(_outcome(r, kind, True, "Acknowledged") for r in covered)
            elif kind == MismatchKind.MISSING_IN_REMOTE:
                outcomes.extend(await self._attempt(
                    kind, covered, lambda: self._create_missing(covered, source_label)
                ))
            elif kind in PER_VARIANT:
                handler = self._handlers[kind]
                for result in covered:
                    outcomes.extend(await self._attempt(kind, [result], lambda: handler([result])))
            elif kind in self._handlers:
                handler = self._handlers[kind]
                outcomes.extend(await self._attempt(kind, covered, lambda: handler(covered)))
            else:
                outcomes.extend(
                    _outcome(r, kind, False, f"No remediation for {kind.value}") for r in covered
                )

        logger.info(
            "group_remediated",
            group=key,
            fixes=len(outcomes),
            failed=sum(1 for o in outcomes if not o.success),
        )
        self.events.publish("fix", f"Processed {key}", fixes=len(outcomes))
        return outcomes

    async def apply(
        self,
        results: Iterable[AuditResult],
        kinds: Optional[Iterable[MismatchKind]] = None,
        source_label: str = "",
    ) -> RemediationReport:
        """
        Apply fixes for the given results.

        Args:
            results: Audit results to act on (any subset of a report)
            kinds: Only fix these mismatch kinds (all when None)
            source_label: Supplier file name, used when creating products

        Returns:
            RemediationReport with one outcome per result and kind
        """
        selected = select_fixes(results, kinds)
        groups = list(group_by_product(selected).items())

        logger.info("remediation_started", results=len(selected), groups=len(groups))
        self.events.publish("fix", f"Fixing {len(selected)} item(s) across {len(groups)} product(s)")

        outcomes = await run_bounded(
            groups,
            self.concurrency,
            lambda group: self._fix_group(group, source_label),
            delay_after=self.group_delay,
            sleep=self._sleep,
        )

        return self._report(outcomes, "Fixed")

    async def delete_stale(self, results: Sequence[AuditResult]) -> RemediationReport:
        """
        Delete store variants that are not in the supplier feed.

        A product is deleted outright when every variant of it seen in the
        report is stale; otherwise only the stale variants are removed.

        Args:
            results: Full audit results (needed to know each product's variants)

        Returns:
            RemediationReport with one outcome per deleted variant
        """
        variants: Dict[str, set] = defaultdict(set)
        for result in results:
            for remote in result.remote_records:
                if remote.remote_id:
                    variants[remote.remote_id].add(remote.variant_id)

        stale = [
            r for r in results
            if r.status == AuditStatus.NOT_IN_SUPPLIER_FEED and _remote_id(r)
        ]
        groups = list(group_by_product(stale).items())

        logger.info("stale_deletion_started", results=len(stale), products=len(groups))
        self.events.publish("delete", f"Deleting {len(stale)} stale variant(s) across {len(groups)} product(s)")

        outcomes = await run_bounded(
            groups,
            self.concurrency,
            lambda group: self._delete_group(group, variants[group[0]]),
            delay_after=self.group_delay,
            sleep=self._sleep,
        )
        return self._report(outcomes, "Deleted")

    async def _delete_group(self, group: Group, product_variants: set) -> List[FixOutcome]:
        remote_id, results = group
        stale_variants = {r.remote_record.variant_id for r in results}

        if stale_variants >= product_variants:
            return await self._attempt(
                None, results, lambda: self._delete_product(remote_id)
            )

        outcomes: List[FixOutcome] = []
        for result in results:
            variant_id = result.remote_record.variant_id
            outcomes.extend(await self._attempt(
                None, [result], lambda: self._delete_variant(remote_id, variant_id)
            ))
        return outcomes

    async def _delete_product(self, remote_id: str) -> str:
        await self.client.delete_product(remote_id)
        return "Deleted product"

    async def _delete_variant(self, remote_id: str, variant_id: str) -> str:
        await self.client.delete_variant(remote_id, variant_id)
        return "Deleted variant"

    def _report(self, outcomes: List[FixOutcome], verb: str) -> RemediationReport:
        success_count = sum(1 for o in outcomes if o.success)
        failure_count = len(outcomes) - success_count
        message = f"{verb} {success_count} of {len(outcomes)} issue(s)"
        if failure_count:
            message += f"; {failure_count} failed"

        logger.info("remediation_complete", action=verb.lower(), succeeded=success_count, failed=failure_count)
        self.events.publish("fix", message)

        return RemediationReport(
            outcomes=outcomes,
            success_count=success_count,
            failure_count=failure_count,
            message=message,
        )


def merge_outcomes(
    results: Sequence[AuditResult],
    outcomes: Sequence[FixOutcome],
) -> List[AuditResult]:
    """
    Fold successful fixes back into a report.

    Fixed mismatches are removed; matched/mismatched rows get their status
    re-derived. Other statuses are kept so the row stays visible until the
    next audit confirms the fix.

    Returns:
        New result list; the inputs are not modified
    """
    fixed = {(o.sku, o.field, o.remote_id, o.variant_id) for o in outcomes if o.success}
    if not fixed:
        return list(results)

    merged = []
    for result in results:
        remote_id, variant_id = _remote_id(result), _variant_id(result)
        remaining = tuple(
            m for m in result.mismatches
            if (result.sku, m.field, remote_id, variant_id) not in fixed
        )
        if len(remaining) == len(result.mismatches):
            merged.append(result)
            continue

        status = result.status
        if status in (AuditStatus.MATCHED, AuditStatus.MISMATCHED):
            status = AuditStatus.MISMATCHED if remaining else AuditStatus.MATCHED
        merged.append(result.model_copy(update={"mismatches": remaining, "status": status}))
    return merged
