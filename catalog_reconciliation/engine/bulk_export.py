"""
Bulk export state machine.

Drives a Shopify bulk query operation (NONE -> CREATED -> RUNNING ->
COMPLETED | FAILED | CANCELED), downloads its JSONL result and flattens the
product/variant tree into Records. Shopify owns the state; this module only
polls it.
"""
import asyncio
import json
from collections import defaultdict
from typing import Dict, List, Optional

import httpx
import structlog

from catalog_reconciliation.clients.shopify_client import ShopifyAPIError, ShopifyClient, variant_to_record
from catalog_reconciliation.config import Settings
from catalog_reconciliation.core.cache_store import CacheStore
from catalog_reconciliation.core.events import EventChannel
from catalog_reconciliation.core.worker_pool import Sleep
from catalog_reconciliation.models import BulkOperation, BulkStatus, CacheStatus, Record

logger = structlog.get_logger(__name__)


class BulkOperationError(Exception):
    """Bulk export ended without a usable result."""

    def __init__(self, status: BulkStatus, message: str, operation_id: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.operation_id = operation_id


class BulkParseError(ValueError):
    """Bulk result file contained a line that is not JSON."""
    pass


def parse_bulk_jsonl(text: str) -> List[Record]:
    """
    Flatten a bulk export result into one Record per variant.

    Child lines reference their parent through `__parentId`. The first pass
    indexes product lines by id and inventory-level lines by parent; the
    second walks variant lines and copies product fields down.

    Args:
        text: Newline-delimited JSON from the bulk operation

    Returns:
        Records in file order of their variant lines

    Raises:
        BulkParseError: A non-empty line is not valid JSON
    """
    products: Dict[str, Dict] = {}
    locations_by_parent: Dict[str, List[str]] = defaultdict(list)
    variants: List[Dict] = []

    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise BulkParseError(f"Line {line_no} is not valid JSON: {e}") from e

        gid = obj.get("id") or ""
        if "/ProductVariant/" in gid:
            variants.append(obj)
        elif "/Product/" in gid:
            products[gid] = obj
        elif obj.get("location") and obj.get("__parentId"):
            locations_by_parent[obj["__parentId"]].append(obj["location"]["id"])

    records = []
    orphans = 0
    for variant in variants:
        if not variant.get("sku"):
            continue
        product = products.get(variant.get("__parentId"))
        if product is None:
            orphans += 1
            continue

        location_ids = locations_by_parent.get(variant["id"])
        if not location_ids:
            inventory_item_id = (variant.get("inventoryItem") or {}).get("id")
            location_ids = locations_by_parent.get(inventory_item_id, [])

        records.append(variant_to_record(product, variant, location_ids))

    if orphans:
        logger.warning("bulk_orphan_variants", count=orphans)
    logger.info("bulk_result_parsed", products=len(products), records=len(records))
    return records


class BulkExporter:
    """Client-side poller for the catalog bulk export."""

    def __init__(
        self,
        client: ShopifyClient,
        cache: CacheStore,
        poll_interval: float = 5.0,
        timeout: Optional[float] = None,
        events: Optional[EventChannel] = None,
        sleep: Optional[Sleep] = None,
    ):
        """
        Initialize exporter.

        Args:
            client: Shopify API client
            cache: Store for the raw export and its timestamp
            poll_interval: Seconds between status polls
            timeout: Give up waiting after this many seconds (None waits forever)
            events: Progress channel
            sleep: Sleep coroutine (asyncio.sleep by default)
        """
        self.client = client
        self.cache = cache
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.events = events or EventChannel()
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(
        cls,
        client: ShopifyClient,
        cache: CacheStore,
        settings: Settings,
        events: Optional[EventChannel] = None,
    ) -> "BulkExporter":
        return cls(
            client,
            cache,
            poll_interval=settings.bulk_poll_interval,
            timeout=settings.bulk_timeout,
            events=events,
        )

    async def start(self) -> BulkOperation:
        """
        Start an export, or adopt one that is already in progress.

        Shopify allows one query bulk operation per shop, so a job left
        running by an earlier process is picked up instead of starting a
        second one.
        """
        current = await self.client.current_bulk_operation()
        if current and current.status in (BulkStatus.CREATED, BulkStatus.RUNNING):
            logger.info("bulk_operation_adopted", operation_id=current.id, status=current.status.value)
            self.events.publish("bulk", "Resuming bulk operation already in progress", operation_id=current.id)
            return current

        operation = await self.client.run_bulk_query()
        logger.info("bulk_operation_started", operation_id=operation.id, status=operation.status.value)
        self.events.publish("bulk", "Started bulk operation", operation_id=operation.id)
        return operation

    async def poll(self, job_id: str) -> BulkOperation:
        """
        Report the status of our job.

        Args:
            job_id: Bulk operation GID

        Returns:
            Current snapshot of the job
        """
        current = await self.client.current_bulk_operation()

        if current and current.id == job_id:
            return current

        if current and current.status.is_active:
            # Another job holds the shop's slot; ours waits behind it
            logger.debug("bulk_operation_queued", operation_id=job_id, current=current.id)
            return BulkOperation(id=job_id, status=BulkStatus.RUNNING)

        operation = await self.client.bulk_operation(job_id)
        if operation is None:
            raise BulkOperationError(BulkStatus.NONE, f"Bulk operation {job_id} not found", job_id)
        return operation

    async def wait(self, job_id: str) -> BulkOperation:
        """
        Poll until the job is terminal.

        Returns:
            The COMPLETED operation

        Raises:
            BulkOperationError: Job FAILED, CANCELED or EXPIRED, or the timeout passed
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        while True:
            operation = await self.poll(job_id)
            self.events.publish(
                "bulk",
                f"Bulk operation {operation.status.value.lower()}",
                operation_id=job_id,
                objects=operation.object_count,
            )

            if operation.status == BulkStatus.COMPLETED:
                logger.info("bulk_operation_completed", operation_id=job_id, objects=operation.object_count)
                return operation

            if operation.status.is_terminal:
                logger.error(
                    "bulk_operation_ended",
                    operation_id=job_id,
                    status=operation.status.value,
                    error_code=operation.error_code,
                )
                raise BulkOperationError(
                    operation.status,
                    f"Bulk operation {job_id} ended with status {operation.status.value}"
                    + (f" ({operation.error_code})" if operation.error_code else ""),
                    job_id,
                )

            if self.timeout is not None and loop.time() - started >= self.timeout:
                raise BulkOperationError(
                    operation.status,
                    f"Timed out after {self.timeout}s waiting for bulk operation {job_id}",
                    job_id,
                )

            await self._sleep(self.poll_interval)

    async def download(self, result_url: str) -> str:
        """Fetch the raw JSONL result."""
        text = await self.client.download(result_url)
        logger.info("bulk_result_downloaded", size=len(text))
        return text

    def parse(self, raw_text: str) -> List[Record]:
        return parse_bulk_jsonl(raw_text)

    async def export(self, use_cache: bool = False) -> List[Record]:
        """
        Materialize the whole catalog.

        Args:
            use_cache: Serve the last cached export if one exists

        Returns:
            One Record per variant

        Raises:
            BulkOperationError: The export did not produce a usable result,
                including API, download and parse failures along the way
        """
        operation: Optional[BulkOperation] = None
        try:
            if use_cache:
                cached = await self.cache.read()
                if cached is not None:
                    logger.info("bulk_cache_hit", size=len(cached))
                    self.events.publish("bulk", "Using cached bulk export")
                    return self.parse(cached)
                logger.info("bulk_cache_miss")

            operation = await self.start()
            operation = await self.wait(operation.id)

            # A completed export of an empty catalog has no result file
            raw_text = await self.download(operation.url) if operation.url else ""
            records = self.parse(raw_text)
        except (ShopifyAPIError, httpx.HTTPError, BulkParseError) as e:
            status = operation.status if operation else BulkStatus.NONE
            operation_id = operation.id if operation else None
            logger.error("bulk_export_failed", operation_id=operation_id, status=status.value, error=str(e))
            raise BulkOperationError(status, f"Bulk export failed: {e}", operation_id) from e

        await self.cache.write(raw_text)
        self.events.publish("bulk", f"Bulk export parsed into {len(records)} records")
        return records

    async def cache_status(self) -> CacheStatus:
        return await self.cache.status()
