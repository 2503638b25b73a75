"""
Rate-limited batch fetcher for store records by sku.

Batches skus into disjunctive search queries, runs them through a bounded
worker pool with throttle backoff, then re-queries every sku the batches did
not return one at a time. The search index can drop a sku from an OR query
while still holding the variant; the second pass recovers those.
"""
import asyncio
import json
from typing import Dict, Iterable, List, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from catalog_reconciliation.clients.shopify_client import (
    ShopifyAPIError,
    ShopifyClient,
    ShopifyThrottledError,
)
from catalog_reconciliation.config import Settings
from catalog_reconciliation.core.events import EventChannel
from catalog_reconciliation.core.worker_pool import Sleep, run_bounded
from catalog_reconciliation.models import Record, normalize_sku

logger = structlog.get_logger(__name__)


class FetchAbortedError(Exception):
    """The fetch hit a non-recoverable error or ran out of throttle retries."""
    pass


def dedupe_keys(keys: Iterable[str]) -> Dict[str, str]:
    """
    Map normalized sku -> first spelling seen, dropping blanks.

    Args:
        keys: Requested skus, possibly repeated or padded

    Returns:
        Ordered dict of unique requested skus
    """
    unique: Dict[str, str] = {}
    for key in keys:
        normalized = normalize_sku(key)
        if normalized and normalized not in unique:
            unique[normalized] = key.strip()
    return unique


def build_sku_query(skus: Iterable[str]) -> str:
    """Disjunctive search query, e.g. `sku:"A" OR sku:"B"`."""
    return " OR ".join(f"sku:{json.dumps(sku)}" for sku in skus)


class BatchFetcher:
    """Fetches store records for many skus under the API rate limits."""

    def __init__(
        self,
        client: ShopifyClient,
        batch_size: int = 40,
        concurrency: int = 20,
        verify_concurrency: int = 5,
        request_delay: float = 0.5,
        verify_delay: float = 0.2,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        events: Optional[EventChannel] = None,
        sleep: Optional[Sleep] = None,
    ):
        """
        Initialize fetcher.

        Args:
            client: Shopify API client
            batch_size: Skus per disjunctive query
            concurrency: Workers for the batch pass
            verify_concurrency: Workers for the per-sku verification pass
            request_delay: Fixed pause before every batch attempt
            verify_delay: Fixed pause before every verification request
            max_retries: Throttle retries per request before aborting
            backoff_base: Backoff is backoff_base * 2**attempt seconds
            events: Progress channel
            sleep: Sleep coroutine (asyncio.sleep by default)
        """
        self.client = client
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.verify_concurrency = verify_concurrency
        self.request_delay = request_delay
        self.verify_delay = verify_delay
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.events = events or EventChannel()
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(
        cls,
        client: ShopifyClient,
        settings: Settings,
        events: Optional[EventChannel] = None,
    ) -> "BatchFetcher":
        return cls(
            client,
            batch_size=settings.fetch_batch_size,
            concurrency=settings.fetch_concurrency,
            verify_concurrency=settings.verify_concurrency,
            request_delay=settings.request_delay,
            verify_delay=settings.verify_delay,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            events=events,
        )

    def _log_throttle(self, retry_state) -> None:
        logger.warning(
            "fetch_throttled",
            attempt=retry_state.attempt_number,
            max_retries=self.max_retries,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def _search(self, query: str, delay: float) -> List[Record]:
        """Run one search with the pacing delay and throttle backoff."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(multiplier=self.backoff_base, exp_base=2),
                retry=retry_if_exception_type(ShopifyThrottledError),
                before_sleep=self._log_throttle,
                sleep=self._sleep,
            ):
                with attempt:
                    if delay > 0:
                        await self._sleep(delay)
                    return await self.client.search_variants(query)
        except RetryError as e:
            raise FetchAbortedError(
                f"Still throttled after {self.max_retries} retries"
            ) from e.last_attempt.exception()
        except ShopifyAPIError as e:
            logger.error("fetch_failed", error=str(e), query=query[:200])
            raise FetchAbortedError(str(e)) from e

    async def _fetch_batch(self, batch: List[str]) -> List[Record]:
        records = await self._search(build_sku_query(batch), self.request_delay)
        logger.debug("batch_fetched", skus=len(batch), records=len(records))
        self.events.publish(
            "fetch",
            f"Fetched batch of {len(batch)} skus",
            skus=len(batch),
            records=len(records),
        )
        return records

    async def _verify_key(self, sku: str) -> List[Record]:
        records = await self._search(build_sku_query([sku]), self.verify_delay)
        wanted = normalize_sku(sku)
        confirmed = [r for r in records if normalize_sku(r.sku) == wanted]
        if confirmed:
            logger.info("sku_recovered", sku=sku, records=len(confirmed))
        return confirmed

    async def fetch(self, keys: Iterable[str]) -> List[Record]:
        """
        Fetch store records for the given skus.

        A sku that neither the batch nor the verification pass finds is simply
        absent from the result.

        Args:
            keys: Requested skus

        Returns:
            Store records whose sku matches a requested sku

        Raises:
            FetchAbortedError: Non-recoverable API error or throttle ceiling hit
        """
        requested = dedupe_keys(keys)
        if not requested:
            return []

        skus = list(requested.values())
        batches = [skus[i:i + self.batch_size] for i in range(0, len(skus), self.batch_size)]

        logger.info("fetch_started", skus=len(skus), batches=len(batches))
        self.events.publish("fetch", f"Fetching {len(skus)} skus in {len(batches)} batches")

        batch_records = await run_bounded(batches, self.concurrency, self._fetch_batch)
        matched = _unique([r for r in batch_records if normalize_sku(r.sku) in requested])

        found = {normalize_sku(r.sku) for r in matched}
        missing = [sku for key, sku in requested.items() if key not in found]

        recovered: List[Record] = []
        if missing:
            logger.info("verification_started", missing=len(missing))
            self.events.publish("verify", f"Verifying {len(missing)} skus individually")
            recovered = _unique(
                await run_bounded(missing, self.verify_concurrency, self._verify_key)
            )

        logger.info(
            "fetch_complete",
            requested=len(skus),
            batch_matches=len(matched),
            recovered=len(recovered),
            absent=len(missing) - len({normalize_sku(r.sku) for r in recovered}),
        )
        self.events.publish(
            "fetch",
            f"Found {len(matched) + len(recovered)} store records",
            recovered=len(recovered),
        )
        return matched + recovered


def _unique(records: List[Record]) -> List[Record]:
    """Drop repeats of the same variant returned by overlapping queries."""
    seen = set()
    unique = []
    for record in records:
        key = record.variant_id or (record.remote_id, record.sku)
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique
