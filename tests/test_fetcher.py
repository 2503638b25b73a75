# Catalog Reconciliation - Batch Fetcher Tests
"""
Tests for the rate-limited batch fetcher.

Covers batching, the per-sku verification pass, throttle backoff and
abort behaviour.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from catalog_reconciliation.clients.shopify_client import (
    ShopifyAPIError,
    ShopifyClient,
    ShopifyThrottledError,
)
from catalog_reconciliation.config import Settings
from catalog_reconciliation.core.events import EventChannel, drain
from catalog_reconciliation.engine.fetcher import (
    BatchFetcher,
    FetchAbortedError,
    build_sku_query,
    dedupe_keys,
)

from conftest import no_sleep, remote_record


def make_fetcher(client, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    return BatchFetcher(client, **kwargs)


class TestHelpers:
    """Tests for query building and key deduplication."""

    def test_build_sku_query_quotes_each_sku(self):
        assert build_sku_query(["A", "B 2"]) == 'sku:"A" OR sku:"B 2"'

    def test_build_sku_query_escapes_quotes(self):
        assert build_sku_query(['A"1']) == 'sku:"A\\"1"'

    def test_dedupe_keys(self):
        """Repeats and blanks are dropped; first spelling wins."""
        unique = dedupe_keys(["abc", " ABC ", "", "  ", "Def"])
        assert unique == {"abc": "abc", "def": "Def"}


class TestBatchFetch:
    """Tests for the batch pass."""

    def test_empty_keys_make_no_calls(self, client):
        fetcher = make_fetcher(client)
        assert asyncio.run(fetcher.fetch([])) == []
        client.search_variants.assert_not_called()

    def test_batches_by_size(self, client):
        """Five skus with batch size two means three batch queries."""
        skus = [f"SKU-{i}" for i in range(5)]
        records = {sku: remote_record(i, sku=sku) for i, sku in enumerate(skus)}

        async def search(query, first=250):
            return [records[sku] for sku in skus if f'"{sku}"' in query]

        client.search_variants.side_effect = search
        fetcher = make_fetcher(client, batch_size=2, concurrency=3)

        result = asyncio.run(fetcher.fetch(skus))

        assert client.search_variants.await_count == 3
        assert sorted(r.sku for r in result) == skus

    def test_duplicate_keys_queried_once(self, client):
        client.search_variants.return_value = [remote_record(sku="A")]
        fetcher = make_fetcher(client)

        result = asyncio.run(fetcher.fetch(["A", "a", " A "]))

        assert client.search_variants.await_count == 1
        assert client.search_variants.await_args.args[0] == 'sku:"A"'
        assert len(result) == 1

    def test_unrequested_hits_are_dropped(self, client):
        """Fuzzy search hits whose sku was not requested are ignored."""
        client.search_variants.return_value = [
            remote_record(1, sku="A"),
            remote_record(2, sku="A-EXTRA"),
        ]
        fetcher = make_fetcher(client)

        result = asyncio.run(fetcher.fetch(["A"]))

        assert [r.sku for r in result] == ["A"]

    def test_sku_match_is_case_insensitive(self, client):
        client.search_variants.return_value = [remote_record(sku="ABC-1")]
        fetcher = make_fetcher(client)

        result = asyncio.run(fetcher.fetch(["abc-1"]))

        assert len(result) == 1
        assert client.search_variants.await_count == 1


class TestVerification:
    """Tests for the per-sku verification pass."""

    def test_missing_sku_recovered(self, client):
        """Batch returns X only; the verification query finds Y."""
        x = remote_record(1, sku="X")
        y = remote_record(2, sku="Y")
        client.search_variants.side_effect = [[x], [y]]
        fetcher = make_fetcher(client)

        result = asyncio.run(fetcher.fetch(["X", "Y"]))

        assert client.search_variants.await_count == 2
        queries = [c.args[0] for c in client.search_variants.await_args_list]
        assert queries == ['sku:"X" OR sku:"Y"', 'sku:"Y"']
        assert {r.sku for r in result} == {"X", "Y"}

    def test_verification_requires_exact_sku(self, client):
        """A near-miss from the verification query does not count."""
        client.search_variants.side_effect = [[], [remote_record(sku="Y-1")]]
        fetcher = make_fetcher(client)

        result = asyncio.run(fetcher.fetch(["Y"]))

        assert result == []

    def test_absent_sku_is_not_an_error(self, client):
        client.search_variants.return_value = []
        fetcher = make_fetcher(client)

        result = asyncio.run(fetcher.fetch(["NOPE"]))

        assert result == []
        assert client.search_variants.await_count == 2

    def test_verification_pass_publishes_progress(self, client):
        client.search_variants.side_effect = [[], [remote_record(sku="Y")]]
        events = EventChannel()
        queue = events.subscribe()
        fetcher = make_fetcher(client, events=events)

        asyncio.run(fetcher.fetch(["Y"]))

        stages = [e.stage for e in drain(queue)]
        assert "verify" in stages


class TestThrottling:
    """Tests for throttle backoff and aborts."""

    def test_throttle_then_success(self, client):
        """A throttled attempt is retried after an exponential backoff."""
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        client.search_variants.side_effect = [
            ShopifyThrottledError("Throttled"),
            [remote_record(sku="A")],
        ]
        fetcher = make_fetcher(client, sleep=record_sleep, request_delay=0.5, backoff_base=1.0)

        result = asyncio.run(fetcher.fetch(["A"]))

        assert [r.sku for r in result] == ["A"]
        assert client.search_variants.await_count == 2
        # pacing, backoff, pacing
        assert delays[0] == 0.5
        assert delays[1] == pytest.approx(1.0)
        assert delays[2] == 0.5

    def test_throttle_ceiling_aborts(self, client):
        client.search_variants.side_effect = ShopifyThrottledError("Throttled")
        fetcher = make_fetcher(client, max_retries=2)

        with pytest.raises(FetchAbortedError):
            asyncio.run(fetcher.fetch(["A"]))

        assert client.search_variants.await_count == 3

    def test_non_throttle_error_aborts_without_retry(self, client):
        client.search_variants.side_effect = ShopifyAPIError("GraphQL error: bad query")
        fetcher = make_fetcher(client)

        with pytest.raises(FetchAbortedError, match="bad query"):
            asyncio.run(fetcher.fetch(["A", "B"]))

        assert client.search_variants.await_count == 1

    def test_error_in_verification_aborts(self, client):
        client.search_variants.side_effect = [[], ShopifyAPIError("HTTP 500: boom")]
        fetcher = make_fetcher(client)

        with pytest.raises(FetchAbortedError):
            asyncio.run(fetcher.fetch(["A"]))

    def test_connection_failure_is_not_reported_as_throttling(self):
        """A dead connection aborts with its own cause, not a throttle message."""
        def handler(request):
            raise httpx.ConnectError("dns failure", request=request)

        async def go():
            settings = Settings(shop_domain="test-shop.myshopify.com", access_token="shpat_test")
            client = ShopifyClient(settings, transport=httpx.MockTransport(handler))
            await client.connect()
            try:
                return await make_fetcher(client).fetch(["A"])
            finally:
                await client.close()

        with pytest.raises(FetchAbortedError) as exc:
            asyncio.run(go())

        assert "dns failure" in str(exc.value)
        assert "throttled" not in str(exc.value).lower()


class TestFromSettings:
    """Tests for settings wiring."""

    def test_from_settings(self):
        settings = Settings(fetch_batch_size=10, fetch_concurrency=4, max_retries=7)
        fetcher = BatchFetcher.from_settings(AsyncMock(), settings)

        assert fetcher.batch_size == 10
        assert fetcher.concurrency == 4
        assert fetcher.max_retries == 7
        assert fetcher.verify_concurrency == 5
