# Catalog Reconciliation - Bulk Export Tests
"""
Tests for the bulk export state machine and result parsing.
"""

import asyncio
import json

import httpx
import pytest

from catalog_reconciliation.clients.shopify_client import ShopifyAPIError
from catalog_reconciliation.engine.bulk_export import (
    BulkExporter,
    BulkOperationError,
    BulkParseError,
    parse_bulk_jsonl,
)
from catalog_reconciliation.models import BulkOperation, BulkStatus

from conftest import InMemoryCacheStore, no_sleep

JOB_ID = "gid://shopify/BulkOperation/1"
OTHER_ID = "gid://shopify/BulkOperation/2"


def op(status, id=JOB_ID, **kwargs):
    return BulkOperation(id=id, status=status, **kwargs)


def jsonl(*objects):
    return "\n".join(json.dumps(o) for o in objects) + "\n"


PRODUCT = {
    "id": "gid://shopify/Product/1",
    "title": "Camp Stove",
    "handle": "camp-stove",
    "descriptionHtml": "<p>Stove</p>",
    "tags": ["Outdoor", "clearance"],
    "templateSuffix": "clearance",
}

VARIANT = {
    "id": "gid://shopify/ProductVariant/11",
    "sku": "STOVE-1",
    "price": "49.99",
    "inventoryQuantity": 3,
    "inventoryItem": {
        "id": "gid://shopify/InventoryItem/111",
        "measurement": {"weight": {"unit": "POUNDS", "value": 2}},
    },
    "__parentId": "gid://shopify/Product/1",
}


def make_exporter(client, cache=None, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("poll_interval", 0)
    return BulkExporter(client, cache or InMemoryCacheStore(), **kwargs)


class TestParseBulkJsonl:
    """Tests for flattening the JSONL result."""

    def test_variant_inherits_product_fields(self):
        records = parse_bulk_jsonl(jsonl(PRODUCT, VARIANT))

        assert len(records) == 1
        record = records[0]
        assert record.remote_id == "gid://shopify/Product/1"
        assert record.variant_id == "gid://shopify/ProductVariant/11"
        assert record.handle == "camp-stove"
        assert record.name == "Camp Stove"
        assert record.price == 49.99
        assert record.inventory == 3
        assert record.tags == "Outdoor, clearance"
        assert record.template_suffix == "clearance"
        assert record.weight_grams == pytest.approx(907.184)

    def test_location_under_variant(self):
        level = {
            "id": "gid://shopify/InventoryLevel/1",
            "location": {"id": "gid://shopify/Location/5"},
            "__parentId": VARIANT["id"],
        }
        records = parse_bulk_jsonl(jsonl(PRODUCT, VARIANT, level))
        assert records[0].location_ids == ("gid://shopify/Location/5",)

    def test_location_under_inventory_item_fallback(self):
        level = {
            "id": "gid://shopify/InventoryLevel/1",
            "location": {"id": "gid://shopify/Location/7"},
            "__parentId": "gid://shopify/InventoryItem/111",
        }
        records = parse_bulk_jsonl(jsonl(PRODUCT, VARIANT, level))
        assert records[0].location_ids == ("gid://shopify/Location/7",)

    def test_orphan_and_skuless_variants_skipped(self):
        orphan = dict(VARIANT, id="gid://shopify/ProductVariant/12", sku="ORPHAN",
                      __parentId="gid://shopify/Product/999")
        skuless = dict(VARIANT, id="gid://shopify/ProductVariant/13", sku="")
        records = parse_bulk_jsonl(jsonl(PRODUCT, VARIANT, orphan, skuless))
        assert [r.sku for r in records] == ["STOVE-1"]

    def test_child_before_parent(self):
        """Line order does not matter."""
        records = parse_bulk_jsonl(jsonl(VARIANT, PRODUCT))
        assert [r.sku for r in records] == ["STOVE-1"]

    def test_blank_input(self):
        assert parse_bulk_jsonl("") == []
        assert parse_bulk_jsonl("\n\n") == []

    def test_invalid_line_raises(self):
        with pytest.raises(BulkParseError, match="Line 2"):
            parse_bulk_jsonl(json.dumps(PRODUCT) + "\n{not json\n")


class TestStart:
    """Tests for starting or adopting a job."""

    def test_starts_new_job_when_idle(self, client):
        client.current_bulk_operation.return_value = op(BulkStatus.COMPLETED, id=OTHER_ID)
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)

        result = asyncio.run(make_exporter(client).start())

        assert result.id == JOB_ID
        client.run_bulk_query.assert_awaited_once()

    def test_adopts_running_job(self, client):
        """A job left running by an earlier process is reused."""
        client.current_bulk_operation.return_value = op(BulkStatus.RUNNING, id=OTHER_ID)

        result = asyncio.run(make_exporter(client).start())

        assert result.id == OTHER_ID
        client.run_bulk_query.assert_not_called()

    def test_starts_when_no_current_job(self, client):
        client.current_bulk_operation.return_value = None
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)

        result = asyncio.run(make_exporter(client).start())

        assert result.id == JOB_ID


class TestPoll:
    """Tests for status polling."""

    def test_current_is_our_job(self, client):
        client.current_bulk_operation.return_value = op(BulkStatus.RUNNING, object_count=10)

        result = asyncio.run(make_exporter(client).poll(JOB_ID))

        assert result.status == BulkStatus.RUNNING
        assert result.object_count == 10
        client.bulk_operation.assert_not_called()

    def test_other_job_active_reports_running(self, client):
        """Our job waits while another job holds the slot."""
        client.current_bulk_operation.return_value = op(BulkStatus.RUNNING, id=OTHER_ID)

        result = asyncio.run(make_exporter(client).poll(JOB_ID))

        assert result.id == JOB_ID
        assert result.status == BulkStatus.RUNNING
        client.bulk_operation.assert_not_called()

    def test_other_job_finished_looks_up_ours(self, client):
        client.current_bulk_operation.return_value = op(BulkStatus.COMPLETED, id=OTHER_ID)
        client.bulk_operation.return_value = op(BulkStatus.COMPLETED, url="https://x/result.jsonl")

        result = asyncio.run(make_exporter(client).poll(JOB_ID))

        assert result.status == BulkStatus.COMPLETED
        client.bulk_operation.assert_awaited_once_with(JOB_ID)

    def test_unknown_job_raises(self, client):
        client.current_bulk_operation.return_value = None
        client.bulk_operation.return_value = None

        with pytest.raises(BulkOperationError) as exc:
            asyncio.run(make_exporter(client).poll(JOB_ID))
        assert exc.value.status == BulkStatus.NONE


class TestWait:
    """Tests for waiting on a job."""

    def test_waits_until_completed(self, client):
        client.current_bulk_operation.side_effect = [
            op(BulkStatus.CREATED),
            op(BulkStatus.RUNNING),
            op(BulkStatus.COMPLETED, url="https://x/result.jsonl"),
        ]

        result = asyncio.run(make_exporter(client).wait(JOB_ID))

        assert result.status == BulkStatus.COMPLETED
        assert client.current_bulk_operation.await_count == 3

    @pytest.mark.parametrize("status", [BulkStatus.FAILED, BulkStatus.CANCELED, BulkStatus.EXPIRED])
    def test_terminal_failure_raises(self, client, status):
        client.current_bulk_operation.return_value = op(status, error_code="INTERNAL_SERVER_ERROR")

        with pytest.raises(BulkOperationError) as exc:
            asyncio.run(make_exporter(client).wait(JOB_ID))

        assert exc.value.status == status
        assert exc.value.operation_id == JOB_ID
        assert "INTERNAL_SERVER_ERROR" in str(exc.value)

    def test_timeout_raises(self, client):
        client.current_bulk_operation.return_value = op(BulkStatus.RUNNING)

        with pytest.raises(BulkOperationError, match="Timed out"):
            asyncio.run(make_exporter(client, timeout=0).wait(JOB_ID))


class TestExport:
    """Tests for the full export flow and caching."""

    def test_export_downloads_parses_and_caches(self, client, cache):
        body = jsonl(PRODUCT, VARIANT)
        client.current_bulk_operation.side_effect = [
            None,
            op(BulkStatus.COMPLETED, url="https://x/result.jsonl"),
        ]
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)
        client.download.return_value = body

        records = asyncio.run(make_exporter(client, cache).export())

        assert [r.sku for r in records] == ["STOVE-1"]
        client.download.assert_awaited_once_with("https://x/result.jsonl")
        assert cache.body == body
        assert cache.writes == 1

    def test_use_cache_skips_bulk_operation(self, client):
        cache = InMemoryCacheStore(jsonl(PRODUCT, VARIANT))

        records = asyncio.run(make_exporter(client, cache).export(use_cache=True))

        assert [r.sku for r in records] == ["STOVE-1"]
        client.current_bulk_operation.assert_not_called()
        client.run_bulk_query.assert_not_called()
        assert cache.writes == 0

    def test_use_cache_miss_runs_export(self, client, cache):
        client.current_bulk_operation.side_effect = [
            None,
            op(BulkStatus.COMPLETED, url="https://x/result.jsonl"),
        ]
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)
        client.download.return_value = jsonl(PRODUCT, VARIANT)

        records = asyncio.run(make_exporter(client, cache).export(use_cache=True))

        assert len(records) == 1
        assert cache.writes == 1

    def test_empty_catalog_has_no_url(self, client, cache):
        client.current_bulk_operation.side_effect = [None, op(BulkStatus.COMPLETED)]
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)

        records = asyncio.run(make_exporter(client, cache).export())

        assert records == []
        client.download.assert_not_called()
        assert cache.body == ""

    def test_failed_export_leaves_cache_alone(self, client):
        cache = InMemoryCacheStore("previous")
        client.current_bulk_operation.side_effect = [None, op(BulkStatus.FAILED)]
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)

        with pytest.raises(BulkOperationError):
            asyncio.run(make_exporter(client, cache).export())

        assert cache.body == "previous"
        assert cache.writes == 0

    def test_api_error_on_start_is_bulk_error(self, client, cache):
        client.current_bulk_operation.return_value = None
        client.run_bulk_query.side_effect = ShopifyAPIError("Transport error: dns failure")

        with pytest.raises(BulkOperationError, match="dns failure") as exc:
            asyncio.run(make_exporter(client, cache).export())

        assert exc.value.status == BulkStatus.NONE
        assert exc.value.operation_id is None
        assert cache.writes == 0

    def test_download_failure_is_bulk_error(self, client, cache):
        url = "https://x/result.jsonl"
        client.current_bulk_operation.side_effect = [None, op(BulkStatus.COMPLETED, url=url)]
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)
        request = httpx.Request("GET", url)
        client.download.side_effect = httpx.HTTPStatusError(
            "403 Forbidden", request=request, response=httpx.Response(403, request=request)
        )

        with pytest.raises(BulkOperationError) as exc:
            asyncio.run(make_exporter(client, cache).export())

        assert exc.value.operation_id == JOB_ID
        assert cache.writes == 0

    def test_unparseable_result_is_bulk_error(self, client):
        cache = InMemoryCacheStore("previous")
        client.current_bulk_operation.side_effect = [
            None,
            op(BulkStatus.COMPLETED, url="https://x/result.jsonl"),
        ]
        client.run_bulk_query.return_value = op(BulkStatus.CREATED)
        client.download.return_value = "{not json\n"

        with pytest.raises(BulkOperationError, match="not valid JSON"):
            asyncio.run(make_exporter(client, cache).export())

        assert cache.body == "previous"
        assert cache.writes == 0

    def test_cache_status(self, client):
        status = asyncio.run(make_exporter(client, InMemoryCacheStore("x")).cache_status())
        assert status.exists
        assert status.age_seconds >= 0
