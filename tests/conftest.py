# Catalog Reconciliation - Shared Test Fixtures
"""Shared pytest fixtures for the reconciliation tests."""

from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from catalog_reconciliation.core.cache_store import build_status
from catalog_reconciliation.models import CacheStatus, Record


def supplier_record(**overrides) -> Record:
    """Supplier-side record with sensible defaults."""
    fields = dict(
        handle="test-handle",
        sku="SKU-1",
        name="Test Product",
        price=10.0,
        inventory=5,
    )
    fields.update(overrides)
    return Record(**fields)


def remote_record(index: int = 1, **overrides) -> Record:
    """Store-side record with identity fields populated."""
    fields = dict(
        remote_id=f"gid://shopify/Product/{index}",
        variant_id=f"gid://shopify/ProductVariant/{index}",
        inventory_item_id=f"gid://shopify/InventoryItem/{index}",
        handle="test-handle",
        sku="SKU-1",
        name="Test Product",
        price=10.0,
        inventory=5,
        description_html="<p>Test Description</p>",
    )
    fields.update(overrides)
    return Record(**fields)


class InMemoryCacheStore:
    """In-memory stand-in for SqliteCacheStore."""

    def __init__(self, body: Optional[str] = None):
        self.body = body
        self.updated_at = datetime.now(timezone.utc) if body is not None else None
        self.writes = 0

    async def read(self) -> Optional[str]:
        return self.body

    async def write(self, body: str) -> datetime:
        self.body = body
        self.updated_at = datetime.now(timezone.utc)
        self.writes += 1
        return self.updated_at

    async def status(self) -> CacheStatus:
        return build_status(self.updated_at)

    async def clear(self) -> bool:
        existed = self.body is not None
        self.body = None
        self.updated_at = None
        return existed


async def no_sleep(_seconds: float) -> None:
    """Sleep replacement that returns immediately."""
    return None


@pytest.fixture
def cache():
    """Empty in-memory export cache."""
    return InMemoryCacheStore()


@pytest.fixture
def client():
    """Shopify client double with every call mocked."""
    return AsyncMock()
