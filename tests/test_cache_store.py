# Catalog Reconciliation - Cache Store Tests
"""
Tests for the SQLite bulk export cache.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from catalog_reconciliation.core.cache_store import SqliteCacheStore, build_status


def run_store(db_path, call):
    async def go():
        store = SqliteCacheStore(str(db_path))
        await store.initialize()
        try:
            return await call(store)
        finally:
            await store.close()

    return asyncio.run(go())


class TestBuildStatus:
    """Tests for CacheStatus construction."""

    def test_missing(self):
        status = build_status(None)
        assert not status.exists
        assert status.age_seconds is None

    def test_age(self):
        status = build_status(datetime.now(timezone.utc) - timedelta(minutes=5))
        assert status.exists
        assert 299 <= status.age_seconds <= 310


class TestSqliteCacheStore:
    """Tests for the SQLite-backed store."""

    def test_empty_store(self, tmp_path):
        async def call(store):
            return await store.read(), await store.status()

        body, status = run_store(tmp_path / "cache.db", call)

        assert body is None
        assert not status.exists

    def test_write_then_read(self, tmp_path):
        async def call(store):
            written_at = await store.write('{"id": "gid://shopify/Product/1"}\n')
            return written_at, await store.read(), await store.status()

        written_at, body, status = run_store(tmp_path / "cache.db", call)

        assert body == '{"id": "gid://shopify/Product/1"}\n'
        assert status.exists
        assert status.last_modified == written_at

    def test_write_replaces_previous(self, tmp_path):
        async def call(store):
            await store.write("first")
            await store.write("second")
            return await store.read()

        assert run_store(tmp_path / "cache.db", call) == "second"

    def test_persists_across_connections(self, tmp_path):
        db_path = tmp_path / "nested" / "cache.db"

        run_store(db_path, lambda store: store.write("kept"))

        assert run_store(db_path, lambda store: store.read()) == "kept"

    def test_clear(self, tmp_path):
        async def call(store):
            await store.write("body")
            first = await store.clear()
            second = await store.clear()
            return first, second, await store.read()

        first, second, body = run_store(tmp_path / "cache.db", call)

        assert first is True
        assert second is False
        assert body is None

    def test_keys_are_independent(self, tmp_path):
        async def go():
            a = SqliteCacheStore(str(tmp_path / "cache.db"), key="a")
            b = SqliteCacheStore(str(tmp_path / "cache.db"), key="b")
            await a.initialize()
            await b.initialize()
            try:
                await a.write("from a")
                return await b.read()
            finally:
                await a.close()
                await b.close()

        assert asyncio.run(go()) is None
