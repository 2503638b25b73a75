"""Core utilities for the reconciliation service."""
from .cache_store import CacheStore, SqliteCacheStore
from .events import EventChannel, ProgressEvent
from .supplier_feed import load_supplier_csv, parse_supplier_rows
from .worker_pool import run_bounded

__all__ = [
    "CacheStore",
    "SqliteCacheStore",
    "EventChannel",
    "ProgressEvent",
    "load_supplier_csv",
    "parse_supplier_rows",
    "run_bounded",
]
