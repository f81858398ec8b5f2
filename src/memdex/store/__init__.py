"""Index stores: the builtin SQLite store, an optional chromadb store and the fallback proxy."""

from __future__ import annotations

from memdex.store.base import IndexStore, LexicalHit, StoreStats, StoredChunk, VectorHit
from memdex.store.fallback import FallbackIndexStore
from memdex.store.sqlite import SQLiteIndexStore

__all__ = [
    "FallbackIndexStore",
    "IndexStore",
    "LexicalHit",
    "SQLiteIndexStore",
    "StoreStats",
    "StoredChunk",
    "VectorHit",
]
