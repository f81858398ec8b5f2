"""Index store protocol and shared hit types."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from memdex.index.models import Chunk, IndexRecord


@dataclass(slots=True, frozen=True)
class StoredChunk:
    """A chunk as read back from a store, with the metadata ranking needs."""

    chunk_id: str
    path: str
    kind: str
    start_line: int
    end_line: int
    text: str
    mtime: float


@dataclass(slots=True, frozen=True)
class LexicalHit:
    chunk: StoredChunk
    score: float


@dataclass(slots=True, frozen=True)
class VectorHit:
    chunk: StoredChunk
    similarity: float


@dataclass(slots=True, frozen=True)
class StoreStats:
    documents: int
    chunks: int
    vectors: int


@runtime_checkable
class IndexStore(Protocol):
    """Contract every index backend implements.

    Only the index manager's sync path calls the mutating methods; the
    retrieval layer calls the search methods. Each ``upsert`` is atomic per
    call, so readers never see a half-written record.
    """

    @property
    def name(self) -> str: ...

    def upsert(self, records: Sequence[IndexRecord], provider_key: str = "") -> int:
        """Insert or replace records keyed by chunk id. Returns records written."""
        ...

    def delete_by_source(self, path: str) -> int:
        """Remove every record of a source path."""
        ...

    def delete_stale(self, known: Mapping[str, str], path: str | None = None) -> int:
        """Remove records whose (path, source fingerprint) is not in ``known``.

        With ``path`` only that source's records are considered.
        """
        ...

    def touch_source(
        self, path: str, fingerprint: str, mtime: float, exclude: Iterable[str] = ()
    ) -> int:
        """Re-stamp a source's surviving records with a new fingerprint."""
        ...

    def source_chunks(self, path: str) -> list[Chunk]:
        """Chunks of one source ordered by start line."""
        ...

    def cached_vectors(
        self, hashes: Iterable[str], provider_key: str
    ) -> dict[str, tuple[float, ...]]:
        """Previously computed vectors by content hash for one provider."""
        ...

    def lexical_search(self, query: str, k: int) -> list[LexicalHit]: ...

    def vector_search(
        self, query_vector: Sequence[float], k: int, provider_key: str
    ) -> list[VectorHit]: ...

    def stats(self) -> StoreStats: ...

    def health_check(self) -> bool: ...

    def close(self) -> None: ...


def normalize_vector(values: Iterable[float]) -> tuple[float, ...]:
    """L2-normalise, mapping non-finite entries to 0."""
    vector = [float(v) if math.isfinite(float(v)) else 0.0 for v in values]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 1e-12:
        return tuple(vector)
    return tuple(v / norm for v in vector)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of two normalised vectors, clamped to [-1, 1]."""
    if not a or not b or len(a) != len(b):
        return 0.0
    score = sum(x * y for x, y in zip(a, b))
    if not math.isfinite(score):
        return 0.0
    return max(-1.0, min(1.0, score))
