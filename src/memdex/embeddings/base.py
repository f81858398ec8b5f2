"""Embedding provider protocol and shared helpers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from memdex.errors import ProviderDimensionMismatch, ProviderUnavailable
from memdex.store.base import normalize_vector


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol that all embedding backends must implement."""

    @property
    def name(self) -> str: ...

    @property
    def model(self) -> str: ...

    @property
    def key(self) -> str:
        """``name:model``: vectors from different keys never mix."""
        ...

    def dimension(self) -> int: ...

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        """Embed a batch of texts, one normalised vector per text, in order."""
        ...

    async def health_check(self) -> bool:
        """Check if the provider is available. Returns True if healthy."""
        ...


def finish_vectors(
    raw: Sequence[Sequence[float]], expected_count: int, dimension: int
) -> list[tuple[float, ...]]:
    """Validate batch shape and normalise every vector."""
    if len(raw) != expected_count:
        raise ProviderUnavailable(
            f"provider returned {len(raw)} vectors for {expected_count} texts"
        )
    vectors: list[tuple[float, ...]] = []
    for values in raw:
        if len(values) != dimension:
            raise ProviderDimensionMismatch(expected=dimension, actual=len(values))
        vectors.append(normalize_vector(values))
    return vectors
