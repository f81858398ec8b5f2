"""Feature-hashing embeddings: offline, deterministic, no model download."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass

from memdex.embeddings.base import finish_vectors
from memdex.store.lexical import tokenize


@dataclass
class HashEmbeddingProvider:
    """Signed token buckets hashed with sha1, L2-normalised.

    Captures term overlap rather than meaning; good enough to exercise the
    vector path without network access or model weights.
    """

    dimensions: int = 256

    def __post_init__(self) -> None:
        self.dimensions = max(64, int(self.dimensions))

    @property
    def name(self) -> str:
        return "local"

    @property
    def model(self) -> str:
        return f"sha1-bow-{self.dimensions}"

    @property
    def key(self) -> str:
        return f"{self.name}:{self.model}"

    def dimension(self) -> int:
        return self.dimensions

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        raw: list[list[float]] = []
        for text in texts:
            bucket = [0.0] * self.dimensions
            for token in tokenize(text):
                digest = hashlib.sha1(token.encode("utf-8")).digest()
                idx = int.from_bytes(digest[:4], byteorder="big") % self.dimensions
                bucket[idx] += -1.0 if digest[4] % 2 else 1.0
            raw.append(bucket)
        return finish_vectors(raw, len(texts), self.dimensions)

    async def health_check(self) -> bool:
        return True
