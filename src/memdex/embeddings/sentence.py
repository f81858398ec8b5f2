"""Local-model embeddings via sentence-transformers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from memdex.embeddings.base import finish_vectors
from memdex.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


@dataclass
class SentenceTransformerProvider:
    """Runs a SentenceTransformer model on this machine. Loaded once, on first use."""

    model_name: str = DEFAULT_MODEL

    def __post_init__(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers package required. Install with: pip install 'memdex[local]'"
            )
        logger.info("Loading embedding model %s", self.model_name)
        try:
            self._model = SentenceTransformer(self.model_name)
        except Exception as e:
            raise ProviderUnavailable(f"failed to load {self.model_name}: {e}") from e

    @property
    def name(self) -> str:
        return "sentence-transformers"

    @property
    def model(self) -> str:
        return self.model_name

    @property
    def key(self) -> str:
        return f"{self.name}:{self.model}"

    def dimension(self) -> int:
        return int(self._model.get_sentence_embedding_dimension())

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        if not texts:
            return []
        try:
            encoded = await asyncio.to_thread(
                self._model.encode, list(texts), show_progress_bar=False
            )
        except Exception as e:
            raise ProviderUnavailable(f"{self.key} encode failed: {e}") from e
        return finish_vectors(encoded.tolist(), len(texts), self.dimension())

    async def health_check(self) -> bool:
        return self._model is not None
