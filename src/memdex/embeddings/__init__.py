"""Embedding backends, selected at startup by configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from memdex.embeddings.base import EmbeddingProvider
from memdex.embeddings.local import HashEmbeddingProvider

if TYPE_CHECKING:
    from memdex.config import ProviderConfig

__all__ = ["EmbeddingProvider", "HashEmbeddingProvider", "build_provider"]


def build_provider(config: ProviderConfig) -> EmbeddingProvider | None:
    """Instantiate the configured provider, or None for lexical-only mode."""
    name = config.name
    if name == "none":
        return None
    if name == "local":
        return HashEmbeddingProvider(dimensions=config.dimensions or 256)
    if name == "openai":
        from memdex.embeddings.openai import DEFAULT_MODEL, OpenAIEmbeddingProvider

        return OpenAIEmbeddingProvider(
            model_name=config.model or DEFAULT_MODEL,
            base_url=config.base_url,
            api_key=config.api_key,
            dimensions=config.dimensions,
            timeout=config.timeout,
        )
    if name == "sentence-transformers":
        from memdex.embeddings.sentence import DEFAULT_MODEL, SentenceTransformerProvider

        return SentenceTransformerProvider(model_name=config.model or DEFAULT_MODEL)
    raise ValueError(f"Unknown embedding provider: {name}")
