"""Hybrid lexical + vector ranking."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from memdex.config import QueryConfig
from memdex.embeddings.base import EmbeddingProvider
from memdex.errors import ProviderError, StoreIOError
from memdex.index.models import Query, ResultItem, SearchResponse
from memdex.store.base import IndexStore, StoredChunk

logger = logging.getLogger(__name__)

ELLIPSIS = "…"


@dataclass
class _Candidate:
    chunk: StoredChunk
    lexical: float = 0.0
    vector: float = 0.0


def make_snippet(text: str, max_chars: int) -> str:
    """Chunk text bounded to ``max_chars``, ellipsis included."""
    if len(text) <= max_chars:
        return text
    if max_chars <= len(ELLIPSIS):
        return text[:max_chars]
    return text[: max_chars - len(ELLIPSIS)].rstrip() + ELLIPSIS


class HybridRanker:
    """Merge BM25 and cosine candidates into one ordered, bounded result list.

    Lexical scores are divided by the best lexical score of the pool and
    cosine similarities are clamped to [0, 1], then combined as a weighted
    mean over the components that actually ran. A failed component drops out
    of the mean and marks the response degraded. A query that embeds to the
    zero vector drops the vector component without degrading. If everything fails the
    response is empty rather than an exception.
    """

    def __init__(
        self,
        store: IndexStore,
        provider: EmbeddingProvider | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config or QueryConfig()

    async def search(self, query: Query | str) -> SearchResponse:
        if isinstance(query, str):
            query = Query(text=query)
        text = query.text.strip()
        if not text:
            return SearchResponse()
        k = query.max_results if query.max_results is not None else self.config.max_results
        min_score = query.min_score if query.min_score is not None else self.config.min_score
        if k < 1:
            return SearchResponse()
        pool = k * self.config.candidate_multiplier

        response = SearchResponse()
        errors: list[str] = []
        candidates: dict[str, _Candidate] = {}
        weights: dict[str, float] = {}

        if self.config.lexical:
            try:
                hits = await asyncio.to_thread(self.store.lexical_search, text, pool)
            except StoreIOError as e:
                logger.warning("Lexical search unavailable: %s", e)
                errors.append(str(e))
            else:
                weights["lexical"] = self.config.lexical_weight
                best = max((h.score for h in hits), default=0.0)
                for hit in hits:
                    candidate = candidates.setdefault(hit.chunk.chunk_id, _Candidate(hit.chunk))
                    candidate.lexical = hit.score / best if best > 0 else 0.0

        if self.provider is not None:
            try:
                vectors = await self.provider.embed([text])
                hits = None
                # A zero query vector carries no signal; rank on the other leg alone.
                if any(vectors[0]):
                    hits = await asyncio.to_thread(
                        self.store.vector_search, vectors[0], pool, self.provider.key
                    )
            except (ProviderError, StoreIOError) as e:
                logger.warning("Vector search unavailable: %s", e)
                errors.append(str(e))
            else:
                if hits is None:
                    logger.debug("Query %r embedded to a zero vector", text)
                    hits = []
                else:
                    weights["vector"] = self.config.vector_weight
                for hit in hits:
                    candidate = candidates.setdefault(hit.chunk.chunk_id, _Candidate(hit.chunk))
                    candidate.vector = max(0.0, min(1.0, hit.similarity))

        if errors:
            response.degraded = True
            response.error = "; ".join(errors)
        if not weights:
            return response

        total = sum(weights.values())
        if total <= 0:
            weights = {name: 1.0 for name in weights}
            total = float(len(weights))
        wl = weights.get("lexical", 0.0)
        wv = weights.get("vector", 0.0)

        scored: list[tuple[float, _Candidate]] = []
        for candidate in candidates.values():
            score = (wl * candidate.lexical + wv * candidate.vector) / total
            if score >= min_score:
                scored.append((score, candidate))
        scored.sort(
            key=lambda item: (
                -round(item[0], 9),
                -item[1].chunk.mtime,
                item[1].chunk.path,
                item[1].chunk.start_line,
            )
        )
        response.results = [
            ResultItem(
                path=c.chunk.path,
                start_line=c.chunk.start_line,
                end_line=c.chunk.end_line,
                snippet=make_snippet(c.chunk.text, self.config.snippet_max_chars),
                score=score,
                kind=c.chunk.kind,
            )
            for score, c in scored[:k]
        ]
        return response
