"""Alternative index store on a persistent ChromaDB collection."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from memdex.index.models import Chunk, IndexRecord
from memdex.store.base import (
    LexicalHit,
    StoreStats,
    StoredChunk,
    VectorHit,
    cosine_similarity,
)
from memdex.store.lexical import bm25_term, idf, query_terms, term_frequencies

logger = logging.getLogger(__name__)


def _stored(chunk_id: str, document: str, meta: Mapping) -> StoredChunk:
    return StoredChunk(
        chunk_id=chunk_id,
        path=str(meta.get("path", "")),
        kind=str(meta.get("kind", "")),
        start_line=int(meta.get("start_line", 1)),
        end_line=int(meta.get("end_line", 1)),
        text=document or "",
        mtime=float(meta.get("mtime", 0.0)),
    )


class ChromaIndexStore:
    """Chunks, metadata and vectors in one chromadb collection (cosine space).

    Chroma has no term statistics, so lexical search fetches the chunks that
    contain any query term and scores them with BM25 locally.
    """

    def __init__(self, persist_dir: Path, collection: str = "memdex_chunks") -> None:
        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError:
            raise ImportError(
                "chromadb package required. Install with: pip install 'memdex[chroma]'"
            )

        persist_dir = Path(persist_dir)
        persist_dir.mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(
            path=str(persist_dir),
            settings=Settings(anonymized_telemetry=False, allow_reset=True),
        )
        self._collection = self._client.get_or_create_collection(
            name=collection,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    @property
    def name(self) -> str:
        return "chroma"

    def upsert(self, records: Sequence[IndexRecord], provider_key: str = "") -> int:
        if not records:
            return 0
        ids, documents, metadatas, embeddings = [], [], [], []
        for record in records:
            chunk = record.chunk
            _, length = term_frequencies(chunk.text)
            ids.append(chunk.chunk_id)
            documents.append(chunk.text)
            metadatas.append(
                {
                    "path": chunk.path,
                    "kind": record.kind.value,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                    "content_hash": chunk.content_hash,
                    "fingerprint": record.source_fingerprint,
                    "mtime": record.mtime,
                    "length": length,
                    "provider_key": provider_key if record.vector is not None else "",
                }
            )
            embeddings.append(list(record.vector) if record.vector is not None else None)
        if all(e is not None for e in embeddings):
            self._collection.upsert(
                ids=ids, documents=documents, metadatas=metadatas, embeddings=embeddings
            )
        else:
            raise ValueError("chroma backend requires a vector for every record")
        return len(records)

    def delete_by_source(self, path: str) -> int:
        ids = self._collection.get(where={"path": path}, include=[])["ids"]
        if ids:
            self._collection.delete(ids=ids)
        return len(ids)

    def delete_stale(self, known: Mapping[str, str], path: str | None = None) -> int:
        if path is None:
            got = self._collection.get(include=["metadatas"])
        else:
            got = self._collection.get(where={"path": path}, include=["metadatas"])
        stale = [
            chunk_id
            for chunk_id, meta in zip(got["ids"], got["metadatas"])
            if known.get(str(meta.get("path"))) != meta.get("fingerprint")
        ]
        if stale:
            self._collection.delete(ids=stale)
        return len(stale)

    def touch_source(
        self, path: str, fingerprint: str, mtime: float, exclude: Iterable[str] = ()
    ) -> int:
        excluded = set(exclude)
        got = self._collection.get(where={"path": path}, include=["metadatas"])
        ids, metas = [], []
        for chunk_id, meta in zip(got["ids"], got["metadatas"]):
            if chunk_id in excluded:
                continue
            ids.append(chunk_id)
            metas.append({**meta, "fingerprint": fingerprint, "mtime": mtime})
        if ids:
            self._collection.update(ids=ids, metadatas=metas)
        return len(ids)

    def source_chunks(self, path: str) -> list[Chunk]:
        got = self._collection.get(where={"path": path}, include=["documents", "metadatas"])
        chunks = [
            Chunk(
                chunk_id=chunk_id,
                path=path,
                start_line=int(meta["start_line"]),
                end_line=int(meta["end_line"]),
                text=document,
                content_hash=str(meta["content_hash"]),
            )
            for chunk_id, document, meta in zip(got["ids"], got["documents"], got["metadatas"])
        ]
        chunks.sort(key=lambda c: (c.start_line, c.end_line, c.chunk_id))
        return chunks

    def cached_vectors(
        self, hashes: Iterable[str], provider_key: str
    ) -> dict[str, tuple[float, ...]]:
        wanted = sorted(set(hashes))
        if not wanted or not provider_key:
            return {}
        got = self._collection.get(
            where={"$and": [{"content_hash": {"$in": wanted}}, {"provider_key": provider_key}]},
            include=["embeddings", "metadatas"],
        )
        return {
            str(meta["content_hash"]): tuple(float(v) for v in embedding)
            for meta, embedding in zip(got["metadatas"], got["embeddings"])
        }

    def lexical_search(self, query: str, k: int) -> list[LexicalHit]:
        terms = query_terms(query)
        if not terms or k < 1:
            return []
        total = self._collection.count()
        if not total:
            return []
        # $contains is case-sensitive; probe the common casings of each term.
        variants = list(
            dict.fromkeys(v for term in terms for v in (term, term.capitalize(), term.upper()))
        )
        where_document = (
            {"$contains": variants[0]}
            if len(variants) == 1
            else {"$or": [{"$contains": v} for v in variants]}
        )
        got = self._collection.get(
            where_document=where_document, include=["documents", "metadatas"]
        )
        candidates = list(zip(got["ids"], got["documents"], got["metadatas"]))
        if not candidates:
            return []
        counted = [(cid, doc, meta, *term_frequencies(doc)) for cid, doc, meta in candidates]
        avgdl = sum(length for *_, length in counted) / len(counted)
        doc_freq = {term: sum(1 for *_, tf, _ in counted if tf.get(term)) for term in terms}
        hits: list[LexicalHit] = []
        for chunk_id, document, meta, tf, length in counted:
            score = sum(
                bm25_term(tf.get(term, 0), length, avgdl, idf(total, doc_freq[term]))
                for term in terms
            )
            if score > 0:
                hits.append(LexicalHit(_stored(chunk_id, document, meta), score))
        hits.sort(key=lambda h: (-h.score, h.chunk.path, h.chunk.start_line, h.chunk.chunk_id))
        return hits[:k]

    def vector_search(
        self, query_vector: Sequence[float], k: int, provider_key: str
    ) -> list[VectorHit]:
        if not query_vector or k < 1:
            return []
        total = self._collection.count()
        if not total:
            return []
        got = self._collection.query(
            query_embeddings=[list(query_vector)],
            n_results=min(k, total),
            where={"provider_key": provider_key},
            include=["documents", "metadatas", "embeddings"],
        )
        hits = [
            VectorHit(_stored(cid, doc, meta), cosine_similarity(query_vector, list(embedding)))
            for cid, doc, meta, embedding in zip(
                got["ids"][0], got["documents"][0], got["metadatas"][0], got["embeddings"][0]
            )
        ]
        hits.sort(key=lambda h: (-h.similarity, h.chunk.path, h.chunk.start_line, h.chunk.chunk_id))
        return hits

    def stats(self) -> StoreStats:
        got = self._collection.get(include=["metadatas"])
        paths = {str(meta.get("path")) for meta in got["metadatas"]}
        count = len(got["ids"])
        return StoreStats(documents=len(paths), chunks=count, vectors=count)

    def health_check(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception as e:
            logger.warning("Chroma health check failed: %s", e)
            return False

    def close(self) -> None:
        pass
