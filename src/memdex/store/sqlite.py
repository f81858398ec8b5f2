"""Builtin index store on SQLite.

One writer (the index manager's sync path) and any number of readers. Each
thread gets its own connection; WAL journaling lets readers keep reading the
last committed state while a sync transaction is open. Lexical postings,
the embedding cache and the fingerprint manifest live in the same file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path

from memdex.errors import StoreIOError
from memdex.index.models import Chunk, DocumentKind, IndexRecord, ManifestEntry
from memdex.store.base import (
    LexicalHit,
    StoreStats,
    StoredChunk,
    VectorHit,
    cosine_similarity,
)
from memdex.store.lexical import bm25_term, idf, query_terms, term_frequencies

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
_IN_BATCH = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sources (
    path TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    mtime REAL NOT NULL,
    size INTEGER NOT NULL,
    offset INTEGER NOT NULL DEFAULT 0,
    line_count INTEGER NOT NULL DEFAULT 0,
    tail_digest TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    kind TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    mtime REAL NOT NULL,
    length INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path);
CREATE INDEX IF NOT EXISTS idx_chunks_hash ON chunks(content_hash);
CREATE TABLE IF NOT EXISTS postings (
    term TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    tf INTEGER NOT NULL,
    PRIMARY KEY (term, chunk_id)
) WITHOUT ROWID;
CREATE INDEX IF NOT EXISTS idx_postings_chunk ON postings(chunk_id);
CREATE TABLE IF NOT EXISTS embeddings (
    content_hash TEXT NOT NULL,
    provider_key TEXT NOT NULL,
    dims INTEGER NOT NULL,
    vector TEXT NOT NULL,
    PRIMARY KEY (content_hash, provider_key)
);
"""

_CHUNK_COLUMNS = "c.id, c.path, c.kind, c.start_line, c.end_line, c.text, c.mtime"


def _stored(row: Sequence) -> StoredChunk:
    return StoredChunk(
        chunk_id=row[0],
        path=row[1],
        kind=row[2],
        start_line=int(row[3]),
        end_line=int(row[4]),
        text=row[5],
        mtime=float(row[6]),
    )


def _batched(items: list[str]) -> Iterator[list[str]]:
    for i in range(0, len(items), _IN_BATCH):
        yield items[i : i + _IN_BATCH]


class SQLiteIndexStore:
    """SQLite-backed chunk index with BM25 postings and cached embeddings."""

    def __init__(self, path: Path, lexical: bool = True) -> None:
        self.path = Path(path)
        self.lexical = lexical
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._ensure_db()

    @property
    def name(self) -> str:
        return "builtin"

    # ── Connections ───────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path), timeout=30.0, isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        with self._connections_lock:
            self._connections.append(conn)
        return conn

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    @contextmanager
    def _io(self, op: str) -> Iterator[None]:
        try:
            yield
        except (sqlite3.Error, OSError) as e:
            raise StoreIOError(f"{op} failed: {e}") from e

    @contextmanager
    def _write(self, op: str) -> Iterator[sqlite3.Connection]:
        with self._io(op), self._write_lock:
            conn = self._conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def _read(self, op: str) -> Iterator[sqlite3.Connection]:
        """One snapshot for the whole read, so a concurrent commit is seen fully or not at all."""
        with self._io(op):
            conn = self._conn()
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("COMMIT")

    def _ensure_db(self) -> None:
        with self._io("open"):
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._conn()
            conn.executescript(_SCHEMA)
            row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO meta (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
            elif int(row[0]) != SCHEMA_VERSION:
                raise StoreIOError(
                    f"index schema {row[0]} is not supported (expected {SCHEMA_VERSION}); "
                    "run `memdex reindex`"
                )
        logger.debug("Opened index store at %s", self.path)

    # ── Records ───────────────────────────────────────────────

    def upsert(self, records: Sequence[IndexRecord], provider_key: str = "") -> int:
        if not records:
            return 0
        with self._write("upsert") as conn:
            for record in records:
                chunk = record.chunk
                counts, length = term_frequencies(chunk.text)
                conn.execute(
                    """
                    INSERT INTO chunks
                        (id, path, kind, start_line, end_line, text, content_hash,
                         fingerprint, mtime, length)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        path=excluded.path, kind=excluded.kind,
                        start_line=excluded.start_line, end_line=excluded.end_line,
                        text=excluded.text, content_hash=excluded.content_hash,
                        fingerprint=excluded.fingerprint, mtime=excluded.mtime,
                        length=excluded.length
                    """,
                    (
                        chunk.chunk_id,
                        chunk.path,
                        record.kind.value,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.text,
                        chunk.content_hash,
                        record.source_fingerprint,
                        record.mtime,
                        length,
                    ),
                )
                if self.lexical:
                    conn.execute("DELETE FROM postings WHERE chunk_id = ?", (chunk.chunk_id,))
                    conn.executemany(
                        "INSERT INTO postings (term, chunk_id, tf) VALUES (?, ?, ?)",
                        [(term, chunk.chunk_id, tf) for term, tf in sorted(counts.items())],
                    )
                if record.vector is not None and provider_key:
                    conn.execute(
                        """
                        INSERT INTO embeddings (content_hash, provider_key, dims, vector)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(content_hash, provider_key) DO UPDATE SET
                            dims=excluded.dims, vector=excluded.vector
                        """,
                        (
                            chunk.content_hash,
                            provider_key,
                            len(record.vector),
                            json.dumps(list(record.vector)),
                        ),
                    )
        return len(records)

    def _delete_ids(self, conn: sqlite3.Connection, ids: list[str]) -> None:
        for batch in _batched(ids):
            marks = ",".join("?" * len(batch))
            conn.execute(f"DELETE FROM postings WHERE chunk_id IN ({marks})", batch)
            conn.execute(f"DELETE FROM chunks WHERE id IN ({marks})", batch)

    def _prune_embeddings(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            "DELETE FROM embeddings WHERE content_hash NOT IN (SELECT content_hash FROM chunks)"
        )

    def delete_by_source(self, path: str) -> int:
        with self._write("delete_by_source") as conn:
            ids = [row[0] for row in conn.execute("SELECT id FROM chunks WHERE path = ?", (path,))]
            self._delete_ids(conn, ids)
            self._prune_embeddings(conn)
        return len(ids)

    def delete_stale(self, known: Mapping[str, str], path: str | None = None) -> int:
        with self._write("delete_stale") as conn:
            if path is None:
                rows = conn.execute("SELECT id, path, fingerprint FROM chunks")
            else:
                rows = conn.execute(
                    "SELECT id, path, fingerprint FROM chunks WHERE path = ?", (path,)
                )
            stale = [
                chunk_id
                for chunk_id, source, fingerprint in rows
                if known.get(source) != fingerprint
            ]
            self._delete_ids(conn, stale)
            self._prune_embeddings(conn)
        if stale:
            logger.debug("Purged %d stale chunks", len(stale))
        return len(stale)

    def touch_source(
        self, path: str, fingerprint: str, mtime: float, exclude: Iterable[str] = ()
    ) -> int:
        excluded = list(exclude)
        with self._write("touch_source") as conn:
            sql = "UPDATE chunks SET fingerprint = ?, mtime = ? WHERE path = ?"
            params: list = [fingerprint, mtime, path]
            if excluded:
                sql += f" AND id NOT IN ({','.join('?' * len(excluded))})"
                params.extend(excluded)
            cursor = conn.execute(sql, params)
        return cursor.rowcount

    def source_chunks(self, path: str) -> list[Chunk]:
        with self._read("source_chunks") as conn:
            rows = conn.execute(
                """
                SELECT id, path, start_line, end_line, text, content_hash
                FROM chunks WHERE path = ? ORDER BY start_line, end_line, id
                """,
                (path,),
            ).fetchall()
        return [
            Chunk(
                chunk_id=row[0],
                path=row[1],
                start_line=int(row[2]),
                end_line=int(row[3]),
                text=row[4],
                content_hash=row[5],
            )
            for row in rows
        ]

    def cached_vectors(
        self, hashes: Iterable[str], provider_key: str
    ) -> dict[str, tuple[float, ...]]:
        wanted = sorted(set(hashes))
        found: dict[str, tuple[float, ...]] = {}
        if not wanted or not provider_key:
            return found
        with self._read("cached_vectors") as conn:
            for batch in _batched(wanted):
                marks = ",".join("?" * len(batch))
                for content_hash, vector in conn.execute(
                    f"SELECT content_hash, vector FROM embeddings "
                    f"WHERE provider_key = ? AND content_hash IN ({marks})",
                    [provider_key, *batch],
                ):
                    found[content_hash] = tuple(json.loads(vector))
        return found

    def source_records(self, path: str, provider_key: str = "") -> list[IndexRecord]:
        """Full records of one source, with ``provider_key`` vectors where cached."""
        with self._read("source_records") as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.path, c.start_line, c.end_line, c.text, c.content_hash,
                       c.kind, c.fingerprint, c.mtime, e.vector
                FROM chunks c
                LEFT JOIN embeddings e
                    ON e.content_hash = c.content_hash AND e.provider_key = ?
                WHERE c.path = ?
                ORDER BY c.start_line, c.end_line, c.id
                """,
                (provider_key, path),
            ).fetchall()
        return [
            IndexRecord(
                chunk=Chunk(
                    chunk_id=row[0],
                    path=row[1],
                    start_line=int(row[2]),
                    end_line=int(row[3]),
                    text=row[4],
                    content_hash=row[5],
                ),
                kind=DocumentKind(row[6]),
                source_fingerprint=row[7],
                mtime=float(row[8]),
                vector=tuple(json.loads(row[9])) if row[9] is not None else None,
            )
            for row in rows
        ]

    # ── Search ────────────────────────────────────────────────

    def lexical_search(self, query: str, k: int) -> list[LexicalHit]:
        """BM25 over the postings with deterministic tie-breaking."""
        terms = query_terms(query)
        if not self.lexical or not terms or k < 1:
            return []
        marks = ",".join("?" * len(terms))
        with self._read("lexical_search") as conn:
            total, avgdl = conn.execute("SELECT COUNT(*), AVG(length) FROM chunks").fetchone()
            if not total or not avgdl:
                return []
            doc_freq = dict(
                conn.execute(
                    f"SELECT term, COUNT(*) FROM postings WHERE term IN ({marks}) GROUP BY term",
                    terms,
                ).fetchall()
            )
            scores: dict[str, float] = {}
            for chunk_id, term, tf, length in conn.execute(
                f"""
                SELECT p.chunk_id, p.term, p.tf, c.length
                FROM postings p JOIN chunks c ON c.id = p.chunk_id
                WHERE p.term IN ({marks})
                """,
                terms,
            ):
                term_idf = idf(total, doc_freq.get(term, 0))
                scores[chunk_id] = scores.get(chunk_id, 0.0) + bm25_term(
                    tf, length, float(avgdl), term_idf
                )
            if not scores:
                return []
            chunks = self._fetch_chunks(conn, list(scores))
        hits = [LexicalHit(chunks[cid], score) for cid, score in scores.items() if score > 0]
        hits.sort(key=lambda h: (-h.score, h.chunk.path, h.chunk.start_line, h.chunk.chunk_id))
        return hits[:k]

    def vector_search(
        self, query_vector: Sequence[float], k: int, provider_key: str
    ) -> list[VectorHit]:
        """Brute-force cosine scan over the active provider's vectors."""
        if not query_vector or k < 1 or not provider_key:
            return []
        dims = len(query_vector)
        with self._read("vector_search") as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, e.vector
                FROM chunks c
                JOIN embeddings e ON e.content_hash = c.content_hash
                WHERE e.provider_key = ? AND e.dims = ?
                """,
                (provider_key, dims),
            ).fetchall()
        hits: list[VectorHit] = []
        for row in rows:
            vector = json.loads(row[7])
            hits.append(VectorHit(_stored(row), cosine_similarity(query_vector, vector)))
        hits.sort(key=lambda h: (-h.similarity, h.chunk.path, h.chunk.start_line, h.chunk.chunk_id))
        return hits[:k]

    def _fetch_chunks(self, conn: sqlite3.Connection, ids: list[str]) -> dict[str, StoredChunk]:
        found: dict[str, StoredChunk] = {}
        for batch in _batched(ids):
            marks = ",".join("?" * len(batch))
            for row in conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.id IN ({marks})", batch
            ):
                found[row[0]] = _stored(row)
        return found

    def stats(self) -> StoreStats:
        with self._read("stats") as conn:
            documents = conn.execute("SELECT COUNT(DISTINCT path) FROM chunks").fetchone()[0]
            chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            vectors = conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        return StoreStats(documents=documents, chunks=chunks, vectors=vectors)

    def health_check(self) -> bool:
        try:
            with self._read("health_check") as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StoreIOError:
            return False

    # ── Manifest & index metadata (builtin only) ──────────────

    def load_manifest(self) -> dict[str, ManifestEntry]:
        with self._read("load_manifest") as conn:
            rows = conn.execute(
                "SELECT path, kind, fingerprint, mtime, size, offset, line_count, tail_digest "
                "FROM sources"
            ).fetchall()
        return {
            row[0]: ManifestEntry(
                path=row[0],
                kind=DocumentKind(row[1]),
                fingerprint=row[2],
                mtime=float(row[3]),
                size=int(row[4]),
                offset=int(row[5]),
                line_count=int(row[6]),
                tail_digest=row[7],
            )
            for row in rows
        }

    def commit_manifest(self, entry: ManifestEntry) -> None:
        with self._write("commit_manifest") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sources
                    (path, kind, fingerprint, mtime, size, offset, line_count, tail_digest)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.path,
                    entry.kind.value,
                    entry.fingerprint,
                    entry.mtime,
                    entry.size,
                    entry.offset,
                    entry.line_count,
                    entry.tail_digest,
                ),
            )

    def drop_manifest(self, path: str) -> None:
        with self._write("drop_manifest") as conn:
            conn.execute("DELETE FROM sources WHERE path = ?", (path,))

    def get_meta(self, key: str) -> str | None:
        with self._read("get_meta") as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._write("set_meta") as conn:
            conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    def reset(self) -> None:
        """Drop every record, vector and manifest entry (schema stays)."""
        with self._write("reset") as conn:
            for table in ("postings", "chunks", "embeddings", "sources"):
                conn.execute(f"DELETE FROM {table}")
            conn.execute("DELETE FROM meta WHERE key != 'schema_version'")
        logger.info("Index store reset: %s", self.path)

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        self._local = threading.local()
