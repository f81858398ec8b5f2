"""Index manager: keeps the derived index in step with the canonical sources.

Triggers (watch events, interval ticks, forced requests, searches on a dirty
index) all land in one coalescing request slot drained by a single worker
task, so at most one sync runs at a time. Every write-path failure is
absorbed here and reflected in the sync state; the last committed index keeps
serving reads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from memdex.config import MemdexConfig
from memdex.embeddings import build_provider
from memdex.embeddings.base import EmbeddingProvider
from memdex.errors import (
    BackendDegraded,
    ProviderDimensionMismatch,
    ProviderRateLimited,
    ProviderUnavailable,
    SourceReadError,
    StoreIOError,
)
from memdex.index.chunking import chunk_text
from memdex.index.detector import ChangeDetector, SourceLayout, TranscriptDelta
from memdex.index.models import (
    Change,
    ChangeKind,
    Chunk,
    DocumentKind,
    IndexRecord,
    ManifestEntry,
    SourceDocument,
)
from memdex.index.state import SyncPhase, SyncState, SyncStatus
from memdex.store.base import IndexStore
from memdex.store.fallback import FallbackIndexStore
from memdex.store.sqlite import SQLiteIndexStore

logger = logging.getLogger(__name__)

META_DIMENSION = "embedding_dimension"
META_PROVIDER = "embedding_provider"


class _Superseded(Exception):
    """A newer change to the document arrived while it was being indexed."""


def build_layout(config: MemdexConfig) -> SourceLayout:
    return SourceLayout(
        workspace_dir=config.workspace_dir,
        sessions_dir=config.resolved_sessions_dir,
        extra_paths=tuple(config.extra_paths),
        include_memory="memory" in config.sources,
        include_sessions="sessions" in config.sources,
    )


class IndexManager:
    """Drive incremental syncs and own the sync state."""

    def __init__(
        self,
        config: MemdexConfig,
        builtin: SQLiteIndexStore,
        store: IndexStore | None = None,
        provider: EmbeddingProvider | None = None,
        detector: ChangeDetector | None = None,
    ) -> None:
        self.config = config
        self.builtin = builtin
        self.store: IndexStore = store or builtin
        self.provider = provider
        self.detector = detector or ChangeDetector(
            build_layout(config), transcript_delta=config.sync.transcript_delta
        )
        self.state = SyncState(active_backend=self.store.name)
        self._lock = asyncio.Lock()
        self._requested = asyncio.Event()
        self._worker: asyncio.Task | None = None
        self._debounce: asyncio.TimerHandle | None = None
        self._retry: asyncio.TimerHandle | None = None
        self._running = False

    # ── Status ────────────────────────────────────────────────

    def status(self) -> SyncStatus:
        return self.state.snapshot()

    @property
    def dirty(self) -> bool:
        return self.state.phase is SyncPhase.DIRTY or bool(self.state.dirty_paths)

    def record_fallback(self, error: BackendDegraded | str) -> None:
        """Note that reads and writes moved to the builtin store."""
        self.state.active_backend = self.builtin.name
        self.state.fallback_reason = str(error)

    # ── Triggers ──────────────────────────────────────────────

    def notify_change(self, path: str | Path) -> None:
        """Watch-event entry point. Must run on the manager's event loop."""
        record = self.detector.record_path(Path(path))
        self.state.bump(record)
        if self.state.phase is not SyncPhase.SYNCING:
            self.state.phase = SyncPhase.DIRTY
        loop = asyncio.get_running_loop()
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = loop.call_later(self.config.sync.debounce_seconds, self.request_sync)

    def request_sync(self, force: bool = False) -> None:
        """Queue a sync without waiting for it. Requests made while one is pending coalesce."""
        if not force and self._in_backoff():
            logger.debug("Sync deferred by backoff (%.1fs left)", self.state.retry_after() or 0.0)
            return
        self._ensure_worker()
        self._requested.set()

    def on_search(self) -> None:
        """A search hit a possibly stale index; kick off a background sync."""
        if not self.config.sync.on_search or self.state.fatal_error:
            return
        if self.dirty or self.state.last_sync_at is None:
            self.request_sync()

    def _in_backoff(self) -> bool:
        return time.monotonic() < self.state.backoff_until

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            await self._requested.wait()
            self._requested.clear()
            try:
                await self.sync()
            except Exception:
                logger.exception("Background sync crashed")

    # ── Lifecycle ─────────────────────────────────────────────

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Watch and/or poll until shutdown_event is set."""
        from memdex.index.watcher import SourceWatcher

        mode = self.config.sync.mode
        self._running = True
        watcher: SourceWatcher | None = None
        if mode == "debounce":
            watcher = SourceWatcher(self.detector.layout, self.notify_change)
            watcher.start(asyncio.get_running_loop())
        interval = self.config.sync.interval_seconds if mode != "manual" else 0
        logger.info("Index manager started (mode=%s, interval=%ss)", mode, interval or "off")
        self.request_sync(force=True)
        try:
            while not shutdown_event.is_set():
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=interval or None)
                    break
                except asyncio.TimeoutError:
                    self.request_sync()
        finally:
            if watcher is not None:
                watcher.stop()
            await self.stop()
        logger.info("Index manager stopped.")

    async def stop(self) -> None:
        self._running = False
        for handle in (self._debounce, self._retry):
            if handle is not None:
                handle.cancel()
        self._debounce = self._retry = None
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    # ── Sync ──────────────────────────────────────────────────

    async def sync(self, force: bool = False) -> SyncStatus:
        """Run one sync pass now and return the resulting status.

        Automatic callers pass ``force=False`` and are skipped inside the
        backoff window; forced syncs always run unless indexing is halted by
        a fatal error.
        """
        async with self._lock:
            if self.state.fatal_error:
                logger.warning("Indexing halted: %s", self.state.fatal_error)
                return self.status()
            if not force and self._in_backoff():
                return self.status()
            await self._sync_once()
            return self.status()

    async def _sync_once(self) -> None:
        state = self.state
        started_seq = dict(state.change_seq)
        state.phase = SyncPhase.SCANNING
        pending: list[Change] = []
        applied: set[str] = set()
        superseded: set[str] = set()
        try:
            await asyncio.to_thread(self._check_dimension)
            manifest = await asyncio.to_thread(self.builtin.load_manifest)
            changes, errors = await asyncio.to_thread(self.detector.scan, manifest)
            state.source_errors = dict(errors)
            pending = [c for c in changes if c.kind is not ChangeKind.UNCHANGED]
            known = {path: entry.fingerprint for path, entry in manifest.items()}

            if pending:
                state.phase = SyncPhase.SYNCING
                logger.info("Sync started: %d changed documents", len(pending))
                for change in pending:
                    try:
                        await self._apply(change, known, started_seq)
                    except SourceReadError as e:
                        logger.warning("Skipping unreadable source %s: %s", e.path, e.reason)
                        state.source_errors[e.path] = e.reason
                    except _Superseded:
                        logger.info("Change to %s superseded mid-sync; will re-read", change.path)
                        superseded.add(change.path)
                    else:
                        applied.add(change.path)
                    await asyncio.sleep(0)
                await asyncio.to_thread(self.store.delete_stale, known)
        except ProviderDimensionMismatch as e:
            logger.error("Indexing halted: %s (run `memdex reindex` after reconfiguring)", e)
            state.fatal_error = str(e)
            self._finish_failed(e, pending, applied)
            return
        except (ProviderUnavailable, ProviderRateLimited) as e:
            delay = self._schedule_backoff(e)
            logger.warning("Embedding provider failed, retrying in %.1fs: %s", delay, e)
            self._finish_failed(e, pending, applied)
            return
        except StoreIOError as e:
            logger.error("Sync failed, index store error: %s", e)
            self._finish_failed(e, pending, applied)
            return
        except Exception as e:
            logger.exception("Sync failed unexpectedly")
            self._finish_failed(e, pending, applied)
            return

        state.failures = 0
        state.backoff_until = 0.0
        state.last_sync_at = time.time()
        state.last_outcome = "ok"
        state.last_error = None
        still_dirty = {
            path for path in state.dirty_paths if state.seq(path) != started_seq.get(path, 0)
        }
        state.dirty_paths = still_dirty | superseded
        await self._refresh_counts()
        if state.dirty_paths:
            state.phase = SyncPhase.DIRTY
            self.request_sync()
        else:
            state.phase = SyncPhase.IDLE if pending else SyncPhase.CLEAN
        if pending:
            logger.info(
                "Sync finished: %d documents, %d chunks indexed", state.documents, state.chunks
            )

    def _finish_failed(self, error: Exception, pending: list[Change], applied: set[str]) -> None:
        state = self.state
        state.last_sync_at = time.time()
        state.last_outcome = "error"
        state.last_error = str(error)
        state.dirty_paths.update(c.path for c in pending if c.path not in applied)
        state.phase = SyncPhase.DIRTY

    def _schedule_backoff(self, error: ProviderUnavailable | ProviderRateLimited) -> float:
        sync = self.config.sync
        self.state.failures += 1
        delay = min(
            sync.backoff_max_seconds,
            sync.backoff_base_seconds * 2 ** (self.state.failures - 1),
        )
        hint = getattr(error, "retry_after", None)
        if hint is not None and hint > delay:
            delay = hint
        self.state.backoff_until = time.monotonic() + delay
        if self._running:
            if self._retry is not None:
                self._retry.cancel()
            self._retry = asyncio.get_running_loop().call_later(delay, self.request_sync)
        return delay

    async def _refresh_counts(self) -> None:
        try:
            stats = await asyncio.to_thread(self.store.stats)
        except StoreIOError as e:
            logger.warning("Could not read index stats: %s", e)
            return
        self.state.documents = stats.documents
        self.state.chunks = stats.chunks

    def _check_dimension(self) -> None:
        """Refuse to mix vector sizes in one index."""
        if self.provider is None:
            return
        actual = self.provider.dimension()
        recorded = self.builtin.get_meta(META_DIMENSION)
        if recorded is not None and int(recorded) != actual and self.builtin.stats().vectors > 0:
            raise ProviderDimensionMismatch(expected=int(recorded), actual=actual)
        if recorded is None or int(recorded) != actual:
            self.builtin.set_meta(META_DIMENSION, str(actual))
        if self.builtin.get_meta(META_PROVIDER) != self.provider.key:
            self.builtin.set_meta(META_PROVIDER, self.provider.key)

    # ── Per-document work ─────────────────────────────────────

    async def _apply(
        self, change: Change, known: dict[str, str], started_seq: dict[str, int]
    ) -> None:
        if change.kind is ChangeKind.REMOVED:
            await asyncio.to_thread(self._remove, change.path)
            known.pop(change.path, None)
            logger.debug("Removed %s from index", change.path)
            return

        document = change.document
        assert document is not None
        if document.kind is DocumentKind.TRANSCRIPT:
            await self._apply_transcript(change, document, known, started_seq)
            return

        text = await asyncio.to_thread(self.detector.read_text, document)
        chunks = self._chunk(document.path, text)
        records = await self._records(chunks, document)
        self._check_superseded(document.path, started_seq)
        entry = ManifestEntry(
            path=document.path,
            kind=document.kind,
            fingerprint=document.fingerprint,
            mtime=document.mtime,
            size=document.size,
            line_count=len(text.splitlines()),
        )
        await asyncio.to_thread(self._write_document, records, entry, known)

    async def _apply_transcript(
        self,
        change: Change,
        document: SourceDocument,
        known: dict[str, str],
        started_seq: dict[str, int],
    ) -> None:
        previous = change.previous
        delta: TranscriptDelta | None = None
        if self.detector.transcript_delta and change.kind is ChangeKind.MODIFIED:
            delta = await asyncio.to_thread(self.detector.read_transcript_delta, document, previous)
        if delta is not None and previous is not None:
            tail = (await asyncio.to_thread(self.store.source_chunks, document.path))[-1:]
            if tail or not delta.lines:
                await self._append_transcript(document, previous, delta, tail, known, started_seq)
                return

        full = await asyncio.to_thread(self.detector.read_transcript, document)
        chunks = self._chunk(document.path, "\n".join(full.lines))
        records = await self._records(chunks, document)
        self._check_superseded(document.path, started_seq)
        entry = ManifestEntry(
            path=document.path,
            kind=document.kind,
            fingerprint=document.fingerprint,
            mtime=document.mtime,
            size=document.size,
            offset=full.offset,
            line_count=len(full.lines),
            tail_digest=full.tail_digest,
        )
        await asyncio.to_thread(self._write_document, records, entry, known)

    async def _append_transcript(
        self,
        document: SourceDocument,
        previous: ManifestEntry,
        delta: TranscriptDelta,
        tail: list[Chunk],
        known: dict[str, str],
        started_seq: dict[str, int],
    ) -> None:
        """Re-chunk the last chunk plus the appended lines; earlier chunks keep their ids."""
        records: list[IndexRecord] = []
        keep_out: list[str] = []
        if delta.lines and tail:
            last = tail[0]
            text = last.text + "\n" + "\n".join(delta.lines)
            chunks = self._chunk(document.path, text, first_line=last.start_line)
            records = await self._records(chunks, document)
            keep_out = [last.chunk_id, *(r.chunk_id for r in records)]
        self._check_superseded(document.path, started_seq)
        entry = ManifestEntry(
            path=document.path,
            kind=document.kind,
            fingerprint=document.fingerprint,
            mtime=document.mtime,
            size=document.size,
            offset=delta.offset,
            line_count=previous.line_count + len(delta.lines),
            tail_digest=delta.tail_digest,
        )
        await asyncio.to_thread(self._write_appended, records, keep_out, entry, known)

    def _chunk(self, path: str, text: str, first_line: int = 1) -> list[Chunk]:
        return chunk_text(
            path,
            text,
            max_chars=self.config.chunking.max_chars,
            overlap_chars=self.config.chunking.overlap_chars,
            first_line=first_line,
        )

    async def _records(self, chunks: list[Chunk], document: SourceDocument) -> list[IndexRecord]:
        vectors = await self._vectors(chunks)
        return [
            IndexRecord(
                chunk=chunk,
                kind=document.kind,
                source_fingerprint=document.fingerprint,
                mtime=document.mtime,
                vector=vectors.get(chunk.content_hash),
            )
            for chunk in chunks
        ]

    async def _vectors(self, chunks: list[Chunk]) -> dict[str, tuple[float, ...]]:
        """Vectors by content hash, embedding only what the cache lacks."""
        if self.provider is None or not chunks:
            return {}
        texts = {chunk.content_hash: chunk.text for chunk in chunks}
        found = await asyncio.to_thread(self.store.cached_vectors, list(texts), self.provider.key)
        missing = [h for h in texts if h not in found]
        batch_size = max(1, self.config.provider.batch_size)
        for i in range(0, len(missing), batch_size):
            batch = missing[i : i + batch_size]
            vectors = await self.provider.embed([texts[h] for h in batch])
            found.update(zip(batch, vectors))
        return found

    def _check_superseded(self, path: str, started_seq: dict[str, int]) -> None:
        if self.state.seq(path) != started_seq.get(path, 0):
            raise _Superseded(path)

    def _write_document(
        self, records: list[IndexRecord], entry: ManifestEntry, known: dict[str, str]
    ) -> None:
        key = self.provider.key if self.provider is not None else ""
        self.store.upsert(records, key)
        self.builtin.commit_manifest(entry)
        known[entry.path] = entry.fingerprint
        # Drop this document's superseded chunks right away.
        self.store.delete_stale(known, path=entry.path)

    def _write_appended(
        self,
        records: list[IndexRecord],
        keep_out: list[str],
        entry: ManifestEntry,
        known: dict[str, str],
    ) -> None:
        key = self.provider.key if self.provider is not None else ""
        self.store.upsert(records, key)
        self.store.touch_source(entry.path, entry.fingerprint, entry.mtime, exclude=keep_out)
        self.builtin.commit_manifest(entry)
        known[entry.path] = entry.fingerprint
        self.store.delete_stale(known, path=entry.path)

    def _remove(self, path: str) -> None:
        self.store.delete_by_source(path)
        self.builtin.drop_manifest(path)

    # ── Maintenance ───────────────────────────────────────────

    async def reindex(self) -> SyncStatus:
        """Drop everything (vectors, manifest, fatal flag) and rebuild from the sources."""
        async with self._lock:
            await asyncio.to_thread(self.store.delete_stale, {})
            await asyncio.to_thread(self.builtin.reset)
            self.state.fatal_error = None
            self.state.failures = 0
            self.state.backoff_until = 0.0
            logger.info("Index reset; rebuilding from sources")
        return await self.sync(force=True)

    def close(self) -> None:
        self.store.close()


def attach_alternative(manager: IndexManager, alternative: IndexStore) -> FallbackIndexStore:
    """Put ``alternative`` in front of the builtin store.

    Reads move to the alternative only after it has been reconciled with the
    builtin manifest, so it never serves records the builtin index dropped
    and never starts out empty.
    """
    store = FallbackIndexStore(alternative, manager.builtin, on_degraded=manager.record_fallback)
    if store.probe():
        manifest = manager.builtin.load_manifest()
        known = {path: entry.fingerprint for path, entry in manifest.items()}
        key = manager.provider.key if manager.provider is not None else ""
        store.reconcile(known, key)
    manager.store = store
    manager.state.active_backend = store.name
    return store


def build_manager(config: MemdexConfig) -> IndexManager:
    """Wire provider, stores and detector from configuration."""
    provider = build_provider(config.provider)
    builtin = SQLiteIndexStore(config.index_path, lexical=config.query.lexical)
    manager = IndexManager(config, builtin, provider=provider)
    if config.backend.alternative == "chroma":
        try:
            from memdex.store.chroma import ChromaIndexStore

            alternative = ChromaIndexStore(config.backend.chroma_path, config.backend.collection)
        except Exception as e:
            logger.warning("Alternative backend unavailable, using builtin store: %s", e)
            manager.record_fallback(BackendDegraded("chroma", e))
        else:
            attach_alternative(manager, alternative)
    return manager
