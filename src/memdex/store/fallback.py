"""Backend fallback: an alternative store with the builtin store behind it."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

from memdex.errors import BackendDegraded
from memdex.index.models import Chunk, IndexRecord
from memdex.store.base import IndexStore, LexicalHit, StoreStats, VectorHit

if TYPE_CHECKING:
    from memdex.store.sqlite import SQLiteIndexStore

logger = logging.getLogger(__name__)


class FallbackIndexStore:
    """IndexStore proxy that serves from ``alternative`` until it fails.

    Writes land in the builtin store first and are then mirrored, so the
    builtin store can take over at any moment. Reads stay on the builtin
    store until ``reconcile`` has brought the alternative in line with it.
    Once the alternative fails the proxy stays on the builtin store for the
    rest of the process.
    """

    def __init__(
        self,
        alternative: IndexStore,
        builtin: SQLiteIndexStore,
        on_degraded: Callable[[BackendDegraded], None] | None = None,
    ) -> None:
        self.alternative = alternative
        self.builtin = builtin
        self.on_degraded = on_degraded
        self.degraded: BackendDegraded | None = None
        self.reconciled = False

    @property
    def name(self) -> str:
        return self.active.name

    @property
    def active(self) -> IndexStore:
        if self.degraded or not self.reconciled:
            return self.builtin
        return self.alternative

    def probe(self) -> bool:
        """Health-check the alternative; degrade if it is not usable."""
        if self.degraded:
            return False
        try:
            healthy = self.alternative.health_check()
        except Exception as e:
            self._degrade("health_check", e)
            return False
        if not healthy:
            self._degrade("health_check", "health probe failed")
        return healthy

    def reconcile(self, known: Mapping[str, str], provider_key: str = "") -> int:
        """Make the alternative hold exactly the builtin records, then serve reads from it.

        ``known`` maps each indexed path to its manifest fingerprint. Records
        the alternative holds for removed or changed sources are deleted and
        every builtin record it lacks is copied over. Returns records copied.
        """
        if self.degraded:
            return 0
        copied = 0
        try:
            self.alternative.delete_stale(known)
            for path in sorted(known):
                present = {chunk.chunk_id for chunk in self.alternative.source_chunks(path)}
                missing = [
                    record
                    for record in self.builtin.source_records(path, provider_key)
                    if record.chunk_id not in present
                ]
                if missing:
                    self.alternative.upsert(missing, provider_key)
                    copied += len(missing)
        except Exception as e:
            self._degrade("reconcile", e)
            return 0
        self.reconciled = True
        logger.info(
            "%s store reconciled with builtin index (%d records copied)",
            self.alternative.name,
            copied,
        )
        return copied

    def _degrade(self, op: str, cause: BaseException | str) -> None:
        if self.degraded:
            return
        error = BackendDegraded(self.alternative.name, cause)
        self.degraded = error
        logger.warning("Falling back to %s store after %s failed: %s", self.builtin.name, op, cause)
        if self.on_degraded is not None:
            self.on_degraded(error)

    def _mirror(self, op: str, *args, **kwargs) -> None:
        if self.degraded:
            return
        try:
            getattr(self.alternative, op)(*args, **kwargs)
        except Exception as e:
            self._degrade(op, e)

    def _read(self, op: str, *args, **kwargs):
        if self.reconciled and not self.degraded:
            try:
                return getattr(self.alternative, op)(*args, **kwargs)
            except Exception as e:
                self._degrade(op, e)
        return getattr(self.builtin, op)(*args, **kwargs)

    # ── Writes ────────────────────────────────────────────────

    def upsert(self, records: Sequence[IndexRecord], provider_key: str = "") -> int:
        written = self.builtin.upsert(records, provider_key)
        self._mirror("upsert", records, provider_key)
        return written

    def delete_by_source(self, path: str) -> int:
        deleted = self.builtin.delete_by_source(path)
        self._mirror("delete_by_source", path)
        return deleted

    def delete_stale(self, known: Mapping[str, str], path: str | None = None) -> int:
        deleted = self.builtin.delete_stale(known, path)
        self._mirror("delete_stale", known, path)
        return deleted

    def touch_source(
        self, path: str, fingerprint: str, mtime: float, exclude: Iterable[str] = ()
    ) -> int:
        excluded = list(exclude)
        touched = self.builtin.touch_source(path, fingerprint, mtime, excluded)
        self._mirror("touch_source", path, fingerprint, mtime, excluded)
        return touched

    # ── Write-path reads stay on the builtin store ────────────

    def source_chunks(self, path: str) -> list[Chunk]:
        return self.builtin.source_chunks(path)

    def cached_vectors(
        self, hashes: Iterable[str], provider_key: str
    ) -> dict[str, tuple[float, ...]]:
        return self.builtin.cached_vectors(hashes, provider_key)

    # ── Search ────────────────────────────────────────────────

    def lexical_search(self, query: str, k: int) -> list[LexicalHit]:
        return self._read("lexical_search", query, k)

    def vector_search(
        self, query_vector: Sequence[float], k: int, provider_key: str
    ) -> list[VectorHit]:
        return self._read("vector_search", query_vector, k, provider_key)

    def stats(self) -> StoreStats:
        return self._read("stats")

    def health_check(self) -> bool:
        self.probe()
        return self.builtin.health_check()

    def close(self) -> None:
        try:
            self.alternative.close()
        except Exception as e:
            logger.debug("Error closing %s store: %s", self.alternative.name, e)
        self.builtin.close()
