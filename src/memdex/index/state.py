"""In-memory sync state of the index manager. Never persisted."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class SyncPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CLEAN = "clean"
    DIRTY = "dirty"
    SYNCING = "syncing"


@dataclass(frozen=True)
class SyncStatus:
    """Read-only snapshot handed to callers."""

    phase: SyncPhase
    dirty_paths: tuple[str, ...] = ()
    last_sync_at: float | None = None
    last_outcome: str | None = None
    last_error: str | None = None
    fatal_error: str | None = None
    active_backend: str = "builtin"
    fallback_reason: str | None = None
    source_errors: dict[str, str] = field(default_factory=dict)
    documents: int = 0
    chunks: int = 0
    retry_after: float | None = None

    @property
    def dirty(self) -> bool:
        return self.phase is SyncPhase.DIRTY or bool(self.dirty_paths)

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "dirty": self.dirty,
            "dirtyPaths": list(self.dirty_paths),
            "lastSyncAt": self.last_sync_at,
            "lastOutcome": self.last_outcome,
            "lastError": self.last_error,
            "fatalError": self.fatal_error,
            "activeBackend": self.active_backend,
            "fallbackReason": self.fallback_reason,
            "sourceErrors": dict(self.source_errors),
            "documents": self.documents,
            "chunks": self.chunks,
            "retryAfter": self.retry_after,
        }


@dataclass
class SyncState:
    """Mutable state owned by the index manager's event loop."""

    phase: SyncPhase = SyncPhase.IDLE
    dirty_paths: set[str] = field(default_factory=set)
    change_seq: dict[str, int] = field(default_factory=dict)
    last_sync_at: float | None = None
    last_outcome: str | None = None
    last_error: str | None = None
    fatal_error: str | None = None
    active_backend: str = "builtin"
    fallback_reason: str | None = None
    source_errors: dict[str, str] = field(default_factory=dict)
    documents: int = 0
    chunks: int = 0
    failures: int = 0
    backoff_until: float = 0.0

    def bump(self, path: str) -> int:
        """Record a change notification for ``path`` and return its new sequence."""
        seq = self.change_seq.get(path, 0) + 1
        self.change_seq[path] = seq
        self.dirty_paths.add(path)
        return seq

    def seq(self, path: str) -> int:
        return self.change_seq.get(path, 0)

    def retry_after(self, now: float | None = None) -> float | None:
        remaining = self.backoff_until - (time.monotonic() if now is None else now)
        return round(remaining, 3) if remaining > 0 else None

    def snapshot(self) -> SyncStatus:
        return SyncStatus(
            phase=self.phase,
            dirty_paths=tuple(sorted(self.dirty_paths)),
            last_sync_at=self.last_sync_at,
            last_outcome=self.last_outcome,
            last_error=self.last_error,
            fatal_error=self.fatal_error,
            active_backend=self.active_backend,
            fallback_reason=self.fallback_reason,
            source_errors=dict(self.source_errors),
            documents=self.documents,
            chunks=self.chunks,
            retry_after=self.retry_after(),
        )
