"""Typed models for documents, chunks and search results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DocumentKind(str, Enum):
    CURATED = "curated-memory"
    DAILY = "daily-log"
    TRANSCRIPT = "transcript"


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


@dataclass(slots=True, frozen=True)
class SourceDocument:
    """A canonical file as last observed by the change detector.

    ``path`` is the record identity shown to callers (workspace-relative where
    possible); ``abs_path`` is where the bytes live.
    """

    path: str
    abs_path: str
    kind: DocumentKind
    fingerprint: str
    mtime: float
    size: int


@dataclass(slots=True, frozen=True)
class ManifestEntry:
    """Persisted fingerprint of an indexed document."""

    path: str
    kind: DocumentKind
    fingerprint: str
    mtime: float
    size: int
    offset: int = 0
    line_count: int = 0
    tail_digest: str = ""


@dataclass(slots=True, frozen=True)
class Change:
    """One scan result: what happened to a path since the last committed manifest."""

    path: str
    kind: ChangeKind
    document: SourceDocument | None = None
    previous: ManifestEntry | None = None


@dataclass(slots=True, frozen=True)
class Chunk:
    """A bounded, contiguous slice of a document."""

    chunk_id: str
    path: str
    start_line: int
    end_line: int
    text: str
    content_hash: str


@dataclass(slots=True, frozen=True)
class IndexRecord:
    """A chunk plus everything the store needs to persist it."""

    chunk: Chunk
    kind: DocumentKind
    source_fingerprint: str
    mtime: float
    vector: tuple[float, ...] | None = None

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def path(self) -> str:
        return self.chunk.path


@dataclass(slots=True, frozen=True)
class Query:
    text: str
    max_results: int | None = None
    min_score: float | None = None


@dataclass(slots=True, frozen=True)
class ResultItem:
    """One search hit. Never carries more than a bounded snippet."""

    path: str
    start_line: int
    end_line: int
    snippet: str
    score: float
    kind: str = ""

    @property
    def line_range(self) -> tuple[int, int]:
        return (self.start_line, self.end_line)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "lineRange": [self.start_line, self.end_line],
            "snippet": self.snippet,
            "score": round(self.score, 6),
            "kind": self.kind,
        }


@dataclass
class SearchResponse:
    """Search results plus status flags; iterating yields the results."""

    results: list[ResultItem] = field(default_factory=list)
    degraded: bool = False
    dirty: bool = False
    error: str | None = None

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index: int) -> ResultItem:
        return self.results[index]

    def to_dict(self) -> dict:
        return {
            "results": [item.to_dict() for item in self.results],
            "status": {"degraded": self.degraded, "dirty": self.dirty, "error": self.error},
        }
