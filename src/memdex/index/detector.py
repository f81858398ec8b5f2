"""Change detection over the canonical sources.

A scan walks the configured sources, fingerprints every document and
compares the result against the committed manifest. Nothing here mutates the
manifest: the index manager commits an entry only after the document's
records have been written, so a crash mid-sync simply shows the same change
again on the next scan.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

import frontmatter

from memdex.errors import SourceReadError
from memdex.index.models import (
    Change,
    ChangeKind,
    DocumentKind,
    ManifestEntry,
    SourceDocument,
)

logger = logging.getLogger(__name__)

DAILY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}(?:-.+)?$")
CURATED_NAMES = ("MEMORY.md", "memory.md")
MARKDOWN_SUFFIXES = (".md", ".markdown")
TAIL_WINDOW = 256


@dataclass(frozen=True)
class SourceLayout:
    """Where the canonical sources live."""

    workspace_dir: Path
    sessions_dir: Path | None = None
    extra_paths: tuple[Path, ...] = ()
    include_memory: bool = True
    include_sessions: bool = False

    @property
    def memory_dir(self) -> Path:
        return self.workspace_dir / "memory"


@dataclass(frozen=True)
class TranscriptDelta:
    """Rendered transcript lines plus the byte offset and digest to resume from."""

    lines: list[str]
    offset: int
    tail_digest: str


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ChangeDetector:
    """Fingerprint canonical sources and classify changes against a manifest."""

    def __init__(self, layout: SourceLayout, transcript_delta: bool = True) -> None:
        self.layout = layout
        self.transcript_delta = transcript_delta
        self._workspace = Path(os.path.abspath(layout.workspace_dir))
        self._sessions = (
            Path(os.path.abspath(layout.sessions_dir)) if layout.sessions_dir else None
        )

    # ── Discovery ─────────────────────────────────────────────

    def discover(self) -> list[tuple[str, Path, DocumentKind]]:
        """List (record path, absolute path, kind) for every live source, sorted."""
        found: dict[str, tuple[Path, DocumentKind]] = {}
        if self.layout.include_memory:
            for name in CURATED_NAMES:
                candidate = self._workspace / name
                if _plain_file(candidate):
                    found.setdefault(self.record_path(candidate), (candidate, DocumentKind.CURATED))
                    break
            memory_dir = self._workspace / "memory"
            for md_file in _walk_markdown(memory_dir):
                daily = DAILY_PATTERN.match(md_file.stem)
                kind = DocumentKind.DAILY if daily else DocumentKind.CURATED
                found.setdefault(self.record_path(md_file), (md_file, kind))
            for extra in self.layout.extra_paths:
                extra = Path(os.path.abspath(extra))
                if extra.is_symlink():
                    logger.warning("Skipping symlinked extra path: %s", extra)
                    continue
                if extra.is_dir():
                    files = _walk_markdown(extra)
                elif _plain_file(extra) and extra.suffix.lower() in MARKDOWN_SUFFIXES:
                    files = [extra]
                else:
                    files = []
                for md_file in files:
                    found.setdefault(self.record_path(md_file), (md_file, DocumentKind.CURATED))
        if self.layout.include_sessions and self._sessions is not None:
            sessions_dir = self._sessions
            if sessions_dir.is_dir():
                for jsonl in sorted(sessions_dir.glob("*.jsonl")):
                    if _plain_file(jsonl):
                        found.setdefault(
                            f"sessions/{jsonl.name}", (jsonl, DocumentKind.TRANSCRIPT)
                        )
        return [(path, abs_path, kind) for path, (abs_path, kind) in sorted(found.items())]

    def record_path(self, abs_path: Path) -> str:
        """Workspace-relative POSIX path, or the absolute POSIX path outside it.

        Transcripts are always ``sessions/<name>.jsonl`` wherever the sessions
        directory lives.
        """
        abs_path = Path(os.path.abspath(abs_path))
        if (
            self._sessions is not None
            and abs_path.parent == self._sessions
            and abs_path.suffix == ".jsonl"
        ):
            return f"sessions/{abs_path.name}"
        try:
            return abs_path.relative_to(self._workspace).as_posix()
        except ValueError:
            return abs_path.as_posix()

    # ── Scan ──────────────────────────────────────────────────

    def scan(self, manifest: dict[str, ManifestEntry]) -> tuple[list[Change], dict[str, str]]:
        """Classify every source against the manifest.

        Returns the changes (unchanged ones included, sorted by path) and a
        mapping of unreadable paths to their error message.
        """
        changes: list[Change] = []
        errors: dict[str, str] = {}
        live: set[str] = set()
        for path, abs_path, kind in self.discover():
            live.add(path)
            previous = manifest.get(path)
            try:
                document = self.observe(path, abs_path, kind)
            except SourceReadError as e:
                logger.warning("Skipping unreadable source %s: %s", path, e.reason)
                errors[path] = e.reason
                if previous is not None:
                    changes.append(Change(path, ChangeKind.UNCHANGED, None, previous))
                continue
            if document is None:
                # Opted out via frontmatter; treat like a removal.
                if previous is not None:
                    changes.append(Change(path, ChangeKind.REMOVED, None, previous))
                continue
            if previous is None:
                changes.append(Change(path, ChangeKind.ADDED, document, None))
            elif previous.fingerprint != document.fingerprint:
                changes.append(Change(path, ChangeKind.MODIFIED, document, previous))
            else:
                changes.append(Change(path, ChangeKind.UNCHANGED, document, previous))
        for path in sorted(set(manifest) - live):
            changes.append(Change(path, ChangeKind.REMOVED, None, manifest[path]))
        changes.sort(key=lambda c: c.path)
        return changes, errors

    def observe(self, path: str, abs_path: Path, kind: DocumentKind) -> SourceDocument | None:
        """Fingerprint one document. Returns None if frontmatter opts it out."""
        try:
            stat = abs_path.stat()
            if kind is DocumentKind.TRANSCRIPT and self.transcript_delta:
                fingerprint = self._transcript_fingerprint(abs_path, stat.st_size)
            else:
                raw = abs_path.read_bytes()
                if _opted_out(raw):
                    return None
                fingerprint = fingerprint_bytes(raw)
        except OSError as e:
            raise SourceReadError(path, str(e)) from e
        return SourceDocument(
            path=path,
            abs_path=str(abs_path),
            kind=kind,
            fingerprint=fingerprint,
            mtime=stat.st_mtime,
            size=stat.st_size,
        )

    def _transcript_fingerprint(self, abs_path: Path, size: int) -> str:
        """``size:tail-digest`` without reading the whole file."""
        with abs_path.open("rb") as f:
            f.seek(max(0, size - TAIL_WINDOW))
            tail = f.read(TAIL_WINDOW)
        return f"{size}:{fingerprint_bytes(tail)[:16]}"

    # ── Reading ───────────────────────────────────────────────

    def read_text(self, document: SourceDocument) -> str:
        """Full text of a document (transcripts rendered to role-prefixed lines)."""
        try:
            raw = Path(document.abs_path).read_bytes()
        except OSError as e:
            raise SourceReadError(document.path, str(e)) from e
        if document.kind is DocumentKind.TRANSCRIPT:
            lines, _ = render_transcript(raw)
            return "\n".join(lines)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SourceReadError(document.path, f"not valid UTF-8: {e}") from e

    def read_transcript_delta(
        self, document: SourceDocument, previous: ManifestEntry | None
    ) -> TranscriptDelta | None:
        """Read only what was appended since ``previous.offset``.

        Returns None when a full re-read is required: no previous offset, the
        file shrank, or the bytes just before the offset are not the ones we
        indexed (the file was rewritten rather than appended to).
        """
        if previous is None or previous.offset <= 0 or document.size < previous.offset:
            return None
        try:
            with Path(document.abs_path).open("rb") as f:
                f.seek(max(0, previous.offset - TAIL_WINDOW))
                tail = f.read(previous.offset - max(0, previous.offset - TAIL_WINDOW))
                if fingerprint_bytes(tail) != previous.tail_digest:
                    return None
                appended = f.read()
        except OSError as e:
            raise SourceReadError(document.path, str(e)) from e
        lines, consumed = render_transcript(appended)
        offset = previous.offset + consumed
        return TranscriptDelta(
            lines=lines, offset=offset, tail_digest=self.tail_digest(document, offset)
        )

    def read_transcript(self, document: SourceDocument) -> TranscriptDelta:
        """Render a whole transcript, with the offset and digest a later delta resumes from."""
        try:
            raw = Path(document.abs_path).read_bytes()
        except OSError as e:
            raise SourceReadError(document.path, str(e)) from e
        lines, consumed = render_transcript(raw)
        return TranscriptDelta(
            lines=lines,
            offset=consumed,
            tail_digest=fingerprint_bytes(raw[max(0, consumed - TAIL_WINDOW) : consumed]),
        )

    def tail_digest(self, document: SourceDocument, offset: int) -> str:
        try:
            with Path(document.abs_path).open("rb") as f:
                f.seek(max(0, offset - TAIL_WINDOW))
                return fingerprint_bytes(f.read(offset - max(0, offset - TAIL_WINDOW)))
        except OSError as e:
            raise SourceReadError(document.path, str(e)) from e


def render_transcript(raw: bytes) -> tuple[list[str], int]:
    """Render complete JSONL lines to ``Role: text`` lines.

    Returns the rendered lines and the number of bytes consumed; a trailing
    line without a newline is left for the next read.
    """
    end = raw.rfind(b"\n") + 1
    lines: list[str] = []
    for raw_line in raw[:end].splitlines():
        if not raw_line.strip():
            continue
        try:
            entry = json.loads(raw_line)
        except (json.JSONDecodeError, UnicodeDecodeError):
            continue
        rendered = _render_entry(entry)
        if rendered:
            lines.append(rendered)
    return lines, end


def _render_entry(entry: object) -> str | None:
    if not isinstance(entry, dict):
        return None
    message = entry.get("message") if entry.get("type") == "message" else entry
    if not isinstance(message, dict):
        return None
    role = message.get("role")
    if role not in ("user", "assistant"):
        return None
    content = message.get("content")
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        text = " ".join(p for p in parts if p)
    elif isinstance(content, str):
        text = content
    else:
        return None
    text = " ".join(text.split())
    if not text:
        return None
    return f"{role.capitalize()}: {text}"


def _opted_out(raw: bytes) -> bool:
    """True when YAML frontmatter sets ``index: false``."""
    if not raw.startswith(b"---"):
        return False
    try:
        metadata, _ = frontmatter.parse(raw.decode("utf-8"))
    except Exception:
        return False
    return metadata.get("index") is False


def _plain_file(path: Path) -> bool:
    return path.is_file() and not path.is_symlink()


def _walk_markdown(root: Path) -> list[Path]:
    """Markdown files under root, sorted, never following symlinks."""
    if not root.is_dir() or root.is_symlink():
        return []
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            candidate = Path(dirpath) / name
            if candidate.suffix.lower() in MARKDOWN_SUFFIXES and _plain_file(candidate):
                found.append(candidate)
    return found
