"""Deterministic line-based chunking with stable chunk IDs."""

from __future__ import annotations

import hashlib
import re

from memdex.index.models import Chunk

DEFAULT_MAX_CHARS = 1600
DEFAULT_OVERLAP_CHARS = 320

HEADING_PATTERN = re.compile(r"^#{1,6}\s")


def chunk_text(
    path: str,
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    overlap_chars: int = DEFAULT_OVERLAP_CHARS,
    first_line: int = 1,
) -> list[Chunk]:
    """Split text into bounded chunks of whole lines.

    Lines are packed greedily up to ``max_chars``. Once a chunk is half full a
    markdown heading starts a new one, so an edit in one section does not
    shift the boundaries of the sections after it. ``first_line`` is the line
    number of the first line of ``text`` (used when re-chunking a tail).
    """
    if max_chars < 1:
        raise ValueError("max_chars must be >= 1")
    if not 0 <= overlap_chars < max_chars:
        raise ValueError("overlap_chars must be in [0, max_chars)")

    segments = _segments(text.splitlines(), max_chars, first_line)
    if not segments:
        return []

    chunks: list[Chunk] = []
    start = 0
    while start < len(segments):
        end = start
        used = 0
        while end < len(segments):
            size = len(segments[end][1]) + 1
            if end > start:
                if used + size > max_chars:
                    break
                if used >= max_chars // 2 and HEADING_PATTERN.match(segments[end][1]):
                    break
            used += size
            end += 1

        window = segments[start:end]
        body = "\n".join(seg_text for _, seg_text in window)
        if body.strip():
            chunks.append(_make_chunk(path, window[0][0], window[-1][0], body))
        if end >= len(segments):
            break

        # Carry trailing lines forward as overlap, never stalling the cursor.
        back = end
        carried = 0
        while back - 1 > start and carried + len(segments[back - 1][1]) + 1 <= overlap_chars:
            back -= 1
            carried += len(segments[back][1]) + 1
        if back < end and HEADING_PATTERN.match(segments[end][1]):
            back = end
        start = back
    return chunks


def _segments(lines: list[str], max_chars: int, first_line: int) -> list[tuple[int, str]]:
    """Pair each line with its number, splitting overlong lines into pieces."""
    out: list[tuple[int, str]] = []
    for offset, line in enumerate(lines):
        number = first_line + offset
        if len(line) <= max_chars:
            out.append((number, line))
            continue
        for i in range(0, len(line), max_chars):
            out.append((number, line[i : i + max_chars]))
    return out


def _make_chunk(path: str, start_line: int, end_line: int, body: str) -> Chunk:
    content_hash = hash_text(body)
    return Chunk(
        chunk_id=build_chunk_id(path, start_line, end_line, content_hash),
        path=path,
        start_line=start_line,
        end_line=end_line,
        text=body,
        content_hash=content_hash,
    )


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_chunk_id(path: str, start_line: int, end_line: int, content_hash: str) -> str:
    """Build a stable chunk identifier from deterministic inputs."""
    digest = hashlib.sha256()
    digest.update(path.encode("utf-8"))
    digest.update(b"|")
    digest.update(str(start_line).encode("ascii"))
    digest.update(b"|")
    digest.update(str(end_line).encode("ascii"))
    digest.update(b"|")
    digest.update(content_hash.encode("ascii"))
    return digest.hexdigest()
