"""Tests for line-based chunking."""

from __future__ import annotations

import pytest

from memdex.index.chunking import build_chunk_id, chunk_text, hash_text


def _section(title: str, words: str) -> str:
    return f"# {title}\n" + "".join(f"{words} line {i} of the section body\n" for i in range(3))


class TestChunkText:
    def test_empty_and_blank(self):
        assert chunk_text("a.md", "") == []
        assert chunk_text("a.md", "\n\n   \n") == []

    def test_small_document_is_one_chunk(self):
        chunks = chunk_text("MEMORY.md", "# Title\n\nline one\nline two\n")
        assert len(chunks) == 1
        chunk = chunks[0]
        assert (chunk.start_line, chunk.end_line) == (1, 4)
        assert chunk.text == "# Title\n\nline one\nline two"
        assert chunk.content_hash == hash_text(chunk.text)
        assert chunk.chunk_id == build_chunk_id("MEMORY.md", 1, 4, chunk.content_hash)

    def test_chunks_respect_bound(self):
        text = "\n".join(f"line number {i} with some padding text" for i in range(200))
        chunks = chunk_text("a.md", text, max_chars=300, overlap_chars=60)
        assert len(chunks) > 5
        assert all(len(c.text) <= 300 for c in chunks)
        assert chunks[0].start_line == 1
        assert chunks[-1].end_line == 200

    def test_overlap_carries_trailing_lines(self):
        text = "\n".join(f"line {i:03d} padding padding" for i in range(60))
        chunks = chunk_text("a.md", text, max_chars=200, overlap_chars=60)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_line <= prev.end_line
            assert nxt.start_line > prev.start_line

    def test_no_overlap(self):
        text = "\n".join(f"line {i:03d} padding padding" for i in range(60))
        chunks = chunk_text("a.md", text, max_chars=200, overlap_chars=0)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_line == prev.end_line + 1

    def test_headings_start_new_chunks(self):
        text = _section("A", "alpha") + _section("B", "beta") + _section("C", "gamma")
        chunks = chunk_text("a.md", text, max_chars=200, overlap_chars=60)
        assert [c.text.splitlines()[0] for c in chunks] == ["# A", "# B", "# C"]

    def test_in_place_edit_keeps_later_chunk_ids(self):
        before = _section("A", "alpha") + _section("B", "beta") + _section("C", "gamma")
        after = before.replace("alpha line 1", "ALPHA line 1")
        old = chunk_text("a.md", before, max_chars=200, overlap_chars=60)
        new = chunk_text("a.md", after, max_chars=200, overlap_chars=60)
        assert old[0].chunk_id != new[0].chunk_id
        assert [c.chunk_id for c in old[1:]] == [c.chunk_id for c in new[1:]]

    def test_long_line_is_split(self):
        line = "x" * 500
        chunks = chunk_text("a.md", line, max_chars=200, overlap_chars=50)
        assert all(len(c.text) <= 200 for c in chunks)
        assert all(c.start_line == c.end_line == 1 for c in chunks)
        assert "".join(c.text for c in chunks) == line

    def test_first_line_offset(self):
        chunks = chunk_text("s.jsonl", "User: hi\nAssistant: hello", first_line=41)
        assert (chunks[0].start_line, chunks[0].end_line) == (41, 42)

    def test_ids_are_deterministic_and_path_scoped(self):
        text = "same text\n"
        assert chunk_text("a.md", text)[0].chunk_id == chunk_text("a.md", text)[0].chunk_id
        assert chunk_text("a.md", text)[0].chunk_id != chunk_text("b.md", text)[0].chunk_id

    @pytest.mark.parametrize("max_chars,overlap", [(0, 0), (100, 100), (100, -5)])
    def test_invalid_sizes(self, max_chars: int, overlap: int):
        with pytest.raises(ValueError):
            chunk_text("a.md", "text", max_chars=max_chars, overlap_chars=overlap)
