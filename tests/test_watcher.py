"""Tests for the filesystem watcher glue."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from memdex.index.detector import SourceLayout
from memdex.index.watcher import SourceWatcher, _SourceEventHandler, watch_roots

from conftest import write


class TestWatchRoots:
    def test_workspace_is_recursive(self, workspace: Path):
        roots = watch_roots(SourceLayout(workspace_dir=workspace))
        assert roots == [(workspace, True)]

    def test_extra_paths_outside_workspace(self, workspace: Path, tmp_path: Path):
        notes = write(tmp_path / "notes" / "team.md", "# Team\n").parent
        single = write(tmp_path / "loose" / "one.md", "# One\n")
        layout = SourceLayout(
            workspace_dir=workspace,
            extra_paths=(notes, single, workspace / "memory"),
        )
        roots = dict(watch_roots(layout))
        assert roots[notes] is True
        assert roots[single.parent] is False
        assert workspace / "memory" not in roots

    def test_sessions_only(self, tmp_path: Path):
        sessions = tmp_path / "sessions"
        sessions.mkdir()
        layout = SourceLayout(
            workspace_dir=tmp_path / "missing",
            sessions_dir=sessions,
            include_memory=False,
            include_sessions=True,
        )
        assert watch_roots(layout) == [(sessions, False)]

    def test_nothing_to_watch(self, tmp_path: Path):
        assert watch_roots(SourceLayout(workspace_dir=tmp_path / "missing")) == []


class TestEventHandler:
    def test_forwards_source_files_only(self):
        seen: list[str] = []
        handler = _SourceEventHandler(seen.append)
        handler.on_any_event(FileModifiedEvent("/w/memory/a.md"))
        handler.on_any_event(FileModifiedEvent("/w/memory/notes.txt"))
        handler.on_any_event(DirModifiedEvent("/w/memory"))
        handler.on_any_event(FileModifiedEvent("/w/sessions/s1.jsonl"))
        assert seen == ["/w/memory/a.md", "/w/sessions/s1.jsonl"]

    def test_moves_report_both_ends(self):
        seen: list[str] = []
        handler = _SourceEventHandler(seen.append)
        handler.on_any_event(FileMovedEvent("/w/memory/draft.md", "/w/memory/final.md"))
        assert seen == ["/w/memory/draft.md", "/w/memory/final.md"]


class TestSourceWatcher:
    @pytest.mark.asyncio
    async def test_changes_arrive_on_the_loop(self, workspace: Path):
        seen: list[tuple[str, bool]] = []
        loop_thread = threading.get_ident()
        watcher = SourceWatcher(
            SourceLayout(workspace_dir=workspace),
            lambda path: seen.append((path, threading.get_ident() == loop_thread)),
        )
        watcher._loop = asyncio.get_running_loop()

        worker = threading.Thread(target=watcher._forward, args=("/w/memory/a.md",))
        worker.start()
        worker.join()
        for _ in range(50):
            if seen:
                break
            await asyncio.sleep(0.01)
        assert seen == [("/w/memory/a.md", True)]

    def test_start_without_roots_is_a_no_op(self, tmp_path: Path):
        watcher = SourceWatcher(SourceLayout(workspace_dir=tmp_path / "missing"), print)
        loop = asyncio.new_event_loop()
        try:
            watcher.start(loop)
            assert watcher._observer is None
            watcher.stop()
        finally:
            loop.close()
