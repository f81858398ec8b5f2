"""Filesystem watcher bridging watchdog's observer thread into the manager's loop."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from memdex.index.detector import MARKDOWN_SUFFIXES, SourceLayout

logger = logging.getLogger(__name__)

WATCHED_SUFFIXES = (*MARKDOWN_SUFFIXES, ".jsonl")


class _SourceEventHandler(FileSystemEventHandler):
    """Forward events for source-like files; everything else is noise."""

    def __init__(self, forward: Callable[[str], None]) -> None:
        super().__init__()
        self._forward = forward

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if not raw:
                continue
            path = os.fsdecode(raw)
            if Path(path).suffix.lower() in WATCHED_SUFFIXES:
                self._forward(path)


def watch_roots(layout: SourceLayout) -> list[tuple[Path, bool]]:
    """Directories to observe, each with its ``recursive`` flag."""
    roots: dict[Path, bool] = {}
    workspace = Path(os.path.abspath(layout.workspace_dir))
    if layout.include_memory and workspace.is_dir():
        roots[workspace] = True
        for extra in layout.extra_paths:
            extra = Path(os.path.abspath(extra))
            if extra.is_relative_to(workspace) or extra.is_symlink():
                continue
            if extra.is_dir():
                roots[extra] = True
            elif extra.parent.is_dir():
                roots.setdefault(extra.parent, False)
    if layout.include_sessions and layout.sessions_dir:
        sessions = Path(os.path.abspath(layout.sessions_dir))
        if sessions.is_dir() and not (workspace in roots and sessions.is_relative_to(workspace)):
            roots.setdefault(sessions, False)
    return sorted(roots.items())


class SourceWatcher:
    """Runs a watchdog Observer and hands each changed path to ``on_change``.

    ``on_change`` is always invoked on the event loop passed to ``start``,
    never on the observer thread.
    """

    def __init__(self, layout: SourceLayout, on_change: Callable[[str], None]) -> None:
        self.layout = layout
        self.on_change = on_change
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _forward(self, path: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.on_change, path)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        roots = watch_roots(self.layout)
        if not roots:
            logger.warning("Nothing to watch under %s", self.layout.workspace_dir)
            return
        observer = Observer()
        handler = _SourceEventHandler(self._forward)
        for root, recursive in roots:
            observer.schedule(handler, str(root), recursive=recursive)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching %d source roots", len(roots))

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Source watcher stopped")
