"""Retrieval tools for agent memory.

These functions are designed to be exposed as tools to the AI agent: a
semantic ``search`` returning bounded snippets and a line-windowed ``get``
that only reads allow-listed documents.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
from collections.abc import Callable
from itertools import islice
from pathlib import Path
from typing import TYPE_CHECKING

from memdex.errors import PathNotAllowed, SourceReadError
from memdex.index.models import Query, SearchResponse
from memdex.search.ranker import HybridRanker
from memdex.tools.envelope import SafetyEnvelope, is_subagent

if TYPE_CHECKING:
    from memdex.index.manager import IndexManager

logger = logging.getLogger(__name__)


def _read_window(path: Path, from_line: int, lines: int) -> str:
    # O_NOFOLLOW: a symlink swapped in after the envelope check fails with ELOOP.
    fd = os.open(path, os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0))
    with os.fdopen(fd, "r", encoding="utf-8", errors="replace") as f:
        window = islice(f, from_line - 1, from_line - 1 + lines)
        return "\n".join(line.rstrip("\r\n") for line in window)


class MemoryTools:
    """Search and bounded reads over the memory index."""

    def __init__(self, manager: IndexManager) -> None:
        self.manager = manager
        self.config = manager.config
        self.envelope = SafetyEnvelope(
            self.config.workspace_dir, self.config.extra_paths, self.config.read.extensions
        )
        self.ranker = HybridRanker(manager.store, manager.provider, self.config.query)
        self.denied_reads = 0

    async def search(
        self,
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
        session_key: str | None = None,
    ) -> SearchResponse:
        """Ranked snippets for ``query``. Never raises for an unavailable index."""
        self.manager.on_search()
        response = await self.ranker.search(
            Query(text=query or "", max_results=max_results, min_score=min_score)
        )
        if is_subagent(session_key):
            response.results = [
                item for item in response.results if self.envelope.allows(item.path, session_key)
            ]
        response.dirty = self.manager.dirty
        return response

    async def get(
        self,
        path: str,
        from_line: int = 1,
        lines: int | None = None,
        session_key: str | None = None,
    ) -> str:
        """Exact lines ``from_line .. from_line + lines - 1`` of an allowed document."""
        read = self.config.read
        if lines is None:
            lines = read.default_lines
        if from_line < 1:
            raise ValueError("from_line must be >= 1")
        if lines < 1:
            raise ValueError("lines must be >= 1")
        lines = min(lines, read.max_lines)
        try:
            target = self.envelope.resolve(path, session_key)
            return await asyncio.to_thread(_read_window, target, from_line, lines)
        except FileNotFoundError:
            self.denied_reads += 1
            raise PathNotAllowed(path, "no such document")
        except PathNotAllowed as e:
            self.denied_reads += 1
            logger.warning("Denied read of %s: %s", path, e.reason)
            raise
        except OSError as e:
            if e.errno == errno.ELOOP:
                self.denied_reads += 1
                logger.warning("Denied read of %s: symlinked path", path)
                raise PathNotAllowed(path, "symlinked path") from e
            raise SourceReadError(path, str(e)) from e

    def status(self) -> dict:
        return {"sync": self.manager.status().to_dict(), "deniedReads": self.denied_reads}


# Tool argument names as agents send them, mapped to the Python parameters.
ARGUMENT_ALIASES = {
    "maxResults": "max_results",
    "minScore": "min_score",
    "from": "from_line",
    "fromLine": "from_line",
    "sessionKey": "session_key",
}


def _fold_aliases(aliases: dict, **params):
    """Apply camelCase tool arguments onto their snake_case parameters."""
    for name, value in aliases.items():
        target = ARGUMENT_ALIASES.get(name)
        if target not in params:
            raise TypeError(f"unexpected argument {name!r}")
        params[target] = value
    return params


def get_memory_tools(tools: MemoryTools) -> dict[str, Callable]:
    """Return a dict of tool_name -> callable for memory retrieval.

    These can be registered as MCP tools or called directly. Results are
    JSON-serialisable; failures come back as ``{"error": ...}`` payloads.
    Arguments are accepted under their tool names (``maxResults``,
    ``minScore``, ``from``, ``sessionKey``) as well as the Python ones.
    """

    async def memory_search(
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
        session_key: str | None = None,
        **aliases,
    ) -> dict:
        """Search long-term memory; returns paths, line ranges and short snippets."""
        params = _fold_aliases(
            aliases, max_results=max_results, min_score=min_score, session_key=session_key
        )
        response = await tools.search(query, **params)
        return response.to_dict()

    async def memory_get(
        path: str,
        from_line: int = 1,
        lines: int | None = None,
        session_key: str | None = None,
        **aliases,
    ) -> dict:
        """Read a line window of a memory file found via memory_search."""
        params = _fold_aliases(aliases, from_line=from_line, session_key=session_key)
        from_line = params["from_line"]
        try:
            text = await tools.get(path, from_line, lines, params["session_key"])
        except PathNotAllowed as e:
            return {"error": str(e), "denied": True, "path": path}
        except (ValueError, SourceReadError) as e:
            return {"error": str(e), "path": path}
        return {"path": path, "from": from_line, "text": text}

    def memory_status() -> dict:
        """Index freshness, backend and error state."""
        return tools.status()

    return {
        "memory_search": memory_search,
        "memory_get": memory_get,
        "memory_status": memory_status,
    }
