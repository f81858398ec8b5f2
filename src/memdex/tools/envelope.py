"""Safety envelope for reads: only allow-listed memory documents ever leave the process."""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterable
from pathlib import Path

from memdex.errors import PathNotAllowed

logger = logging.getLogger(__name__)

SUBAGENT_MARKER = ":subagent:"
IDENTITY_FILES = ("MEMORY.md", "memory.md", "SOUL.md", "USER.md", "IDENTITY.md", "AGENTS.md")


def is_subagent(session_key: str | None) -> bool:
    return bool(session_key) and SUBAGENT_MARKER in session_key


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class SafetyEnvelope:
    """Resolve caller-supplied paths and refuse anything outside the allow-list.

    Allowed roots are the curated memory file, the ``memory/`` directory and
    the configured extra paths. Sub-agent sessions only get the extra paths,
    minus anything that looks like an identity file.
    """

    def __init__(
        self,
        workspace_dir: Path,
        extra_paths: Iterable[Path] = (),
        extensions: Iterable[str] = (".md", ".markdown"),
    ) -> None:
        self.workspace = os.path.abspath(workspace_dir)
        self.extra_paths = [os.path.abspath(os.path.expanduser(str(p))) for p in extra_paths]
        self.extensions = tuple(e.lower() for e in extensions)

    def allowed_roots(self, session_key: str | None = None) -> list[tuple[str, bool]]:
        """(root, is_directory) pairs this session may read under."""
        memory_dir = os.path.join(self.workspace, "memory")
        if is_subagent(session_key):
            identity = {os.path.join(self.workspace, name) for name in IDENTITY_FILES}
            return [
                (extra, os.path.isdir(extra))
                for extra in self.extra_paths
                if extra not in identity
                and os.path.basename(extra) not in IDENTITY_FILES
                and not _within(extra, memory_dir)
            ]
        roots = [
            (os.path.join(self.workspace, "MEMORY.md"), False),
            (os.path.join(self.workspace, "memory.md"), False),
            (memory_dir, True),
        ]
        roots.extend((extra, os.path.isdir(extra)) for extra in self.extra_paths)
        return roots

    def resolve(self, path: str, session_key: str | None = None) -> Path:
        """Return the absolute file path, or raise PathNotAllowed."""
        if not path or not path.strip() or "\x00" in path:
            raise PathNotAllowed(path, "empty or invalid path")
        candidate = os.path.expanduser(path.strip())
        if not os.path.isabs(candidate):
            candidate = os.path.join(self.workspace, candidate)
        target = os.path.normpath(candidate)

        if os.path.splitext(target)[1].lower() not in self.extensions:
            raise PathNotAllowed(path, "not a markdown document")

        root = self._root_for(target, session_key)
        if root is None:
            raise PathNotAllowed(path, "outside the allowed memory paths")
        root_path, is_dir = root

        # Walk root → target refusing symlinked components, before touching the file.
        current = root_path
        if os.path.islink(current):
            raise PathNotAllowed(path, "symlinked component")
        if is_dir:
            for part in Path(os.path.relpath(target, root_path)).parts:
                current = os.path.join(current, part)
                if os.path.islink(current):
                    raise PathNotAllowed(path, "symlinked component")

        try:
            st = os.lstat(target)
        except OSError:
            raise PathNotAllowed(path, "no such document")
        if not stat.S_ISREG(st.st_mode):
            raise PathNotAllowed(path, "not a regular file")

        real_target = os.path.realpath(target)
        real_root = os.path.realpath(root_path)
        inside = _within(real_target, real_root) if is_dir else real_target == real_root
        if not inside:
            raise PathNotAllowed(path, "resolves outside the allowed root")
        return Path(target)

    def allows(self, path: str, session_key: str | None = None) -> bool:
        try:
            self.resolve(path, session_key)
        except PathNotAllowed:
            return False
        return True

    def _root_for(self, target: str, session_key: str | None) -> tuple[str, bool] | None:
        for root, is_dir in self.allowed_roots(session_key):
            if is_dir:
                if target != root and _within(target, root):
                    return root, is_dir
            elif target == root:
                return root, is_dir
        return None
