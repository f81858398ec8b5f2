"""Shared fixtures: a throwaway workspace, config and a counting embedding provider."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest
import pytest_asyncio

from memdex.config import MemdexConfig
from memdex.embeddings.local import HashEmbeddingProvider
from memdex.index.manager import IndexManager
from memdex.store.sqlite import SQLiteIndexStore


class CountingProvider:
    """HashEmbeddingProvider wrapper that counts calls and can be told to fail."""

    def __init__(self, dimensions: int = 64) -> None:
        self.inner = HashEmbeddingProvider(dimensions=dimensions)
        self.calls = 0
        self.texts: list[str] = []
        self.fail: Exception | None = None
        self.on_embed: Callable[[Sequence[str]], None] | None = None

    @property
    def name(self) -> str:
        return self.inner.name

    @property
    def model(self) -> str:
        return self.inner.model

    @property
    def key(self) -> str:
        return self.inner.key

    def dimension(self) -> int:
        return self.inner.dimension()

    async def embed(self, texts: Sequence[str]) -> list[tuple[float, ...]]:
        self.calls += 1
        if self.on_embed is not None:
            self.on_embed(texts)
        if self.fail is not None:
            raise self.fail
        self.texts.extend(texts)
        return await self.inner.embed(texts)

    async def health_check(self) -> bool:
        return self.fail is None


def make_config(tmp_path: Path, **overrides) -> MemdexConfig:
    config = MemdexConfig(
        workspace_dir=tmp_path / "workspace",
        index_path=tmp_path / "state" / "index.sqlite",
        pid_file=tmp_path / "state" / "memdex.pid",
    )
    config.sync.mode = "manual"
    config.sync.on_search = False
    config.sync.debounce_seconds = 60.0
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    write(
        ws / "MEMORY.md",
        "# Preferences\n\n- The user prefers dark mode in every editor.\n",
    )
    write(
        ws / "memory" / "2024-05-01.md",
        "# 2024-05-01\n\n"
        "Meeting with Alice about the Q3 roadmap.\n"
        "Agreed to ship the beta in August.\n",
    )
    write(ws / "memory" / "projects" / "alpha.md", "# Alpha\n\nAlpha uses PostgreSQL 16.\n")
    return ws


@pytest.fixture
def config(tmp_path: Path, workspace: Path) -> MemdexConfig:
    return make_config(tmp_path)


@pytest.fixture
def provider() -> CountingProvider:
    return CountingProvider()


@pytest_asyncio.fixture
async def manager(config: MemdexConfig, provider: CountingProvider):
    builtin = SQLiteIndexStore(config.index_path)
    mgr = IndexManager(config, builtin, provider=provider)
    yield mgr
    await mgr.stop()
    mgr.close()
