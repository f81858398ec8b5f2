"""Tests for the index manager's sync path."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import pytest_asyncio

from memdex.errors import ProviderRateLimited, ProviderUnavailable, StoreIOError
from memdex.index.manager import META_DIMENSION, IndexManager, attach_alternative
from memdex.index.state import SyncPhase
from memdex.store.fallback import FallbackIndexStore
from memdex.store.sqlite import SQLiteIndexStore
from memdex.tools.memory_tools import MemoryTools

from conftest import CountingProvider, make_config, write

PATHS = ["MEMORY.md", "memory/2024-05-01.md", "memory/projects/alpha.md"]


def _paths(manager: IndexManager, query: str) -> list[str]:
    return [hit.chunk.path for hit in manager.store.lexical_search(query, 10)]


class TestSync:
    @pytest.mark.asyncio
    async def test_initial_sync_indexes_everything(self, manager: IndexManager, provider):
        status = await manager.sync()
        assert status.last_outcome == "ok"
        assert status.phase is SyncPhase.IDLE
        assert status.documents == 3
        assert sorted(manager.builtin.load_manifest()) == PATHS
        assert manager.builtin.get_meta(META_DIMENSION) == "64"
        assert provider.calls == 3
        assert _paths(manager, "dark mode") == ["MEMORY.md"]

    @pytest.mark.asyncio
    async def test_resync_without_changes_does_nothing(self, manager: IndexManager, provider):
        await manager.sync()
        calls = provider.calls
        with patch.object(manager.builtin, "upsert", wraps=manager.builtin.upsert) as upsert:
            status = await manager.sync()
        assert upsert.call_count == 0
        assert provider.calls == calls
        assert status.phase is SyncPhase.CLEAN
        assert status.dirty is False

    @pytest.mark.asyncio
    async def test_modified_document_replaces_its_chunks(
        self, manager: IndexManager, workspace: Path, provider
    ):
        await manager.sync()
        write(workspace / "MEMORY.md", "# Preferences\n\n- The user now prefers light mode.\n")
        provider.texts.clear()
        await manager.sync()
        assert len(provider.texts) == 1
        assert _paths(manager, "dark") == []
        assert _paths(manager, "light") == ["MEMORY.md"]
        assert len(manager.builtin.source_chunks("MEMORY.md")) == 1

    @pytest.mark.asyncio
    async def test_identical_content_reuses_cached_vectors(
        self, manager: IndexManager, workspace: Path, provider
    ):
        await manager.sync()
        calls = provider.calls
        write(workspace / "memory" / "projects" / "beta.md", "# Alpha\n\nAlpha uses PostgreSQL 16.\n")
        await manager.sync()
        assert provider.calls == calls
        assert manager.builtin.source_chunks("memory/projects/beta.md")

    @pytest.mark.asyncio
    async def test_removed_document_is_purged(self, manager: IndexManager, workspace: Path):
        await manager.sync()
        (workspace / "memory" / "projects" / "alpha.md").unlink()
        await manager.sync()
        assert manager.builtin.source_chunks("memory/projects/alpha.md") == []
        assert "memory/projects/alpha.md" not in manager.builtin.load_manifest()
        assert _paths(manager, "postgresql") == []

    @pytest.mark.asyncio
    async def test_frontmatter_opt_out_removes_records(self, manager: IndexManager, workspace: Path):
        await manager.sync()
        write(
            workspace / "memory" / "projects" / "alpha.md",
            "---\nindex: false\n---\nAlpha uses PostgreSQL 16.\n",
        )
        await manager.sync()
        assert _paths(manager, "postgresql") == []

    @pytest.mark.asyncio
    async def test_unreadable_source_keeps_previous_records(
        self, manager: IndexManager, workspace: Path
    ):
        await manager.sync()
        (workspace / "MEMORY.md").write_bytes(b"\xff\xfe not utf-8 dark")
        status = await manager.sync()
        assert status.last_outcome == "ok"
        assert "MEMORY.md" in status.source_errors
        assert _paths(manager, "dark mode") == ["MEMORY.md"]

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, config, manager: IndexManager):
        await manager.sync()
        manager.close()
        provider = CountingProvider()
        restarted = IndexManager(config, SQLiteIndexStore(config.index_path), provider=provider)
        try:
            status = await restarted.sync()
        finally:
            restarted.close()
        assert provider.calls == 0
        assert status.phase is SyncPhase.CLEAN

    @pytest.mark.asyncio
    async def test_lexical_only_without_provider(self, config):
        manager = IndexManager(config, SQLiteIndexStore(config.index_path))
        try:
            status = await manager.sync()
            assert status.documents == 3
            assert manager.builtin.stats().vectors == 0
            assert _paths(manager, "roadmap") == ["memory/2024-05-01.md"]
        finally:
            manager.close()

    @pytest.mark.asyncio
    async def test_stale_chunks_are_purged_per_document(self, manager: IndexManager):
        with patch.object(
            manager.builtin, "delete_stale", wraps=manager.builtin.delete_stale
        ) as spy:
            await manager.sync()
        scoped = sorted(c.kwargs["path"] for c in spy.call_args_list if "path" in c.kwargs)
        full = [c for c in spy.call_args_list if "path" not in c.kwargs]
        assert scoped == PATHS
        assert len(full) == 1


class TestChangeTracking:
    @pytest.mark.asyncio
    async def test_notify_change_marks_dirty(self, manager: IndexManager, workspace: Path):
        await manager.sync()
        manager.notify_change(workspace / "MEMORY.md")
        status = manager.status()
        assert status.phase is SyncPhase.DIRTY
        assert status.dirty_paths == ("MEMORY.md",)
        assert manager.dirty is True

    @pytest.mark.asyncio
    async def test_sync_clears_settled_changes(self, manager: IndexManager, workspace: Path):
        manager.notify_change(workspace / "MEMORY.md")
        status = await manager.sync()
        assert status.dirty_paths == ()
        assert status.dirty is False

    @pytest.mark.asyncio
    async def test_change_during_indexing_supersedes(
        self, manager: IndexManager, workspace: Path, provider
    ):
        def bump_once(texts):
            provider.on_embed = None
            manager.notify_change(workspace / "MEMORY.md")

        provider.on_embed = bump_once
        status = await manager.sync()
        assert status.phase is SyncPhase.DIRTY
        assert status.dirty_paths == ("MEMORY.md",)
        assert "MEMORY.md" not in manager.builtin.load_manifest()
        assert "memory/2024-05-01.md" in manager.builtin.load_manifest()

        status = await manager.sync()
        assert status.dirty_paths == ()
        assert "MEMORY.md" in manager.builtin.load_manifest()


class TestFailures:
    @pytest.mark.asyncio
    async def test_provider_unavailable_backs_off(self, manager: IndexManager, provider):
        provider.fail = ProviderUnavailable("connection refused")
        status = await manager.sync()
        assert status.last_outcome == "error"
        assert "connection refused" in status.last_error
        assert status.phase is SyncPhase.DIRTY
        assert set(status.dirty_paths) == set(PATHS)
        assert status.retry_after is not None and 0 < status.retry_after <= 5.0

        calls = provider.calls
        await manager.sync()
        assert provider.calls == calls

        provider.fail = None
        status = await manager.sync(force=True)
        assert status.last_outcome == "ok"
        assert status.documents == 3
        assert status.retry_after is None
        assert manager.state.failures == 0

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, manager: IndexManager, provider):
        provider.fail = ProviderUnavailable("down")
        await manager.sync(force=True)
        status = await manager.sync(force=True)
        assert manager.state.failures == 2
        assert 5.0 < status.retry_after <= 10.0

    @pytest.mark.asyncio
    async def test_rate_limit_hint_wins(self, manager: IndexManager, provider):
        provider.fail = ProviderRateLimited("slow down", retry_after=120.0)
        status = await manager.sync()
        assert status.retry_after > 100.0

    @pytest.mark.asyncio
    async def test_request_sync_respects_backoff(self, manager: IndexManager, provider):
        provider.fail = ProviderUnavailable("down")
        await manager.sync()
        manager.request_sync()
        assert manager._worker is None

    @pytest.mark.asyncio
    async def test_dimension_change_halts_until_reindex(self, config, manager: IndexManager):
        await manager.sync()
        manager.provider = CountingProvider(dimensions=128)
        status = await manager.sync()
        assert status.fatal_error is not None
        assert "dimension" in status.fatal_error

        status = await manager.sync(force=True)
        assert manager.provider.calls == 0
        assert status.fatal_error is not None

        status = await manager.reindex()
        assert status.fatal_error is None
        assert status.last_outcome == "ok"
        assert manager.builtin.get_meta(META_DIMENSION) == "128"
        assert status.documents == 3

    @pytest.mark.asyncio
    async def test_searches_do_not_retrigger_halted_indexing(self, manager: IndexManager):
        await manager.sync()
        manager.provider = CountingProvider(dimensions=128)
        status = await manager.sync()
        assert status.fatal_error is not None
        manager.config.sync.on_search = True
        manager.on_search()
        assert manager._worker is None

    @pytest.mark.asyncio
    async def test_store_error_is_reported(self, manager: IndexManager):
        with patch.object(
            manager.builtin, "load_manifest", side_effect=StoreIOError("load_manifest failed")
        ):
            status = await manager.sync()
        assert status.last_outcome == "error"
        assert "load_manifest" in status.last_error
        assert status.fatal_error is None


def _line(role: str, text: str) -> str:
    return json.dumps({"role": role, "content": text}) + "\n"


class TestTranscripts:
    @pytest_asyncio.fixture
    async def transcript_manager(self, tmp_path: Path, workspace: Path):
        config = make_config(tmp_path, sources=["sessions"])
        config.chunking.max_chars = 200
        config.chunking.overlap_chars = 0
        provider = CountingProvider()
        mgr = IndexManager(config, SQLiteIndexStore(config.index_path), provider=provider)
        yield mgr
        await mgr.stop()
        mgr.close()

    @pytest.mark.asyncio
    async def test_append_keeps_earlier_chunks(self, transcript_manager, workspace: Path):
        path = write(
            workspace / "sessions" / "s1.jsonl",
            "".join(_line("user", f"message number {i} about the roadmap") for i in range(20)),
        )
        await transcript_manager.sync()
        before = transcript_manager.builtin.source_chunks("sessions/s1.jsonl")
        assert len(before) > 2
        assert before[-1].end_line == 20

        with path.open("a", encoding="utf-8") as f:
            f.write(_line("assistant", "noted, shipping the beta in August"))
            f.write(_line("user", "thanks"))
        texts_before = len(transcript_manager.provider.texts)
        await transcript_manager.sync()
        after = transcript_manager.builtin.source_chunks("sessions/s1.jsonl")
        after_ids = {c.chunk_id for c in after}
        assert {c.chunk_id for c in before[:-1]} <= after_ids
        assert after[-1].end_line == 22
        new_texts = transcript_manager.provider.texts[texts_before:]
        assert all("message number 0 " not in text for text in new_texts)
        entry = transcript_manager.builtin.load_manifest()["sessions/s1.jsonl"]
        assert entry.line_count == 22
        assert entry.offset == path.stat().st_size
        assert [h.chunk.path for h in transcript_manager.store.lexical_search("august", 5)] == [
            "sessions/s1.jsonl"
        ]

    @pytest.mark.asyncio
    async def test_rewrite_reindexes_fully(self, transcript_manager, workspace: Path):
        path = write(
            workspace / "sessions" / "s1.jsonl",
            "".join(_line("user", f"kiwi message {i}") for i in range(10)),
        )
        await transcript_manager.sync()
        path.write_text("".join(_line("user", f"mango message {i}") for i in range(12)))
        await transcript_manager.sync()
        store = transcript_manager.store
        assert store.lexical_search("kiwi", 5) == []
        assert store.lexical_search("mango", 5)
        entry = transcript_manager.builtin.load_manifest()["sessions/s1.jsonl"]
        assert entry.line_count == 12


class _BrokenStore:
    name = "broken"

    def __getattr__(self, op):
        def fail(*args, **kwargs):
            raise StoreIOError(f"{op} failed: connection refused")

        return fail


class _AlternativeStore(SQLiteIndexStore):
    @property
    def name(self) -> str:
        return "alternative"


def _open_manager(config, alternative=None) -> IndexManager:
    manager = IndexManager(config, SQLiteIndexStore(config.index_path), provider=CountingProvider())
    if alternative is not None:
        attach_alternative(manager, alternative)
    return manager


class TestBackendFallback:
    @pytest.mark.asyncio
    async def test_failing_alternative_falls_back_to_builtin(self, config):
        builtin = SQLiteIndexStore(config.index_path)
        store = FallbackIndexStore(_BrokenStore(), builtin)
        manager = IndexManager(config, builtin, store=store, provider=CountingProvider())
        store.on_degraded = manager.record_fallback
        assert manager.status().fallback_reason is None
        try:
            status = await manager.sync()
            assert status.last_outcome == "ok"
            assert status.active_backend == "builtin"
            assert "connection refused" in status.fallback_reason
            assert [h.chunk.path for h in store.lexical_search("dark mode", 5)] == ["MEMORY.md"]
        finally:
            await manager.stop()
            manager.close()

    @pytest.mark.asyncio
    async def test_unreachable_alternative_at_startup(self, config):
        manager = _open_manager(config, _BrokenStore())
        try:
            status = manager.status()
            assert status.active_backend == "builtin"
            assert "connection refused" in status.fallback_reason
            assert (await manager.sync()).documents == 3
        finally:
            manager.close()

    @pytest.mark.asyncio
    async def test_new_alternative_is_filled_from_existing_index(self, config, tmp_path: Path):
        first = _open_manager(config)
        await first.sync()
        first.close()

        alternative = _AlternativeStore(tmp_path / "alt.sqlite")
        manager = _open_manager(config, alternative)
        try:
            assert manager.status().active_backend == "alternative"
            assert alternative.stats().chunks == manager.builtin.stats().chunks == 3
            response = await MemoryTools(manager).search("dark mode")
            assert [r.path for r in response] == ["MEMORY.md"]
            assert response.degraded is False
            key = manager.provider.key
            assert alternative.source_records("MEMORY.md", key)[0].vector is not None
        finally:
            manager.close()

    @pytest.mark.asyncio
    async def test_deletions_made_while_degraded_reach_the_alternative(
        self, config, workspace: Path, tmp_path: Path
    ):
        alt_path = tmp_path / "alt.sqlite"
        first = _open_manager(config, _AlternativeStore(alt_path))
        await first.sync()
        assert [r.path for r in await MemoryTools(first).search("dark mode")] == ["MEMORY.md"]
        first.close()

        (workspace / "MEMORY.md").unlink()
        second = _open_manager(config, _BrokenStore())
        await second.sync()
        second.close()

        alternative = _AlternativeStore(alt_path)
        third = _open_manager(config, alternative)
        try:
            assert third.status().active_backend == "alternative"
            assert alternative.source_chunks("MEMORY.md") == []
            assert len(await MemoryTools(third).search("dark mode")) == 0
            assert alternative.stats().documents == 2
        finally:
            third.close()
