"""Entry point: memdex <command> (or python -m memdex <command>)

- sync:    bring the index up to date with the memory files
- search:  ranked snippets for a query
- get:     read a line window of a memory file
- status:  sync state and index counts
- reindex: drop the index and rebuild it
- serve:   daemon mode (watcher + interval syncs)
- mcp:     MCP tool server on stdio, indexing in the background
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from memdex.config import MemdexConfig, load_config
from memdex.errors import ConfigError, PathNotAllowed


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


async def _sync(config: MemdexConfig, force: bool) -> int:
    from memdex.index.manager import build_manager

    manager = build_manager(config)
    try:
        status = await manager.sync(force=force)
    finally:
        manager.close()
    _print_json(status.to_dict())
    return 0 if status.last_outcome != "error" and not status.fatal_error else 1


async def _reindex(config: MemdexConfig) -> int:
    from memdex.index.manager import build_manager

    manager = build_manager(config)
    try:
        status = await manager.reindex()
    finally:
        manager.close()
    _print_json(status.to_dict())
    return 0 if status.last_outcome == "ok" else 1


async def _status(config: MemdexConfig) -> int:
    from memdex.index.manager import build_manager

    manager = build_manager(config)
    try:
        stats = await asyncio.to_thread(manager.store.stats)
        manifest = await asyncio.to_thread(manager.builtin.load_manifest)
    finally:
        manager.close()
    payload = manager.status().to_dict()
    payload.update(
        {
            "documents": stats.documents,
            "chunks": stats.chunks,
            "vectors": stats.vectors,
            "manifestEntries": len(manifest),
            "provider": manager.provider.key if manager.provider else "none",
        }
    )
    _print_json(payload)
    return 0


async def _search(config: MemdexConfig, args: argparse.Namespace) -> int:
    from memdex.index.manager import build_manager
    from memdex.tools.memory_tools import MemoryTools

    # One-shot process: sync in the foreground instead of in the background.
    config.sync.on_search = False
    manager = build_manager(config)
    try:
        await manager.sync()
        response = await MemoryTools(manager).search(
            args.query, args.max_results, args.min_score, args.session_key
        )
    finally:
        manager.close()
    _print_json(response.to_dict())
    return 0


async def _get(config: MemdexConfig, args: argparse.Namespace) -> int:
    from memdex.index.manager import build_manager
    from memdex.tools.memory_tools import MemoryTools

    manager = build_manager(config)
    try:
        text = await MemoryTools(manager).get(
            args.path, args.from_line, args.lines, args.session_key
        )
    except PathNotAllowed as e:
        print(f"Denied: {e}", file=sys.stderr)
        return 3
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        manager.close()
    print(text)
    return 0


async def _mcp(config: MemdexConfig) -> int:
    from memdex.index.manager import build_manager
    from memdex.tools.mcp_server import serve_stdio
    from memdex.tools.memory_tools import MemoryTools, get_memory_tools

    manager = build_manager(config)
    tools = get_memory_tools(MemoryTools(manager))
    shutdown = asyncio.Event()
    indexer = asyncio.create_task(manager.run(shutdown))
    try:
        await serve_stdio(tools)
    finally:
        shutdown.set()
        await indexer
        manager.close()
    return 0


def _run_serve(config: MemdexConfig) -> int:
    from memdex.daemon import MemdexDaemon

    daemon = MemdexDaemon(config)
    asyncio.run(daemon.run())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memdex", description="Agent memory index and retrieval")
    parser.add_argument("--config", type=Path, default=None, help="path to memdex.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="bring the index up to date")
    sync.add_argument("--force", action="store_true", help="ignore the retry backoff")

    search = sub.add_parser("search", help="search memory")
    search.add_argument("query")
    search.add_argument("--max-results", type=int, default=None)
    search.add_argument("--min-score", type=float, default=None)
    search.add_argument("--session-key", default=None)

    get = sub.add_parser("get", help="read lines of a memory file")
    get.add_argument("path")
    get.add_argument("--from", dest="from_line", type=int, default=1)
    get.add_argument("--lines", type=int, default=None)
    get.add_argument("--session-key", default=None)

    sub.add_parser("status", help="show sync state")
    sub.add_parser("reindex", help="drop and rebuild the index")
    sub.add_parser("serve", help="run the indexing daemon")
    sub.add_parser("mcp", help="serve memory tools over MCP stdio")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    _setup_logging(config.log_level)

    cmd = args.command
    try:
        if cmd == "serve":
            code = _run_serve(config)
        elif cmd == "sync":
            code = asyncio.run(_sync(config, args.force))
        elif cmd == "search":
            code = asyncio.run(_search(config, args))
        elif cmd == "get":
            code = asyncio.run(_get(config, args))
        elif cmd == "status":
            code = asyncio.run(_status(config))
        elif cmd == "reindex":
            code = asyncio.run(_reindex(config))
        else:
            code = asyncio.run(_mcp(config))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
