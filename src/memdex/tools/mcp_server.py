"""MCP server exposing the memory tools.

Protocol: JSON-RPC 2.0 over stdio (NDJSON). Logs go to stderr; stdout
carries protocol messages only.

Usage:
  memdex mcp
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable
from typing import TextIO

from memdex import __version__

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────

SERVER_NAME = "memdex"
PROTOCOL_VERSION = "2024-11-05"
MAX_OUTPUT_CHARS = 80_000

# ── Tool definitions ─────────────────────────────────────────

_SESSION_KEY = {
    "type": "string",
    "description": "Calling session key; sub-agent sessions get a reduced allow-list",
}

TOOLS = [
    {
        "name": "memory_search",
        "description": (
            "Semantically search long-term memory (MEMORY.md, memory/*.md and, if enabled, "
            "session transcripts). Returns paths, line ranges and short snippets; use "
            "memory_get to read more."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for"},
                "maxResults": {"type": "integer", "minimum": 1},
                "minScore": {"type": "number", "minimum": 0, "maximum": 1},
                "sessionKey": _SESSION_KEY,
            },
            "required": ["query"],
        },
    },
    {
        "name": "memory_get",
        "description": (
            "Read a window of lines from a memory file returned by memory_search. "
            "Only memory markdown files are readable."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path from a search result"},
                "from": {"type": "integer", "minimum": 1, "default": 1},
                "lines": {"type": "integer", "minimum": 1},
                "sessionKey": _SESSION_KEY,
            },
            "required": ["path"],
        },
    },
    {
        "name": "memory_status",
        "description": "Index freshness, active backend and error state.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]

# ── JSON-RPC 2.0 helpers ─────────────────────────────────────


def jsonrpc_result(req_id, result):
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def jsonrpc_error(req_id, code, message):
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def _text_result(payload: dict) -> dict:
    text = json.dumps(payload, ensure_ascii=False, indent=2)
    if len(text) > MAX_OUTPUT_CHARS:
        text = text[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(text)} chars total]"
    result: dict = {"content": [{"type": "text", "text": text}]}
    if "error" in payload:
        result["isError"] = True
    return result


# ── Request handler ──────────────────────────────────────────


async def call_tool(tools: dict[str, Callable], name: str, args: dict) -> dict:
    func = tools.get(name)
    if func is None:
        return {
            "content": [{"type": "text", "text": f"Unknown tool: {name}"}],
            "isError": True,
        }
    try:
        payload = func(**args)
        if asyncio.iscoroutine(payload):
            payload = await payload
    except TypeError as e:
        payload = {"error": f"invalid arguments: {e}"}
    except Exception as e:
        logger.exception("Tool %s failed", name)
        payload = {"error": f"internal error: {e}"}
    return _text_result(payload)


async def handle_request(req: dict, tools: dict[str, Callable]) -> dict | None:
    req_id = req.get("id")
    method = req.get("method", "")

    # Notifications (no id): no response
    if req_id is None:
        if method == "notifications/initialized":
            logger.info("MCP client initialized")
        return None

    if method == "initialize":
        return jsonrpc_result(req_id, {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        })

    if method == "ping":
        return jsonrpc_result(req_id, {})

    if method == "tools/list":
        return jsonrpc_result(req_id, {"tools": TOOLS})

    if method == "tools/call":
        params = req.get("params") or {}
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            return jsonrpc_error(req_id, -32602, "arguments must be an object")
        return jsonrpc_result(req_id, await call_tool(tools, params.get("name", ""), args))

    return jsonrpc_error(req_id, -32601, f"Method not found: {method}")


# ── Stdio transport (NDJSON) ─────────────────────────────────


async def serve_stdio(
    tools: dict[str, Callable], stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout
) -> None:
    """Answer requests until stdin closes."""
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await asyncio.get_running_loop().connect_read_pipe(lambda: protocol, stdin)
    logger.info("MCP server ready (%d tools)", len(tools))

    while True:
        line = await reader.readline()
        if not line:
            break
        line = line.decode("utf-8").strip()
        if not line:
            continue

        try:
            req = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Parse error: %s", e)
            stdout.write(json.dumps(jsonrpc_error(None, -32700, "Parse error")) + "\n")
            stdout.flush()
            continue
        if not isinstance(req, dict):
            stdout.write(json.dumps(jsonrpc_error(None, -32600, "Invalid Request")) + "\n")
            stdout.flush()
            continue
        logger.debug("<- %s", req.get("method", "?"))
        try:
            response = await handle_request(req, tools)
        except Exception as e:
            logger.exception("Handler error")
            response = jsonrpc_error(req.get("id"), -32603, f"Internal error: {e}")
        if response:
            stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            stdout.flush()
    logger.info("MCP client disconnected")
