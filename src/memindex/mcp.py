"""Stdio MCP server for memindex.

Acts as the plugin host for memindex.tools: register() hands it every
memory_v2_* tool, tools/list advertises them and tools/call awaits the
tool's execute(call_id, params).

Protocol: JSON-RPC 2.0 over stdin/stdout (Model Context Protocol). Logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING, Any

from memindex.config import find_config_file, load_config
from memindex.tools import ToolDef, register

if TYPE_CHECKING:
    from pathlib import Path

    from memindex.config import MemoryConfig

_VERSION = "0.1.0"
_PROTOCOL_VERSION = "2024-11-05"

logger = logging.getLogger("memindex.mcp")


class MemoryServer:
    """Plugin host: collects registered tools and dispatches calls to them."""

    def __init__(self, cfg: MemoryConfig | None = None, config_root: Path | None = None) -> None:
        self.plugin_config: dict[str, Any] = {}
        self.logger = logging.getLogger("memindex.plugin")
        self._tools: dict[str, ToolDef] = {}
        self._calls = 0
        if cfg is None:
            config_file = find_config_file(config_root)
            logger.info("config: %s", config_file or "(defaults)")
            cfg = load_config(config_root)
        self.cfg = cfg
        self.tools = register(self, cfg)

    def register_tool(self, tool: ToolDef) -> None:
        if tool.name in self._tools:
            logger.warning("tool registered twice: %s", tool.name)
        self._tools[tool.name] = tool

    def tool_defs(self) -> list[dict[str, Any]]:
        return [t.schema() for t in self._tools.values()]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            msg = f"Unknown tool: {name}"
            raise ValueError(msg)
        self._calls += 1
        return await tool.execute(f"mcp-{self._calls}", arguments)

    async def handle(self, msg: dict[str, Any]) -> dict[str, Any] | None:
        """Handle one JSON-RPC message; returns the response or None for notifications."""
        method = msg.get("method", "")
        msg_id = msg.get("id")

        if method == "initialize":
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {
                    "protocolVersion": _PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "memindex", "version": _VERSION},
                },
            }

        if method == "notifications/initialized":
            return None  # no response for notifications

        if method == "tools/list":
            return {"jsonrpc": "2.0", "id": msg_id, "result": {"tools": self.tool_defs()}}

        if method == "tools/call":
            params = msg.get("params") or {}
            tool_name = params.get("name", "")
            arguments = params.get("arguments") or {}
            try:
                result = await self.call_tool(tool_name, arguments)
            except Exception as exc:
                logger.exception("tool call failed: %s", tool_name)
                return {
                    "jsonrpc": "2.0",
                    "id": msg_id,
                    "result": {
                        "content": [{"type": "text", "text": f"Error: {exc}"}],
                        "isError": True,
                    },
                }
            details = result.get("details") or {}
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {
                    "content": result.get("content", []),
                    "structuredContent": details,
                    "isError": details.get("error") is True,
                },
            }

        if msg_id is not None:
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        return None


async def _run_server(config_root: Path | None = None) -> None:
    server = MemoryServer(config_root=config_root)
    reader = asyncio.StreamReader()
    loop = asyncio.get_running_loop()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    writer_transport, _writer_protocol = await loop.connect_write_pipe(
        asyncio.BaseProtocol, sys.stdout.buffer
    )

    def write_json(obj: Any) -> None:
        line = json.dumps(obj) + "\n"
        writer_transport.write(line.encode())

    while True:
        try:
            line = await reader.readline()
        except (asyncio.IncompleteReadError, EOFError):
            break
        if not line:
            break
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("ignoring non-JSON input line")
            continue
        if not isinstance(msg, dict):
            continue
        response = await server.handle(msg)
        if response is not None:
            write_json(response)


def run_server(config_root: Path | None = None) -> None:
    """Entry point for `memindex serve`."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    asyncio.run(_run_server(config_root))
