"""
MCP Server: exposes a tool surface to other MCP clients.

The same dispatcher backs two transports:

- stdio: newline-delimited JSON-RPC 2.0 read from a text stream (stdin by
  default), one response line per request
- streamable HTTP: an aiohttp application; each POST carries one JSON-RPC
  message and is answered with a single SSE ``message`` event, or ``202`` for
  notifications.  Every reply carries the server's ``Mcp-Session-Id``.

Tool failures are reported inside the result (``isError: true``), never as
JSON-RPC errors; only protocol problems use the error codes below.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from typing import TYPE_CHECKING, Any, Optional, TextIO

import structlog
from aiohttp import web

from voxagent import __version__
from voxagent.errors import ToolError
from voxagent.tools.mcp import PROTOCOL_VERSION, SESSION_HEADER

if TYPE_CHECKING:
    from voxagent.harness.loop import ToolAccess

logger = structlog.get_logger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602


def _success(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def format_sse_event(message: dict[str, Any]) -> str:
    return f"event: message\ndata: {json.dumps(message, ensure_ascii=False)}\n\n"


def new_session_id() -> str:
    return f"mcp-{os.getpid():x}-{time.time_ns():x}"


class McpServer:
    """Answers MCP requests from a ``ToolAccess`` (a registry or a filtered view)."""

    def __init__(self, tools: "ToolAccess", name: str = "voxagent", version: str = __version__):
        self._tools = tools
        self._name = name
        self._version = version

    def process(self, message: Any) -> Optional[dict[str, Any]]:
        """Handle one decoded JSON-RPC message.  Notifications return None."""
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            request_id = message.get("id") if isinstance(message, dict) else None
            return _error(request_id, INVALID_REQUEST, "Invalid request")

        method = message["method"]
        if "id" not in message:
            logger.debug("mcp_server.notification", method=method)
            return None

        request_id = message["id"]
        params = message.get("params")
        if method == "initialize":
            return _success(request_id, self._initialize_result())
        if method == "ping":
            return _success(request_id, {})
        if method == "tools/list":
            return _success(request_id, {"tools": self._list_tools()})
        if method == "tools/call":
            return self._call_tool(request_id, params)
        return _error(request_id, METHOD_NOT_FOUND, f"Unknown method: {method}")

    def handle_line(self, line: str) -> Optional[str]:
        """One stdio frame in, at most one frame out."""
        if not line.strip():
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            response: Optional[dict[str, Any]] = _error(None, PARSE_ERROR, f"Parse error: {exc}")
        else:
            response = self.process(message)
        if response is None:
            return None
        return json.dumps(response, ensure_ascii=False)

    def serve(self, reader: Optional[TextIO] = None, writer: Optional[TextIO] = None) -> None:
        """Serve newline-delimited JSON-RPC until ``reader`` reaches EOF."""
        reader = reader or sys.stdin
        writer = writer or sys.stdout
        logger.info("mcp_server.stdio_started", name=self._name)
        for line in reader:
            reply = self.handle_line(line)
            if reply is not None:
                writer.write(reply + "\n")
                writer.flush()
        logger.info("mcp_server.stdio_stopped", name=self._name)

    # -- methods ----------------------------------------------------------

    def _initialize_result(self) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": self._name, "version": self._version},
        }

    def _list_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": tool.name, "description": tool.description, "inputSchema": tool.input_schema}
            for tool in self._tools.get_definitions()
        ]

    def _call_tool(self, request_id: Any, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict):
            return _error(request_id, INVALID_PARAMS, "Missing params")
        name = params.get("name")
        arguments = params.get("arguments", {})
        if not isinstance(name, str) or not isinstance(arguments, dict):
            return _error(request_id, INVALID_PARAMS, "Invalid params: expected 'name' and object 'arguments'")

        try:
            text = self._tools.call(name, arguments)
        except ToolError as exc:
            logger.info("mcp_server.tool_failed", tool=name, error=str(exc))
            return _success(request_id, {"content": [{"type": "text", "text": str(exc)}], "isError": True})
        return _success(request_id, {"content": [{"type": "text", "text": text}]})


# ---------------------------------------------------------------------------
# Streamable HTTP
# ---------------------------------------------------------------------------


def create_http_app(server: McpServer, path: str = "/mcp", session_id: Optional[str] = None) -> web.Application:
    """aiohttp application serving ``server`` at ``path`` (POST only)."""
    session = session_id or new_session_id()

    async def handle_post(request: web.Request) -> web.Response:
        body = await request.text()
        try:
            message = json.loads(body)
        except json.JSONDecodeError as exc:
            response: Optional[dict[str, Any]] = _error(None, PARSE_ERROR, f"Parse error: {exc}")
        else:
            # Tool handlers are synchronous and may block.
            response = await asyncio.to_thread(server.process, message)

        if response is None:
            return web.Response(status=202, headers={SESSION_HEADER: session})
        return web.Response(
            text=format_sse_event(response),
            content_type="text/event-stream",
            headers={SESSION_HEADER: session, "Cache-Control": "no-cache"},
        )

    app = web.Application()
    app.router.add_post(path, handle_post)
    return app


def run_http(server: McpServer, host: str = "127.0.0.1", port: int = 8765, path: str = "/mcp") -> None:
    """Serve over HTTP until interrupted."""
    logger.info("mcp_server.http_started", host=host, port=port, path=path)
    web.run_app(create_http_app(server, path), host=host, port=port, print=None, access_log=None)
