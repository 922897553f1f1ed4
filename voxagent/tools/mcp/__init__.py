"""
MCP Client: connections to external tool servers.

Two transports speak JSON-RPC 2.0 to an MCP server:

- stdio: a child process speaking newline-delimited JSON, one message per line
- streamable HTTP: JSON-RPC POSTs whose replies are plain JSON or an SSE
  stream of ``data:`` lines; the ``Mcp-Session-Id`` header is echoed back

``McpServerHandle`` owns one transport plus the tool list the server reported
during the handshake.  Everything here is async; ``voxagent.tools.mcp.bridge``
is the only sync entry point.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from voxagent import __version__
from voxagent.errors import McpError

logger = structlog.get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SESSION_HEADER = "Mcp-Session-Id"
MAX_TOOL_NAME_LENGTH = 64
STDIO_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class McpServerConfig:
    name: str
    transport: str = "stdio"  # "stdio" or "streamable_http"
    command: Optional[str] = None
    args: list[str] = field(default_factory=list)
    url: Optional[str] = None
    api_key: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 20.0
    call_timeout_seconds: float = 120.0


@dataclass
class McpTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    server_name: str


def _sanitize_name_part(s: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", s)


def proxy_tool_name(server_name: str, tool_name: str) -> str:
    """Registry name of a proxied tool: ``mcp_<server>_<tool>``, at most 64 chars."""
    name = f"mcp_{_sanitize_name_part(server_name)}_{_sanitize_name_part(tool_name)}"
    return name[:MAX_TOOL_NAME_LENGTH]


def _extract_jsonrpc_result(response: Any) -> Any:
    if not isinstance(response, dict):
        raise McpError(f"Invalid JSON-RPC response type: {type(response).__name__}")

    if response.get("error") is not None:
        error_obj = response["error"]
        if isinstance(error_obj, dict):
            code = error_obj.get("code", "unknown")
            message = error_obj.get("message", "Unknown MCP error")
            raise McpError(f"MCP error {code}: {message}")
        raise McpError(f"MCP error: {error_obj}")

    return response.get("result")


def _content_block_to_text(block: Any) -> str:
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return json.dumps(block, ensure_ascii=False)
    if "text" in block:
        return str(block.get("text", ""))
    return json.dumps(block, ensure_ascii=False)


def render_call_result(result: Any) -> str:
    """Flatten a ``tools/call`` result to text; ``isError`` results raise."""
    if isinstance(result, dict):
        content = result.get("content")
        if result.get("isError") is True:
            if isinstance(content, list):
                text = "\n".join(_content_block_to_text(b) for b in content).strip()
                raise McpError(text or "MCP tool returned an error result.")
            raise McpError(str(content or "MCP tool returned an error result."))
        if isinstance(content, list):
            text = "\n".join(_content_block_to_text(b) for b in content).strip()
            return text or json.dumps(result, ensure_ascii=False)

    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


def parse_sse_messages(body: str) -> list[dict[str, Any]]:
    """JSON objects carried by the ``data:`` lines of an SSE body."""
    messages = []
    for line in body.splitlines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data:
            continue
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("mcp.sse.unparseable_event", data=data[:200])
            continue
        if isinstance(parsed, dict):
            messages.append(parsed)
    return messages


def parse_tools_list(server_name: str, result: Any) -> list[McpTool]:
    if isinstance(result, dict):
        raw_tools = result.get("tools", [])
        payload = raw_tools if isinstance(raw_tools, list) else []
    elif isinstance(result, list):
        payload = result
    else:
        payload = []

    tools: list[McpTool] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        description = item.get("description")
        if not isinstance(description, str) or not description.strip():
            description = f"MCP tool '{name}' from server '{server_name}'."
        schema = item.get("inputSchema") or item.get("input_schema") or {"type": "object", "properties": {}}
        if not isinstance(schema, dict):
            schema = {"type": "object", "properties": {}}
        tools.append(McpTool(name=name.strip(), description=description, input_schema=schema, server_name=server_name))
    return tools


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class _BaseTransport:
    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        raise NotImplementedError

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    @property
    def alive(self) -> bool:
        return True


class _HTTPTransport(_BaseTransport):
    def __init__(self, config: McpServerConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.url:
            raise McpError(f"MCP server '{config.name}' missing URL for streamable_http transport.")
        self._config = config
        self._request_id = 0
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"
        self.session_id: Optional[str] = None

    def _request_headers(self) -> dict[str, str]:
        headers = dict(self._headers)
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _post(self, payload: dict[str, Any], timeout: Optional[float]) -> httpx.Response:
        response = await self._client.post(
            self._config.url,
            json=payload,
            headers=self._request_headers(),
            timeout=timeout or self._config.timeout_seconds,
        )
        response.raise_for_status()
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self.session_id = session_id
        return response

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        self._request_id += 1
        request_id = self._request_id
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        response = await self._post(payload, timeout)
        if "text/event-stream" in response.headers.get("content-type", ""):
            for message in parse_sse_messages(response.text):
                if message.get("id") == request_id:
                    return _extract_jsonrpc_result(message)
            raise McpError(f"MCP server '{self._config.name}' sent no reply to '{method}' in its event stream.")
        return _extract_jsonrpc_result(response.json())

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        await self._post(payload, None)

    async def close(self) -> None:
        await self._client.aclose()


class _StdioTransport(_BaseTransport):
    def __init__(self, config: McpServerConfig, process: asyncio.subprocess.Process):
        self._config = config
        self._process = process
        self._request_id = 0
        self._io_lock = asyncio.Lock()
        self._broken = False
        self._stderr_task: Optional[asyncio.Task] = None
        if self._process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr())

    @classmethod
    async def start(cls, config: McpServerConfig) -> "_StdioTransport":
        if not config.command:
            raise McpError(f"MCP server '{config.name}' missing 'command' for stdio transport.")

        env = os.environ.copy()
        env.update({str(k): str(v) for k, v in (config.env or {}).items()})
        try:
            process = await asyncio.create_subprocess_exec(
                config.command,
                *config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDIO_LINE_LIMIT,
            )
        except OSError as exc:
            raise McpError(f"Failed to start MCP server '{config.name}': {exc}") from exc
        return cls(config=config, process=process)

    @property
    def alive(self) -> bool:
        return not self._broken and self._process.returncode is None

    async def _drain_stderr(self) -> None:
        assert self._process.stderr is not None
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug("mcp_client.server_stderr", server=self._config.name, message=text[:500])

    async def _send_message(self, payload: dict[str, Any]) -> None:
        assert self._process.stdin is not None
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        data = raw + b"\n"
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._broken = True
            raise McpError(f"MCP stdio server '{self._config.name}' is not accepting input: {exc}") from exc

    async def _read_line(self) -> bytes:
        assert self._process.stdout is not None
        line = await self._process.stdout.readline()
        if not line:
            self._broken = True
            raise McpError(f"MCP stdio server '{self._config.name}' closed unexpectedly.")
        return line

    async def _read_message(self) -> dict[str, Any]:
        while True:
            decoded = (await self._read_line()).decode("utf-8", errors="replace").strip()
            if not decoded:
                continue
            try:
                parsed = json.loads(decoded)
            except json.JSONDecodeError:
                logger.debug("mcp.stdio.non_json_line", server=self._config.name, line=decoded[:200])
                continue
            if isinstance(parsed, dict):
                return parsed

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        if self._broken:
            raise McpError(
                f"MCP stdio transport for '{self._config.name}' is broken. Reconnect the server."
            )
        limit = max(0.1, float(timeout or self._config.timeout_seconds))
        async with self._io_lock:
            self._request_id += 1
            request_id = self._request_id
            payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                payload["params"] = params

            await self._send_message(payload)

            while True:
                try:
                    message = await asyncio.wait_for(self._read_message(), timeout=limit)
                except asyncio.TimeoutError as exc:
                    # A late reply would desynchronize the stream.
                    self._broken = True
                    raise McpError(
                        f"MCP stdio request '{method}' timed out after {limit}s "
                        f"on server '{self._config.name}'."
                    ) from exc
                if message.get("id") != request_id:
                    logger.debug(
                        "mcp.stdio.unexpected_message",
                        expected_id=request_id,
                        received_id=message.get("id"),
                        method=message.get("method"),
                        server=self._config.name,
                    )
                    continue
                return _extract_jsonrpc_result(message)

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        async with self._io_lock:
            payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
            if params is not None:
                payload["params"] = params
            await self._send_message(payload)

    async def close(self) -> None:
        process = self._process
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._stderr_task:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass


# ---------------------------------------------------------------------------
# Server handle
# ---------------------------------------------------------------------------


class McpServerHandle:
    """
    One connected server: its transport and the tools it reported.

    ``open`` runs the full handshake (``initialize``, the ``initialized``
    notification, ``tools/list``); any failure there closes the transport and
    raises ``McpError``.
    """

    def __init__(self, config: McpServerConfig, transport: _BaseTransport):
        self.config = config
        self._transport = transport
        self.tools: list[McpTool] = []
        self.server_info: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def alive(self) -> bool:
        return self._transport.alive

    @classmethod
    async def open(
        cls,
        config: McpServerConfig,
        transport: Optional[_BaseTransport] = None,
    ) -> "McpServerHandle":
        if transport is None:
            kind = config.transport.strip().lower()
            if kind == "stdio":
                transport = await _StdioTransport.start(config)
            elif kind == "streamable_http":
                transport = _HTTPTransport(config)
            else:
                raise McpError(f"Unsupported MCP transport '{config.transport}' for server '{config.name}'.")

        handle = cls(config, transport)
        try:
            await handle._handshake()
        except McpError:
            await transport.close()
            raise
        except (OSError, ValueError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            await transport.close()
            raise McpError(f"MCP handshake with '{config.name}' failed: {exc}") from exc
        return handle

    async def _handshake(self) -> None:
        params = {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "clientInfo": {"name": "voxagent", "version": __version__},
        }
        result = await self._transport.request("initialize", params)
        if isinstance(result, dict):
            self.server_info = result.get("serverInfo") or {}
        await self._transport.notify("notifications/initialized", {})
        listing = await self._transport.request("tools/list", {})
        self.tools = parse_tools_list(self.name, listing)
        logger.info(
            "mcp_client.server_connected",
            name=self.name,
            transport=self.config.transport,
            tool_count=len(self.tools),
            server=self.server_info.get("name"),
        )

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        logger.info("mcp_client.executing_tool", server=self.name, tool=tool_name)
        result = await self._transport.request(
            "tools/call",
            {"name": tool_name, "arguments": arguments},
            timeout=self.config.call_timeout_seconds,
        )
        return render_call_result(result)

    async def close(self) -> None:
        await self._transport.close()
        logger.info("mcp_client.server_disconnected", name=self.name)
