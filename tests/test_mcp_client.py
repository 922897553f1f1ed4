"""
Tests for voxagent.tools.mcp: JSON-RPC helpers, the HTTP transport and the
server handshake.
"""

from __future__ import annotations

import json

import httpx
import pytest

from voxagent.errors import McpError
from voxagent.tools.mcp import (
    PROTOCOL_VERSION,
    SESSION_HEADER,
    McpServerConfig,
    McpServerHandle,
    _extract_jsonrpc_result,
    _HTTPTransport,
    parse_sse_messages,
    parse_tools_list,
    proxy_tool_name,
    render_call_result,
)


class _FakeTransport:
    def __init__(self, fail_on: str | None = None):
        self.calls: list[tuple[str, dict | None]] = []
        self.notifications: list[tuple[str, dict | None]] = []
        self.closed = False
        self.fail_on = fail_on

    async def request(self, method: str, params: dict | None = None, timeout: float | None = None):
        self.calls.append((method, params))
        if method == self.fail_on:
            raise McpError(f"MCP error -32601: {method} not supported")
        if method == "initialize":
            return {"protocolVersion": PROTOCOL_VERSION, "serverInfo": {"name": "docs", "version": "1.0"}}
        if method == "tools/list":
            return {
                "tools": [
                    {
                        "name": "search",
                        "description": "Search docs",
                        "inputSchema": {
                            "type": "object",
                            "properties": {"q": {"type": "string"}},
                            "required": ["q"],
                        },
                    }
                ]
            }
        if method == "tools/call":
            return {"content": [{"type": "text", "text": f"results for {params['arguments']['q']}"}]}
        raise AssertionError(f"Unexpected method: {method}")

    async def notify(self, method: str, params: dict | None = None):
        self.notifications.append((method, params))

    async def close(self):
        self.closed = True

    @property
    def alive(self) -> bool:
        return not self.closed


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_runs_handshake_in_order():
    transport = _FakeTransport()

    handle = await McpServerHandle.open(McpServerConfig(name="docs"), transport=transport)

    assert [method for method, _ in transport.calls] == ["initialize", "tools/list"]
    init_params = transport.calls[0][1]
    assert init_params["protocolVersion"] == PROTOCOL_VERSION
    assert init_params["clientInfo"]["name"] == "voxagent"
    assert transport.notifications == [("notifications/initialized", {})]
    assert handle.server_info["name"] == "docs"
    assert [tool.name for tool in handle.tools] == ["search"]
    assert handle.tools[0].input_schema["required"] == ["q"]
    assert handle.alive


@pytest.mark.asyncio
async def test_call_tool_renders_text_content():
    transport = _FakeTransport()
    handle = await McpServerHandle.open(McpServerConfig(name="docs"), transport=transport)

    result = await handle.call_tool("search", {"q": "voice"})

    assert result == "results for voice"
    assert transport.calls[-1] == ("tools/call", {"name": "search", "arguments": {"q": "voice"}})


@pytest.mark.asyncio
async def test_failed_handshake_closes_transport():
    transport = _FakeTransport(fail_on="tools/list")

    with pytest.raises(McpError, match="not supported"):
        await McpServerHandle.open(McpServerConfig(name="docs"), transport=transport)
    assert transport.closed is True


@pytest.mark.asyncio
async def test_unknown_transport_kind_is_rejected():
    with pytest.raises(McpError, match="Unsupported MCP transport"):
        await McpServerHandle.open(McpServerConfig(name="x", transport="carrier-pigeon"))


@pytest.mark.asyncio
async def test_stdio_without_command_is_rejected():
    with pytest.raises(McpError, match="missing 'command'"):
        await McpServerHandle.open(McpServerConfig(name="x", transport="stdio"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_proxy_tool_name_is_sanitized_and_bounded():
    assert proxy_tool_name("my server", "read.file") == "mcp_my_server_read_file"
    assert len(proxy_tool_name("s" * 40, "t" * 40)) == 64


def test_extract_jsonrpc_result():
    assert _extract_jsonrpc_result({"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}) == {"ok": True}
    with pytest.raises(McpError, match="MCP error -32602: bad params"):
        _extract_jsonrpc_result({"error": {"code": -32602, "message": "bad params"}})
    with pytest.raises(McpError, match="Invalid JSON-RPC"):
        _extract_jsonrpc_result(["not", "an", "object"])


def test_render_call_result():
    assert render_call_result({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}) == "a\nb"
    assert render_call_result("plain") == "plain"
    image = {"type": "image", "data": "..."}
    assert json.loads(render_call_result({"content": [image]})) == image
    with pytest.raises(McpError, match="permission denied"):
        render_call_result({"isError": True, "content": [{"type": "text", "text": "permission denied"}]})


def test_parse_tools_list_skips_invalid_entries():
    tools = parse_tools_list("fs", {"tools": [
        {"name": "read"},
        {"name": ""},
        "junk",
        {"name": "write", "description": "Write a file", "inputSchema": "not a schema"},
    ]})

    assert [t.name for t in tools] == ["read", "write"]
    assert tools[0].description == "MCP tool 'read' from server 'fs'."
    assert tools[1].input_schema == {"type": "object", "properties": {}}
    assert parse_tools_list("fs", None) == []


def test_parse_sse_messages():
    body = (
        "event: message\n"
        'data: {"jsonrpc": "2.0", "method": "notifications/progress"}\n'
        "\n"
        "data: not json\n"
        'data: {"jsonrpc": "2.0", "id": 1, "result": {}}\n'
    )
    messages = parse_sse_messages(body)
    assert [m.get("id") for m in messages] == [None, 1]


# ---------------------------------------------------------------------------
# Streamable HTTP transport
# ---------------------------------------------------------------------------

def _http_server():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        payload = json.loads(request.content)
        if "id" not in payload:
            return httpx.Response(202)
        if payload["method"] == "initialize":
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": payload["id"], "result": {"serverInfo": {"name": "remote"}}},
                headers={SESSION_HEADER: "session-123"},
            )
        if payload["method"] == "tools/list":
            body = (
                'data: {"jsonrpc": "2.0", "method": "notifications/message"}\n\n'
                f'data: {{"jsonrpc": "2.0", "id": {payload["id"]}, "result": {{"tools": [{{"name": "lookup"}}]}}}}\n\n'
            )
            return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "no such method"}},
        )

    return handler, seen


@pytest.mark.asyncio
async def test_http_transport_handshake_echoes_session_and_reads_sse():
    handler, seen = _http_server()
    config = McpServerConfig(name="remote", transport="streamable_http", url="http://mcp.test/mcp", api_key="k")
    transport = _HTTPTransport(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    handle = await McpServerHandle.open(config, transport=transport)

    assert [t.name for t in handle.tools] == ["lookup"]
    assert SESSION_HEADER not in seen[0].headers
    assert seen[1].headers[SESSION_HEADER] == "session-123"
    assert seen[2].headers[SESSION_HEADER] == "session-123"
    assert seen[0].headers["Authorization"] == "Bearer k"
    assert "text/event-stream" in seen[0].headers["Accept"]

    with pytest.raises(McpError, match="no such method"):
        await transport.request("resources/list", {})
    await handle.close()


def test_http_transport_requires_url():
    with pytest.raises(McpError, match="missing URL"):
        _HTTPTransport(McpServerConfig(name="remote", transport="streamable_http"))
