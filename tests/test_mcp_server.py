"""
Tests for voxagent.tools.mcp.server: the JSON-RPC dispatcher, the stdio loop
and the aiohttp streamable-HTTP app.
"""

from __future__ import annotations

import io
import json
import sys
import textwrap

import pytest
from aiohttp.test_utils import TestClient, TestServer

from voxagent.tools.mcp import PROTOCOL_VERSION, SESSION_HEADER, McpServerConfig, McpServerHandle, parse_sse_messages
from voxagent.tools.mcp.bridge import McpBridge
from voxagent.tools.mcp.server import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    McpServer,
    create_http_app,
    format_sse_event,
)
from voxagent.tools.registry import ToolDefinition, ToolRegistry


def _registry() -> ToolRegistry:
    def shout(text):
        if not text:
            raise ValueError("nothing to shout")
        return text.upper()

    registry = ToolRegistry()
    registry.register(
        ToolDefinition(
            name="shout",
            description="Upper-case some text",
            input_schema={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
            handler=shout,
        )
    )
    registry.register(
        ToolDefinition(
            name="hidden",
            description="Not for clients",
            input_schema={"type": "object", "properties": {}},
            handler=lambda: "secret",
        )
    )
    return registry


def _request(method, request_id=1, params=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


@pytest.fixture()
def server():
    return McpServer(_registry(), name="test-server", version="9.9")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def test_initialize_reports_protocol_and_server_info(server):
    reply = server.process(_request("initialize", params={"protocolVersion": PROTOCOL_VERSION}))

    assert reply == {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": "test-server", "version": "9.9"},
        },
    }


def test_tools_list_uses_input_schema_key(server):
    tools = server.process(_request("tools/list"))["result"]["tools"]

    assert [t["name"] for t in tools] == ["shout", "hidden"]
    assert tools[0]["inputSchema"]["required"] == ["text"]
    assert tools[0]["description"] == "Upper-case some text"


def test_filtered_view_limits_what_clients_see():
    server = McpServer(_registry().filtered(["shout"]))

    tools = server.process(_request("tools/list"))["result"]["tools"]
    reply = server.process(_request("tools/call", params={"name": "hidden", "arguments": {}}))

    assert [t["name"] for t in tools] == ["shout"]
    assert reply["result"]["isError"] is True
    assert "Unknown tool: hidden" in reply["result"]["content"][0]["text"]


def test_tools_call_returns_text_content(server):
    reply = server.process(_request("tools/call", 7, {"name": "shout", "arguments": {"text": "hi"}}))

    assert reply == {"jsonrpc": "2.0", "id": 7, "result": {"content": [{"type": "text", "text": "HI"}]}}


def test_tool_failure_is_an_error_result_not_a_protocol_error(server):
    reply = server.process(_request("tools/call", params={"name": "shout", "arguments": {"text": ""}}))

    assert "error" not in reply
    assert reply["result"]["isError"] is True
    assert reply["result"]["content"] == [{"type": "text", "text": "nothing to shout"}]


def test_schema_violation_is_an_error_result(server):
    reply = server.process(_request("tools/call", params={"name": "shout", "arguments": {}}))

    assert reply["result"]["isError"] is True


@pytest.mark.parametrize("params", [None, {"arguments": {}}, {"name": "shout", "arguments": "text"}])
def test_tools_call_with_bad_params(server, params):
    reply = server.process(_request("tools/call", params=params))

    assert reply["error"]["code"] == INVALID_PARAMS


def test_unknown_method(server):
    reply = server.process(_request("resources/list", 3))

    assert reply["id"] == 3
    assert reply["error"]["code"] == METHOD_NOT_FOUND
    assert "resources/list" in reply["error"]["message"]


def test_ping(server):
    assert server.process(_request("ping"))["result"] == {}


def test_notifications_get_no_reply(server):
    assert server.process({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


@pytest.mark.parametrize("message", [[1, 2], {"jsonrpc": "2.0", "id": 4}, {"id": 4, "method": 12}])
def test_invalid_requests(server, message):
    reply = server.process(message)

    assert reply["error"]["code"] == INVALID_REQUEST


def test_handle_line_reports_parse_errors_with_null_id(server):
    reply = json.loads(server.handle_line("{not json"))

    assert reply["id"] is None
    assert reply["error"]["code"] == PARSE_ERROR


def test_handle_line_skips_blank_lines(server):
    assert server.handle_line("   \n") is None


# ---------------------------------------------------------------------------
# stdio
# ---------------------------------------------------------------------------

def test_serve_answers_each_request_on_its_own_line(server):
    reader = io.StringIO(
        json.dumps(_request("initialize", 1)) + "\n"
        + json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}) + "\n"
        + "\n"
        + json.dumps(_request("tools/call", 2, {"name": "shout", "arguments": {"text": "ok"}})) + "\n"
    )
    writer = io.StringIO()

    server.serve(reader, writer)

    replies = [json.loads(line) for line in writer.getvalue().splitlines()]
    assert [r["id"] for r in replies] == [1, 2]
    assert replies[1]["result"]["content"][0]["text"] == "OK"


SERVED_REGISTRY = textwrap.dedent(
    """
    from voxagent.tools.mcp.server import McpServer
    from voxagent.tools.registry import ToolDefinition, ToolRegistry

    registry = ToolRegistry()
    registry.register(ToolDefinition(
        name="echo",
        description="Echo text back",
        input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
        handler=lambda text="": "echo:" + text,
    ))
    McpServer(registry, name="child").serve()
    """
)


def test_bridge_talks_to_a_served_registry(tmp_path):
    script = tmp_path / "served.py"
    script.write_text(SERVED_REGISTRY, encoding="utf-8")
    registry = ToolRegistry()
    bridge = McpBridge(registry, timeout_seconds=20.0)
    try:
        names = bridge.connect("child", sys.executable, [str(script)])

        assert names == ["mcp_child_echo"]
        assert registry.call("mcp_child_echo", {"text": "hi"}) == "echo:hi"
    finally:
        bridge.close_all()


# ---------------------------------------------------------------------------
# Streamable HTTP
# ---------------------------------------------------------------------------

async def _client(server: McpServer, session_id: str = "mcp-test-session") -> TestClient:
    client = TestClient(TestServer(create_http_app(server, session_id=session_id)))
    await client.start_server()
    return client


def test_format_sse_event():
    assert format_sse_event({"id": 1}) == 'event: message\ndata: {"id": 1}\n\n'


@pytest.mark.asyncio
async def test_http_post_answers_with_one_sse_event(server):
    client = await _client(server)
    try:
        resp = await client.post("/mcp", json=_request("tools/call", 5, {"name": "shout", "arguments": {"text": "hey"}}))
        body = await resp.text()

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache"
        assert resp.headers[SESSION_HEADER] == "mcp-test-session"
        assert body.startswith("event: message\n")
        assert parse_sse_messages(body) == [
            {"jsonrpc": "2.0", "id": 5, "result": {"content": [{"type": "text", "text": "HEY"}]}}
        ]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_notification_is_accepted_without_body(server):
    client = await _client(server)
    try:
        resp = await client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})

        assert resp.status == 202
        assert resp.headers[SESSION_HEADER] == "mcp-test-session"
        assert await resp.text() == ""
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_parse_error(server):
    client = await _client(server)
    try:
        resp = await client.post("/mcp", data="{broken", headers={"Content-Type": "application/json"})
        messages = parse_sse_messages(await resp.text())

        assert resp.status == 200
        assert messages[0]["error"]["code"] == PARSE_ERROR
        assert messages[0]["id"] is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_only_accepts_post(server):
    client = await _client(server)
    try:
        resp = await client.get("/mcp")

        assert resp.status == 405
        assert "POST" in resp.headers["Allow"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_client_handshake_against_the_app(server):
    client = await _client(server)
    config = McpServerConfig(name="local", transport="streamable_http", url=str(client.make_url("/mcp")))
    try:
        handle = await McpServerHandle.open(config)
        try:
            assert handle.server_info == {"name": "test-server", "version": "9.9"}
            assert [t.name for t in handle.tools] == ["shout", "hidden"]
            assert await handle.call_tool("shout", {"text": "loud"}) == "LOUD"
        finally:
            await handle.close()
    finally:
        await client.close()
