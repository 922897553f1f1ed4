"""
McpBridge: the one place sync code meets the async MCP client.

A single background event loop is started lazily on first use, runs in a
daemon thread, and lives until the process exits; it is never torn down in
between.  Every bridge call schedules a coroutine on it with
``run_coroutine_threadsafe`` and blocks the calling thread on the result.  This
is a correctness boundary, not a throughput path.

Proxies registered in the ToolRegistry hold only the server name and look the
live handle up through the bridge at call time, so disconnecting a server never
leaves a proxy pointing at a dead object.
"""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Optional, TypeVar

import httpx
import structlog

from voxagent.errors import DuplicateTool, ExecutionFailed, McpError
from voxagent.tools.mcp import McpServerConfig, McpServerHandle, proxy_tool_name
from voxagent.tools.registry import ToolDefinition, ToolRegistry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_LOOP: Optional[asyncio.AbstractEventLoop] = None
_LOOP_LOCK = threading.Lock()


def get_background_loop() -> asyncio.AbstractEventLoop:
    """The process-wide MCP event loop, created on first call."""
    global _LOOP
    with _LOOP_LOCK:
        if _LOOP is None:
            loop = asyncio.new_event_loop()
            thread = threading.Thread(target=loop.run_forever, name="voxagent-mcp-loop", daemon=True)
            thread.start()
            _LOOP = loop
            logger.debug("mcp_bridge.loop_started")
        return _LOOP


def owner_for(server_name: str) -> str:
    return f"mcp:{server_name}"


class McpBridge:
    def __init__(self, registry: ToolRegistry, timeout_seconds: float = 20.0):
        self._registry = registry
        self._timeout = timeout_seconds
        self._handles: dict[str, McpServerHandle] = {}
        self._lock = threading.Lock()

    def _run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float]) -> T:
        future: Future = asyncio.run_coroutine_threadsafe(coro, get_background_loop())
        try:
            return future.result(timeout)
        except TimeoutError:
            future.cancel()
            raise

    # -- lifecycle --------------------------------------------------------

    def connect(
        self,
        name: str,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> list[str]:
        """Spawn a stdio server, handshake, and register its tools.  Returns proxy names."""
        config = McpServerConfig(
            name=name,
            transport="stdio",
            command=command,
            args=list(args or []),
            env=dict(env or {}),
            timeout_seconds=self._timeout,
        )
        return self._connect(config)

    def connect_http(self, name: str, url: str, api_key: Optional[str] = None) -> list[str]:
        config = McpServerConfig(
            name=name,
            transport="streamable_http",
            url=url,
            api_key=api_key,
            timeout_seconds=self._timeout,
        )
        return self._connect(config)

    def _connect(self, config: McpServerConfig) -> list[str]:
        if self.is_connected(config.name):
            logger.info("mcp_bridge.replacing_server", name=config.name)
            self.disconnect(config.name)

        try:
            # Handshake covers initialize and tools/list: give it room for both.
            handle = self._run(McpServerHandle.open(config), timeout=self._timeout * 2 + 1)
        except TimeoutError as exc:
            raise McpError(f"MCP server '{config.name}' did not complete the handshake in time.") from exc

        with self._lock:
            self._handles[config.name] = handle

        proxies = self._proxies(handle)
        try:
            self._registry.replace_owner(owner_for(config.name), proxies)
        except DuplicateTool:
            self.disconnect(config.name)
            raise
        names = [proxy.name for proxy in proxies]
        logger.info("mcp_bridge.connected", name=config.name, tools=names)
        return names

    def _proxies(self, handle: McpServerHandle) -> list[ToolDefinition]:
        proxies: list[ToolDefinition] = []
        seen: set[str] = set()
        for tool in handle.tools:
            proxy_name = proxy_tool_name(handle.name, tool.name)
            if proxy_name in seen:
                for suffix in range(2, 100):
                    candidate = f"{proxy_name[:60]}_{suffix}"
                    if candidate not in seen:
                        proxy_name = candidate
                        break
                logger.warning("mcp_bridge.name_collision", server=handle.name, tool=tool.name, name=proxy_name)
            seen.add(proxy_name)
            proxies.append(
                ToolDefinition(
                    name=proxy_name,
                    description=tool.description,
                    input_schema=tool.input_schema,
                    handler=self._make_handler(handle.name, tool.name, proxy_name),
                    category="mcp",
                    owner=owner_for(handle.name),
                )
            )
        return proxies

    def _make_handler(self, server_name: str, tool_name: str, proxy_name: str):
        def handler(**kwargs: Any) -> str:
            return self.call_tool(server_name, tool_name, kwargs, proxy_name=proxy_name)

        return handler

    def disconnect(self, name: str) -> bool:
        with self._lock:
            handle = self._handles.pop(name, None)
        removed = self._registry.unregister_owner(owner_for(name))
        if handle is None:
            return bool(removed)
        try:
            self._run(handle.close(), timeout=self._timeout)
        except (McpError, OSError, TimeoutError, httpx.HTTPError) as exc:
            logger.warning("mcp_bridge.close_failed", name=name, error=str(exc))
        logger.info("mcp_bridge.disconnected", name=name, tools_removed=len(removed))
        return True

    def close_all(self) -> None:
        for name in self.server_names():
            self.disconnect(name)

    # -- dispatch ---------------------------------------------------------

    def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any],
        proxy_name: Optional[str] = None,
    ) -> str:
        """
        Run ``tools/call`` on a connected server, blocking the caller.

        Any failure (server gone, crashed, timed out, returned an error) is
        raised as ``ExecutionFailed`` so the loop can observe it.
        """
        label = proxy_name or proxy_tool_name(server_name, tool_name)
        with self._lock:
            handle = self._handles.get(server_name)
        if handle is None:
            raise ExecutionFailed(label, f"MCP server '{server_name}' is not connected")
        if not handle.alive:
            raise ExecutionFailed(label, f"MCP server '{server_name}' is not running")

        try:
            return self._run(
                handle.call_tool(tool_name, arguments),
                timeout=handle.config.call_timeout_seconds + 1,
            )
        except McpError as exc:
            raise ExecutionFailed(label, str(exc)) from exc
        except TimeoutError as exc:
            raise ExecutionFailed(label, f"MCP tool '{tool_name}' timed out") from exc
        except (OSError, ValueError, httpx.HTTPError) as exc:
            logger.warning("mcp_bridge.call_failed", server=server_name, tool=tool_name, error=str(exc))
            raise ExecutionFailed(label, f"MCP server '{server_name}' failed: {exc}") from exc

    # -- introspection ----------------------------------------------------

    def is_connected(self, name: str) -> bool:
        with self._lock:
            return name in self._handles

    def server_names(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def get_handle(self, name: str) -> Optional[McpServerHandle]:
        with self._lock:
            return self._handles.get(name)
