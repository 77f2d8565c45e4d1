"""Model Context Protocol servers exposed as ordinary registry tools.

Every configured server becomes a set of ``Tool`` objects named
``mcp__<server>__<tool>`` that forward calls to the server's session.
The bridge lives on the agent's own event loop.
"""

import asyncio
import copy
import logging
import re
from contextlib import AsyncExitStack
from typing import Any

from . import fmt
from .errors import ConfigError
from .registry import Tool, ToolContext

logger = logging.getLogger(__name__)

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")

STARTUP_TIMEOUT = 30
CALL_TIMEOUT = 120


def validate_server_name(name: str) -> None:
    """Raises ConfigError if ``name`` cannot be used inside a tool name."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+")
    if "__" in name:
        raise ConfigError(f"MCP server name {name!r} must not contain double underscores")


def _sanitize_tool_name(name: str) -> str:
    name = _SANITIZE_RE.sub("_", name)
    name = _DOUBLE_UNDER_RE.sub("_", name)
    return name.strip("_-")


def _convert_schema(input_schema: dict) -> dict:
    schema = copy.deepcopy(input_schema or {})
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return schema


def _normalize_result(result) -> dict:
    """Flatten an MCP CallToolResult into a tool result dict."""
    parts = []
    for block in result.content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            parts.append(block.text)
        elif block_type in ("image", "audio"):
            mime = getattr(block, "mimeType", "unknown")
            parts.append(f"[{block_type}: {mime}, {len(getattr(block, 'data', ''))} bytes]")
        elif block_type == "resource":
            resource = getattr(block, "resource", None)
            text = getattr(resource, "text", None)
            parts.append(text or f"[resource: {getattr(resource, 'uri', 'unknown')}]")
        else:
            parts.append(f"[{block_type or 'unknown'}: unsupported content type]")
    text = "\n".join(parts)

    if getattr(result, "isError", False):
        return {"success": False, "error": text or "MCP tool returned an error"}
    return {"success": True, "content": text}


class McpTool(Tool):
    """One remote tool; calls are forwarded to the owning server's session."""

    def __init__(self, bridge: "McpBridge", server: str, remote_tool):
        self.bridge = bridge
        self.server = server
        self.remote_name = remote_tool.name
        self.name = f"mcp__{server}__{_sanitize_tool_name(remote_tool.name)}"
        self.description = remote_tool.description or f"MCP tool from {server}"
        self.parameters = _convert_schema(remote_tool.inputSchema)

    async def invoke(self, args: dict, context: ToolContext) -> Any:
        return await self.bridge.call_tool(self.server, self.remote_name, args)


class McpBridge:
    """Connects to MCP servers and hands out their tools.

    Each server is owned by a long-lived task that enters and exits its
    transport's context managers; anyio cancel scopes require both to
    happen in the same task.
    """

    def __init__(self, server_configs: dict[str, dict]):
        self._server_configs = server_configs
        self._sessions: dict[str, Any] = {}
        self._tools: dict[str, list[McpTool]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._shutdown: dict[str, asyncio.Event] = {}
        self._degraded: set[str] = set()

    async def start(self) -> None:
        """Connect to every server. A server that fails is reported and skipped."""
        for name, config in self._server_configs.items():
            try:
                await self._start_server(name, config)
            except Exception as e:
                logger.debug("MCP server %s failed to start", name, exc_info=True)
                fmt.mcp_server_error(name, f"{type(e).__name__}: {e}")

    def tools(self) -> list[McpTool]:
        seen: set[str] = set()
        result = []
        for server, tools in self._tools.items():
            names = [t.name for t in tools]
            clashes = [n for n in names if n in seen or names.count(n) > 1]
            if clashes:
                fmt.mcp_server_error(
                    server, f"tool name collision, skipping its tools: {', '.join(sorted(set(clashes)))}"
                )
                continue
            seen.update(names)
            result.extend(tools)
        return result

    async def call_tool(self, server: str, tool_name: str, arguments: dict) -> dict:
        if server in self._degraded:
            return {"success": False, "error": f"MCP server {server!r} is unavailable"}
        session = self._sessions.get(server)
        if session is None:
            return {"success": False, "error": f"MCP server {server!r} has no active session"}
        try:
            result = await asyncio.wait_for(
                session.call_tool(tool_name, arguments), CALL_TIMEOUT
            )
        except Exception as e:
            self._degraded.add(server)
            return {"success": False, "error": f"MCP server {server!r} failed: {e}"}
        return _normalize_result(result)

    async def close(self) -> None:
        for event in self._shutdown.values():
            event.set()
        tasks = list(self._tasks.values())
        if tasks:
            for r in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(r, Exception):
                    logger.warning("MCP server task error during shutdown: %s", r)
        self._tasks.clear()
        self._shutdown.clear()
        self._sessions.clear()

    async def __aenter__(self) -> "McpBridge":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _start_server(self, name: str, config: dict) -> None:
        ready = asyncio.Event()
        failure: list[BaseException] = []
        shutdown = asyncio.Event()
        task = asyncio.create_task(
            self._lifecycle(name, config, ready, failure, shutdown), name=f"mcp-{name}"
        )
        try:
            await asyncio.wait_for(ready.wait(), STARTUP_TIMEOUT)
        except asyncio.TimeoutError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise TimeoutError(f"startup timed out after {STARTUP_TIMEOUT}s") from None
        if failure:
            await asyncio.gather(task, return_exceptions=True)
            raise failure[0]
        self._tasks[name] = task
        self._shutdown[name] = shutdown

    async def _lifecycle(self, name, config, ready, failure, shutdown) -> None:
        import mcp

        async with AsyncExitStack() as stack:
            try:
                if "url" in config:
                    from mcp.client.sse import sse_client

                    read_stream, write_stream = await stack.enter_async_context(
                        sse_client(url=config["url"], headers=config.get("headers"))
                    )
                else:
                    params = mcp.StdioServerParameters(
                        command=config["command"],
                        args=config.get("args", []),
                        env=config.get("env"),
                    )
                    read_stream, write_stream = await stack.enter_async_context(
                        mcp.stdio_client(params)
                    )
                session = await stack.enter_async_context(
                    mcp.ClientSession(read_stream, write_stream)
                )
                await session.initialize()
                listed = await session.list_tools()
            except Exception as e:
                failure.append(e)
                ready.set()
                return

            self._sessions[name] = session
            self._tools[name] = [McpTool(self, name, t) for t in listed.tools]
            fmt.mcp_server_start(name, len(listed.tools))
            ready.set()
            await shutdown.wait()
        self._sessions.pop(name, None)
