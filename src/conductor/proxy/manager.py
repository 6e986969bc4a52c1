"""Tool-proxy manager: a live MCP session per configured tool server.

Each connection runs in its own task.  The MCP SDK's transport and
``ClientSession`` are anyio context managers and must be entered and exited
by the same task, so the task opens them, publishes the session, and then
parks until shutdown.

All calls go through ``_validate_entry`` first: unknown names raise
``ServerNotFoundError`` and failed connections raise
``ServerConnectFailedError`` before anything touches the network.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from pydantic import AnyUrl

from conductor import __version__
from conductor.errors import ServerConnectFailedError, ServerNotFoundError
from conductor.models import ServerInfo, ToolDetails
from conductor.proxy.config import (
    ToolServerEntry,
    config_fingerprint,
    load_tool_server_config,
)

if TYPE_CHECKING:
    from conductor.config import ProxyConfig

logger = logging.getLogger(__name__)

_SHUTDOWN_GRACE_S = 5.0


@dataclass
class ServerConnection:
    """State of one tool server.  Rebuilt wholesale on config change."""

    name: str
    entry: ToolServerEntry | None
    description: str = ""
    tools: list[types.Tool] = field(default_factory=list)
    resources: list[types.Resource] = field(default_factory=list)
    prompts: list[types.Prompt] = field(default_factory=list)
    error: str | None = None
    session: ClientSession | None = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    closing: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self.session is not None and self.error is None


def _error_message(exc: BaseException) -> str:
    """Unwrap anyio task-group errors down to the first real cause."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return str(exc) or type(exc).__name__


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def format_tool_params(tool: types.Tool) -> str:
    """``key:type`` for required params, ``key?:type`` for optional ones."""
    schema = tool.inputSchema or {}
    properties = schema.get("properties")
    if not isinstance(properties, dict):
        return ""
    required = schema.get("required") or []
    params = []
    for key, prop in properties.items():
        prop_type = prop.get("type", "any") if isinstance(prop, dict) else "any"
        marker = "" if key in required else "?"
        params.append(f"{key}{marker}:{prop_type}")
    return ", ".join(params)


class ToolProxyManager:
    """Connects to every enabled tool server and dispatches calls to them.

    Usage::

        manager = ToolProxyManager(config.proxy)
        await manager.initialize()
        result = await manager.call_tool("fs", "read_file", {"path": "/tmp/x"})
        await manager.shutdown()
    """

    def __init__(self, config: ProxyConfig) -> None:
        self._config = config
        self._servers: dict[str, ServerConnection] = {}
        self._fingerprint: str | None = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load the config file and connect to every enabled server concurrently."""
        parsed = load_tool_server_config(self._config.config_path)
        self._fingerprint = config_fingerprint(self._config.config_path)

        if parsed is None:
            logger.info(
                "No tool-server config at %s, tool proxy disabled", self._config.config_path
            )
            return

        for name, problem in parsed.errors.items():
            self._servers[name] = ServerConnection(
                name=name, entry=None, description=name, error=f"Invalid config: {problem}"
            )

        enabled = parsed.enabled
        if not enabled:
            return

        logger.info("Initializing %d tool server(s)...", len(enabled))
        connections = [ServerConnection(name=name, entry=entry) for name, entry in enabled.items()]
        for conn in connections:
            self._servers[conn.name] = conn

        await asyncio.gather(*(self._connect(conn) for conn in connections))

        ok = sum(1 for conn in connections if conn.connected)
        logger.info("Tool servers initialized: %d/%d successful", ok, len(connections))

    async def reload_if_needed(self) -> bool:
        """Reinitialize when the config file's fingerprint changed."""
        current = config_fingerprint(self._config.config_path)
        if current == self._fingerprint:
            return False

        logger.info("Tool-server config changed, reloading...")
        await self.shutdown()
        await self.initialize()
        return True

    async def shutdown(self) -> None:
        """Close every session.  Per-connection failures are logged, not raised."""
        connections = list(self._servers.values())
        self._servers.clear()

        tasks = []
        for conn in connections:
            conn.closing.set()
            if conn.task is not None:
                tasks.append(conn.task)
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=_SHUTDOWN_GRACE_S)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Tool proxy shut down (%d connection(s) closed)", len(tasks))

    # ── Connection tasks ──────────────────────────────────────────────────────

    async def _connect(self, conn: ServerConnection) -> None:
        conn.task = asyncio.create_task(self._run_connection(conn), name=f"mcp-{conn.name}")
        try:
            await asyncio.wait_for(conn.ready.wait(), timeout=self._config.connect_timeout_s)
        except asyncio.TimeoutError:
            conn.error = f"Connection timed out after {self._config.connect_timeout_s:g}s"
            conn.closing.set()
            conn.task.cancel()

        if conn.connected:
            logger.info(
                'Tool server "%s" connected: %d tools, %d resources, %d prompts',
                conn.name,
                len(conn.tools),
                len(conn.resources),
                len(conn.prompts),
            )
        else:
            logger.warning('Tool server "%s" failed: %s', conn.name, conn.error)

    def _open_transport(self, entry: ToolServerEntry):
        if entry.is_stdio:
            params = StdioServerParameters(
                command=entry.command, args=list(entry.args), env=entry.env
            )
            return stdio_client(params)
        return sse_client(entry.url)

    async def _run_connection(self, conn: ServerConnection) -> None:
        entry = conn.entry
        if entry is None:
            conn.error = conn.error or "No transport configured"
            conn.ready.set()
            return
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(self._open_transport(entry))
                session = await stack.enter_async_context(
                    ClientSession(
                        read,
                        write,
                        client_info=types.Implementation(
                            name=self._config.client_name, version=__version__
                        ),
                    )
                )
                init = await session.initialize()
                conn.description = init.serverInfo.name or conn.name
                conn.tools = list((await session.list_tools()).tools)

                try:
                    conn.resources = list((await session.list_resources()).resources)
                except Exception:
                    logger.debug('Tool server "%s" has no resources', conn.name)
                try:
                    conn.prompts = list((await session.list_prompts()).prompts)
                except Exception:
                    logger.debug('Tool server "%s" has no prompts', conn.name)

                conn.session = session
                conn.ready.set()
                await conn.closing.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if conn.error is None:
                conn.error = _error_message(exc)
            if conn.session is not None:
                logger.warning('Tool server "%s" connection closed: %s', conn.name, conn.error)
        finally:
            conn.session = None
            conn.ready.set()

    # ── Catalog ───────────────────────────────────────────────────────────────

    def server_names(self) -> list[str]:
        return list(self._servers)

    def has_servers(self) -> bool:
        return bool(self._servers)

    def list_servers(self) -> list[ServerInfo]:
        servers = []
        for name, conn in self._servers.items():
            sample_tools = [
                f"{tool.name}({format_tool_params(tool)}) - {tool.description or 'No description'}"
                for tool in conn.tools[: self._config.max_sample_tools]
            ]
            servers.append(
                ServerInfo(
                    name=name,
                    description=conn.description or name,
                    tools=len(conn.tools),
                    resources=len(conn.resources),
                    prompts=len(conn.prompts),
                    sample_tools=sample_tools,
                    error=conn.error,
                )
            )
        return servers

    def get_tool_details(
        self, server_name: str, tool_names: list[str] | None = None
    ) -> list[ToolDetails]:
        conn = self._lookup(server_name)
        if conn.error is not None:
            raise ServerConnectFailedError(server_name, conn.error)
        tools = conn.tools
        if tool_names:
            tools = [tool for tool in tools if tool.name in tool_names]
        return [
            ToolDetails(
                name=tool.name,
                description=tool.description or "",
                inputSchema=tool.inputSchema or {"type": "object"},
            )
            for tool in tools
        ]

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def _lookup(self, server_name: str) -> ServerConnection:
        conn = self._servers.get(server_name)
        if conn is None:
            raise ServerNotFoundError(server_name)
        return conn

    def _validate_entry(self, server_name: str) -> ClientSession:
        conn = self._lookup(server_name)
        if conn.error is not None:
            raise ServerConnectFailedError(server_name, conn.error)
        if conn.session is None:
            raise ServerConnectFailedError(server_name, "client not available")
        return conn.session

    async def call_tool(
        self, server_name: str, tool_name: str, arguments: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        session = self._validate_entry(server_name)
        result = await session.call_tool(tool_name, arguments=arguments or {})
        return _dump(result)

    async def list_tools(self, server_name: str) -> list[dict[str, Any]]:
        self._validate_entry(server_name)
        return [_dump(tool) for tool in self._servers[server_name].tools]

    async def list_resources(self, server_name: str) -> list[dict[str, Any]]:
        self._validate_entry(server_name)
        return [_dump(resource) for resource in self._servers[server_name].resources]

    async def read_resource(self, server_name: str, uri: str) -> dict[str, Any]:
        session = self._validate_entry(server_name)
        result = await session.read_resource(AnyUrl(uri))
        return _dump(result)

    async def list_prompts(self, server_name: str) -> list[dict[str, Any]]:
        self._validate_entry(server_name)
        return [_dump(prompt) for prompt in self._servers[server_name].prompts]

    async def get_prompt(
        self, server_name: str, prompt_name: str, arguments: dict[str, str] | None = None
    ) -> dict[str, Any]:
        session = self._validate_entry(server_name)
        result = await session.get_prompt(prompt_name, arguments=arguments or None)
        return _dump(result)
