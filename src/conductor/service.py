"""Conductor -- the owned aggregate tying the engine, proxy and bridge together.

Lifecycle:
1. ``start()``: create the workspace, connect tool servers, and when at
   least one server is configured start the RPC bridge and attach its
   client stub to the engine.
2. ``run()``: pick up tool-server config changes, then execute.
3. ``stop()``: detach the stub, stop the bridge, close every session.

The bridge token and the manager's connection map live here and are passed
by handle; nothing is module-global.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pydantic

from conductor.config import ConductorConfig, load_config
from conductor.errors import RPCTransportError
from conductor.models import ErrorKind, ExecutionRequest, ExecutionResult, ServerInfo, ToolDetails
from conductor.proxy.bridge import BRIDGE_HOST, RPCBridge
from conductor.proxy.client import BridgeClient
from conductor.proxy.manager import ToolProxyManager
from conductor.proxy.stub import generate_client_stub
from conductor.sandbox.engine import ExecutionEngine, LogHandler

logger = logging.getLogger(__name__)


class Conductor:
    """Sandboxed execution with tool-server access.

    Usage::

        async with Conductor(load_config()) as conductor:
            result = await conductor.run("1 + 1")
    """

    def __init__(self, config: ConductorConfig | None = None) -> None:
        self.config = config or load_config()
        self.engine = ExecutionEngine(self.config.executor)
        self.manager = ToolProxyManager(self.config.proxy)
        self.bridge = RPCBridge(self.manager, max_body_size=self.config.proxy.max_body_size)
        self._started = False

    async def __aenter__(self) -> Conductor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        Path(self.config.executor.workspace_dir).mkdir(parents=True, exist_ok=True)

        await self.manager.initialize()
        if self.manager.has_servers():
            await self._start_bridge()
        else:
            logger.info("Conductor: no tool servers configured, bridge not started")
        self._started = True

    async def stop(self) -> None:
        self.engine.detach_bridge()
        await self.bridge.stop()
        await self.manager.shutdown()
        self._started = False

    async def _start_bridge(self) -> None:
        port = await self.bridge.start()
        async with BridgeClient(f"http://{BRIDGE_HOST}:{port}", self.bridge.token) as client:
            if not await client.health():
                await self.bridge.stop()
                raise RPCTransportError("RPC bridge failed its health check")
        self.engine.attach_bridge(port, generate_client_stub(port, self.bridge.token))

    async def _refresh_servers(self) -> None:
        if not await self.manager.reload_if_needed():
            return
        if self.manager.has_servers() and not self.bridge.running:
            await self._start_bridge()

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute(
        self, request: ExecutionRequest, log: LogHandler | None = None
    ) -> ExecutionResult:
        if not self._started:
            await self.start()
        await self._refresh_servers()
        return await self.engine.run(request, log)

    async def run(
        self,
        code: str,
        *,
        timeout_ms: int | None = None,
        dependencies: list[str] | None = None,
        permissions: dict[str, Any] | None = None,
        globals_: dict[str, Any] | None = None,
        cwd: str | None = None,
        log: LogHandler | None = None,
    ) -> ExecutionResult:
        try:
            request = ExecutionRequest(
                code=code,
                timeout_ms=timeout_ms,
                dependencies=dependencies or [],
                permissions=permissions,
                globals=globals_ or {},
                cwd=cwd,
            )
        except pydantic.ValidationError as exc:
            return ExecutionResult.failure(ErrorKind.VALIDATION, f"Invalid request: {exc}")
        return await self.execute(request, log)

    # ── Tool servers ──────────────────────────────────────────────────────────

    async def list_servers(self) -> list[ServerInfo]:
        await self._refresh_servers()
        return self.manager.list_servers()

    async def get_tool_details(
        self, server_name: str, tool_names: list[str] | None = None
    ) -> list[ToolDetails]:
        await self._refresh_servers()
        return self.manager.get_tool_details(server_name, tool_names)
