"""RPC bridge: token-authenticated loopback relay from the sandbox to tool servers.

Security model:
    The bridge binds 127.0.0.1 on an OS-assigned port.  Every ``/mcp-rpc``
    request must carry ``Authorization: Bearer <token>`` where the token is
    32 random bytes (hex) generated per bridge start and only ever handed to
    the sandbox through the injected client stub.  Comparison is
    constant-time.  The token is never logged.

Wire format:
    POST /mcp-rpc  {"server": str, "method": str, "args": [...]}
      -> 200 {"result": ...}              success
      -> 200 {"error": str, "code": str}  the remote call failed
      -> 400 / 401 / 413                  the request itself is unacceptable
    GET /health    -> "OK"
    anything else  -> 404
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
import socket
from typing import TYPE_CHECKING, Any

import pydantic
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from conductor.errors import ConductorError, InvalidArgsError, RPCTransportError, validate_rpc_args
from conductor.models import RPC_MIN_ARGS, RPCMethod, RPCRequest

if TYPE_CHECKING:
    from conductor.proxy.manager import ToolProxyManager

logger = logging.getLogger(__name__)

BRIDGE_HOST = "127.0.0.1"
RPC_PATH = "/mcp-rpc"
HEALTH_PATH = "/health"
MAX_BODY_SIZE = 1024 * 1024

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
_STARTUP_TIMEOUT_S = 10.0
_SHUTDOWN_TIMEOUT_S = 5.0


def _error(message: str, status_code: int, code: str | None = None) -> JSONResponse:
    body: dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    return JSONResponse(body, status_code=status_code)


def is_authorized(header: str | None, token: str) -> bool:
    """Constant-time check of an ``Authorization: Bearer`` header."""
    if not header or not header.startswith("Bearer "):
        return False
    presented = header[len("Bearer "):].encode("utf-8", errors="replace")
    return secrets.compare_digest(presented, token.encode("utf-8"))


def _describe_request_error(exc: pydantic.ValidationError) -> str:
    for err in exc.errors():
        field = err["loc"][0] if err["loc"] else None
        if field == "server":
            return "Invalid server name"
        if field == "method":
            return "Invalid method"
        if field == "args":
            return "Invalid args: expected array"
    return "Invalid request body"


def _string_arg(args: list, index: int, method: str, label: str) -> str:
    value = args[index]
    if not isinstance(value, str):
        raise InvalidArgsError(f"Invalid args for {method}: {label} must be a string")
    return value


def _object_arg(args: list, index: int, method: str, label: str) -> dict | None:
    value = args[index] if len(args) > index else None
    if value is not None and not isinstance(value, dict):
        raise InvalidArgsError(f"Invalid args for {method}: {label} must be an object")
    return value


async def dispatch(manager: ToolProxyManager, rpc: RPCRequest) -> Any:
    """Route one validated request to the manager.

    Raises:
        InvalidArgsError: If an argument has the wrong type.
        ConductorError: For unknown or failed servers.
    """
    method = rpc.method.value
    args = rpc.args

    if rpc.method is RPCMethod.CALL_TOOL:
        tool = _string_arg(args, 0, method, "tool name")
        return await manager.call_tool(rpc.server, tool, _object_arg(args, 1, method, "arguments"))
    if rpc.method is RPCMethod.LIST_TOOLS:
        return await manager.list_tools(rpc.server)
    if rpc.method is RPCMethod.LIST_RESOURCES:
        return await manager.list_resources(rpc.server)
    if rpc.method is RPCMethod.READ_RESOURCE:
        return await manager.read_resource(rpc.server, _string_arg(args, 0, method, "uri"))
    if rpc.method is RPCMethod.LIST_PROMPTS:
        return await manager.list_prompts(rpc.server)
    prompt = _string_arg(args, 0, method, "prompt name")
    return await manager.get_prompt(rpc.server, prompt, _object_arg(args, 1, method, "arguments"))


def create_bridge_app(
    manager: ToolProxyManager,
    token: str,
    *,
    max_body_size: int = MAX_BODY_SIZE,
) -> FastAPI:
    """Build the bridge's FastAPI application."""
    app = FastAPI(
        title="Conductor RPC bridge",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get(HEALTH_PATH, response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.post(RPC_PATH)
    async def mcp_rpc(request: Request) -> JSONResponse:
        # 1. Authentication
        if not is_authorized(request.headers.get("authorization"), token):
            logger.warning(
                "Unauthorized bridge request from %s",
                request.client.host if request.client else "unknown",
            )
            return _error("Unauthorized", 401)

        # 2. Body ceiling, declared and actual
        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                if int(declared) > max_body_size:
                    return _error("Request body too large", 413)
            except ValueError:
                return _error("Invalid Content-Length", 400)

        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > max_body_size:
                return _error("Request body too large", 413)

        # 3. Shape
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error("Invalid JSON", 400)

        try:
            rpc = RPCRequest.model_validate(payload)
        except pydantic.ValidationError as exc:
            return _error(_describe_request_error(exc), 400)

        # 4. Dispatch
        try:
            validate_rpc_args(rpc.args, RPC_MIN_ARGS[rpc.method], rpc.method.value)
            result = await dispatch(manager, rpc)
        except InvalidArgsError as exc:
            return _error(exc.message, 400, exc.code)
        except ConductorError as exc:
            return _error(exc.message, 200, exc.code)
        except Exception as exc:
            logger.warning("Bridge call %s.%s failed: %s", rpc.server, rpc.method.value, exc)
            return _error(str(exc) or type(exc).__name__, 200, "CALL_FAILED")

        return JSONResponse({"result": result})

    @app.api_route("/{path:path}", methods=_ALL_METHODS, include_in_schema=False)
    async def not_found(path: str) -> JSONResponse:
        return _error("Not found", 404)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handling alone."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class RPCBridge:
    """Owns the bridge's HTTP server and auth token.

    A new token is generated on every ``start()``.
    """

    def __init__(self, manager: ToolProxyManager, *, max_body_size: int = MAX_BODY_SIZE) -> None:
        self._manager = manager
        self._max_body_size = max_body_size
        self._token: str | None = None
        self._port: int | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None
        self._socket: socket.socket | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def port(self) -> int:
        if self._port is None:
            raise RPCTransportError("RPC bridge is not running")
        return self._port

    @property
    def token(self) -> str:
        if self._token is None:
            raise RPCTransportError("RPC bridge is not running")
        return self._token

    @property
    def url(self) -> str:
        return f"http://{BRIDGE_HOST}:{self.port}{RPC_PATH}"

    async def start(self) -> int:
        """Bind an OS-assigned loopback port and serve.  Returns the port."""
        if self.running:
            return self.port

        self._token = secrets.token_hex(32)
        app = create_bridge_app(self._manager, self._token, max_body_size=self._max_body_size)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((BRIDGE_HOST, 0))
        self._socket = sock
        self._port = sock.getsockname()[1]

        config = uvicorn.Config(app, log_level="warning", access_log=False, lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]), name="rpc-bridge")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + _STARTUP_TIMEOUT_S
        while not self._server.started:
            if self._task.done() or loop.time() > deadline:
                await self.stop()
                raise RPCTransportError("RPC bridge failed to start")
            await asyncio.sleep(0.01)

        logger.info("RPC bridge listening on %s:%d", BRIDGE_HOST, self._port)
        return self._port

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=_SHUTDOWN_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("RPC bridge did not stop in time; cancelling")
            except Exception as exc:
                logger.warning("RPC bridge exited with error: %s", exc)
        if self._socket is not None:
            self._socket.close()

        if self._port is not None:
            logger.info("RPC bridge stopped")
        self._server = None
        self._task = None
        self._socket = None
        self._token = None
        self._port = None
