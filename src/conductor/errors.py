"""Error taxonomy for Conductor.

Every failure carries a short message plus a machine-distinguishable
``kind`` (execution failures) or ``code`` (proxy failures) so callers can
branch without string-matching.

Nothing in this package retries.  Errors are surfaced once, as-is.
"""

from __future__ import annotations

from conductor.models import ErrorKind


class ConductorError(Exception):
    """Base class for all Conductor errors."""

    code: str = "CONDUCTOR_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


# ── Execution-side errors ────────────────────────────────────────────────────


class ExecutionError(ConductorError):
    """A request-level failure that maps onto an ``ErrorKind``."""

    kind: ErrorKind = ErrorKind.RUNTIME

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.code = self.kind.value.upper()


class ValidationError(ExecutionError):
    """Malformed permission spec, dependency specifier, or request field.

    Raised before any subprocess exists.
    """

    kind = ErrorKind.VALIDATION


class DependencyInstallError(ExecutionError):
    """Phase-1 dependency install failed; phase 2 never ran."""

    kind = ErrorKind.DEPENDENCY_INSTALL

    def __init__(self, message: str, output: list[str] | None = None) -> None:
        super().__init__(message)
        self.output = list(output or [])


# ── Proxy-side errors ────────────────────────────────────────────────────────


class ProxyError(ConductorError):
    """Failure raised by the tool-proxy manager while dispatching."""

    code = "PROXY_ERROR"


class ServerNotFoundError(ProxyError):
    code = "SERVER_NOT_FOUND"

    def __init__(self, server_name: str) -> None:
        super().__init__(f'MCP server "{server_name}" not found')
        self.server_name = server_name


class ServerConnectFailedError(ProxyError):
    code = "SERVER_CONNECT_FAILED"

    def __init__(self, server_name: str, reason: str) -> None:
        super().__init__(f'MCP server "{server_name}" failed to connect: {reason}')
        self.server_name = server_name
        self.reason = reason


class InvalidArgsError(ProxyError):
    code = "INVALID_ARGS"


class RPCTransportError(ConductorError):
    """The bridge was unreachable, rejected the request, or answered garbage.

    Distinct from ``RemoteCallError``, which means the bridge worked but
    the remote tool call itself failed.
    """

    code = "RPC_TRANSPORT"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteCallError(ConductorError):
    """A business-logic error forwarded by the bridge (HTTP 200 + ``error``)."""

    code = "REMOTE_CALL_FAILED"


def validate_rpc_args(args: object, expected_length: int, method: str) -> list:
    """Check that ``args`` is a list with at least ``expected_length`` items."""
    if not isinstance(args, list):
        raise InvalidArgsError(f"Invalid args for {method}: expected array")
    if len(args) < expected_length:
        raise InvalidArgsError(
            f"Invalid args for {method}: expected at least {expected_length}, got {len(args)}",
            code="INVALID_ARGS_LENGTH",
        )
    return args
