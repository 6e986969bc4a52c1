"""Core data models for Conductor."""

from __future__ import annotations

import enum
import re
from typing import Any, Union

from pydantic import BaseModel, Field, field_validator


# ── Execution ────────────────────────────────────────────────────────────────


class ExecutionStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"


class ErrorKind(str, enum.Enum):
    """Machine-readable failure kind of an execution request.

    ``syntax``, ``runtime``, ``timeout`` and ``permission`` are mutually
    exclusive phase-2 outcomes.  ``validation`` and ``dependency_install``
    are terminal failures that happen before the user program is spawned.
    """

    VALIDATION = "validation"
    DEPENDENCY_INSTALL = "dependency_install"
    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    PERMISSION = "permission"


# Capability name -> bool | list[str].  ``hrtime`` and ``all`` are bool-only.
PermissionSpec = dict[str, Union[bool, list[str]]]

JS_IDENTIFIER_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")


class ExecutionRequest(BaseModel):
    """One call to the execution engine."""

    code: str
    timeout_ms: int | None = Field(default=None, gt=0, description="Requested timeout")
    dependencies: list[str] = Field(
        default_factory=list, description="npm:/jsr: specifiers to install first"
    )
    permissions: dict[str, Any] | None = Field(
        default=None, description="Capability request; falls back to configured run args"
    )
    globals: dict[str, Any] = Field(
        default_factory=dict, description="JSON values injected as top-level constants"
    )
    cwd: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of one execution request."""

    status: ExecutionStatus
    output: list[str] = Field(default_factory=list)
    return_value: str | None = Field(
        default=None, description="JSON text of the final expression, if any"
    )
    return_value_path: str | None = Field(
        default=None, description="Side file holding an oversized return value"
    )
    error_kind: ErrorKind | None = None
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        output: list[str] | None = None,
        elapsed_ms: float = 0.0,
    ) -> ExecutionResult:
        return cls(
            status=ExecutionStatus.ERROR,
            output=list(output or []),
            error_kind=kind,
            error=message,
            elapsed_ms=elapsed_ms,
        )


# ── Tool proxy ───────────────────────────────────────────────────────────────


class ServerInfo(BaseModel):
    """Summary of one configured tool server, as returned by ``list_servers``."""

    name: str
    description: str
    tools: int = 0
    resources: int = 0
    prompts: int = 0
    sample_tools: list[str] = Field(default_factory=list)
    error: str | None = None


class ToolDetails(BaseModel):
    name: str
    description: str = ""
    inputSchema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


# ── RPC bridge wire format ───────────────────────────────────────────────────


SERVER_NAME_RE = re.compile(r"[A-Za-z0-9_-]+")


class RPCMethod(str, enum.Enum):
    CALL_TOOL = "callTool"
    LIST_TOOLS = "listTools"
    LIST_RESOURCES = "listResources"
    READ_RESOURCE = "readResource"
    LIST_PROMPTS = "listPrompts"
    GET_PROMPT = "getPrompt"


# Minimum positional args per method, checked before dispatch.
RPC_MIN_ARGS: dict[RPCMethod, int] = {
    RPCMethod.CALL_TOOL: 2,
    RPCMethod.LIST_TOOLS: 0,
    RPCMethod.LIST_RESOURCES: 0,
    RPCMethod.READ_RESOURCE: 1,
    RPCMethod.LIST_PROMPTS: 0,
    RPCMethod.GET_PROMPT: 2,
}


class RPCRequest(BaseModel):
    server: str
    method: RPCMethod
    args: list[Any] = Field(default_factory=list)

    @field_validator("server")
    @classmethod
    def _validate_server(cls, v: str) -> str:
        """Only alphanumerics, dash and underscore; no paths, no separators."""
        if not SERVER_NAME_RE.fullmatch(v):
            raise ValueError("Invalid server name")
        return v
