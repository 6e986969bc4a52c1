"""Configuration loading for Conductor.

Reads an optional ``conductor.yaml`` and then applies ``MCP_CONDUCTOR_*``
environment overrides.  Pydantic models validate the result.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from conductor.sandbox.allowlist import DEFAULT_ALLOWED_DEPENDENCIES, parse_allowlist

logger = logging.getLogger(__name__)

# Flags appended when the operator grants nothing network-related.
SECURE_RUN_ARGS = ["--cached-only", "--no-remote"]


def default_root_dir() -> Path:
    override = os.environ.get("MCP_CONDUCTOR_BASE_DIR")
    if override:
        return Path(override)
    return Path(os.environ.get("HOME") or os.environ.get("USERPROFILE") or ".") / ".mcp-conductor"


def default_run_args(root_dir: Path) -> list[str]:
    """Secure default flags: read the root, write the workspace, loopback only."""
    return [
        *SECURE_RUN_ARGS,
        f"--allow-read={root_dir}",
        f"--allow-write={root_dir / 'workspace'}",
        "--allow-net=localhost",
    ]


class ExecutorConfig(BaseModel):
    """Settings for the sandboxed execution engine."""

    deno_path: str = "deno"
    default_timeout_ms: int = Field(default=30_000, gt=0)
    max_timeout_ms: int = Field(default=300_000, gt=0)
    max_return_size: int = Field(default=262_144, gt=0)
    workspace_dir: str = Field(default_factory=lambda: str(default_root_dir() / "workspace"))
    default_run_args: list[str] = Field(
        default_factory=lambda: default_run_args(default_root_dir())
    )
    # Either a list of ``registry:name[@constraint]`` entries or "*".
    allowed_dependencies: Union[list[str], Literal["*"]] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_DEPENDENCIES)
    )
    strict_versions: bool = False
    # Env vars that must never enter the sandbox.
    secret_env_vars: list[str] = Field(
        default_factory=lambda: [
            "GITHUB_TOKEN",
            "GH_TOKEN",
            "NPM_TOKEN",
            "AWS_SECRET_ACCESS_KEY",
            "AWS_SESSION_TOKEN",
            "DENO_AUTH_TOKENS",
        ]
    )

    @field_validator("allowed_dependencies", mode="before")
    @classmethod
    def _parse_allowlist(cls, v):
        if isinstance(v, str):
            return parse_allowlist(v)
        return v


class ProxyConfig(BaseModel):
    """Settings for the tool-proxy manager and RPC bridge."""

    config_path: str = Field(default_factory=lambda: str(default_root_dir() / "mcp.json"))
    connect_timeout_s: float = Field(default=30.0, gt=0)
    max_body_size: int = Field(default=1024 * 1024, gt=0)
    max_sample_tools: int = Field(default=5, ge=0)
    client_name: str = "mcp-conductor-proxy"

    @field_validator("config_path")
    @classmethod
    def _validate_config_path(cls, v: str) -> str:
        """Reject relative paths and traversal components."""
        p = Path(v).expanduser()
        if not p.is_absolute():
            raise ValueError(f"ProxyConfig.config_path must be absolute, got: {v!r}")
        if ".." in p.parts:
            raise ValueError(f"ProxyConfig.config_path must not contain '..': {v!r}")
        return str(p)


class ConductorConfig(BaseModel):
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)


# ── Environment parsing ──────────────────────────────────────────────────────


def parse_run_args(value: str | None, root_dir: Path) -> list[str]:
    """Parse ``MCP_CONDUCTOR_RUN_ARGS``.

    Entries are ``;``-separated; the leading ``--`` is optional.  An empty
    value yields the secure defaults.  When the operator grants no network
    access the ``--cached-only --no-remote`` flags are appended.
    """
    if not value or not value.strip():
        return default_run_args(root_dir)

    args: list[str] = []
    for raw in value.split(";"):
        arg = raw.strip()
        if not arg:
            continue
        if not arg.startswith("-"):
            arg = f"--{arg}"
        if len(arg) > 2:
            args.append(arg)

    if any(arg.startswith("--allow-net") for arg in args):
        return args
    return [*args, *SECURE_RUN_ARGS]


def parse_positive_int(value: str | None, default: int, name: str) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value, 10)
    except ValueError:
        parsed = 0
    if parsed <= 0:
        logger.warning("Invalid value for %s: %r, using default %d", name, value, default)
        return default
    return parsed


def load_config(config_path: Path | None = None) -> ConductorConfig:
    """Load Conductor configuration.

    Args:
        config_path: Optional YAML file.  Missing files are not an error;
            defaults apply.

    Returns:
        Validated ConductorConfig with environment overrides applied.
    """
    raw: dict = {}
    if config_path is not None and config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    executor_raw = dict(raw.get("executor") or {})
    proxy_raw = dict(raw.get("proxy") or {})

    workspace = os.environ.get("MCP_CONDUCTOR_WORKSPACE")
    if workspace:
        executor_raw["workspace_dir"] = workspace

    root_dir = default_root_dir()
    if workspace:
        ws = Path(workspace)
        root_dir = ws.parent if ws.name == "workspace" else root_dir

    run_args = os.environ.get("MCP_CONDUCTOR_RUN_ARGS")
    if run_args is not None or "default_run_args" not in executor_raw:
        executor_raw["default_run_args"] = parse_run_args(run_args, root_dir)

    defaults = ExecutorConfig.model_fields
    for env_name, field_name in (
        ("MCP_CONDUCTOR_DEFAULT_TIMEOUT", "default_timeout_ms"),
        ("MCP_CONDUCTOR_MAX_TIMEOUT", "max_timeout_ms"),
        ("MCP_CONDUCTOR_MAX_RETURN_SIZE", "max_return_size"),
    ):
        env_value = os.environ.get(env_name)
        if env_value is not None:
            fallback = executor_raw.get(field_name, defaults[field_name].default)
            executor_raw[field_name] = parse_positive_int(env_value, fallback, env_name)

    allowlist = os.environ.get("MCP_CONDUCTOR_ALLOWED_DEPENDENCIES")
    if allowlist is not None:
        executor_raw["allowed_dependencies"] = allowlist

    deno_path = os.environ.get("MCP_CONDUCTOR_DENO_PATH")
    if deno_path:
        executor_raw["deno_path"] = deno_path

    proxy_config = os.environ.get("MCP_CONDUCTOR_PROXY_CONFIG")
    if proxy_config:
        proxy_raw["config_path"] = proxy_config

    config = ConductorConfig(
        executor=ExecutorConfig(**executor_raw),
        proxy=ProxyConfig(**proxy_raw),
    )

    logger.info("Workspace: %s", config.executor.workspace_dir)
    logger.info("Run args: %s", " ".join(config.executor.default_run_args))
    logger.info(
        "Timeouts: default=%dms max=%dms, max return size=%d bytes",
        config.executor.default_timeout_ms,
        config.executor.max_timeout_ms,
        config.executor.max_return_size,
    )
    logger.info("Tool-server config: %s", config.proxy.config_path)
    return config
