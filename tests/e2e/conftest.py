"""Shared fixtures for end-to-end tests against a real ``deno`` binary.

Provides:
- A Conductor config whose default flags allow nothing outside a temp root
- A FastMCP echo server script for bridge round trips
"""

from __future__ import annotations

import json
import shutil
import sys
import textwrap
from pathlib import Path

import pytest

from conductor.config import ConductorConfig, ExecutorConfig, ProxyConfig

DENO = shutil.which("deno")


# ── Config ────────────────────────────────────────────────────────────────────


@pytest.fixture
def e2e_config(tmp_path: Path) -> ConductorConfig:
    root = tmp_path / "root"
    workspace = root / "workspace"
    workspace.mkdir(parents=True)
    return ConductorConfig(
        executor=ExecutorConfig(
            deno_path=DENO or "deno",
            workspace_dir=str(workspace),
            default_run_args=[
                "--cached-only",
                "--no-remote",
                f"--allow-read={root}",
                f"--allow-write={workspace}",
            ],
            default_timeout_ms=20_000,
        ),
        proxy=ProxyConfig(config_path=str(tmp_path / "mcp.json"), connect_timeout_s=20),
    )


# ── Tool server ───────────────────────────────────────────────────────────────


ECHO_SERVER = textwrap.dedent(
    '''
    from mcp.server.fastmcp import FastMCP

    mcp = FastMCP("echo-server")


    @mcp.tool()
    def echo(text: str) -> str:
        """Echo text back."""
        return text


    if __name__ == "__main__":
        mcp.run()
    '''
)


@pytest.fixture
def echo_server_config(e2e_config: ConductorConfig, tmp_path: Path) -> ConductorConfig:
    """``e2e_config`` with an ``mcp.json`` that launches the echo server."""
    script = tmp_path / "echo_server.py"
    script.write_text(ECHO_SERVER)
    Path(e2e_config.proxy.config_path).write_text(
        json.dumps({"mcpServers": {"echo": {"command": sys.executable, "args": [str(script)]}}})
    )
    return e2e_config
