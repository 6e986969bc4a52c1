"""Shared fixtures for the Conductor test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from conductor.config import ConductorConfig, ExecutorConfig, ProxyConfig


@pytest.fixture
def executor_config(tmp_path: Path) -> ExecutorConfig:
    """Executor config rooted in a temp dir, with the secure default flags."""
    root = tmp_path / "root"
    workspace = root / "workspace"
    workspace.mkdir(parents=True)
    return ExecutorConfig(
        workspace_dir=str(workspace),
        default_run_args=[
            "--cached-only",
            "--no-remote",
            f"--allow-read={root}",
            f"--allow-write={workspace}",
        ],
    )


@pytest.fixture
def proxy_config(tmp_path: Path) -> ProxyConfig:
    """Proxy config pointing at a (not yet written) ``mcp.json`` in tmp_path."""
    return ProxyConfig(config_path=str(tmp_path / "mcp.json"), connect_timeout_s=20)


@pytest.fixture
def conductor_config(executor_config: ExecutorConfig, proxy_config: ProxyConfig) -> ConductorConfig:
    return ConductorConfig(executor=executor_config, proxy=proxy_config)
