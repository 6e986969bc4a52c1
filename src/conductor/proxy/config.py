"""Tool-server configuration file (``mcp.json``).

Format::

    {
      "mcpServers": {
        "fs":     {"command": "npx", "args": ["-y", "@mcp/fs"], "env": {...}},
        "remote": {"url": "http://host:8080/sse", "transport": "sse"},
        "off":    {"command": "x", "args": [], "disabled": true}
      }
    }

An entry with neither or both of ``command``/``url`` is recorded in
``errors``; the rest of the file still loads.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class ToolServerEntry(BaseModel):
    """One server from the ``mcpServers`` object."""

    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    url: str | None = None
    transport: Literal["sse"] = "sse"
    disabled: bool = False

    @model_validator(mode="after")
    def _exactly_one_transport(self) -> ToolServerEntry:
        if self.command is None and self.url is None:
            raise ValueError("must have either command or url")
        if self.command is not None and self.url is not None:
            raise ValueError("cannot have both command and url")
        return self

    @property
    def is_stdio(self) -> bool:
        return self.command is not None


@dataclass
class ToolServerConfig:
    """Parsed config: usable entries plus per-entry problems."""

    servers: dict[str, ToolServerEntry] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def enabled(self) -> dict[str, ToolServerEntry]:
        return {name: entry for name, entry in self.servers.items() if not entry.disabled}


def _describe(exc: ValidationError) -> str:
    return "; ".join(err["msg"].removeprefix("Value error, ") for err in exc.errors())


def parse_tool_server_config(data: object) -> ToolServerConfig:
    """Validate an already-decoded config document."""
    result = ToolServerConfig()
    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        logger.error("Invalid tool-server config: missing or invalid mcpServers object")
        return result

    for name, raw in servers.items():
        if not isinstance(raw, dict):
            result.errors[name] = "entry must be an object"
            continue
        try:
            result.servers[name] = ToolServerEntry.model_validate(raw)
        except ValidationError as exc:
            result.errors[name] = _describe(exc)

    for name, problem in result.errors.items():
        logger.warning('Tool server "%s" disabled: %s', name, problem)
    return result


def load_tool_server_config(path: str | Path) -> ToolServerConfig | None:
    """Read ``path``.  Returns None when the file does not exist."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.error("Failed to read tool-server config %s: %s", path, exc)
        return None

    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse tool-server config %s: %s", path, exc)
        return ToolServerConfig()
    return parse_tool_server_config(data)


def config_fingerprint(path: str | Path) -> str | None:
    """SHA-256 of the config file's bytes, or None when it is missing."""
    try:
        content = Path(path).read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.error("Failed to fingerprint tool-server config %s: %s", path, exc)
        return None
    return hashlib.sha256(content).hexdigest()
