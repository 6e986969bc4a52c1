"""Bridge from the sandbox to external MCP tool servers.

- Tool-proxy manager: one live session per configured server
- RPC bridge: token-authenticated loopback HTTP relay
- Client stub: the JavaScript side of the bridge, injected into the sandbox
"""

from .bridge import RPCBridge, create_bridge_app
from .client import BridgeClient
from .config import ToolServerEntry, config_fingerprint, load_tool_server_config
from .manager import ToolProxyManager
from .stub import generate_client_stub

__all__ = [
    "BridgeClient",
    "RPCBridge",
    "ToolProxyManager",
    "ToolServerEntry",
    "config_fingerprint",
    "create_bridge_app",
    "generate_client_stub",
    "load_tool_server_config",
]
