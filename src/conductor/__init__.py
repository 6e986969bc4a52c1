"""Conductor: sandboxed Deno code execution with a bridge to MCP tool servers."""

__version__ = "0.1.0"
