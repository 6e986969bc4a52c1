"""Generates the JavaScript client injected ahead of sandboxed user code.

The stub is a single IIFE that assigns ``globalThis.mcpFactory``; it declares
no top-level bindings and has no imports, so it is valid both in front of a
module body and in front of the script wrapper.

Sandboxed usage::

    const fs = await mcpFactory.load("fs");
    const result = await fs.callTool("read_file", { path: "/tmp/x" });
"""

from __future__ import annotations

import json

from conductor.proxy.bridge import BRIDGE_HOST, RPC_PATH

RPC_TIMEOUT_MS = 30_000

_STUB_TEMPLATE = """\
(() => {
  const rpcUrl = __RPC_URL__;
  const authToken = __AUTH_TOKEN__;
  const timeoutMs = __TIMEOUT_MS__;

  async function rpcCall(server, method, args) {
    const controller = new AbortController();
    const timeoutId = setTimeout(() => controller.abort(), timeoutMs);
    let response;
    try {
      response = await fetch(rpcUrl, {
        method: "POST",
        headers: {
          "Content-Type": "application/json",
          "Authorization": `Bearer ${authToken}`,
        },
        body: JSON.stringify({ server, method, args }),
        signal: controller.signal,
      });
    } catch (err) {
      clearTimeout(timeoutId);
      if (err && err.name === "AbortError") {
        throw new Error(`MCP RPC ${method} timed out after ${timeoutMs}ms`);
      }
      throw new Error(`MCP RPC ${method} failed: ${err && err.message ? err.message : err}`);
    }

    try {
      const text = await response.text();
      let body = null;
      try {
        body = text ? JSON.parse(text) : null;
      } catch (_e) {
        body = null;
      }
      if (!response.ok) {
        const detail = body && body.error ? body.error : response.statusText;
        throw new Error(`HTTP ${response.status}: ${detail}`);
      }
      if (body === null || typeof body !== "object") {
        throw new Error(`MCP RPC ${method} returned malformed response`);
      }
      if (body.error) {
        throw new Error(body.error);
      }
      return body.result;
    } finally {
      clearTimeout(timeoutId);
    }
  }

  globalThis.mcpFactory = {
    async load(serverName) {
      return {
        callTool: (name, args) => rpcCall(serverName, "callTool", [name, args ?? {}]),
        listTools: () => rpcCall(serverName, "listTools", []),
        listResources: () => rpcCall(serverName, "listResources", []),
        readResource: (uri) => rpcCall(serverName, "readResource", [uri]),
        listPrompts: () => rpcCall(serverName, "listPrompts", []),
        getPrompt: (name, args) => rpcCall(serverName, "getPrompt", [name, args ?? {}]),
      };
    },
  };
})();
"""


def generate_client_stub(port: int, token: str) -> str:
    """Return the client source bound to ``port`` and ``token``."""
    url = f"http://{BRIDGE_HOST}:{port}{RPC_PATH}"
    return (
        _STUB_TEMPLATE.replace("__RPC_URL__", json.dumps(url))
        .replace("__AUTH_TOKEN__", json.dumps(token))
        .replace("__TIMEOUT_MS__", str(RPC_TIMEOUT_MS))
    )
