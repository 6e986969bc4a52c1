"""Host-side client for the RPC bridge.

The sandbox talks to the bridge through the generated JS stub; this is the
same protocol for Python callers (health checks, the CLI, tests).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from conductor.errors import RemoteCallError, RPCTransportError
from conductor.proxy.bridge import HEALTH_PATH, RPC_PATH

logger = logging.getLogger(__name__)

RPC_TIMEOUT_S = 30.0


class BridgeClient:
    """Calls ``/mcp-rpc`` on a running bridge.

    Transport problems (refused connection, non-2xx status, a body that is
    not the expected JSON) raise ``RPCTransportError``.  A 200 response that
    carries ``error`` raises ``RemoteCallError``.
    """

    def __init__(self, base_url: str, token: str, *, timeout: float = RPC_TIMEOUT_S) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> BridgeClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=self._timeout,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Bridge client not started")
        return self._client

    async def health(self) -> bool:
        try:
            resp = await self.client.get(HEALTH_PATH)
        except httpx.HTTPError as exc:
            logger.debug("Bridge health check failed: %s", exc)
            return False
        return resp.status_code == 200 and resp.text == "OK"

    async def call(self, server: str, method: str, args: list[Any] | None = None) -> Any:
        """Send one request and return its ``result``."""
        payload = {"server": server, "method": method, "args": list(args or [])}
        try:
            resp = await self.client.post(RPC_PATH, json=payload)
        except httpx.HTTPError as exc:
            raise RPCTransportError(f"Bridge unreachable: {exc}") from exc

        if resp.status_code != 200:
            raise RPCTransportError(
                f"HTTP {resp.status_code}: {_error_text(resp)}", status_code=resp.status_code
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise RPCTransportError("Bridge returned malformed JSON", status_code=200) from exc
        if not isinstance(body, dict):
            raise RPCTransportError("Bridge returned malformed JSON", status_code=200)

        if body.get("error"):
            raise RemoteCallError(str(body["error"]), code=body.get("code"))
        return body.get("result")

    # ── Convenience wrappers ─────────────────────────────────────────────────

    async def call_tool(self, server: str, name: str, arguments: dict | None = None) -> Any:
        return await self.call(server, "callTool", [name, arguments or {}])

    async def list_tools(self, server: str) -> Any:
        return await self.call(server, "listTools")


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return resp.reason_phrase
