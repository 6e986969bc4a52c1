"""Tests for the RPC bridge HTTP surface.

Auth, body limits and request-shape checks run against the FastAPI app with
``TestClient``; the manager behind it is a ``MagicMock``.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from conductor.errors import ServerNotFoundError
from conductor.proxy.bridge import create_bridge_app, is_authorized
from conductor.proxy.manager import ToolProxyManager

TOKEN = "a" * 64
AUTH = {"Authorization": f"Bearer {TOKEN}"}


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def manager():
    mock = MagicMock(spec=ToolProxyManager)
    mock.call_tool.return_value = {"content": [{"type": "text", "text": "ok"}]}
    mock.list_tools.return_value = [{"name": "read_file"}]
    mock.read_resource.return_value = {"contents": []}
    mock.get_prompt.return_value = {"messages": []}
    return mock


@pytest.fixture
def client(manager):
    app = create_bridge_app(manager, TOKEN, max_body_size=256)
    return TestClient(app, raise_server_exceptions=False)


def _rpc(client: TestClient, body, headers=AUTH):
    return client.post("/mcp-rpc", json=body, headers=headers)


# ── is_authorized ────────────────────────────────────────────────────────────


class TestIsAuthorized:
    def test_valid(self):
        assert is_authorized(f"Bearer {TOKEN}", TOKEN)

    @pytest.mark.parametrize(
        "header",
        [None, "", TOKEN, f"Basic {TOKEN}", "Bearer ", f"Bearer {TOKEN}x", "Bearer wrong"],
    )
    def test_rejected(self, header):
        assert not is_authorized(header, TOKEN)

    def test_non_ascii_header_rejected(self):
        assert not is_authorized("Bearer éé", TOKEN)


# ── Routes ───────────────────────────────────────────────────────────────────


class TestRoutes:
    def test_health_needs_no_auth(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.text == "OK"

    def test_unknown_path(self, client):
        resp = client.get("/admin", headers=AUTH)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not found"}

    def test_no_docs_exposed(self, client):
        assert client.get("/docs").status_code == 404
        assert client.get("/openapi.json").status_code == 404


# ── Authentication ───────────────────────────────────────────────────────────


class TestAuthentication:
    def test_missing_header(self, client, manager):
        resp = _rpc(client, {"server": "fs", "method": "listTools"}, headers={})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}
        manager.list_tools.assert_not_called()

    def test_wrong_token(self, client):
        resp = _rpc(
            client, {"server": "fs", "method": "listTools"}, headers={"Authorization": "Bearer no"}
        )
        assert resp.status_code == 401

    def test_auth_checked_before_size(self, client):
        resp = client.post("/mcp-rpc", content=b"x" * 1024)
        assert resp.status_code == 401


# ── Request validation ───────────────────────────────────────────────────────


class TestRequestValidation:
    def test_declared_body_too_large(self, client):
        resp = client.post("/mcp-rpc", content=b"x" * 1024, headers=AUTH)
        assert resp.status_code == 413

    def test_streamed_body_too_large(self, client):
        chunks = iter([b"x" * 200, b"x" * 200])
        resp = client.post("/mcp-rpc", content=chunks, headers=AUTH)
        assert resp.status_code == 413

    def test_invalid_json(self, client):
        resp = client.post("/mcp-rpc", content=b"{nope", headers=AUTH)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON"

    @pytest.mark.parametrize(
        "body, message",
        [
            ({"server": "../etc", "method": "listTools"}, "Invalid server name"),
            ({"server": "a b", "method": "listTools"}, "Invalid server name"),
            ({"server": "fs\n", "method": "listTools"}, "Invalid server name"),
            ({"method": "listTools"}, "Invalid server name"),
            ({"server": "fs", "method": "deleteEverything"}, "Invalid method"),
            ({"server": "fs", "method": "listTools", "args": "x"}, "Invalid args: expected array"),
            ([1, 2], "Invalid request body"),
        ],
    )
    def test_malformed_request(self, client, manager, body, message):
        resp = _rpc(client, body)
        assert resp.status_code == 400
        assert resp.json()["error"] == message
        manager.list_tools.assert_not_called()

    def test_too_few_args(self, client, manager):
        resp = _rpc(client, {"server": "fs", "method": "callTool", "args": ["read_file"]})
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_ARGS_LENGTH"
        manager.call_tool.assert_not_called()

    def test_wrong_arg_type(self, client, manager):
        resp = _rpc(client, {"server": "fs", "method": "callTool", "args": [1, {}]})
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_ARGS"
        assert "tool name must be a string" in resp.json()["error"]

    def test_arguments_must_be_object(self, client):
        resp = _rpc(client, {"server": "fs", "method": "callTool", "args": ["t", [1]]})
        assert resp.status_code == 400
        assert "arguments must be an object" in resp.json()["error"]


# ── Dispatch ─────────────────────────────────────────────────────────────────


class TestDispatch:
    def test_call_tool(self, client, manager):
        resp = _rpc(
            client,
            {"server": "fs", "method": "callTool", "args": ["read_file", {"path": "/tmp/a"}]},
        )
        assert resp.status_code == 200
        assert resp.json() == {"result": {"content": [{"type": "text", "text": "ok"}]}}
        manager.call_tool.assert_awaited_once_with("fs", "read_file", {"path": "/tmp/a"})

    def test_list_tools_without_args(self, client, manager):
        resp = _rpc(client, {"server": "fs", "method": "listTools"})
        assert resp.json() == {"result": [{"name": "read_file"}]}
        manager.list_tools.assert_awaited_once_with("fs")

    def test_read_resource(self, client, manager):
        _rpc(client, {"server": "fs", "method": "readResource", "args": ["file:///a"]})
        manager.read_resource.assert_awaited_once_with("fs", "file:///a")

    def test_get_prompt_null_arguments(self, client, manager):
        _rpc(client, {"server": "fs", "method": "getPrompt", "args": ["summarize", None]})
        manager.get_prompt.assert_awaited_once_with("fs", "summarize", None)

    def test_proxy_error_is_200_with_code(self, client, manager):
        manager.list_tools.side_effect = ServerNotFoundError("ghost")
        resp = _rpc(client, {"server": "ghost", "method": "listTools"})
        assert resp.status_code == 200
        assert resp.json() == {
            "error": 'MCP server "ghost" not found',
            "code": "SERVER_NOT_FOUND",
        }

    def test_unexpected_error_is_call_failed(self, client, manager):
        manager.call_tool.side_effect = RuntimeError("tool exploded")
        resp = _rpc(client, {"server": "fs", "method": "callTool", "args": ["t", {}]})
        assert resp.status_code == 200
        assert resp.json() == {"error": "tool exploded", "code": "CALL_FAILED"}
