#!/usr/bin/env python3
"""
Tests for the remote HTTP transport and connectivity probes.

Remote endpoints are stubbed with httpx.MockTransport; the closed-port case
uses a real connection attempt.
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mcp_orchestrator import connectivity
from mcp_orchestrator.environment import command_exists
from mcp_orchestrator.errors import (
    CallTimeoutError,
    MalformedResponseError,
    RemoteUnreachableError,
    ToolCallError,
)
from mcp_orchestrator.remote import RemoteSession

CLOSED_PORT_URL = "http://127.0.0.1:9/mcp"


def json_rpc_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "GET":
        return httpx.Response(200, json={"status": "ok"})
    body = json.loads(request.content)
    if body["method"] == "tools/list":
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": [{"name": "search"}]}})
    if body["params"].get("name") == "broken":
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": 1, "message": "tool exploded"}})
    return httpx.Response(200, json={
        "jsonrpc": "2.0",
        "id": body["id"],
        "result": {"content": [{"type": "text", "text": json.dumps(body["params"]["arguments"])}]},
    })


class TestProbe:
    """Tests for probe_endpoint."""

    @pytest.mark.asyncio
    async def test_success(self):
        transport = httpx.MockTransport(json_rpc_handler)
        assert await connectivity.probe_endpoint("http://remote/mcp", transport=transport) == 200

    @pytest.mark.asyncio
    async def test_non_2xx(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        with pytest.raises(RemoteUnreachableError, match="503"):
            await connectivity.probe_endpoint("http://remote/mcp", transport=transport, server_name="api")

    @pytest.mark.asyncio
    async def test_redirect_is_not_followed(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(302, headers={"Location": "http://elsewhere/"})
        )
        with pytest.raises(RemoteUnreachableError):
            await connectivity.probe_endpoint("http://remote/mcp", transport=transport)

    @pytest.mark.asyncio
    async def test_headers_are_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(204)

        await connectivity.probe_endpoint(
            "http://remote/mcp", {"Authorization": "Bearer t"}, transport=httpx.MockTransport(handler)
        )
        assert seen["auth"] == "Bearer t"

    @pytest.mark.asyncio
    async def test_closed_port(self):
        with pytest.raises(RemoteUnreachableError):
            await connectivity.probe_endpoint(CLOSED_PORT_URL, timeout=5)

    @pytest.mark.asyncio
    async def test_remote_endpoint_result(self):
        result = await connectivity.test_remote_endpoint(
            "http://remote/mcp", transport=httpx.MockTransport(json_rpc_handler)
        )
        assert result["success"] is True
        assert result["http_status"] == 200

        result = await connectivity.test_remote_endpoint(CLOSED_PORT_URL, timeout=5)
        assert result["success"] is False
        assert "not accessible" in result["error"]


class TestCommandChecks:
    """Tests for stdio connectivity checks."""

    @pytest.mark.asyncio
    async def test_system_command_available(self):
        result = await connectivity.test_system_command(sys.executable)
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_system_command_missing(self):
        result = await connectivity.test_system_command("definitely-not-a-real-binary")
        assert result["success"] is False
        assert "not found" in result["error"]

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script")
    async def test_system_command_timeout_reaps_process(self, tmp_path):
        script = tmp_path / "hangs"
        script.write_text("#!/bin/sh\nexec sleep 30\n")
        script.chmod(0o755)

        result = await asyncio.wait_for(connectivity.test_system_command(str(script), timeout=0.2), timeout=10)

        assert result["success"] is False
        assert "No response" in result["error"]

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script")
    async def test_command_exists_timeout(self, tmp_path):
        script = tmp_path / "hangs"
        script.write_text("#!/bin/sh\nexec sleep 30\n")
        script.chmod(0o755)

        assert await asyncio.wait_for(command_exists(str(script), timeout=0.2), timeout=10) is False

    def test_bundled_executable(self, tmp_path):
        executable = tmp_path / "python-mcp-server-linux"
        executable.write_text("")

        assert connectivity.test_bundled_executable(str(executable))["success"] is True
        assert connectivity.test_bundled_executable(str(tmp_path / "missing"))["success"] is False


class TestRemoteSession:
    """Tests for RemoteSession."""

    def make_session(self, handler, timeout=5.0):
        return RemoteSession(
            "api",
            "http://remote/mcp",
            headers={"X-Api-Key": "k"},
            call_timeout=timeout,
            http_transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_initialized_without_handshake(self):
        session = self.make_session(json_rpc_handler)
        await session.ensure_initialized()
        assert session.initialized is True

    @pytest.mark.asyncio
    async def test_list_tools(self):
        session = self.make_session(json_rpc_handler)
        assert await session.list_tools() == [{"name": "search"}]

    @pytest.mark.asyncio
    async def test_call_tool_sends_envelope_and_headers(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return json_rpc_handler(request)

        session = self.make_session(handler)
        result = await session.call_tool("search", {"q": "mcp"}, call_id="r1")

        assert seen["body"] == {
            "jsonrpc": "2.0",
            "id": "r1",
            "method": "tools/call",
            "params": {"name": "search", "arguments": {"q": "mcp"}},
        }
        assert seen["headers"]["X-Api-Key"] == "k"
        assert seen["headers"]["Content-Type"] == "application/json"
        assert json.loads(result["content"][0]["text"]) == {"q": "mcp"}

    @pytest.mark.asyncio
    async def test_error_object(self):
        session = self.make_session(json_rpc_handler)
        with pytest.raises(ToolCallError, match="tool exploded"):
            await session.call_tool("broken")

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        session = self.make_session(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(RemoteUnreachableError, match="HTTP 500"):
            await session.call_tool("search")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        session = self.make_session(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(MalformedResponseError):
            await session.call_tool("search")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        session = self.make_session(handler)
        with pytest.raises(CallTimeoutError):
            await session.call_tool("search")

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        session = RemoteSession("down", CLOSED_PORT_URL, call_timeout=5.0)
        with pytest.raises(RemoteUnreachableError):
            await session.list_tools()
