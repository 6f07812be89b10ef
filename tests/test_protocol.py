#!/usr/bin/env python3
"""
Tests for the stdio protocol engine.

Tests:
- Line reassembly across chunk boundaries
- Noise tolerance (non-JSON, malformed and unmatched lines)
- Correlation of concurrent calls by id
- Per-call timeouts that do not affect other calls
- Single-flight initialize handshake
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mcp_orchestrator.errors import (
    CallTimeoutError,
    HandshakeFailedError,
    HandshakeTimeoutError,
    ToolCallError,
)
from mcp_orchestrator.protocol import LineBuffer, StdioSession, parse_line


class FakeServer:
    """Captures what the session writes and lets a test answer it."""

    def __init__(self, auto_initialize=True):
        self.sent = []
        self.session = None
        self.auto_initialize = auto_initialize

    async def write(self, data: bytes):
        message = json.loads(data.decode("utf-8"))
        self.sent.append(message)
        if self.auto_initialize and message.get("method") == "initialize":
            self.reply(message["id"], {"protocolVersion": "2024-11-05", "serverInfo": {"name": "fake"}})

    def reply(self, call_id, result=None, error=None):
        message = {"jsonrpc": "2.0", "id": call_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result
        self.session.feed((json.dumps(message) + "\n").encode("utf-8"))

    def methods(self, name):
        return [m for m in self.sent if m.get("method") == name]


def make_session(server: FakeServer, handshake_timeout=1.0, call_timeout=1.0):
    session = StdioSession("fake", server.write, handshake_timeout=handshake_timeout, call_timeout=call_timeout)
    server.session = session
    return session


class TestLineBuffer:
    """Tests for LineBuffer."""

    def test_message_split_across_three_chunks(self):
        line = json.dumps({"jsonrpc": "2.0", "id": "1", "result": {"ok": True}}) + "\n"
        data = line.encode("utf-8")
        buffer = LineBuffer()

        assert buffer.feed(data[:10]) == []
        assert buffer.feed(data[10:25]) == []
        assert buffer.feed(data[25:]) == [line.strip()]
        assert buffer.pending == b""

    def test_multiple_lines_in_one_chunk(self):
        buffer = LineBuffer()
        assert buffer.feed(b"a\n\nb\nc") == ["a", "b"]
        assert buffer.feed(b"\n") == ["c"]

    def test_multibyte_character_split(self):
        data = '{"text": "héllo"}\n'.encode("utf-8")
        split = data.index("é".encode("utf-8")) + 1
        buffer = LineBuffer()

        buffer.feed(data[:split])
        assert buffer.feed(data[split:]) == ['{"text": "héllo"}']


class TestParseLine:
    """Tests for parse_line."""

    def test_non_json_line_skipped(self):
        assert parse_line("Server listening on stdio", "fake") is None

    def test_malformed_json_skipped(self):
        assert parse_line("{broken", "fake") is None

    def test_object_and_batch(self):
        assert parse_line('{"id": 1}') == {"id": 1}
        assert parse_line('[{"id": 1}]') == [{"id": 1}]


class TestCorrelation:
    """Tests for call id correlation."""

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self):
        server = FakeServer()
        session = make_session(server)

        first = asyncio.create_task(session.request("tools/call", {"name": "a"}, call_id="a"))
        second = asyncio.create_task(session.request("tools/call", {"name": "b"}, call_id="b"))
        await asyncio.sleep(0)

        server.reply("b", {"value": "B"})
        server.reply("a", {"value": "A"})

        assert (await first)["result"] == {"value": "A"}
        assert (await second)["result"] == {"value": "B"}
        assert session.pending_calls == []

    @pytest.mark.asyncio
    async def test_numeric_id_matches_string_id(self):
        server = FakeServer()
        session = make_session(server)

        task = asyncio.create_task(session.request("ping", call_id="7"))
        await asyncio.sleep(0)
        server.reply(7, {})

        assert (await task)["id"] == 7

    @pytest.mark.asyncio
    async def test_noise_is_ignored(self):
        server = FakeServer()
        session = make_session(server)

        task = asyncio.create_task(session.request("ping", call_id="x"))
        await asyncio.sleep(0)

        session.feed(b"starting server...\n")
        session.feed(b"{not json}\n")
        session.feed(b'{"jsonrpc": "2.0", "id": "unknown", "result": {}}\n')
        session.feed(b'{"jsonrpc": "2.0", "method": "notifications/progress"}\n')
        assert not task.done()

        server.reply("x", {"pong": True})
        assert (await task)["result"] == {"pong": True}

    @pytest.mark.asyncio
    async def test_duplicate_call_id_rejected(self):
        server = FakeServer()
        session = make_session(server)

        task = asyncio.create_task(session.request("ping", call_id="dup"))
        await asyncio.sleep(0)

        with pytest.raises(ValueError):
            await session.request("ping", call_id="dup")

        server.reply("dup", {})
        await task


class TestTimeouts:
    """Tests for per-call timeouts."""

    @pytest.mark.asyncio
    async def test_timeout_does_not_affect_other_calls(self):
        server = FakeServer()
        session = make_session(server)

        slow = asyncio.create_task(session.request("slow", call_id="slow", timeout=0.1))
        fast = asyncio.create_task(session.request("fast", call_id="fast", timeout=2.0))
        await asyncio.sleep(0)

        with pytest.raises(CallTimeoutError):
            await slow
        assert "slow" not in session.pending_calls

        server.reply("slow", {"late": True})
        server.reply("fast", {"ok": True})

        assert (await fast)["result"] == {"ok": True}

    @pytest.mark.asyncio
    async def test_late_response_is_dropped(self):
        server = FakeServer()
        session = make_session(server)

        with pytest.raises(CallTimeoutError):
            await session.request("slow", call_id="late", timeout=0.05)

        server.reply("late", {})
        assert session.pending_calls == []


class TestHandshake:
    """Tests for the initialize handshake."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_handshake(self):
        server = FakeServer()
        session = make_session(server)

        async def call(call_id):
            task = asyncio.create_task(session.call_tool("echo", {"text": call_id}, call_id=call_id))
            while call_id not in session.pending_calls:
                await asyncio.sleep(0.001)
            server.reply(call_id, {"content": [{"type": "text", "text": call_id}]})
            return await task

        results = await asyncio.gather(*(call(f"c{i}") for i in range(5)))

        assert len(server.methods("initialize")) == 1
        assert len(server.methods("notifications/initialized")) == 1
        assert [r["content"][0]["text"] for r in results] == [f"c{i}" for i in range(5)]
        assert session.initialized is True
        assert session.server_info["serverInfo"] == {"name": "fake"}

    @pytest.mark.asyncio
    async def test_initialize_params(self):
        server = FakeServer()
        session = make_session(server)

        await session.ensure_initialized()

        params = server.methods("initialize")[0]["params"]
        assert params["protocolVersion"] == "2024-11-05"
        assert params["capabilities"] == {"tools": {}, "resources": {}}
        assert params["clientInfo"]["name"] == "mcp-orchestrator"

    @pytest.mark.asyncio
    async def test_handshake_timeout_then_retry(self):
        server = FakeServer(auto_initialize=False)
        session = make_session(server, handshake_timeout=0.05)

        waiters = [asyncio.create_task(session.ensure_initialized()) for _ in range(3)]
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, HandshakeTimeoutError) for r in results)
        assert len(server.methods("initialize")) == 1
        assert session.initialized is False

        server.auto_initialize = True
        await session.ensure_initialized()
        assert len(server.methods("initialize")) == 2
        assert session.initialized is True

    @pytest.mark.asyncio
    async def test_handshake_error_response(self):
        server = FakeServer(auto_initialize=False)
        session = make_session(server)

        task = asyncio.create_task(session.ensure_initialized())
        while not server.methods("initialize"):
            await asyncio.sleep(0.001)
        server.reply(server.methods("initialize")[0]["id"], error={"code": -32600, "message": "unsupported"})

        with pytest.raises(HandshakeFailedError, match="unsupported"):
            await task

    @pytest.mark.asyncio
    async def test_on_initialized_callback(self):
        server = FakeServer()
        session = make_session(server)
        calls = []
        session.on_initialized = lambda: calls.append(True)

        await session.ensure_initialized()
        await session.ensure_initialized()

        assert calls == [True]


class TestCalls:
    """Tests for the call helpers."""

    @pytest.mark.asyncio
    async def test_error_object_raises_tool_call_error(self):
        server = FakeServer()
        session = make_session(server)

        task = asyncio.create_task(session.call_tool("missing", call_id="e1"))
        while "e1" not in session.pending_calls:
            await asyncio.sleep(0.001)
        server.reply("e1", error={"code": -32601, "message": "Unknown tool: missing"})

        with pytest.raises(ToolCallError, match="Unknown tool"):
            await task

    @pytest.mark.asyncio
    async def test_list_tools(self):
        server = FakeServer()
        session = make_session(server)

        task = asyncio.create_task(session.list_tools(call_id="t1"))
        while "t1" not in session.pending_calls:
            await asyncio.sleep(0.001)
        server.reply("t1", {"tools": [{"name": "echo"}]})

        assert await task == [{"name": "echo"}]

    @pytest.mark.asyncio
    async def test_call_tool_request_shape(self):
        server = FakeServer()
        session = make_session(server)

        task = asyncio.create_task(session.call_tool("echo", {"text": "hi"}, call_id="s1"))
        while "s1" not in session.pending_calls:
            await asyncio.sleep(0.001)
        server.reply("s1", {"content": []})
        await task

        request = server.methods("tools/call")[0]
        assert request == {
            "jsonrpc": "2.0",
            "id": "s1",
            "method": "tools/call",
            "params": {"name": "echo", "arguments": {"text": "hi"}},
        }
