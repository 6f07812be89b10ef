#!/usr/bin/env python3
"""
Tests for process supervision with real child processes.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mcp_orchestrator.errors import CommandNotFoundError, ExecutableNotFoundError, NotRunningError, SpawnError
from mcp_orchestrator.models import ServerStatus, StdioServerDefinition
from mcp_orchestrator.paths import PathResolver
from mcp_orchestrator.process import ProcessSupervisor, ServerProcess
from mcp_orchestrator.protocol import StdioSession

FAKE_SERVER = str(Path(__file__).parent / "fake_stdio_server.py")


def make_supervisor(**kwargs):
    resolver = PathResolver(resource_dirs=[], exists=lambda p: False, system="Linux", machine="x86_64")
    return ProcessSupervisor(resolver, **kwargs)


class TestSpawnFailures:
    """Tests for launch errors."""

    @pytest.mark.asyncio
    async def test_missing_command(self):
        supervisor = make_supervisor()
        definition = StdioServerDefinition(name="ghost", command="definitely-not-a-real-binary")

        with pytest.raises(CommandNotFoundError):
            await supervisor.start(definition, on_stdout=lambda c: None, on_exit=lambda p, r: None)

    @pytest.mark.asyncio
    async def test_directory_is_spawn_error(self, tmp_path):
        supervisor = make_supervisor()
        definition = StdioServerDefinition(name="dir", command=str(tmp_path))

        with pytest.raises(SpawnError):
            await supervisor.start(definition, on_stdout=lambda c: None, on_exit=lambda p, r: None)

    @pytest.mark.asyncio
    async def test_unresolved_bundled_executable(self):
        supervisor = make_supervisor()
        definition = StdioServerDefinition(name="system", command="python-mcp-server")

        with pytest.raises(ExecutableNotFoundError):
            await supervisor.start(definition, on_stdout=lambda c: None, on_exit=lambda p, r: None)

    @pytest.mark.asyncio
    async def test_probed_command_missing(self):
        probe = AsyncMock(return_value=False)
        supervisor = make_supervisor(command_probe=probe)
        definition = StdioServerDefinition(name="fs", command="npx", args=["server-fs"])

        with pytest.raises(CommandNotFoundError, match="Node.js"):
            await supervisor.start(definition, on_stdout=lambda c: None, on_exit=lambda p, r: None)
        probe.assert_awaited_once_with("npx")

    @pytest.mark.asyncio
    async def test_write_before_spawn(self):
        process = ServerProcess("idle", sys.executable, [], {}, lambda c: None, lambda p, r: None)
        with pytest.raises(NotRunningError):
            await process.write(b"{}\n")


class TestLifecycle:
    """Tests for running, stopping and crashing processes."""

    @pytest.mark.asyncio
    async def test_session_over_real_process(self):
        supervisor = make_supervisor()
        definition = StdioServerDefinition(name="fake", command=sys.executable, args=[FAKE_SERVER])
        holder = {}

        async def write(data):
            await holder["process"].write(data)

        session = StdioSession("fake", write, handshake_timeout=5.0, call_timeout=5.0)
        process = await supervisor.start(definition, on_stdout=session.feed, on_exit=lambda p, r: None)
        holder["process"] = process

        try:
            assert process.status == ServerStatus.RUNNING
            tools = await session.list_tools()
            assert [t["name"] for t in tools] == ["echo", "hang", "crash"]

            result = await session.call_tool("echo", {"text": "hello"})
            assert result["content"][0]["text"] == "hello"
        finally:
            supervisor.stop(process)
            await asyncio.wait_for(process.wait(), timeout=10)

        assert process.is_alive is False

    @pytest.mark.asyncio
    async def test_exit_callback_on_crash(self):
        supervisor = make_supervisor()
        exited = asyncio.get_running_loop().create_future()
        definition = StdioServerDefinition(
            name="crasher", command=sys.executable, args=["-c", "import sys; sys.exit(4)"]
        )

        process = await supervisor.start(
            definition,
            on_stdout=lambda c: None,
            on_exit=lambda p, code: exited.set_result(code),
        )

        assert await asyncio.wait_for(exited, timeout=10) == 4
        assert process.status == ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_force_kill_after_grace_period(self):
        supervisor = make_supervisor(grace_period=0.2)
        script = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('up', flush=True); time.sleep(30)"
        started = asyncio.get_running_loop().create_future()
        definition = StdioServerDefinition(name="stubborn", command=sys.executable, args=["-c", script])

        def on_stdout(chunk):
            if not started.done():
                started.set_result(True)

        process = await supervisor.start(definition, on_stdout=on_stdout, on_exit=lambda p, r: None)
        await asyncio.wait_for(started, timeout=10)

        supervisor.stop(process)
        returncode = await asyncio.wait_for(process.wait(), timeout=10)

        assert returncode != 0
        assert process.is_alive is False

    @pytest.mark.asyncio
    async def test_env_overrides_reach_child(self):
        supervisor = make_supervisor()
        output = []
        line_seen = asyncio.get_running_loop().create_future()
        definition = StdioServerDefinition(
            name="env",
            command=sys.executable,
            args=["-c", "import os; print(os.environ['MCP_TEST_TOKEN'], flush=True)"],
            env={"MCP_TEST_TOKEN": "secret-value"},
        )

        def on_stdout(chunk):
            output.append(chunk)
            if b"\n" in b"".join(output) and not line_seen.done():
                line_seen.set_result(True)

        process = await supervisor.start(definition, on_stdout=on_stdout, on_exit=lambda p, r: None)
        await asyncio.wait_for(line_seen, timeout=10)
        await asyncio.wait_for(process.wait(), timeout=10)

        assert b"".join(output).strip() == b"secret-value"
