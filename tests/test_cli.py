#!/usr/bin/env python3
"""
Tests for the command-line interface.
"""

import json
import sys
from pathlib import Path

import pytest

# Add src and project root to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli import OrchestratorCLI, build_parser, parse_pairs
from mcp_orchestrator.config_store import SYSTEM_SERVER_NAME, ConfigStore
from mcp_orchestrator.errors import InvalidDefinitionError
from mcp_orchestrator.orchestrator import Orchestrator
from mcp_orchestrator.paths import PathResolver

FAKE_SERVER = str(Path(__file__).parent / "fake_stdio_server.py")


@pytest.fixture
def orchestrator(tmp_path):
    resolver = PathResolver(resource_dirs=[], exists=lambda p: False, system="Linux", machine="x86_64")
    store = ConfigStore(tmp_path / "mcp_config.json", resolver=resolver)
    store.load()
    return Orchestrator(store, handshake_timeout=10.0, call_timeout=10.0, probe_timeout=5.0)


async def run_cli(orchestrator, *argv):
    args = build_parser().parse_args(list(argv))
    return await OrchestratorCLI(args, orchestrator=orchestrator).run()


class TestParsing:
    """Tests for argument helpers."""

    def test_parse_pairs(self):
        assert parse_pairs(["A=1", "B=x=y"], "--env") == {"A": "1", "B": "x=y"}

    def test_parse_pairs_rejects_missing_equals(self):
        with pytest.raises(InvalidDefinitionError):
            parse_pairs(["oops"], "--env")

    def test_add_requires_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["add", "x"])


class TestCommands:
    """Tests for CLI subcommands."""

    @pytest.mark.asyncio
    async def test_add_and_list(self, orchestrator, capsys):
        code = await run_cli(
            orchestrator, "add", "fake", "--command", sys.executable, "--arg", FAKE_SERVER, "--env", "A=1"
        )
        assert code == 0
        assert orchestrator.store.get("fake").env == {"A": "1"}

        capsys.readouterr()
        assert await run_cli(orchestrator, "--format", "json", "list") == 0
        data = json.loads(capsys.readouterr().out)
        assert {s["name"] for s in data["servers"]} == {"fake", SYSTEM_SERVER_NAME}

    @pytest.mark.asyncio
    async def test_add_remote(self, orchestrator):
        code = await run_cli(
            orchestrator, "add", "api", "--url", "https://example.com/mcp", "--header", "Authorization=Bearer t"
        )
        assert code == 0
        assert orchestrator.store.get("api").headers == {"Authorization": "Bearer t"}

    @pytest.mark.asyncio
    async def test_remove_system_server_fails(self, orchestrator, capsys):
        code = await run_cli(orchestrator, "remove", SYSTEM_SERVER_NAME)

        assert code == 1
        assert "cannot be deleted" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_update_disable(self, orchestrator):
        await run_cli(orchestrator, "add", "fake", "--command", sys.executable)

        assert await run_cli(orchestrator, "update", "fake", "--disable") == 0
        assert orchestrator.store.get("fake").enabled is False

    @pytest.mark.asyncio
    async def test_update_without_changes(self, orchestrator):
        await run_cli(orchestrator, "add", "fake", "--command", sys.executable)
        assert await run_cli(orchestrator, "update", "fake") == 1

    @pytest.mark.asyncio
    async def test_tools_starts_and_stops(self, orchestrator, capsys):
        await run_cli(orchestrator, "add", "fake", "--command", sys.executable, "--arg", FAKE_SERVER)
        capsys.readouterr()

        code = await run_cli(orchestrator, "tools", "fake")

        assert code == 0
        assert "echo" in capsys.readouterr().out
        assert orchestrator.running_servers() == []

    @pytest.mark.asyncio
    async def test_call(self, orchestrator, capsys):
        await run_cli(orchestrator, "add", "fake", "--command", sys.executable, "--arg", FAKE_SERVER)
        capsys.readouterr()

        code = await run_cli(orchestrator, "call", "fake", "echo", "--tool-args", '{"text": "from cli"}')

        assert code == 0
        assert capsys.readouterr().out.strip() == "from cli"

    @pytest.mark.asyncio
    async def test_call_missing_server(self, orchestrator):
        assert await run_cli(orchestrator, "call", "nope", "echo") == 1

    @pytest.mark.asyncio
    async def test_export_to_file(self, orchestrator, tmp_path):
        await run_cli(orchestrator, "add", "fake", "--command", sys.executable)
        output = tmp_path / "servers.md"

        code = await run_cli(orchestrator, "export", "--export-format", "markdown", "--output", str(output))

        assert code == 0
        assert "### fake" in output.read_text()

    @pytest.mark.asyncio
    async def test_import(self, orchestrator, tmp_path, capsys):
        external = tmp_path / "external.json"
        external.write_text(json.dumps({"git": {"command": "uvx", "args": ["mcp-server-git"]}}))

        assert await run_cli(orchestrator, "import", str(external)) == 0
        assert "Imported 1 servers" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_templates(self, orchestrator, capsys):
        assert await run_cli(orchestrator, "templates") == 0
        assert "filesystem" in capsys.readouterr().out
