#!/usr/bin/env python3
"""
CLI for mcp-orchestrator

Command-line interface for managing tool server definitions and calling
tools without running the HTTP control API. Useful for scripting and CI.

Usage:
  python cli.py list                                       # List servers and status
  python cli.py add fs --command npx --arg @modelcontextprotocol/server-filesystem --arg /tmp
  python cli.py add api --url https://example.com/mcp --header "Authorization=Bearer x"
  python cli.py remove fs                                  # Remove a definition
  python cli.py update fs --disable                        # Update a definition
  python cli.py update fs --patch '{"args": ["/srv"]}'     # Arbitrary JSON patch
  python cli.py test fs                                    # Connectivity test (does not start)
  python cli.py tools fs                                   # List tools (starts and stops the server)
  python cli.py call fs read_file --tool-args '{"path": "/tmp/a"}'
  python cli.py import ~/.config/Claude/claude_desktop_config.json
  python cli.py export --export-format markdown --output servers.md
  python cli.py templates                                  # Template catalog
  python cli.py diagnose                                   # Check node/npx availability
  python cli.py --format json list                         # JSON output
  python cli.py --config ./mcp_config.json list            # Custom config file
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add src directory to path
src_path = Path(__file__).parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from mcp_orchestrator.errors import InvalidDefinitionError, OrchestratorError
from mcp_orchestrator.orchestrator import Orchestrator

logger = logging.getLogger("mcp-orchestrator-cli")


def parse_pairs(values: Optional[List[str]], option: str) -> Dict[str, str]:
    """
    Parse repeated KEY=VALUE options.

    Raises:
        InvalidDefinitionError: An item has no '='
    """
    pairs = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise InvalidDefinitionError(f"Invalid {option} value '{item}' (expected KEY=VALUE)")
        pairs[key] = value
    return pairs


def parse_json_object(text: Optional[str], option: str) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidDefinitionError(f"Invalid JSON in {option}: {e}")
    if not isinstance(value, dict):
        raise InvalidDefinitionError(f"{option} must be a JSON object")
    return value


class OrchestratorCLI:
    """CLI interface for mcp-orchestrator."""

    def __init__(self, args, orchestrator: Optional[Orchestrator] = None):
        self.args = args
        self.orchestrator = orchestrator or Orchestrator.from_config_path(args.config)

    async def run(self) -> int:
        """Run the selected subcommand and return the exit code."""
        handler = getattr(self, f"cmd_{self.args.command.replace('-', '_')}")
        try:
            return await handler()
        except OrchestratorError as e:
            self.output_error(e)
            return 1

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def output(self, data: Any, text: Optional[str] = None):
        if self.args.format == "json":
            print(json.dumps(data, indent=2, default=str))
        else:
            print(text if text is not None else json.dumps(data, indent=2, default=str))

    def output_error(self, error: OrchestratorError):
        if self.args.format == "json":
            print(json.dumps({"success": False, "error": error.to_dict()}, indent=2))
        else:
            print(f"✗ {error.message}")
            for path in getattr(error, "attempted_paths", []):
                print(f"    tried: {path}")

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def cmd_list(self) -> int:
        servers = self.orchestrator.list_servers()
        lines = [f"{'NAME':<24} {'TYPE':<7} {'ENABLED':<8} TARGET", "-" * 80]
        for server in servers:
            config = server["config"]
            target = config.get("url") or " ".join([config.get("command") or ""] + list(config.get("args") or []))
            name = server["name"] + (" (system)" if server["system"] else "")
            enabled = "yes" if config.get("enabled", True) else "no"
            lines.append(f"{name:<24} {server['transport']:<7} {enabled:<8} {target}")
        self.output({"servers": servers}, "\n".join(lines))
        return 0

    async def cmd_add(self) -> int:
        args = self.args
        definition = {
            "name": args.name,
            "description": args.description or "",
            "enabled": not args.disabled,
        }
        if args.url:
            definition.update({"type": "remote", "url": args.url, "headers": parse_pairs(args.header, "--header")})
        else:
            definition.update({
                "type": "stdio",
                "command": args.server_command,
                "args": args.arg or [],
                "env": parse_pairs(args.env, "--env"),
            })

        added = await self.orchestrator.add_server(definition)
        self.output(
            {"success": True, "name": added.name, "config": added.to_dict()},
            f"✓ Added MCP server: {added.name} (type: {added.transport})",
        )
        return 0

    async def cmd_remove(self) -> int:
        await self.orchestrator.remove_server(self.args.name)
        self.output({"success": True, "name": self.args.name}, f"✓ Removed MCP server: {self.args.name}")
        return 0

    async def cmd_update(self) -> int:
        args = self.args
        patch = parse_json_object(args.patch, "--patch")
        if args.enable:
            patch["enabled"] = True
        if args.disable:
            patch["enabled"] = False
        if args.description is not None:
            patch["description"] = args.description
        if not patch:
            raise InvalidDefinitionError("Nothing to update (use --enable, --disable, --description or --patch)")

        updated = await self.orchestrator.update_server(args.name, patch)
        self.output(
            {"success": True, "name": updated.name, "config": updated.to_dict()},
            f"✓ Updated MCP server: {updated.name}",
        )
        return 0

    # ------------------------------------------------------------------
    # Connectivity and tools
    # ------------------------------------------------------------------

    async def cmd_test(self) -> int:
        result = await self.orchestrator.test_server(self.args.name)
        if result["success"]:
            text = f"✓ {self.args.name}: {result.get('message', 'OK')}"
        else:
            text = f"✗ {self.args.name}: {result.get('error')}"
        self.output(result, text)
        return 0 if result["success"] else 1

    async def _with_running(self, name: str, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a tool call, starting the server first and stopping it afterwards if needed."""
        started_here = False
        if self.orchestrator.get_handle(name) is None:
            await self.orchestrator.start_server(name)
            started_here = True
        try:
            return await self.orchestrator.execute_tool_call(name, tool, arguments)
        finally:
            if started_here:
                handle = self.orchestrator.get_handle(name)
                await self.orchestrator.stop_server(name)
                if handle is not None and handle.process is not None:
                    await handle.process.wait()

    async def cmd_tools(self) -> int:
        result = await self._with_running(self.args.name, "tools/list", {})
        if not result["success"]:
            self.output(result, f"✗ {result['error']}")
            return 1

        tools = result["content"][0]["data"]
        lines = [f"{len(tools)} tools on {self.args.name}:"]
        for tool in tools:
            lines.append(f"  {tool.get('name')}: {tool.get('description', '')}")
        self.output(result, "\n".join(lines))
        return 0

    async def cmd_call(self) -> int:
        arguments = parse_json_object(self.args.tool_args, "--tool-args")
        result = await self._with_running(self.args.name, self.args.tool, arguments)
        if not result["success"]:
            self.output(result, f"✗ {result['error']}")
            return 1

        texts = [item.get("text", json.dumps(item)) for item in result["content"] if isinstance(item, dict)]
        self.output(result, "\n".join(texts))
        return 1 if result["metadata"].get("is_error") else 0

    # ------------------------------------------------------------------
    # Import / export / catalog
    # ------------------------------------------------------------------

    async def cmd_import(self) -> int:
        result = self.orchestrator.import_from_external_config(self.args.path)
        lines = [f"✓ Imported {result['imported']} servers from {self.args.path}"]
        if result["skipped"]:
            lines.append(f"  Skipped (already defined): {', '.join(result['skipped'])}")
        for error in result["errors"]:
            lines.append(f"  ✗ {error['name']}: {error['error']}")
        self.output(result, "\n".join(lines))
        return 0

    async def cmd_export(self) -> int:
        result = self.orchestrator.export_configuration(
            format=self.args.export_format, servers=self.args.server or None
        )
        if self.args.output:
            with open(self.args.output, "w", encoding="utf-8") as f:
                f.write(result["content"])
            self.output(
                {"success": True, "output": self.args.output, "total_servers": result["total_servers"]},
                f"✓ Configuration exported to {self.args.output}",
            )
        else:
            self.output(result, result["content"])
        return 0

    async def cmd_templates(self) -> int:
        templates = self.orchestrator.list_templates()
        lines = []
        for template in templates:
            lines.append(f"{template['name']:<22} [{template['category']}] {template['description']}")
        self.output({"templates": templates}, "\n".join(lines))
        return 0

    async def cmd_diagnose(self) -> int:
        result = self.orchestrator.diagnose()
        lines = [
            "ENVIRONMENT DIAGNOSIS",
            "-" * 80,
            f"  node: {result['runtime_path'] or 'not found'}",
            f"  npm:  {result['tool_path'] or 'not found'}",
            f"  npx:  {result['secondary_tool_path'] or 'not found'}",
        ]
        if result["suggestions"]:
            lines.append("")
            lines.append("  Suggestions:")
            lines.extend(f"    - {s}" for s in result["suggestions"])
        self.output(result, "\n".join(lines))
        return 0 if result["runtime_available"] and result["secondary_tool_available"] else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CLI for mcp-orchestrator - manage tool servers and call tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help="Path to the server configuration file (default: ~/.mcp-orchestrator/mcp_config.json)"
    )
    parser.add_argument(
        "--format",
        choices=["json", "text"],
        default="text",
        help="Output format (default: text)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List servers and their status")

    add = sub.add_parser("add", help="Add a server definition")
    add.add_argument("name")
    target = add.add_mutually_exclusive_group(required=True)
    target.add_argument("--command", dest="server_command", help="Command for a stdio server")
    target.add_argument("--url", help="Endpoint URL for a remote server")
    add.add_argument("--arg", action="append", help="Command argument (repeatable)")
    add.add_argument("--env", action="append", metavar="KEY=VALUE", help="Environment variable (repeatable)")
    add.add_argument("--header", action="append", metavar="KEY=VALUE", help="HTTP header (repeatable)")
    add.add_argument("--description")
    add.add_argument("--disabled", action="store_true", help="Add the server disabled")

    remove = sub.add_parser("remove", help="Remove a server definition")
    remove.add_argument("name")

    update = sub.add_parser("update", help="Update a server definition")
    update.add_argument("name")
    toggle = update.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true")
    toggle.add_argument("--disable", action="store_true")
    update.add_argument("--description")
    update.add_argument("--patch", metavar="JSON", help="JSON object of fields to replace")

    test = sub.add_parser("test", help="Test connectivity without starting the server")
    test.add_argument("name")

    tools = sub.add_parser("tools", help="List the tools of a server")
    tools.add_argument("name")

    call = sub.add_parser("call", help="Call a tool")
    call.add_argument("name")
    call.add_argument("tool")
    call.add_argument("--tool-args", metavar="JSON", help="JSON arguments for the tool")

    imp = sub.add_parser("import", help="Import servers from an external tool config file")
    imp.add_argument("path")

    export = sub.add_parser("export", help="Export server definitions")
    export.add_argument(
        "--export-format",
        choices=["json", "yaml", "markdown"],
        default="json",
        help="Export format (default: json)"
    )
    export.add_argument("--server", action="append", help="Server to export (repeatable, default: all)")
    export.add_argument("--output", "-o", metavar="PATH", help="Write the export to a file")

    sub.add_parser("templates", help="List server templates")
    sub.add_parser("diagnose", help="Check node/npx/npm availability")

    return parser


async def main_async(argv=None) -> int:
    """Async entry point."""
    args = build_parser().parse_args(argv)

    # Adjust logging level if verbose
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    cli = OrchestratorCLI(args)
    return await cli.run()


def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.WARNING,  # Only show warnings/errors in CLI mode
        format='%(levelname)s: %(message)s'
    )
    try:
        exit_code = asyncio.run(main_async())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
