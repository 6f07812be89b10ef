"""
Configuration Export Module

Exports server definitions for backup, migration, and documentation.

Usage:
    from mcp_orchestrator.config_export import export_configurations

    # Export all definitions to JSON
    export = export_configurations(store.all(), format='json')
    print(export["content"])

    # Export specific servers as Markdown
    export = export_configurations(store.all(), format='markdown', servers=['filesystem'])
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import yaml

from mcp_orchestrator.errors import InvalidDefinitionError
from mcp_orchestrator.models import ServerDefinition

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "yaml", "markdown")
SENSITIVE_MARKERS = ("key", "secret", "token", "password", "authorization")


def export_configurations(
    definitions: Iterable[ServerDefinition],
    format: str = "json",
    servers: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Export server definitions in the specified format.

    Args:
        definitions: Definitions to export
        format: Export format ('json', 'yaml', 'markdown')
        servers: Names to export (None for all)

    Returns:
        {"format", "timestamp", "total_servers", "configuration", "content"}

    Raises:
        InvalidDefinitionError: Unsupported format
    """
    if format not in EXPORT_FORMATS:
        raise InvalidDefinitionError(
            f"Unsupported export format: {format} (expected one of {', '.join(EXPORT_FORMATS)})"
        )

    selected = {d.name: d.to_dict() for d in definitions if servers is None or d.name in servers}

    export_data = {
        "timestamp": datetime.now().isoformat(),
        "source": "mcp-orchestrator",
        "total_servers": len(selected),
        "configuration": {"mcpServers": selected},
    }

    if format == "json":
        content = export_to_json(export_data)
    elif format == "yaml":
        content = export_to_yaml(export_data)
    else:
        content = export_to_markdown(export_data)

    logger.info(f"Exported {len(selected)} server definitions ({format} format)")
    return {"format": format, **export_data, "content": content}


def export_to_json(export_data: Dict[str, Any], indent: int = 2) -> str:
    return json.dumps(export_data, indent=indent, ensure_ascii=False)


def export_to_yaml(export_data: Dict[str, Any]) -> str:
    return yaml.safe_dump(export_data, default_flow_style=False, sort_keys=False)


def _redact(key: str, value: Any) -> Any:
    if any(marker in key.lower() for marker in SENSITIVE_MARKERS):
        return "***REDACTED***"
    return value


def export_to_markdown(export_data: Dict[str, Any]) -> str:
    """
    Render export data as Markdown documentation.

    Environment variables and headers whose names look like credentials are
    masked; JSON and YAML exports keep them, since those are meant for
    re-import.
    """
    md_lines = [
        "# MCP Server Configuration Export",
        f"\n**Generated**: {export_data.get('timestamp', 'unknown')}",
        f"**Source**: {export_data.get('source', 'unknown')}",
        f"**Total Servers**: {export_data.get('total_servers', 0)}",
        "",
        "## Server Configurations",
        "",
    ]

    servers = export_data.get("configuration", {}).get("mcpServers", {})
    for server_name, server_config in servers.items():
        md_lines.append(f"### {server_name}")
        md_lines.append("")
        if server_config.get("description"):
            md_lines.append(server_config["description"])
            md_lines.append("")

        md_lines.append(f"**Type**: {server_config.get('type', 'stdio')}")
        md_lines.append(f"**Enabled**: {'yes' if server_config.get('enabled', True) else 'no'}")
        md_lines.append("")

        if server_config.get("command"):
            md_lines.append(f"**Command**: `{server_config['command']}`")
            md_lines.append("")

        args = server_config.get("args") or []
        if args:
            md_lines.append("**Arguments**:")
            md_lines.append("```")
            for arg in args:
                md_lines.append(f"  {arg}")
            md_lines.append("```")
            md_lines.append("")

        if server_config.get("url"):
            md_lines.append(f"**URL**: {server_config['url']}")
            md_lines.append("")

        for title, values in (("Environment Variables", server_config.get("env")),
                              ("Headers", server_config.get("headers"))):
            if not values:
                continue
            md_lines.append(f"**{title}**:")
            md_lines.append("")
            md_lines.append("| Name | Value |")
            md_lines.append("|------|-------|")
            for key, value in values.items():
                md_lines.append(f"| `{key}` | `{_redact(key, value)}` |")
            md_lines.append("")

        md_lines.append("---")
        md_lines.append("")

    return "\n".join(md_lines)
