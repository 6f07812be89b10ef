"""
Server definitions and runtime status types.

A definition is a tagged union over the transport: ``StdioServerDefinition``
needs a command, ``RemoteServerDefinition`` needs a URL. Both validate at
construction so an invalid definition never reaches the store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from mcp_orchestrator.errors import InvalidDefinitionError

STDIO = "stdio"
REMOTE = "remote"
TRANSPORTS = (STDIO, REMOTE)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_string_map(value) -> bool:
    return isinstance(value, dict) and all(isinstance(k, str) and isinstance(v, str) for k, v in value.items())


class ServerStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    INITIALIZED = "initialized"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class ServerDefinition:
    """Fields shared by all transports."""
    name: str
    description: str = ""
    enabled: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    transport = "unknown"

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name.strip():
            raise InvalidDefinitionError("Server name is required")
        if self.created_at is None:
            self.created_at = utc_now()
        self.validate()

    def validate(self):
        """Check transport-specific required fields."""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted (camelCase) format, without the name."""
        data = {
            "type": self.transport,
            "description": self.description,
            "enabled": self.enabled,
            "createdAt": self.created_at,
        }
        if self.updated_at:
            data["updatedAt"] = self.updated_at
        return data

    @staticmethod
    def from_dict(name: str, data: Dict[str, Any]) -> "ServerDefinition":
        """
        Build a definition from its persisted form.

        Accepts "type" or "transport" as the transport key; defaults to stdio.

        Raises:
            InvalidDefinitionError: Unknown transport or missing fields
        """
        if not isinstance(data, dict):
            raise InvalidDefinitionError(f"Definition for '{name}' must be an object", server=name)

        transport = data.get("type") or data.get("transport") or STDIO
        common = {
            "name": name,
            "description": data.get("description") or "",
            "enabled": bool(data.get("enabled", True)),
            "created_at": data.get("createdAt"),
            "updated_at": data.get("updatedAt"),
        }

        if transport == STDIO:
            return StdioServerDefinition(
                command=data.get("command"),
                args=data.get("args") or [],
                env=data.get("env") or {},
                **common,
            )
        if transport == REMOTE:
            return RemoteServerDefinition(
                url=data.get("url"),
                headers=data.get("headers") or {},
                **common,
            )
        raise InvalidDefinitionError(
            f"Unknown transport '{transport}' for server '{name}' (expected one of: {', '.join(TRANSPORTS)})",
            server=name,
        )


@dataclass
class StdioServerDefinition(ServerDefinition):
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    transport = STDIO

    def validate(self):
        if not isinstance(self.command, str) or not self.command.strip():
            raise InvalidDefinitionError(
                f"Command is required for stdio server '{self.name}'", server=self.name
            )
        if not isinstance(self.args, list) or not all(isinstance(arg, str) for arg in self.args):
            raise InvalidDefinitionError(
                f"Arguments for stdio server '{self.name}' must be a list of strings", server=self.name
            )
        if not is_string_map(self.env):
            raise InvalidDefinitionError(
                f"Environment for stdio server '{self.name}' must map strings to strings", server=self.name
            )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"command": self.command, "args": list(self.args), "env": dict(self.env)})
        return data


@dataclass
class RemoteServerDefinition(ServerDefinition):
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    transport = REMOTE

    def validate(self):
        if not isinstance(self.url, str) or not self.url.strip():
            raise InvalidDefinitionError(
                f"URL is required for remote server '{self.name}'", server=self.name
            )
        if not self.url.startswith(("http://", "https://")):
            raise InvalidDefinitionError(
                f"URL for remote server '{self.name}' must be http(s): {self.url}", server=self.name
            )
        if not is_string_map(self.headers):
            raise InvalidDefinitionError(
                f"Headers for remote server '{self.name}' must map strings to strings", server=self.name
            )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"url": self.url, "headers": dict(self.headers)})
        return data
