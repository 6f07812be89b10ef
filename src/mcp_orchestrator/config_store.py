"""
Persistent store of server definitions.

File format (JSON):

    {
      "mcpServers": {"<name>": {"type": "stdio", "command": ..., ...}},
      "lastRunningServers": ["<name>", ...]
    }

The store is authoritative in memory. Disk failures are logged and never
roll back an in-memory change; the next successful save writes everything.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_orchestrator.errors import (
    AlreadyExistsError,
    ConfigPersistenceError,
    ExecutableNotFoundError,
    InvalidDefinitionError,
    NotFoundError,
    OrchestratorError,
    ProtectedResourceError,
)
from mcp_orchestrator.models import (
    REMOTE,
    STDIO,
    ServerDefinition,
    StdioServerDefinition,
    utc_now,
)
from mcp_orchestrator.paths import PathResolver

logger = logging.getLogger(__name__)

SYSTEM_SERVER_NAME = "python-mcp"
SYSTEM_SERVER_COMMAND = "python-mcp-server"
IMPORTED_DESCRIPTION = "Imported from external config"


class ConfigStore:
    """Named server definitions plus the last-known running set."""

    def __init__(self, config_path, resolver: Optional[PathResolver] = None):
        self.config_path = Path(config_path)
        self.resolver = resolver or PathResolver()
        self._servers: Dict[str, ServerDefinition] = {}
        self._unparsed: Dict[str, Any] = {}
        self._last_running: List[str] = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load definitions from disk, then make sure the system server exists."""
        self._servers = {}
        self._unparsed = {}
        self._last_running = []

        if not self.config_path.exists():
            logger.info(f"No server configuration at {self.config_path}, creating a new one")
            self.ensure_system_server()
            return

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to load server configuration from {self.config_path}: {e}")
            self._quarantine()
            self.ensure_system_server()
            return

        if not isinstance(data, dict):
            logger.error(f"Server configuration at {self.config_path} is not a JSON object, ignoring it")
            self._quarantine()
            self.ensure_system_server()
            return

        servers = data.get("mcpServers") or {}
        if not isinstance(servers, dict):
            logger.error(f"Server configuration at {self.config_path} has a malformed mcpServers section, ignoring it")
            self._quarantine()
            self.ensure_system_server()
            return

        for name, raw in servers.items():
            try:
                self._servers[name] = ServerDefinition.from_dict(name, raw)
            except InvalidDefinitionError as e:
                logger.warning(f"Keeping unparseable definition '{name}' as-is: {e}")
                self._unparsed[name] = raw

        last_running = data.get("lastRunningServers") or []
        if not isinstance(last_running, list):
            logger.warning(f"Ignoring malformed lastRunningServers in {self.config_path}")
            last_running = []
        self._last_running = [name for name in last_running if isinstance(name, str)]

        logger.debug(f"Loaded {len(self._servers)} server definitions from {self.config_path}")
        self.ensure_system_server()

    def _quarantine(self) -> None:
        """Move an unreadable config file aside so the next save does not destroy it."""
        backup = self.config_path.with_name(self.config_path.name + ".corrupt")
        try:
            os.replace(self.config_path, backup)
            logger.warning(f"Moved unreadable server configuration to {backup}")
        except OSError as e:
            logger.error(f"Could not move unreadable configuration aside: {e}")

    def to_dict(self) -> Dict[str, Any]:
        servers = {name: definition.to_dict() for name, definition in self._servers.items()}
        servers.update(self._unparsed)
        return {"mcpServers": servers, "lastRunningServers": list(self._last_running)}

    def save(self) -> bool:
        """
        Write the configuration atomically (temp file + rename).

        Returns:
            True on success; False if the write failed (the error is logged)
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.config_path.name}.", suffix=".tmp", dir=str(self.config_path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.config_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            error = ConfigPersistenceError(f"Failed to save server configuration to {self.config_path}: {e}")
            logger.error(error.message)
            return False

        logger.debug(f"Saved server configuration to {self.config_path}")
        return True

    # ------------------------------------------------------------------
    # System-owned definition
    # ------------------------------------------------------------------

    def ensure_system_server(self) -> bool:
        """
        Synthesize the system-owned definition if it is missing.

        Returns:
            True if the definition had to be created
        """
        if SYSTEM_SERVER_NAME in self._servers:
            return False

        self._unparsed.pop(SYSTEM_SERVER_NAME, None)
        logger.info(f"System server '{SYSTEM_SERVER_NAME}' missing, restoring it")

        try:
            command = self.resolver.resolve(SYSTEM_SERVER_COMMAND)
            definition = StdioServerDefinition(
                name=SYSTEM_SERVER_NAME,
                command=command,
                description="Bundled Python MCP server - always available",
                enabled=True,
            )
        except ExecutableNotFoundError as e:
            logger.warning(f"Bundled system server not found, creating it disabled: {e.message}")
            definition = StdioServerDefinition(
                name=SYSTEM_SERVER_NAME,
                command=SYSTEM_SERVER_COMMAND,
                description="Bundled Python MCP server - always available (path unresolved)",
                enabled=False,
            )

        self._servers[SYSTEM_SERVER_NAME] = definition
        self.save()
        return True

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        return name in self._servers

    def get(self, name: str) -> ServerDefinition:
        """
        Raises:
            NotFoundError: No definition with that name
        """
        definition = self._servers.get(name)
        if definition is None:
            raise NotFoundError(f"MCP server '{name}' not found", server=name)
        return definition

    def all(self) -> List[ServerDefinition]:
        return list(self._servers.values())

    def add(self, definition: ServerDefinition) -> ServerDefinition:
        """
        Raises:
            AlreadyExistsError: The name is taken
        """
        if definition.name in self._servers or definition.name in self._unparsed:
            raise AlreadyExistsError(f"MCP server '{definition.name}' already exists", server=definition.name)

        self._servers[definition.name] = definition
        self.save()
        logger.info(f"Added MCP server: {definition.name} (type: {definition.transport})")
        return definition

    def check_removable(self, name: str) -> None:
        """
        Raises:
            ProtectedResourceError: name is the system-owned server
            NotFoundError: No definition with that name
        """
        if name == SYSTEM_SERVER_NAME:
            logger.warning(f"Attempted to delete the system server ({name}) - operation blocked")
            raise ProtectedResourceError(
                f"MCP server '{name}' is a system-required component and cannot be deleted", server=name
            )
        if name not in self._servers and name not in self._unparsed:
            raise NotFoundError(f"MCP server '{name}' not found", server=name)

    def remove(self, name: str) -> None:
        self.check_removable(name)
        self._servers.pop(name, None)
        self._unparsed.pop(name, None)
        self.save()
        logger.info(f"Removed MCP server: {name}")

    def merge(self, name: str, patch: Dict[str, Any]) -> ServerDefinition:
        """
        Build the definition an update would produce, without storing it.

        Args:
            name: Server to update
            patch: Fields in persisted (camelCase) form, e.g. {"enabled": False}

        Raises:
            NotFoundError: No definition with that name
            InvalidDefinitionError: The patched definition is invalid
        """
        current = self.get(name)
        if "name" in patch and patch["name"] != name:
            raise InvalidDefinitionError(f"Renaming server '{name}' is not supported", server=name)

        merged = current.to_dict()
        merged.update({k: v for k, v in patch.items() if k != "name"})
        if "transport" in patch and "type" not in patch:
            merged["type"] = patch["transport"]
        merged["createdAt"] = current.created_at
        merged["updatedAt"] = utc_now()

        return ServerDefinition.from_dict(name, merged)

    def update(self, name: str, patch: Dict[str, Any]) -> ServerDefinition:
        """Replace the provided fields of a definition and stamp updatedAt."""
        updated = self.merge(name, patch)
        self._servers[name] = updated
        self.save()
        logger.info(f"Updated MCP server: {name}")
        return updated

    # ------------------------------------------------------------------
    # Running-state snapshot
    # ------------------------------------------------------------------

    def snapshot_running(self, names: List[str]) -> bool:
        deduped = list(dict.fromkeys(names))
        self._last_running = deduped
        logger.info(f"Saved running state: {len(deduped)} servers were running")
        return self.save()

    def last_running(self) -> List[str]:
        return list(self._last_running)

    # ------------------------------------------------------------------
    # External import
    # ------------------------------------------------------------------

    def import_external(self, path) -> Dict[str, Any]:
        """
        Import server definitions from an external tool-config file.

        Supports both formats:
        - Nested format: { "mcpServers": { "server-name": {...} } }
        - Flat format: { "server-name": {...} }

        Names already present are skipped; invalid entries are reported
        per item and never abort the import.

        Raises:
            NotFoundError: The file does not exist
            InvalidDefinitionError: The file is not a JSON object
        """
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"External config file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidDefinitionError(f"Failed to parse external config {path}: {e}")

        if not isinstance(config, dict):
            raise InvalidDefinitionError(f"External config {path} must be a JSON object")

        servers = config["mcpServers"] if "mcpServers" in config else config
        if not isinstance(servers, dict):
            raise InvalidDefinitionError(f"'mcpServers' in {path} must be an object")

        imported = 0
        skipped: List[str] = []
        errors: List[Dict[str, str]] = []

        for name, raw in servers.items():
            if name in self._servers or name in self._unparsed:
                skipped.append(name)
                continue
            try:
                definition = ServerDefinition.from_dict(name, _external_entry(raw))
            except OrchestratorError as e:
                errors.append({"name": name, "error": e.message})
                continue
            self._servers[name] = definition
            imported += 1

        if imported:
            self.save()

        logger.info(f"Imported {imported} servers from {path} ({len(skipped)} skipped, {len(errors)} errors)")
        return {"imported": imported, "skipped": skipped, "errors": errors}


def _external_entry(raw: Any) -> Dict[str, Any]:
    """Normalize a third-party server entry to our persisted format."""
    if not isinstance(raw, dict):
        raise InvalidDefinitionError("Server entry must be an object")

    transport = raw.get("transport")
    url = raw.get("url")
    if isinstance(transport, dict):
        url = url or transport.get("url")

    entry: Dict[str, Any] = {"description": raw.get("description") or IMPORTED_DESCRIPTION, "enabled": True}
    if url and not raw.get("command"):
        entry.update({"type": REMOTE, "url": url, "headers": raw.get("headers") or {}})
    else:
        entry.update({
            "type": STDIO,
            "command": raw.get("command"),
            "args": raw.get("args") or [],
            "env": raw.get("env") or {},
        })
    return entry
