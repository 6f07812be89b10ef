"""
Tool server orchestrator.

The single entry point callers use. Composes the config store, the process
supervisor and the protocol sessions into server lifecycle operations and
tool calls.

Usage:
    orchestrator = Orchestrator.from_config_path()

    await orchestrator.start_server("filesystem")
    result = await orchestrator.execute_tool_call("filesystem", "tools/list")

    orchestrator.save_running_state()
    await orchestrator.stop_all()
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Union

import httpx

from mcp_orchestrator import connectivity, env_config, environment
from mcp_orchestrator.config_export import export_configurations
from mcp_orchestrator.config_store import SYSTEM_SERVER_NAME, ConfigStore
from mcp_orchestrator.errors import (
    AlreadyRunningError,
    ExecutableNotFoundError,
    HandshakeFailedError,
    HandshakeTimeoutError,
    InvalidDefinitionError,
    NotRunningError,
    OrchestratorError,
)
from mcp_orchestrator.models import (
    REMOTE,
    RemoteServerDefinition,
    ServerDefinition,
    ServerStatus,
    utc_now,
)
from mcp_orchestrator.process import ProcessSupervisor, ServerProcess
from mcp_orchestrator.protocol import StdioSession
from mcp_orchestrator.remote import RemoteSession
from mcp_orchestrator.response import ErrorCodes
from mcp_orchestrator.templates import list_templates

logger = logging.getLogger(__name__)

RESTART_DELAY_SECONDS = 1.0
TOOLS_LIST = "tools/list"
ACTIVE_STATUSES = (ServerStatus.RUNNING, ServerStatus.INITIALIZED)


@dataclass
class RunningServer:
    """In-memory handle of a started server."""
    name: str
    definition: ServerDefinition
    transport: str
    session: Optional[Union[StdioSession, RemoteSession]] = None
    process: Optional[ServerProcess] = None
    status: ServerStatus = ServerStatus.STARTING
    started_at: str = field(default_factory=utc_now)
    last_error: Optional[str] = None

    @property
    def initialized(self) -> bool:
        return bool(self.session and self.session.initialized)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def write(self, data: bytes) -> None:
        if self.process is None:
            raise NotRunningError(f"MCP server '{self.name}' is not running", server=self.name)
        await self.process.write(data)

    def mark_initialized(self) -> None:
        if self.status == ServerStatus.RUNNING:
            self.status = ServerStatus.INITIALIZED


class Orchestrator:
    """Supervises tool servers defined in a ConfigStore."""

    def __init__(
        self,
        store: ConfigStore,
        supervisor: Optional[ProcessSupervisor] = None,
        handshake_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        restart_delay: float = RESTART_DELAY_SECONDS,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.resolver = store.resolver
        self.supervisor = supervisor or ProcessSupervisor(self.resolver)
        self.handshake_timeout = handshake_timeout if handshake_timeout is not None else env_config.handshake_timeout()
        self.call_timeout = call_timeout if call_timeout is not None else env_config.call_timeout()
        self.probe_timeout = probe_timeout if probe_timeout is not None else env_config.probe_timeout()
        self.restart_delay = restart_delay
        self.http_transport = http_transport
        self._running: Dict[str, RunningServer] = {}

    @classmethod
    def from_config_path(cls, config_path=None, **kwargs) -> "Orchestrator":
        """Create an orchestrator over a loaded store (default: MCP_ORCHESTRATOR_CONFIG)."""
        store = ConfigStore(config_path or env_config.default_config_path())
        store.load()
        return cls(store, **kwargs)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def add_server(self, definition: Union[ServerDefinition, Dict[str, Any]]) -> ServerDefinition:
        """
        Add a server definition.

        Args:
            definition: A ServerDefinition, or a dict in persisted form with a "name" key

        Raises:
            AlreadyExistsError, InvalidDefinitionError
        """
        if isinstance(definition, dict):
            data = dict(definition)
            name = data.pop("name", None)
            if not isinstance(name, str):
                raise InvalidDefinitionError("Server name is required")
            data.pop("createdAt", None)
            data.pop("updatedAt", None)
            definition = ServerDefinition.from_dict(name, data)
        return self.store.add(definition)

    async def remove_server(self, name: str) -> bool:
        """
        Stop (if running) and delete a server definition.

        Raises:
            ProtectedResourceError, NotFoundError
        """
        self.store.check_removable(name)
        await self.stop_server(name)
        self.store.remove(name)
        return True

    async def update_server(self, name: str, patch: Dict[str, Any]) -> ServerDefinition:
        """
        Update a definition; a running server is stopped and, if still enabled, restarted.

        Raises:
            NotFoundError, InvalidDefinitionError, and start errors on restart
        """
        self.store.merge(name, patch)

        was_running = name in self._running
        if was_running:
            await self.stop_server(name)

        updated = self.store.update(name, patch)

        if was_running and updated.enabled:
            await self.start_server(name)
        return updated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_server(self, name: str) -> RunningServer:
        """
        Start a server.

        Raises:
            NotFoundError: Unknown server
            AlreadyRunningError: A handle already exists for the name
            RemoteUnreachableError: Remote probe failed
            ExecutableNotFoundError, CommandNotFoundError, SpawnError: stdio launch failed
        """
        definition = self.store.get(name)
        if name in self._running:
            raise AlreadyRunningError(f"MCP server '{name}' is already running", server=name)

        handle = RunningServer(name=name, definition=definition, transport=definition.transport)
        self._running[name] = handle

        try:
            if definition.transport == REMOTE:
                await self._start_remote(handle)
            else:
                await self._start_stdio(handle)
        except Exception as e:
            handle.status = ServerStatus.ERROR
            handle.last_error = str(e)
            if self._running.get(name) is handle:
                del self._running[name]
            logger.error(f"Error starting MCP server '{name}': {e}")
            raise

        return handle

    async def _start_remote(self, handle: RunningServer) -> None:
        definition: RemoteServerDefinition = handle.definition
        logger.info(f"Connecting to remote MCP server: {handle.name} at {definition.url}")
        await connectivity.probe_endpoint(
            definition.url,
            definition.headers,
            timeout=self.probe_timeout,
            transport=self.http_transport,
            server_name=handle.name,
        )
        self._check_still_current(handle)
        handle.session = RemoteSession(
            handle.name,
            definition.url,
            definition.headers,
            call_timeout=self.call_timeout,
            http_transport=self.http_transport,
        )
        handle.status = ServerStatus.RUNNING
        logger.info(f"Connected to remote MCP server: {handle.name}")

    async def _start_stdio(self, handle: RunningServer) -> None:
        session = StdioSession(
            handle.name,
            write=handle.write,
            handshake_timeout=self.handshake_timeout,
            call_timeout=self.call_timeout,
        )
        session.on_initialized = handle.mark_initialized
        handle.session = session
        handle.process = await self.supervisor.start(
            handle.definition,
            on_stdout=session.feed,
            on_exit=partial(self._on_process_exit, handle),
        )
        self._check_still_current(handle)
        handle.status = ServerStatus.RUNNING

    def _check_still_current(self, handle: RunningServer) -> None:
        """Raise if a stop removed the handle while it was starting, terminating anything it spawned."""
        if self._running.get(handle.name) is handle:
            return
        if handle.process is not None:
            self.supervisor.stop(handle.process)
        raise NotRunningError(f"MCP server '{handle.name}' was stopped while starting", server=handle.name)

    def _on_process_exit(self, handle: RunningServer, process: ServerProcess, returncode: Optional[int]) -> None:
        handle.status = ServerStatus.STOPPED
        if self._running.get(handle.name) is handle:
            del self._running[handle.name]
            logger.warning(f"MCP server '{handle.name}' exited unexpectedly with code {returncode}")

    async def stop_server(self, name: str) -> bool:
        """
        Stop a server. Returns once termination is requested, not when the process exits.

        Returns:
            False if the server was not running
        """
        handle = self._running.pop(name, None)
        if handle is None:
            return False

        if handle.transport == REMOTE:
            logger.info(f"Disconnected from remote MCP server: {name}")
        elif handle.process is not None:
            self.supervisor.stop(handle.process)
        handle.status = ServerStatus.STOPPED
        return True

    async def restart_server(self, name: str) -> RunningServer:
        await self.stop_server(name)
        await asyncio.sleep(self.restart_delay)
        return await self.start_server(name)

    async def start_all_enabled(self) -> List[Dict[str, Any]]:
        """Start every enabled server; one failure never stops the others."""
        results = []
        for definition in self.store.all():
            if not definition.enabled:
                continue
            results.append(await self._attempt(definition.name, self.start_server))
        return results

    async def stop_all(self) -> List[Dict[str, Any]]:
        results = []
        for name in list(self._running):
            results.append(await self._attempt(name, self.stop_server))
        return results

    async def _attempt(self, name: str, operation) -> Dict[str, Any]:
        try:
            await operation(name)
            return {"name": name, "success": True}
        except Exception as e:
            logger.error(f"MCP server '{name}' operation {operation.__name__} failed: {e}")
            return {
                "name": name,
                "success": False,
                "error": getattr(e, "message", str(e)),
                "error_code": getattr(e, "code", ErrorCodes.UNEXPECTED_EXCEPTION),
            }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_handle(self, name: str) -> Optional[RunningServer]:
        return self._running.get(name)

    def running_servers(self) -> List[str]:
        return list(self._running)

    def get_server_status(self, name: str) -> Optional[Dict[str, Any]]:
        """Status of one server, or None if it is not defined."""
        if not self.store.exists(name):
            return None
        return self._status(self.store.get(name))

    def list_servers(self) -> List[Dict[str, Any]]:
        self.store.ensure_system_server()
        return [self._status(definition) for definition in self.store.all()]

    def _status(self, definition: ServerDefinition) -> Dict[str, Any]:
        handle = self._running.get(definition.name)
        return {
            "name": definition.name,
            "config": definition.to_dict(),
            "transport": definition.transport,
            "is_running": handle is not None,
            "status": handle.status.value if handle else ServerStatus.STOPPED.value,
            "started_at": handle.started_at if handle else None,
            "initialized": handle.initialized if handle else False,
            "error": handle.last_error if handle else None,
            "pid": handle.pid if handle else None,
            "system": definition.name == SYSTEM_SERVER_NAME,
        }

    def list_templates(self) -> List[Dict[str, Any]]:
        return list_templates()

    def diagnose(self) -> Dict[str, Any]:
        return environment.diagnose()

    # ------------------------------------------------------------------
    # Connectivity test
    # ------------------------------------------------------------------

    async def test_server(self, name: str) -> Dict[str, Any]:
        """
        Check that a server could be reached or launched, without starting it.

        Raises:
            NotFoundError: Unknown server
        """
        definition = self.store.get(name)

        if definition.transport == REMOTE:
            return await connectivity.test_remote_endpoint(
                definition.url, definition.headers, timeout=self.probe_timeout, transport=self.http_transport
            )

        try:
            resolved = self.resolver.resolve(definition.command)
        except ExecutableNotFoundError as e:
            return {"success": False, "error": e.message, "attempted_paths": e.attempted_paths}

        if resolved != definition.command:
            return connectivity.test_bundled_executable(resolved)
        return await connectivity.test_system_command(resolved, timeout=self.probe_timeout)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def execute_tool_call(
        self,
        server: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
        call_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Execute a tool (or "tools/list") on a running server.

        Failures are reported in the result, never raised.

        Returns:
            {"call_id", "success", "content" | "error", "error_code"?, "metadata"}
        """
        call_id = str(call_id) if call_id is not None else str(uuid.uuid4())
        handle = self._running.get(server)
        if handle is None or handle.status not in ACTIVE_STATUSES or handle.session is None:
            return self._call_failure(call_id, server, tool, NotRunningError(f"Server {server} is not running"))

        metadata = {"server": server, "tool": tool, "type": handle.transport}

        try:
            if tool == TOOLS_LIST:
                tools = await handle.session.list_tools(call_id=call_id)
                content = [{"type": "json", "text": json.dumps(tools), "data": tools}]
            else:
                result = await handle.session.call_tool(tool, arguments, call_id=call_id)
                content = _tool_content(result)
                if isinstance(result, dict) and result.get("isError"):
                    metadata["is_error"] = True
        except (HandshakeTimeoutError, HandshakeFailedError) as e:
            handle.last_error = e.message
            return self._call_failure(call_id, server, tool, e)
        except OrchestratorError as e:
            return self._call_failure(call_id, server, tool, e)
        except ValueError as e:
            return self._call_failure(call_id, server, tool, InvalidDefinitionError(str(e), server=server))

        metadata["executed_at"] = utc_now()
        return {"call_id": call_id, "success": True, "content": content, "metadata": metadata}

    def _call_failure(self, call_id: str, server: str, tool: str, error: OrchestratorError) -> Dict[str, Any]:
        logger.error(f"[{server}] Tool call {tool} (id={call_id}) failed: {error.message}")
        return {
            "call_id": call_id,
            "success": False,
            "error": error.message,
            "error_code": error.code,
            "metadata": {"server": server, "tool": tool, "executed_at": utc_now()},
        }

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def import_from_external_config(self, path) -> Dict[str, Any]:
        return self.store.import_external(path)

    def export_configuration(self, format: str = "json", servers: Optional[List[str]] = None) -> Dict[str, Any]:
        return export_configurations(self.store.all(), format=format, servers=servers)

    # ------------------------------------------------------------------
    # Running-state snapshot
    # ------------------------------------------------------------------

    def save_running_state(self) -> List[str]:
        """Persist the names of running servers; returns them."""
        names = [name for name, handle in self._running.items() if handle.status in ACTIVE_STATUSES]
        self.store.snapshot_running(names)
        return names

    async def restore_previously_running(self) -> List[Dict[str, Any]]:
        """Start servers recorded by the last save; removed or disabled ones are skipped."""
        previously_running = self.store.last_running()
        logger.info(f"Attempting to restore {len(previously_running)} previously running servers")

        results = []
        for name in previously_running:
            if not self.store.exists(name):
                logger.warning(f"Previously running server '{name}' no longer exists in config")
                continue
            if not self.store.get(name).enabled:
                logger.info(f"Previously running server '{name}' is now disabled, skipping")
                continue
            results.append(await self._attempt(name, self.start_server))

        restored = sum(1 for r in results if r["success"])
        logger.info(f"Restored {restored}/{len(previously_running)} previously running servers")
        return results

    async def shutdown(self) -> List[Dict[str, Any]]:
        """Save the running set, then stop everything."""
        self.save_running_state()
        return await self.stop_all()


def _tool_content(result: Any) -> List[Dict[str, Any]]:
    if isinstance(result, dict) and result.get("content"):
        return result["content"]
    return [{"type": "text", "text": json.dumps(result)}]
