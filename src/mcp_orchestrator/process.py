"""
Process supervision for stdio tool servers.

Each ``ServerProcess`` owns one child process with three pipes. Raw stdout
chunks are handed to a callback (the protocol session reassembles lines),
stderr is logged, and a watcher task reports the exit so the owner can drop
its handle. Nothing here restarts a crashed process.

State machine: starting -> running -> stopped (exited) | error
"""

import asyncio
import logging
import shutil
import sys
from typing import Callable, Dict, List, Optional

from mcp_orchestrator.environment import command_exists, compose_env
from mcp_orchestrator.errors import CommandNotFoundError, NotRunningError, SpawnError
from mcp_orchestrator.models import ServerStatus, StdioServerDefinition
from mcp_orchestrator.paths import PathResolver

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536
GRACEFUL_STOP_SECONDS = 5.0

# Interpreter commands that are checked with --version before spawning
PROBED_COMMANDS = ("npx", "npm", "node")


class ServerProcess:
    """A spawned stdio tool server."""

    def __init__(
        self,
        name: str,
        command: str,
        args: List[str],
        env: Dict[str, str],
        on_stdout: Callable[[bytes], None],
        on_exit: Callable[["ServerProcess", Optional[int]], None],
    ):
        self.name = name
        self.command = command
        self.args = list(args)
        self.env = env
        self.on_stdout = on_stdout
        self.on_exit = on_exit
        self.status = ServerStatus.STARTING
        self.error: Optional[str] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._kill_timer: Optional[asyncio.TimerHandle] = None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def spawn(self) -> None:
        """
        Launch the process.

        Raises:
            CommandNotFoundError: The executable does not exist
            SpawnError: Any other OS-level launch failure
        """
        logger.info(f"Starting MCP server: {self.name} with command: {self.command} {' '.join(self.args)}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except FileNotFoundError:
            self.status = ServerStatus.ERROR
            self.error = f"Command '{self.command}' not found. Make sure it is installed and on your PATH."
            logger.error(f"MCP server '{self.name}' error: {self.error}")
            raise CommandNotFoundError(self.error, server=self.name)
        except OSError as e:
            self.status = ServerStatus.ERROR
            self.error = f"Failed to start '{self.command}': {e}"
            logger.error(f"MCP server '{self.name}' error: {self.error}")
            raise SpawnError(self.error, server=self.name)

        self.status = ServerStatus.RUNNING
        logger.info(f"MCP server '{self.name}' spawned successfully (pid {self._proc.pid})")

        self._tasks = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
            asyncio.create_task(self._watch_exit()),
        ]

    async def _pump_stdout(self) -> None:
        while True:
            chunk = await self._proc.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            try:
                self.on_stdout(chunk)
            except Exception:
                logger.exception(f"MCP server '{self.name}' stdout handler failed")

    async def _pump_stderr(self) -> None:
        while True:
            chunk = await self._proc.stderr.read(CHUNK_SIZE)
            if not chunk:
                break
            for line in chunk.decode("utf-8", errors="replace").splitlines():
                if line.strip():
                    logger.debug(f"MCP server '{self.name}' stderr: {line}")

    async def _watch_exit(self) -> None:
        returncode = await self._proc.wait()
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None
        if self.status != ServerStatus.ERROR:
            self.status = ServerStatus.STOPPED
        logger.info(f"MCP server '{self.name}' exited with code {returncode}")
        try:
            self.on_exit(self, returncode)
        except Exception:
            logger.exception(f"MCP server '{self.name}' exit handler failed")

    async def write(self, data: bytes) -> None:
        """
        Write one complete message to stdin.

        Raises:
            NotRunningError: The process is gone or its stdin is closed
        """
        if not self.is_alive or self._proc.stdin is None:
            raise NotRunningError(f"MCP server '{self.name}' is not running", server=self.name)
        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NotRunningError(f"Failed to send request to MCP server '{self.name}': {e}", server=self.name)

    def terminate(self, grace_period: float = GRACEFUL_STOP_SECONDS) -> None:
        """Send SIGTERM now and SIGKILL after grace_period if still alive. Does not wait."""
        if not self.is_alive:
            return
        try:
            self._proc.terminate()
        except ProcessLookupError:
            return
        loop = asyncio.get_running_loop()
        self._kill_timer = loop.call_later(grace_period, self._force_kill)

    def _force_kill(self) -> None:
        self._kill_timer = None
        if self.is_alive:
            logger.warning(f"Force killing MCP server: {self.name}")
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit (used by tests and shutdown paths)."""
        if self._proc is None:
            return None
        return await self._proc.wait()


class ProcessSupervisor:
    """Resolves, checks and launches stdio tool server processes."""

    def __init__(
        self,
        resolver: Optional[PathResolver] = None,
        grace_period: float = GRACEFUL_STOP_SECONDS,
        command_probe: Callable = command_exists,
    ):
        self.resolver = resolver or PathResolver()
        self.grace_period = grace_period
        self.command_probe = command_probe

    async def start(
        self,
        definition: StdioServerDefinition,
        on_stdout: Callable[[bytes], None],
        on_exit: Callable[[ServerProcess, Optional[int]], None],
    ) -> ServerProcess:
        """
        Launch the process for a stdio definition.

        Raises:
            ExecutableNotFoundError: Bundled executable missing
            CommandNotFoundError: Interpreter or command missing
            SpawnError: Other launch failures
        """
        command = definition.command
        resolved = self.resolver.resolve(command)

        if resolved == command and command in PROBED_COMMANDS:
            if not await self.command_probe(command):
                raise CommandNotFoundError(
                    f"Command '{command}' not found. Make sure Node.js and npm are installed and on your PATH.",
                    server=definition.name,
                )

        env = compose_env(definition.env)
        logger.debug(f"Using PATH for '{definition.name}': {env.get('PATH')}")

        if sys.platform == "win32":
            # CreateProcess does not apply PATHEXT, so npx.cmd and friends need a full path
            resolved = shutil.which(resolved, path=env.get("PATH")) or resolved

        process = ServerProcess(definition.name, resolved, definition.args, env, on_stdout, on_exit)
        await process.spawn()
        return process

    def stop(self, process: ServerProcess) -> None:
        logger.info(f"Stopping MCP server: {process.name}")
        process.terminate(self.grace_period)
