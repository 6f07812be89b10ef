"""
JSON-RPC 2.0 protocol engine for stdio tool servers.

Per MCP specification, stdio servers communicate via stdin/stdout using
newline-delimited JSON-RPC messages. Servers are free to print other text to
stdout as well, and output arrives in arbitrary chunks, so:

- chunks are reassembled into lines across chunk boundaries (LineBuffer)
- only lines starting with '{' or '[' are JSON candidates
- unparseable lines are logged and skipped
- responses whose id matches no pending call are ignored

Many calls may be in flight on one session. Each registers a future under
its call id; the session parses every line once and completes the matching
future. A call that sees no response before its deadline raises
CallTimeoutError and is removed from the registry without affecting others.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from mcp_orchestrator.errors import (
    CallTimeoutError,
    HandshakeFailedError,
    HandshakeTimeoutError,
    ToolCallError,
)
from mcp_orchestrator.env_config import DEFAULT_CALL_TIMEOUT, DEFAULT_HANDSHAKE_TIMEOUT

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcp-orchestrator", "version": "1.0.0"}
CLIENT_CAPABILITIES = {"tools": {}, "resources": {}}


def build_request(call_id: str, method: str, params: Optional[dict] = None) -> dict:
    return {"jsonrpc": "2.0", "id": call_id, "method": method, "params": params or {}}


def build_notification(method: str, params: Optional[dict] = None) -> dict:
    return {"jsonrpc": "2.0", "method": method, "params": params or {}}


def initialize_params() -> dict:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": CLIENT_CAPABILITIES,
        "clientInfo": CLIENT_INFO,
    }


def encode_message(message: dict) -> bytes:
    """Serialize one message as a single newline-terminated line."""
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


def error_message(error: Any, default: str) -> str:
    """Extract the message of a JSON-RPC error object."""
    if isinstance(error, dict):
        return error.get("message") or default
    if error:
        return str(error)
    return default


def tools_from_result(result: Any) -> List[dict]:
    """Tool list of a tools/list result."""
    if isinstance(result, dict):
        return result.get("tools") or []
    return []


class LineBuffer:
    """Reassembles newline-delimited text from arbitrary byte chunks."""

    def __init__(self):
        self._partial = b""

    def feed(self, chunk: bytes) -> List[str]:
        """
        Add a chunk and return the complete, non-empty lines it finished.

        A trailing partial line is kept until a later chunk completes it.
        """
        data = self._partial + chunk
        *complete, self._partial = data.split(b"\n")
        lines = []
        for raw in complete:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                lines.append(line)
        return lines

    @property
    def pending(self) -> bytes:
        return self._partial


def parse_line(line: str, server_name: str = "") -> Optional[Union[dict, list]]:
    """
    Parse one stdout line as a JSON-RPC message.

    Returns:
        The parsed message, or None for non-JSON or malformed lines
    """
    if not line.startswith("{") and not line.startswith("["):
        logger.debug(f"Skipping non-JSON line from {server_name}: {line[:200]}")
        return None
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning(f"Malformed JSON line from {server_name} ({e}): {line[:200]}")
        return None


class StdioSession:
    """
    Client side of the protocol over one process's stdin/stdout.

    Args:
        name: Server name (for logging and errors)
        write: Coroutine writing one encoded message to the server's stdin
        handshake_timeout: Seconds to wait for the initialize response
        call_timeout: Default seconds to wait for any other response
    """

    transport = "stdio"

    def __init__(
        self,
        name: str,
        write: Callable[[bytes], Awaitable[None]],
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        self.name = name
        self._write = write
        self.handshake_timeout = handshake_timeout
        self.call_timeout = call_timeout
        self.initialized = False
        self.server_info: Dict[str, Any] = {}
        self._buffer = LineBuffer()
        self._pending: Dict[str, asyncio.Future] = {}
        self._handshake: Optional[asyncio.Task] = None
        self.on_initialized: Optional[Callable[[], None]] = None

    @property
    def pending_calls(self) -> List[str]:
        return list(self._pending)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> None:
        """Consume a raw stdout chunk from the server process."""
        for line in self._buffer.feed(chunk):
            message = parse_line(line, self.name)
            if message is None:
                continue
            if isinstance(message, list):
                for item in message:
                    self._dispatch(item)
            else:
                self._dispatch(message)

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict) or message.get("id") is None:
            # Notifications and server-initiated requests are not routed
            return
        call_id = str(message["id"])
        future = self._pending.get(call_id)
        if future is None:
            logger.debug(f"[{self.name}] Ignoring response for unknown or expired call id {call_id}")
            return
        if not future.done():
            future.set_result(message)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: Optional[dict] = None,
        call_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """
        Send a request and wait for the matching response message.

        Raises:
            ValueError: call_id is already in flight on this session
            CallTimeoutError: No matching response before the deadline
            NotRunningError: stdin is closed
        """
        call_id = str(call_id) if call_id is not None else str(uuid.uuid4())
        if call_id in self._pending:
            raise ValueError(f"Call id {call_id} is already in flight on {self.name}")

        timeout = self.call_timeout if timeout is None else timeout
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future

        try:
            logger.debug(f"[{self.name}] Sending {method} (id={call_id})")
            await self._write(encode_message(build_request(call_id, method, params)))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"[{self.name}] {method} (id={call_id}) timed out after {timeout}s")
            raise CallTimeoutError(
                f"MCP request '{method}' to {self.name} timed out after {timeout:g}s", server=self.name
            )
        finally:
            self._pending.pop(call_id, None)

    async def notify(self, method: str, params: Optional[dict] = None) -> None:
        """Send a notification (no id, no response expected)."""
        await self._write(encode_message(build_notification(method, params)))

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> None:
        """
        Run the initialize handshake once.

        Concurrent callers share the same in-flight handshake. If it fails,
        every waiter sees the error and the next call starts a fresh one.
        """
        if self.initialized:
            return
        if self._handshake is None:
            self._handshake = asyncio.create_task(self._perform_handshake())
        handshake = self._handshake
        try:
            await asyncio.shield(handshake)
        except Exception:
            if self._handshake is handshake and handshake.done():
                self._handshake = None
            raise

    async def _perform_handshake(self) -> None:
        logger.info(f"[{self.name}] Starting MCP initialization handshake...")
        try:
            response = await self.request(
                "initialize",
                initialize_params(),
                call_id=f"init-{uuid.uuid4()}",
                timeout=self.handshake_timeout,
            )
        except CallTimeoutError:
            raise HandshakeTimeoutError(
                f"MCP initialization timeout for {self.name} after {self.handshake_timeout:g}s", server=self.name
            )

        if response.get("error") is not None:
            message = error_message(response["error"], "initialize rejected")
            logger.error(f"[{self.name}] MCP initialization failed: {message}")
            raise HandshakeFailedError(f"MCP initialization failed: {message}", server=self.name)

        self.server_info = response.get("result") or {}
        await self.notify("notifications/initialized")
        self.initialized = True
        logger.info(f"[{self.name}] MCP initialization completed successfully")
        if self.on_initialized is not None:
            self.on_initialized()

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(
        self,
        method: str,
        params: Optional[dict] = None,
        call_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Handshake if needed, issue a request and return its result.

        Raises:
            ToolCallError: The server answered with an error object
        """
        await self.ensure_initialized()
        response = await self.request(method, params, call_id=call_id, timeout=timeout)
        if response.get("error") is not None:
            raise ToolCallError(
                error_message(response["error"], f"MCP method '{method}' failed"), server=self.name
            )
        return response.get("result")

    async def list_tools(self, call_id: Optional[str] = None) -> List[dict]:
        result = await self.call("tools/list", {}, call_id=call_id)
        return tools_from_result(result)

    async def call_tool(self, tool: str, arguments: Optional[dict] = None, call_id: Optional[str] = None) -> Any:
        return await self.call("tools/call", {"name": tool, "arguments": arguments or {}}, call_id=call_id)
