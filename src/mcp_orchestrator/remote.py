"""
HTTP transport for remote tool servers.

The same JSON-RPC envelope as the stdio transport, sent as the body of an
HTTP POST. There is no handshake; a remote session counts as initialized as
soon as the endpoint passed its reachability probe.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

from mcp_orchestrator.env_config import DEFAULT_CALL_TIMEOUT
from mcp_orchestrator.errors import (
    CallTimeoutError,
    MalformedResponseError,
    RemoteUnreachableError,
    ToolCallError,
)
from mcp_orchestrator.protocol import build_request, error_message, tools_from_result

logger = logging.getLogger(__name__)


class RemoteSession:
    """Client for one remote tool server endpoint."""

    transport = "remote"

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.url = url
        self.headers = dict(headers or {})
        self.call_timeout = call_timeout
        self.http_transport = http_transport
        self.initialized = True

    async def ensure_initialized(self) -> None:
        return None

    async def request(
        self,
        method: str,
        params: Optional[dict] = None,
        call_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """
        POST a request envelope and return the response envelope.

        Raises:
            CallTimeoutError: No answer before the deadline
            RemoteUnreachableError: Connection failure or non-2xx status
            MalformedResponseError: The body is not a JSON object
        """
        call_id = str(call_id) if call_id is not None else str(uuid.uuid4())
        timeout = self.call_timeout if timeout is None else timeout
        headers = {"Content-Type": "application/json", "Accept": "application/json", **self.headers}

        logger.info(f"[{self.name}] Sending remote {method} request (id={call_id})")
        try:
            async with httpx.AsyncClient(transport=self.http_transport, timeout=timeout) as client:
                response = await client.post(self.url, json=build_request(call_id, method, params), headers=headers)
        except httpx.TimeoutException:
            raise CallTimeoutError(
                f"MCP request '{method}' to {self.name} timed out after {timeout:g}s", server=self.name
            )
        except httpx.HTTPError as e:
            raise RemoteUnreachableError(f"Remote server {self.name} not accessible: {e}", server=self.name)

        if not response.is_success:
            raise RemoteUnreachableError(
                f"HTTP {response.status_code}: {response.reason_phrase}", server=self.name
            )

        try:
            message = response.json()
        except ValueError:
            raise MalformedResponseError(
                f"Remote server {self.name} returned a non-JSON body: {response.text[:200]}", server=self.name
            )
        if not isinstance(message, dict):
            raise MalformedResponseError(
                f"Remote server {self.name} returned a non-object envelope", server=self.name
            )

        logger.debug(f"[{self.name}] Remote {method} response: {message}")
        return message

    async def call(
        self,
        method: str,
        params: Optional[dict] = None,
        call_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Raises:
            ToolCallError: The envelope carries an error object
        """
        response = await self.request(method, params, call_id=call_id, timeout=timeout)
        if response.get("error") is not None:
            raise ToolCallError(
                error_message(response["error"], f"Remote MCP method '{method}' failed"), server=self.name
            )
        return response.get("result")

    async def list_tools(self, call_id: Optional[str] = None) -> List[dict]:
        return tools_from_result(await self.call("tools/list", {}, call_id=call_id))

    async def call_tool(self, tool: str, arguments: Optional[dict] = None, call_id: Optional[str] = None) -> Any:
        return await self.call("tools/call", {"name": tool, "arguments": arguments or {}}, call_id=call_id)
