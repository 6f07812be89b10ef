"""
Connectivity checks for tool servers.

Non-mutating probes used before starting a remote server and by
``Orchestrator.test_server``:

- Remote endpoints: HTTP GET, any 2xx counts as reachable
- Bundled executables: the resolved file exists
- System commands: ``<command> --version`` exits cleanly

Usage:
    from mcp_orchestrator.connectivity import probe_endpoint

    status_code = await probe_endpoint("http://localhost:5555/mcp", timeout=5)
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import httpx

from mcp_orchestrator.environment import compose_env
from mcp_orchestrator.errors import RemoteUnreachableError

logger = logging.getLogger(__name__)


async def probe_endpoint(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    server_name: Optional[str] = None,
) -> int:
    """
    Check that a remote endpoint answers a GET with a 2xx status.

    Args:
        url: Endpoint URL
        headers: Extra request headers (auth tokens etc.)
        timeout: Timeout in seconds
        transport: Optional httpx transport (tests inject a MockTransport)
        server_name: Server name for error reporting

    Returns:
        The HTTP status code

    Raises:
        RemoteUnreachableError: Non-2xx answer, timeout or connection failure
    """
    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
            response = await client.get(url, headers=headers or {}, follow_redirects=False)
    except httpx.ConnectError:
        raise RemoteUnreachableError(f"Remote server not accessible: connection refused ({url})", server=server_name)
    except httpx.TimeoutException:
        raise RemoteUnreachableError(
            f"Remote server not accessible: no response within {timeout:g} seconds ({url})", server=server_name
        )
    except httpx.HTTPError as e:
        raise RemoteUnreachableError(f"Remote server not accessible: {e} ({url})", server=server_name)

    if not response.is_success:
        raise RemoteUnreachableError(
            f"Remote server not accessible: HTTP {response.status_code}: {response.reason_phrase}",
            server=server_name,
        )
    return response.status_code


async def test_remote_endpoint(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Reachability test result for a remote server."""
    start_time = asyncio.get_running_loop().time()
    try:
        status_code = await probe_endpoint(url, headers, timeout, transport)
    except RemoteUnreachableError as e:
        return {"success": False, "error": e.message}

    response_time_ms = int((asyncio.get_running_loop().time() - start_time) * 1000)
    return {
        "success": True,
        "message": "Remote server is accessible",
        "http_status": status_code,
        "response_time_ms": response_time_ms,
    }


def test_bundled_executable(path: str) -> Dict[str, Any]:
    """Existence test result for a resolved bundled executable."""
    if os.path.isfile(path):
        return {"success": True, "message": "Bundled executable is available", "path": path}
    return {"success": False, "error": f"Bundled executable not found at: {path}"}


async def test_system_command(command: str, timeout: float = 10.0) -> Dict[str, Any]:
    """
    Test a system command by running ``<command> --version``.

    Args:
        command: Executable name or path
        timeout: Timeout in seconds

    Returns:
        Test result with success flag and message or error
    """
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            env=compose_env(),
        )
        returncode = await asyncio.wait_for(proc.wait(), timeout=timeout)
    except FileNotFoundError:
        return {"success": False, "error": f"Command '{command}' not found. Make sure it is installed and on your PATH."}
    except PermissionError:
        return {"success": False, "error": f"Permission denied: {command}"}
    except OSError as e:
        return {"success": False, "error": str(e)}
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return {"success": False, "error": f"No response within {timeout:g} seconds"}

    if returncode == 0:
        return {"success": True, "message": "Command is available"}
    return {"success": False, "error": f"Command exited with code {returncode}"}
