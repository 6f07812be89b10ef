#!/usr/bin/env python3
"""
HTTP control API for mcp-orchestrator

Exposes the orchestrator's server lifecycle and tool-call operations over
HTTP so dashboards, scripts and other processes can drive it.

Endpoints:
  GET    /health                  - Basic health check
  GET    /info                    - Server info endpoint
  GET    /servers                 - List servers with status
  POST   /servers                 - Add a server definition
  POST   /servers/start-all       - Start every enabled server
  POST   /servers/stop-all        - Stop every running server
  GET    /servers/{name}          - Status of one server
  PATCH  /servers/{name}          - Update a definition
  DELETE /servers/{name}          - Remove a definition
  POST   /servers/{name}/start    - Start a server
  POST   /servers/{name}/stop     - Stop a server
  POST   /servers/{name}/restart  - Restart a server
  POST   /servers/{name}/test     - Connectivity test (does not start)
  POST   /tools/call              - Execute a tool call
  GET    /templates               - Server templates catalog
  POST   /import                  - Import an external tool config file
  GET    /export?format=json      - Export definitions (json, yaml, markdown)
  POST   /state/save              - Save the running set
  POST   /state/restore           - Start previously running servers
  GET    /diagnose                - Environment diagnosis

Usage:
  python http_server.py                          # Default port 5555
  python http_server.py --port 5555              # Custom port
  python http_server.py --restore                # Restart previously running servers
  MCP_HTTP_PORT=5555 python http_server.py       # Via environment
"""

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import sentry_sdk
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route
from starlette.responses import JSONResponse

# Add src directory to path for imports
src_path = Path(__file__).parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from mcp_orchestrator.env_config import get_env
from mcp_orchestrator.errors import InvalidDefinitionError, OrchestratorError
from mcp_orchestrator.orchestrator import Orchestrator
from mcp_orchestrator.response import ErrorCodes, ResponseEnvelope

logger = logging.getLogger("mcp-orchestrator-http")

VERSION = "1.0.0"

# Status codes for error codes reported inside tool-call results
TOOL_CALL_STATUS = {
    ErrorCodes.NOT_RUNNING: 409,
    ErrorCodes.INVALID_DEFINITION: 400,
    ErrorCodes.HANDSHAKE_TIMEOUT: 504,
    ErrorCodes.CALL_TIMEOUT: 504,
}


def init_sentry():
    """Enable Sentry error monitoring when SENTRY_DSN is set."""
    dsn = get_env("SENTRY_DSN")
    if not dsn:
        return False
    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=1.0,
        environment=get_env("SENTRY_ENVIRONMENT", "development"),
        release=get_env("SENTRY_RELEASE", f"mcp-orchestrator@{VERSION}"),
    )
    logger.info("Sentry monitoring enabled")
    return True


def error_response(error: OrchestratorError) -> JSONResponse:
    return JSONResponse(
        ResponseEnvelope.error(error.code, error.message, error.to_dict()),
        status_code=error.http_status,
    )


def handles_errors(endpoint):
    """Turn orchestrator errors into envelope responses; anything else is a 500."""
    async def wrapper(request):
        try:
            return await endpoint(request)
        except OrchestratorError as e:
            logger.warning(f"{request.method} {request.url.path} failed: {e.message}")
            return error_response(e)
        except Exception as e:
            logger.error(f"{request.method} {request.url.path} error: {e}", exc_info=True)
            sentry_sdk.capture_exception(e)
            return JSONResponse(
                ResponseEnvelope.error(ErrorCodes.UNEXPECTED_EXCEPTION, f"Request failed: {str(e)}"),
                status_code=500,
            )
    wrapper.__name__ = endpoint.__name__
    return wrapper


async def read_json(request) -> dict:
    """
    Parse a JSON object body; an empty body is an empty object.

    Raises:
        InvalidDefinitionError: The body is not a JSON object
    """
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except ValueError as e:
        raise InvalidDefinitionError(f"Request body is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise InvalidDefinitionError("Request body must be a JSON object")
    return data


def create_app(orchestrator: Orchestrator, restore_on_startup: bool = False):
    """Create the Starlette app with control endpoints, lifespan hooks and CORS support."""

    @asynccontextmanager
    async def lifespan(app):
        if restore_on_startup:
            await orchestrator.restore_previously_running()
        yield
        logger.info("Shutting down: saving running state and stopping servers")
        await orchestrator.shutdown()

    async def health(request):
        """Basic health check - always returns UP."""
        return JSONResponse({
            "status": "UP",
            "server": "mcp-orchestrator",
            "running_servers": len(orchestrator.running_servers()),
            "timestamp": datetime.now().isoformat()
        })

    async def info(request):
        """Server info endpoint."""
        return JSONResponse({
            "name": "mcp-orchestrator",
            "version": VERSION,
            "transport": "http",
            "config_path": str(orchestrator.store.config_path),
            "endpoints": {
                "health": "/health",
                "info": "/info",
                "servers": "/servers",
                "server": "/servers/{name}",
                "start_all": "/servers/start-all",
                "stop_all": "/servers/stop-all",
                "start": "/servers/{name}/start",
                "stop": "/servers/{name}/stop",
                "restart": "/servers/{name}/restart",
                "test": "/servers/{name}/test",
                "call_tool": "/tools/call",
                "templates": "/templates",
                "import": "/import",
                "export": "/export?format=json|yaml|markdown",
                "save_state": "/state/save",
                "restore_state": "/state/restore",
                "diagnose": "/diagnose"
            }
        })

    @handles_errors
    async def list_servers(request):
        servers = orchestrator.list_servers()
        return JSONResponse(ResponseEnvelope.success(f"{len(servers)} servers", {"servers": servers}))

    @handles_errors
    async def add_server(request):
        definition = await orchestrator.add_server(await read_json(request))
        return JSONResponse(
            ResponseEnvelope.success(
                f"Added MCP server: {definition.name}",
                {"name": definition.name, "config": definition.to_dict()},
            ),
            status_code=201,
        )

    @handles_errors
    async def get_server(request):
        name = request.path_params["name"]
        status = orchestrator.get_server_status(name)
        if status is None:
            return JSONResponse(
                ResponseEnvelope.error(ErrorCodes.NOT_FOUND, f"MCP server '{name}' not found"),
                status_code=404,
            )
        return JSONResponse(ResponseEnvelope.success(f"Status of {name}", status))

    @handles_errors
    async def update_server(request):
        name = request.path_params["name"]
        definition = await orchestrator.update_server(name, await read_json(request))
        return JSONResponse(ResponseEnvelope.success(
            f"Updated MCP server: {name}", {"name": name, "config": definition.to_dict()}
        ))

    @handles_errors
    async def remove_server(request):
        name = request.path_params["name"]
        await orchestrator.remove_server(name)
        return JSONResponse(ResponseEnvelope.success(f"Removed MCP server: {name}", {"name": name}))

    @handles_errors
    async def start_server(request):
        name = request.path_params["name"]
        await orchestrator.start_server(name)
        return JSONResponse(ResponseEnvelope.success(
            f"Started MCP server: {name}", orchestrator.get_server_status(name)
        ))

    @handles_errors
    async def stop_server(request):
        name = request.path_params["name"]
        stopped = await orchestrator.stop_server(name)
        message = f"Stopped MCP server: {name}" if stopped else f"MCP server '{name}' was not running"
        return JSONResponse(ResponseEnvelope.success(message, {"name": name, "stopped": stopped}))

    @handles_errors
    async def restart_server(request):
        name = request.path_params["name"]
        await orchestrator.restart_server(name)
        return JSONResponse(ResponseEnvelope.success(
            f"Restarted MCP server: {name}", orchestrator.get_server_status(name)
        ))

    @handles_errors
    async def test_server(request):
        name = request.path_params["name"]
        result = await orchestrator.test_server(name)
        message = result.get("message") or result.get("error") or ""
        return JSONResponse(ResponseEnvelope.success(message, result))

    @handles_errors
    async def start_all(request):
        results = await orchestrator.start_all_enabled()
        started = sum(1 for r in results if r["success"])
        return JSONResponse(ResponseEnvelope.success(
            f"Started {started}/{len(results)} enabled servers", {"results": results}
        ))

    @handles_errors
    async def stop_all(request):
        results = await orchestrator.stop_all()
        return JSONResponse(ResponseEnvelope.success(f"Stopped {len(results)} servers", {"results": results}))

    @handles_errors
    async def call_tool(request):
        """
        Execute a tool call.

        POST /tools/call
        Body: {"server": "...", "tool": "...", "arguments": {...}, "call_id": "..."}
        """
        body = await read_json(request)
        server = body.get("server")
        tool = body.get("tool")
        if not server or not tool:
            raise InvalidDefinitionError("Both 'server' and 'tool' are required")

        logger.info(f"HTTP tool call: {server}/{tool}")
        result = await orchestrator.execute_tool_call(
            server, tool, body.get("arguments") or {}, call_id=body.get("call_id")
        )
        if result["success"]:
            return JSONResponse(ResponseEnvelope.success(f"Executed {tool} on {server}", result))

        code = result.get("error_code", ErrorCodes.UNEXPECTED_EXCEPTION)
        return JSONResponse(
            ResponseEnvelope.error(code, result["error"], result),
            status_code=TOOL_CALL_STATUS.get(code, 502),
        )

    async def templates(request):
        items = orchestrator.list_templates()
        return JSONResponse(ResponseEnvelope.success(f"{len(items)} templates", {"templates": items}))

    @handles_errors
    async def import_config(request):
        body = await read_json(request)
        path = body.get("path")
        if not path:
            raise InvalidDefinitionError("'path' is required")
        result = orchestrator.import_from_external_config(path)
        return JSONResponse(ResponseEnvelope.success(f"Imported {result['imported']} servers", result))

    @handles_errors
    async def export_config(request):
        fmt = request.query_params.get("format", "json")
        servers = request.query_params.get("servers")
        selected = [s for s in servers.split(",") if s] if servers else None
        result = orchestrator.export_configuration(format=fmt, servers=selected)
        return JSONResponse(ResponseEnvelope.success(f"Exported {result['total_servers']} servers", result))

    @handles_errors
    async def save_state(request):
        names = orchestrator.save_running_state()
        return JSONResponse(ResponseEnvelope.success(
            f"Saved running state: {len(names)} servers", {"running": names}
        ))

    @handles_errors
    async def restore_state(request):
        results = await orchestrator.restore_previously_running()
        restored = sum(1 for r in results if r["success"])
        return JSONResponse(ResponseEnvelope.success(
            f"Restored {restored} servers", {"results": results}
        ))

    async def diagnose(request):
        return JSONResponse(ResponseEnvelope.success("Environment diagnosis", orchestrator.diagnose()))

    # Define routes (fixed paths before /servers/{name})
    routes = [
        Route("/health", endpoint=health, methods=["GET"]),
        Route("/info", endpoint=info, methods=["GET"]),
        Route("/servers", endpoint=list_servers, methods=["GET"]),
        Route("/servers", endpoint=add_server, methods=["POST"]),
        Route("/servers/start-all", endpoint=start_all, methods=["POST"]),
        Route("/servers/stop-all", endpoint=stop_all, methods=["POST"]),
        Route("/servers/{name}", endpoint=get_server, methods=["GET"]),
        Route("/servers/{name}", endpoint=update_server, methods=["PATCH"]),
        Route("/servers/{name}", endpoint=remove_server, methods=["DELETE"]),
        Route("/servers/{name}/start", endpoint=start_server, methods=["POST"]),
        Route("/servers/{name}/stop", endpoint=stop_server, methods=["POST"]),
        Route("/servers/{name}/restart", endpoint=restart_server, methods=["POST"]),
        Route("/servers/{name}/test", endpoint=test_server, methods=["POST"]),
        Route("/tools/call", endpoint=call_tool, methods=["POST"]),
        Route("/templates", endpoint=templates, methods=["GET"]),
        Route("/import", endpoint=import_config, methods=["POST"]),
        Route("/export", endpoint=export_config, methods=["GET"]),
        Route("/state/save", endpoint=save_state, methods=["POST"]),
        Route("/state/restore", endpoint=restore_state, methods=["POST"]),
        Route("/diagnose", endpoint=diagnose, methods=["GET"]),
    ]

    # Configure CORS middleware
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],  # Allow all origins for development
            allow_credentials=True,
            allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )
    ]

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)


def main():
    """Run the mcp-orchestrator HTTP control API."""
    parser = argparse.ArgumentParser(
        description="HTTP control API for mcp-orchestrator"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(get_env("MCP_HTTP_PORT", "5555")),
        help="HTTP port to listen on (default: 5555)"
    )
    parser.add_argument(
        "--host",
        default=get_env("MCP_HTTP_HOST", "127.0.0.1"),
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--config",
        help="Path to the server configuration file (default: ~/.mcp-orchestrator/mcp_config.json)"
    )
    parser.add_argument(
        "--restore",
        action="store_true",
        help="Start servers that were running at the last shutdown"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    init_sentry()

    orchestrator = Orchestrator.from_config_path(args.config)
    app = create_app(orchestrator, restore_on_startup=args.restore)

    logger.info(f"Starting mcp-orchestrator HTTP server on {args.host}:{args.port}")
    logger.info(f"Config: {orchestrator.store.config_path}")
    logger.info(f"Health check: http://{args.host}:{args.port}/health")
    logger.info(f"Servers: http://{args.host}:{args.port}/servers")

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
