"""Standard response envelope and error codes."""

from typing import Any


class ResponseEnvelope:
    """Standard response envelope for orchestrator operations."""

    @staticmethod
    def success(message: str, data: Any = None) -> dict:
        """Create a success response."""
        return {
            "ok": True,
            "error": None,
            "message": message,
            "data": data if data is not None else {}
        }

    @staticmethod
    def error(code: str, message: str, data: Any = None) -> dict:
        """Create an error response."""
        return {
            "ok": False,
            "error": code,
            "message": message,
            "data": data if data is not None else {}
        }


class ErrorCodes:
    """Error codes shared by the orchestrator, the CLI and the HTTP API."""
    UNEXPECTED_EXCEPTION = "unexpected_exception"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"
    PROTECTED_RESOURCE = "protected_resource"
    INVALID_DEFINITION = "invalid_definition"
    COMMAND_NOT_FOUND = "command_not_found"
    EXECUTABLE_NOT_FOUND = "executable_not_found"
    SPAWN_ERROR = "spawn_error"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    HANDSHAKE_FAILED = "handshake_failed"
    CALL_TIMEOUT = "call_timeout"
    REMOTE_UNREACHABLE = "remote_unreachable"
    MALFORMED_RESPONSE = "malformed_response"
    CONFIG_PERSISTENCE = "config_persistence_error"
    TOOL_ERROR = "tool_error"
