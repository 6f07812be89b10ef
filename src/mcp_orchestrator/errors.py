"""
Error taxonomy for the orchestrator.

Every error carries a stable ``code`` (see ``ErrorCodes``) and the HTTP status
the control API answers with, so callers can branch on the kind of failure
without parsing messages.
"""

from typing import List, Optional

from mcp_orchestrator.response import ErrorCodes


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    code = ErrorCodes.UNEXPECTED_EXCEPTION
    http_status = 500

    def __init__(self, message: str, server: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server = server

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "server": self.server}


class NotFoundError(OrchestratorError):
    code = ErrorCodes.NOT_FOUND
    http_status = 404


class AlreadyExistsError(OrchestratorError):
    code = ErrorCodes.ALREADY_EXISTS
    http_status = 409


class AlreadyRunningError(OrchestratorError):
    code = ErrorCodes.ALREADY_RUNNING
    http_status = 409


class NotRunningError(OrchestratorError):
    code = ErrorCodes.NOT_RUNNING
    http_status = 409


class ProtectedResourceError(OrchestratorError):
    code = ErrorCodes.PROTECTED_RESOURCE
    http_status = 403


class InvalidDefinitionError(OrchestratorError):
    code = ErrorCodes.INVALID_DEFINITION
    http_status = 400


class CommandNotFoundError(OrchestratorError):
    code = ErrorCodes.COMMAND_NOT_FOUND
    http_status = 400


class ExecutableNotFoundError(OrchestratorError):
    """A bundled executable was not found in any candidate location."""
    code = ErrorCodes.EXECUTABLE_NOT_FOUND
    http_status = 400

    def __init__(self, identifier: str, attempted_paths: List[str], reason: Optional[str] = None):
        message = reason or (
            f"Bundled executable '{identifier}' not found. "
            f"Tried {len(attempted_paths)} paths: {', '.join(attempted_paths)}"
        )
        super().__init__(message)
        self.identifier = identifier
        self.attempted_paths = list(attempted_paths)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempted_paths"] = self.attempted_paths
        return data


class SpawnError(OrchestratorError):
    code = ErrorCodes.SPAWN_ERROR
    http_status = 500


class HandshakeTimeoutError(OrchestratorError):
    code = ErrorCodes.HANDSHAKE_TIMEOUT
    http_status = 504


class HandshakeFailedError(OrchestratorError):
    code = ErrorCodes.HANDSHAKE_FAILED
    http_status = 502


class CallTimeoutError(OrchestratorError):
    code = ErrorCodes.CALL_TIMEOUT
    http_status = 504


class RemoteUnreachableError(OrchestratorError):
    code = ErrorCodes.REMOTE_UNREACHABLE
    http_status = 502


class MalformedResponseError(OrchestratorError):
    code = ErrorCodes.MALFORMED_RESPONSE
    http_status = 502


class ConfigPersistenceError(OrchestratorError):
    code = ErrorCodes.CONFIG_PERSISTENCE
    http_status = 500


class ToolCallError(OrchestratorError):
    """The tool server answered with a JSON-RPC error object."""
    code = ErrorCodes.TOOL_ERROR
    http_status = 502
