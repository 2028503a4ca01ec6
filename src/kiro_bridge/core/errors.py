"""
Bridge Errors
=============

Error taxonomy for the orchestration bridge.

Every error carries a stable ``code`` for programmatic handling, the HTTP
status the API answers with, and a human-readable ``message`` that is safe
to show to an operator or the frontend (no stack traces).
"""

from __future__ import annotations

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""

    code: str = "BRIDGE_ERROR"
    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_client_info(self) -> dict[str, Any]:
        """Serializable description for API responses."""
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BridgeError):
    code = "VALIDATION_FAILED"
    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None, value: Any = None):
        details: dict[str, Any] = {}
        if field is not None:
            details["field"] = field
            details["value"] = value if isinstance(value, (str, int, float, bool, type(None))) else repr(value)
        super().__init__(message, details=details)
        self.field = field


# ============================================================================
# Workspace errors
# ============================================================================


class WorkspaceError(BridgeError):
    code = "WORKSPACE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, path: Optional[str] = None, operation: str = "unknown"):
        super().__init__(message, details={"path": path, "operation": operation})
        self.path = path
        self.operation = operation


class WorkspaceCreationError(WorkspaceError):
    """The workspace directory could not be created (populated target, denied write, ...)."""

    code = "WORKSPACE_CREATION_FAILED"
    status_code = 409

    def __init__(self, message: str, *, path: Optional[str] = None, application_id: Optional[str] = None):
        super().__init__(message, path=path, operation="create")
        self.application_id = application_id
        if application_id is not None:
            self.details["application_id"] = application_id


class WorkspaceBusyError(WorkspaceError):
    """A running job owns the workspace."""

    code = "WORKSPACE_BUSY"
    status_code = 409

    def __init__(self, application_id: str, job_id: str, *, path: Optional[str] = None):
        super().__init__(
            f"Workspace for application {application_id} is in use by job {job_id}",
            path=path,
            operation="execute",
        )
        self.details.update({"application_id": application_id, "job_id": job_id})
        self.application_id = application_id
        self.job_id = job_id


# ============================================================================
# Server / lifecycle errors
# ============================================================================


class PortConflictError(BridgeError):
    """The configured port is already bound by another process."""

    code = "PORT_IN_USE"
    status_code = 409

    def __init__(self, port: int, host: str, owner: Any = None, *, reason: str = ""):
        self.port = int(port)
        self.host = host
        self.owner = owner
        owner_text = _describe_owner(owner)
        message = f"Port {self.port} on {host} is already in use"
        if owner_text:
            message += f" by {owner_text}"
        message += (
            ". This may be another bridge window or a previous session that did not shut down."
        )
        if reason:
            message += f" ({reason})"
        super().__init__(
            message,
            details={
                "port": self.port,
                "host": host,
                "owner_pid": getattr(owner, "pid", None),
                "owner_name": getattr(owner, "name", None),
            },
        )

    @property
    def remediation(self) -> str:
        if self.owner is not None:
            return (
                f"Stop process {_describe_owner(self.owner)} or restart with --on-conflict force "
                f"to terminate it; --on-conflict failover picks another free port."
            )
        return (
            f"Free port {self.port} or choose another one with KIRO_BRIDGE_API_PORT; "
            f"--on-conflict failover picks another free port."
        )


class StartupError(BridgeError):
    """Startup failed even after the recovery path ran."""

    code = "STARTUP_FAILED"
    status_code = 500

    def __init__(self, message: str, *, port: Optional[int] = None, host: Optional[str] = None,
                 owner: Any = None, cause: Optional[BaseException] = None):
        super().__init__(
            message,
            details={
                "port": port,
                "host": host,
                "owner_pid": getattr(owner, "pid", None),
                "owner_name": getattr(owner, "name", None),
                "cause": str(cause) if cause else None,
            },
        )
        self.port = port
        self.host = host
        self.owner = owner
        self.cause = cause


class AlreadyInitializedError(BridgeError):
    code = "ALREADY_INITIALIZED"
    status_code = 409


class NotInitializedError(BridgeError):
    code = "NOT_INITIALIZED"
    status_code = 503


# ============================================================================
# Agent command errors
# ============================================================================


class AgentCommandError(BridgeError):
    """The coding agent reported failure or could not be reached."""

    code = "AGENT_COMMAND_FAILED"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        args: Optional[list[str]] = None,
        exit_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(
            message,
            details={
                "command": command,
                "args": list(args or []),
                "exit_code": exit_code,
                "detail": detail,
            },
        )
        self.command = command
        self.args_list = list(args or [])
        self.exit_code = exit_code
        self.detail = detail


class AgentUnavailableError(AgentCommandError):
    code = "AGENT_UNAVAILABLE"
    status_code = 503


class AgentTimeoutError(AgentCommandError):
    code = "AGENT_TIMEOUT"
    status_code = 504


class CommandCancelledError(AgentCommandError):
    code = "COMMAND_CANCELLED"
    status_code = 499


class CommandLimitError(AgentCommandError):
    code = "COMMAND_LIMIT_REACHED"
    status_code = 429


# ============================================================================
# Job errors
# ============================================================================


class JobNotFoundError(BridgeError):
    code = "JOB_NOT_FOUND"
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found", details={"job_id": job_id})
        self.job_id = job_id


class ApplicationNotFoundError(BridgeError):
    code = "APPLICATION_NOT_FOUND"
    status_code = 404

    def __init__(self, application_id: str):
        super().__init__(f"Application '{application_id}' not found", details={"application_id": application_id})
        self.application_id = application_id


class InvalidJobTransitionError(BridgeError):
    code = "INVALID_JOB_TRANSITION"
    status_code = 409

    def __init__(self, job_id: str, from_state: str, to_state: str):
        super().__init__(
            f"Invalid job transition from '{from_state}' to '{to_state}' for job {job_id}",
            details={"job_id": job_id, "from_state": from_state, "to_state": to_state},
        )
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state


def _describe_owner(owner: Any) -> str:
    if owner is None:
        return ""
    pid = getattr(owner, "pid", None)
    name = getattr(owner, "name", None)
    if pid is None:
        return ""
    return f"PID {pid} ({name})" if name else f"PID {pid}"
