"""
Agent Command Proxy
===================

Request/response access to the headless coding agent.

A caller sends a command id plus string arguments and awaits a structured
``CommandResult``. Every call has an explicit timeout and may carry a
``CancelToken``; timing out or cancelling terminates the agent process
(graceful first, force-killed after the grace period).

The agent is an opaque executable: ``<agent_argv> <command> <args...>``,
run without a shell inside the workspace directory. If its last stdout line
is a JSON object, ``files_changed`` / ``views_opened`` are read from it as
side-effect metadata.

The agent's stdin stays open while a command runs; answers the user gives
through ``send_input`` are written to it one line at a time.

Commands issued on behalf of a job carry its ``job_id`` and are bounded by
the job cap alone. ``max_concurrent_commands`` limits ad-hoc commands only,
so a burst of manual calls can never fail a running job.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Sequence

from kiro_bridge.core.errors import (
    AgentCommandError,
    AgentTimeoutError,
    AgentUnavailableError,
    BridgeError,
    CommandCancelledError,
    CommandLimitError,
    ValidationError,
)
from kiro_bridge.core.jobs import utcnow
from kiro_bridge.core.process_utils import terminate_subprocess

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 300.0
DEFAULT_MAX_CONCURRENT_COMMANDS = 8
MAX_OUTPUT_CHARS = 200_000
INPUT_TYPES = ("text", "choice", "file", "confirmation")


class CancelToken:
    """One-shot cancellation signal shared between a caller and a running command."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class CommandExecution:
    id: str
    command: str
    args: list[str]
    workspace_path: Optional[str] = None
    job_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: str = "running"  # running|completed|failed|cancelled
    output: str = ""
    error: Optional[str] = None
    token: CancelToken = field(default_factory=CancelToken, repr=False)
    # Lines of user input waiting to be written to the agent's stdin.
    inputs: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "command": self.command,
            "args": list(self.args),
            "workspace_path": self.workspace_path,
            "job_id": self.job_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class CommandResult:
    success: bool
    command: str
    args: list[str]
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    execution_time_ms: int = 0
    files_changed: list[str] = field(default_factory=list)
    views_opened: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "command": self.command,
            "args": list(self.args),
            "output": self.output,
            "error": self.error,
            "exit_code": self.exit_code,
            "execution_time_ms": self.execution_time_ms,
            "files_changed": list(self.files_changed),
            "views_opened": list(self.views_opened),
        }


@dataclass(frozen=True)
class InputResult:
    success: bool
    execution_id: str
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "execution_id": self.execution_id, "error": self.error}


@dataclass(frozen=True)
class AgentStatus:
    status: str  # ready|busy|unavailable
    current_command: Optional[str] = None
    active_executions: int = 0

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "current_command": self.current_command,
            "active_executions": self.active_executions,
        }


class CommandRunner(Protocol):
    """Executes one command against the agent."""

    def is_available(self) -> bool:
        ...

    async def run(self, execution: CommandExecution, *, timeout_s: float, token: CancelToken) -> CommandResult:
        ...


def split_side_effects(output: str) -> tuple[str, list[str], list[str]]:
    """Pull the trailing JSON side-effect line out of agent output."""
    lines = output.rstrip("\n").splitlines()
    if not lines:
        return output, [], []
    last = lines[-1].strip()
    if not (last.startswith("{") and last.endswith("}")):
        return output, [], []
    try:
        data = json.loads(last)
    except json.JSONDecodeError:
        return output, [], []
    if not isinstance(data, dict) or not ({"files_changed", "views_opened"} & data.keys()):
        return output, [], []
    files = [str(f) for f in data.get("files_changed") or []]
    views = [str(v) for v in data.get("views_opened") or []]
    return "\n".join(lines[:-1]), files, views


class SubprocessCommandRunner:
    """Runs the agent executable as a child process."""

    def __init__(self, agent_argv: Sequence[str], *, cancel_grace_s: float = 5.0):
        if not agent_argv:
            raise ValueError("agent_argv must not be empty")
        self.agent_argv = list(agent_argv)
        self.cancel_grace_s = cancel_grace_s

    def is_available(self) -> bool:
        exe = self.agent_argv[0]
        if os.path.sep in exe or (os.altsep and os.altsep in exe):
            return os.path.isfile(exe) and os.access(exe, os.X_OK)
        return shutil.which(exe) is not None

    async def run(self, execution: CommandExecution, *, timeout_s: float, token: CancelToken) -> CommandResult:
        argv = [*self.agent_argv, execution.command, *execution.args]
        cwd = execution.workspace_path or None
        started = time.monotonic()
        logger.debug("Agent exec %s: %s (cwd=%s)", execution.id, argv, cwd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except FileNotFoundError as e:
            raise AgentUnavailableError(
                f"Agent executable not found: {self.agent_argv[0]}",
                command=execution.command,
                args=execution.args,
                detail=str(e),
            ) from e
        except OSError as e:
            raise AgentCommandError(
                f"Could not start agent: {e}", command=execution.command, args=execution.args, detail=str(e)
            ) from e

        collect = asyncio.ensure_future(asyncio.gather(proc.stdout.read(), proc.stderr.read(), proc.wait()))
        feed = asyncio.ensure_future(self._feed_input(proc, execution))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({collect, cancelled}, timeout=timeout_s,
                                         return_when=asyncio.FIRST_COMPLETED)
            if collect not in done:
                forced = await terminate_subprocess(proc, self.cancel_grace_s)
                elapsed = time.monotonic() - started
                if cancelled in done:
                    raise CommandCancelledError(
                        f"Command {execution.command} cancelled ({token.reason})"
                        + (" - agent force-killed" if forced else ""),
                        command=execution.command,
                        args=execution.args,
                        exit_code=proc.returncode,
                    )
                raise AgentTimeoutError(
                    f"Command {execution.command} timed out after {elapsed:.1f}s",
                    command=execution.command,
                    args=execution.args,
                    exit_code=proc.returncode,
                )
            stdout, stderr, _ = collect.result()
        except asyncio.CancelledError:
            await terminate_subprocess(proc, self.cancel_grace_s)
            raise
        finally:
            cancelled.cancel()
            feed.cancel()
            if not collect.done():
                collect.cancel()
            if proc.stdin is not None:
                with contextlib.suppress(OSError):
                    proc.stdin.close()

        output = stdout.decode("utf-8", errors="replace")[-MAX_OUTPUT_CHARS:]
        error_text = stderr.decode("utf-8", errors="replace").strip()[-MAX_OUTPUT_CHARS:]
        output, files_changed, views_opened = split_side_effects(output)
        success = proc.returncode == 0
        return CommandResult(
            success=success,
            command=execution.command,
            args=list(execution.args),
            output=output,
            error=None if success else (error_text or f"Agent exited with code {proc.returncode}"),
            exit_code=proc.returncode,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            files_changed=files_changed,
            views_opened=views_opened,
        )

    @staticmethod
    async def _feed_input(proc: asyncio.subprocess.Process, execution: CommandExecution) -> None:
        while True:
            line = await execution.inputs.get()
            try:
                proc.stdin.write(line.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Agent %s closed stdin; dropping input", execution.id)
                return


class CommandProxy:
    """Validates, tracks and bounds agent command executions."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        default_timeout_s: float = DEFAULT_TIMEOUT_S,
        max_concurrent_commands: int = DEFAULT_MAX_CONCURRENT_COMMANDS,
        available_commands: Sequence[str] = (),
    ):
        self.runner = runner
        self.default_timeout_s = default_timeout_s
        self.max_concurrent_commands = max(1, max_concurrent_commands)
        self.available_commands = tuple(available_commands)
        self._active: dict[str, CommandExecution] = {}
        self._counter = itertools.count(1)
        self._disposed = False

    @staticmethod
    def _validate(command: object, args: object) -> list[str]:
        if not isinstance(command, str) or not command.strip():
            raise ValidationError("Command must be a non-empty string", field="command", value=command)
        if not isinstance(args, (list, tuple)):
            raise ValidationError("Args must be a list", field="args", value=args)
        if not all(isinstance(a, str) for a in args):
            raise ValidationError("All args must be strings", field="args", value=args)
        return list(args)

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        workspace_path: Optional[str] = None,
        timeout_s: Optional[float] = None,
        token: Optional[CancelToken] = None,
        job_id: Optional[str] = None,
    ) -> CommandResult:
        """
        Run ``command`` and return the agent's result.

        An unsuccessful agent result is returned, not raised; use
        ``require_success`` for that. Raises AgentUnavailableError,
        AgentTimeoutError, CommandCancelledError, CommandLimitError,
        ValidationError or AgentCommandError.

        Only calls without ``job_id`` count against (and can be refused by)
        ``max_concurrent_commands``.
        """
        arg_list = self._validate(command, list(args) if isinstance(args, tuple) else args)
        if self._disposed:
            raise AgentUnavailableError("Command proxy has been disposed", command=command, args=arg_list)
        if not self.runner.is_available():
            raise AgentUnavailableError(
                "Coding agent is not available", command=command, args=arg_list
            )
        if job_id is None and self._adhoc_count() >= self.max_concurrent_commands:
            raise CommandLimitError(
                f"Maximum concurrent commands limit reached ({self.max_concurrent_commands})",
                command=command,
                args=arg_list,
            )

        execution = CommandExecution(
            id=f"exec-{int(time.time() * 1000)}-{next(self._counter)}",
            command=command.strip(),
            args=arg_list,
            workspace_path=workspace_path,
            job_id=job_id,
        )
        if token is not None:
            execution.token = token
        timeout = timeout_s if timeout_s is not None else self.default_timeout_s
        self._active[execution.id] = execution
        logger.info("Executing agent command %s [%s]", execution.command, execution.id)

        try:
            result = await self.runner.run(execution, timeout_s=timeout, token=execution.token)
        except CommandCancelledError:
            execution.status = "cancelled"
            execution.error = "Command execution was cancelled"
            raise
        except BridgeError as e:
            execution.status = "failed"
            execution.error = e.message
            raise
        except asyncio.CancelledError:
            execution.status = "cancelled"
            raise
        except Exception as e:
            execution.status = "failed"
            execution.error = str(e)
            logger.exception("Agent runner crashed on %s", execution.command)
            raise AgentCommandError(
                f"Agent command {execution.command} failed: {e}",
                command=execution.command,
                args=execution.args,
                detail=str(e),
            ) from e
        finally:
            execution.completed_at = utcnow()
            self._active.pop(execution.id, None)

        execution.status = "completed" if result.success else "failed"
        execution.output = result.output
        execution.error = result.error
        logger.info(
            "Agent command %s [%s] finished: success=%s in %dms",
            execution.command, execution.id, result.success, result.execution_time_ms,
        )
        return result

    @staticmethod
    def require_success(result: CommandResult) -> CommandResult:
        if not result.success:
            raise AgentCommandError(
                f"Agent reported failure for {result.command}: {result.error or 'no detail'}",
                command=result.command,
                args=result.args,
                exit_code=result.exit_code,
                detail=result.error,
            )
        return result

    def get_status(self) -> AgentStatus:
        if not self.runner.is_available():
            return AgentStatus(status="unavailable")
        if self._active:
            current = next(iter(self._active.values()))
            return AgentStatus(status="busy", current_command=current.command, active_executions=len(self._active))
        return AgentStatus(status="ready")

    def _adhoc_count(self) -> int:
        return sum(1 for e in self._active.values() if e.job_id is None)

    def get_active_executions(self) -> list[CommandExecution]:
        return list(self._active.values())

    def get_available_commands(self) -> list[str]:
        """Commands the bridge knows the agent accepts; empty while the agent is unavailable."""
        if not self.runner.is_available():
            return []
        return sorted(set(self.available_commands))

    def cancel_execution(self, execution_id: str) -> bool:
        execution = self._active.get(execution_id)
        if execution is None:
            return False
        execution.token.cancel("cancelled by request")
        return True

    def send_input(self, execution_id: str, value: str, input_type: str = "text") -> InputResult:
        """
        Forward a user's answer to a running command.

        Unknown or finished executions give an unsuccessful InputResult
        rather than an error; malformed input raises ValidationError.
        """
        if not isinstance(value, str) or not value:
            raise ValidationError("Value is required and must be a string", field="value", value=value)
        if input_type not in INPUT_TYPES:
            raise ValidationError(
                f"Type must be one of: {', '.join(INPUT_TYPES)}", field="type", value=input_type
            )
        execution = self._active.get(execution_id)
        if execution is None:
            return InputResult(
                success=False,
                execution_id=execution_id,
                error=f"No running execution found with ID: {execution_id}",
            )
        execution.inputs.put_nowait(value if value.endswith("\n") else value + "\n")
        logger.debug("Queued %s input for %s", input_type, execution_id)
        return InputResult(success=True, execution_id=execution_id)

    def dispose(self) -> None:
        self._disposed = True
        for execution in list(self._active.values()):
            execution.token.cancel("bridge shutting down")
