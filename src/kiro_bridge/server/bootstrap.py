"""
Bridge Bootstrap
================

Activation and deactivation of the bridge.

``BridgeContext`` holds every long-lived component and is passed explicitly
to whoever needs it; there is no module-level instance. Activation is
port-conflict safe: when the configured port is taken, the operator (or a
policy callback) chooses between force-restarting the owner, failing over
to another port, or aborting.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from kiro_bridge.agent.command_proxy import CommandProxy, CommandRunner, SubprocessCommandRunner
from kiro_bridge.agent.progress import ProgressBoard
from kiro_bridge.core.config import BridgeSettings
from kiro_bridge.core.errors import (
    AlreadyInitializedError,
    BridgeError,
    NotInitializedError,
    PortConflictError,
    StartupError,
)
from kiro_bridge.core.job_manager import DEFAULT_PIPELINE, JobManager
from kiro_bridge.core.metadata_store import MetadataStore
from kiro_bridge.core.port_utils import find_available_port, get_process_using_port, is_port_available
from kiro_bridge.core.process_utils import kill_process_tree
from kiro_bridge.core.workspace_manager import WorkspaceManager
from kiro_bridge.server.api_server import ApiServer
from kiro_bridge.server.app import create_app

logger = logging.getLogger(__name__)

# How long a force restart waits for the killed owner to release the port.
PORT_RELEASE_TIMEOUT_S = 5.0

_UVICORN_LEVELS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


class ConflictChoice(str, Enum):
    FORCE_RESTART = "force_restart"
    FAILOVER = "failover"
    ABORT = "abort"


ConflictResolver = Callable[[PortConflictError], Union[ConflictChoice, Awaitable[ConflictChoice]]]


class BridgeContext:
    """Every long-lived component of one bridge activation."""

    def __init__(self, settings: BridgeSettings, *, runner: Optional[CommandRunner] = None):
        self.settings = settings
        self._runner = runner
        self.workspace_manager: Optional[WorkspaceManager] = None
        self.metadata_store: Optional[MetadataStore] = None
        self.command_proxy: Optional[CommandProxy] = None
        self.progress_board: Optional[ProgressBoard] = None
        self.job_manager: Optional[JobManager] = None
        self.api_server: Optional[ApiServer] = None
        self.is_initialized = False
        self.is_disposed = False
        self._started = time.monotonic()

    @property
    def uptime_s(self) -> float:
        return time.monotonic() - self._started

    def initialize(self) -> None:
        """
        Build and wire the components.

        Raises AlreadyInitializedError (leaving the running components alone)
        if called twice, and WorkspaceError if the workspace root is unusable.
        """
        if self.is_initialized:
            raise AlreadyInitializedError("Bridge context is already initialized")
        if self.is_disposed:
            raise NotInitializedError("Bridge context was disposed; create a new one")
        s = self.settings

        workspace_manager = WorkspaceManager(s.workspace_root, template_dir=s.workspace_template_dir)
        workspace_manager.initialize()

        runner = self._runner or SubprocessCommandRunner(s.agent_command, cancel_grace_s=s.cancel_grace_s)
        self.workspace_manager = workspace_manager
        self.metadata_store = MetadataStore(s.metadata_root)
        self.command_proxy = CommandProxy(
            runner,
            default_timeout_s=s.agent_timeout_s,
            max_concurrent_commands=s.max_concurrent_commands,
            available_commands=[step.command for step in DEFAULT_PIPELINE],
        )
        self.progress_board = ProgressBoard()
        self.job_manager = JobManager(
            workspace_manager,
            self.command_proxy,
            max_concurrent_jobs=s.max_concurrent_jobs,
            job_timeout_s=s.job_timeout_s,
            progress_interval_s=s.progress_interval_s,
            cancel_grace_s=s.cancel_grace_s,
            retention=s.workspace_retention,
            metadata_store=self.metadata_store,
            progress_sink=self.progress_board,
            finished_retention_s=s.finished_job_retention_s,
            on_prune=self.progress_board.forget,
        )
        self.api_server = ApiServer(
            create_app(self), s.api_host, s.api_port, log_level=_UVICORN_LEVELS.get(s.log_level, "info")
        )
        self.is_initialized = True
        logger.info("Bridge context initialized (workspace root %s)", workspace_manager.root)

    def require_api_server(self) -> ApiServer:
        if not self.is_initialized or self.api_server is None:
            raise NotInitializedError("Bridge context is not initialized")
        return self.api_server

    async def stop_servers(self, timeout_s: Optional[float] = None) -> None:
        if self.api_server is not None:
            await self.api_server.stop(self.settings.shutdown_timeout_s if timeout_s is None else timeout_s)

    async def dispose(self) -> None:
        """Stop servers and cancel jobs. Safe to call twice."""
        if self.is_disposed:
            return
        self.is_disposed = True
        await self.stop_servers()
        if self.job_manager is not None:
            await self.job_manager.dispose()
        if self.command_proxy is not None:
            self.command_proxy.dispose()
        if self.workspace_manager is not None:
            self.workspace_manager.dispose()
        self.is_initialized = False
        logger.info("Bridge context disposed")


async def _resolve_conflict(resolve: Optional[ConflictResolver], error: PortConflictError) -> ConflictChoice:
    if resolve is None:
        return ConflictChoice.ABORT
    choice = resolve(error)
    if inspect.isawaitable(choice):
        choice = await choice
    return ConflictChoice(choice)


async def start_servers_with_port_conflict_handling(
    context: BridgeContext, resolve: Optional[ConflictResolver] = None
) -> int:
    """
    Start the API server, resolving a port conflict through ``resolve``.

    Returns the bound port. Without a resolver a conflict aborts, re-raising
    the PortConflictError so the caller can show the owner and remediation.
    """
    server = context.require_api_server()
    try:
        return await server.start()
    except PortConflictError as e:
        logger.warning("%s", e.message)
        choice = await _resolve_conflict(resolve, e)
        logger.info("Port conflict on %d resolved with: %s", e.port, choice.value)

        if choice is ConflictChoice.FORCE_RESTART:
            return await force_restart_servers(context, e)
        if choice is ConflictChoice.FAILOVER:
            settings = context.settings
            port = await find_available_port(
                e.port + 1,
                min(e.port + settings.port_scan_span, 65535),
                server.host,
                timeout_s=settings.port_probe_timeout_s,
                skip_reserved=True,
            )
            if port is None:
                logger.error("No free port within %d of %d", settings.port_scan_span, e.port)
                raise
            logger.info("Failing over from port %d to %d", e.port, port)
            return await server.start(port)
        raise


async def force_restart_servers(context: BridgeContext, error: Optional[PortConflictError] = None) -> int:
    """
    Kill whatever holds the configured port and start the API server again.

    The bind is retried once; a second failure raises StartupError.
    Refuses to kill the bridge's own process.
    """
    server = context.require_api_server()
    host = server.host
    port = error.port if error is not None else server.requested_port
    owner = error.owner if error is not None else None
    if owner is None:
        owner = await asyncio.to_thread(get_process_using_port, port, host)

    if owner is None:
        logger.warning("No process found holding port %d; retrying the bind", port)
    elif owner.pid == os.getpid():
        raise StartupError(
            f"Port {port} is held by this bridge process (PID {owner.pid}); refusing to kill it",
            port=port, host=host, owner=owner, cause=error,
        )
    else:
        logger.warning("Terminating %s holding port %d", owner.describe(), port)
        result = await asyncio.to_thread(kill_process_tree, owner.pid, context.settings.cancel_grace_s)
        logger.info("Kill of PID %d: %s", owner.pid, result.status)
        deadline = time.monotonic() + PORT_RELEASE_TIMEOUT_S
        while time.monotonic() < deadline:
            if await is_port_available(port, host, timeout_s=context.settings.port_probe_timeout_s):
                break
            await asyncio.sleep(0.2)

    try:
        return await server.start(port)
    except BridgeError as e:
        raise StartupError(
            f"API server could not start on {host}:{port} after force restart: {e.message}",
            port=port, host=host, owner=owner, cause=e,
        ) from e


async def activate(
    settings: BridgeSettings,
    *,
    resolve: Optional[ConflictResolver] = None,
    runner: Optional[CommandRunner] = None,
) -> BridgeContext:
    """
    Build, initialize and (with ``auto_start``) serve a bridge context.

    A failure disposes the half-built context before re-raising.
    """
    context = BridgeContext(settings, runner=runner)
    try:
        context.initialize()
        reclaimed = context.workspace_manager.reclaim_stale_workspaces()
        if reclaimed:
            logger.info("Reclaimed %d stale workspaces", reclaimed)
        if settings.auto_start:
            await start_servers_with_port_conflict_handling(context, resolve)
    except BaseException:
        await context.dispose()
        raise
    return context


async def deactivate(context: Optional[BridgeContext], timeout_s: Optional[float] = None) -> None:
    """Stop servers and dispose the context within a bounded time. Safe to call twice."""
    if context is None or context.is_disposed:
        return
    timeout = context.settings.shutdown_timeout_s if timeout_s is None else timeout_s
    try:
        await asyncio.wait_for(context.stop_servers(timeout), timeout=timeout + 1.0)
    except asyncio.TimeoutError:
        logger.warning("Server shutdown exceeded %.1fs; continuing with disposal", timeout)
    try:
        await asyncio.wait_for(context.dispose(), timeout=timeout + context.settings.cancel_grace_s + 2.0)
    except asyncio.TimeoutError:
        logger.error("Bridge disposal exceeded its time bound; some jobs may still be winding down")
