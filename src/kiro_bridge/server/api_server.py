"""
API Server
==========

Runs the FastAPI app with uvicorn inside the bridge's own event loop.

The listening socket is bound here rather than by uvicorn: uvicorn logs and
exits the process when a bind fails, while the bridge needs an address-in-use
failure as a ``PortConflictError`` naming the process that holds the port.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import os
import socket
import time
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI

from kiro_bridge.core.errors import PortConflictError, StartupError
from kiro_bridge.core.jobs import utcnow
from kiro_bridge.core.port_utils import get_process_using_port, is_valid_port
from kiro_bridge.core.process_utils import IS_WINDOWS
from kiro_bridge.server.server_lock import ServerLock

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT_S = 10.0
STARTUP_TIMEOUT_S = 10.0
BACKLOG = 2048

_ADDR_IN_USE = {errno.EADDRINUSE, 10048}  # 10048: WSAEADDRINUSE
_ACCESS_DENIED = {errno.EACCES, 10013}  # Windows reports a held exclusive port as WSAEACCES


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind and listen on ``host:port``.

    Raises:
        PortConflictError: the address is already in use.
        StartupError: any other bind failure.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if IS_WINDOWS:
            sock.setsockopt(socket.SOL_SOCKET, getattr(socket, "SO_EXCLUSIVEADDRUSE", socket.SO_REUSEADDR), 1)
        else:
            # Allow rebinding over TIME_WAIT after a restart; an active listener still conflicts.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(BACKLOG)
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        code = e.errno if e.errno is not None else getattr(e, "winerror", None)
        if code in _ADDR_IN_USE or (IS_WINDOWS and code in _ACCESS_DENIED):
            raise PortConflictError(port, host) from e
        raise StartupError(f"Cannot bind {host}:{port}: {e}", port=port, host=host, cause=e) from e
    return sock


class ApiServer:
    """Owns the listening socket and the uvicorn server task."""

    def __init__(self, app: FastAPI, host: str, port: int, *, log_level: str = "info"):
        if not (port == 0 or is_valid_port(port)):
            raise ValueError(f"Invalid port: {port!r}")
        self.app = app
        self.host = host
        self.requested_port = port
        self.port: Optional[int] = None
        self.log_level = log_level
        self.started_at = None
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._sock: Optional[socket.socket] = None
        self._lock: Optional[ServerLock] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, port: Optional[int] = None) -> int:
        """
        Bind and start serving; returns the bound port.

        ``port`` overrides the configured port (failover). Raises
        PortConflictError with the owning process when the port is taken.
        """
        if self.is_running:
            return self.port  # type: ignore[return-value]
        target = self.requested_port if port is None else port

        try:
            sock = bind_socket(self.host, target)
        except PortConflictError as e:
            owner = await asyncio.to_thread(get_process_using_port, target, self.host)
            lock_reason = ServerLock(target).status().describe(target)
            raise PortConflictError(target, self.host, owner, reason=lock_reason) from e

        self._sock = sock
        self.port = sock.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            log_level=self.log_level,
            access_log=False,
            log_config=None,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]), name=f"api-server-{self.port}")

        deadline = time.monotonic() + STARTUP_TIMEOUT_S
        while not self._server.started:
            if self._task.done() or time.monotonic() > deadline:
                cause = self._task.exception() if self._task.done() and not self._task.cancelled() else None
                await self._teardown()
                raise StartupError(
                    f"API server failed to start on {self.host}:{target}",
                    port=target, host=self.host, cause=cause,
                )
            await asyncio.sleep(0.02)

        self._lock = ServerLock(self.port)
        if not self._lock.acquire(force=True, timeout_s=0):
            logger.warning("Could not record server lock for port %d", self.port)
        self.started_at = utcnow()
        logger.info("API server listening on http://%s:%d", self.host, self.port)
        return self.port

    async def stop(self, timeout_s: float = DEFAULT_STOP_TIMEOUT_S) -> None:
        """Graceful shutdown bounded by ``timeout_s``, then forced. Safe to call twice."""
        if self._task is None:
            return
        task, server = self._task, self._server
        if server is not None:
            server.should_exit = True
        done, _ = await asyncio.wait({task}, timeout=timeout_s)
        if not done:
            logger.warning("API server did not stop within %.1fs; forcing exit", timeout_s)
            if server is not None:
                server.force_exit = True
            done, _ = await asyncio.wait({task}, timeout=1.0)
            if not done:
                task.cancel()
                await asyncio.wait({task}, timeout=1.0)
        await self._teardown()
        logger.info("API server stopped")

    async def _teardown(self) -> None:
        task = self._task
        self._task = None
        self._server = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=1.0)
        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.close()
            self._sock = None
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    async def wait(self) -> None:
        """Wait until the server task ends."""
        if self._task is not None:
            await asyncio.wait({self._task})

    def get_server_status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "host": self.host,
            "port": self.port if self.is_running else None,
            "requested_port": self.requested_port,
            "pid": os.getpid(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }
