"""
Bootstrap Tests
===============

Activation, port-conflict resolution and deactivation of a bridge context.
"""

import asyncio
import os
import socket
import subprocess
import sys

import httpx
import pytest

from kiro_bridge.core.errors import AlreadyInitializedError, PortConflictError, StartupError
from kiro_bridge.core.port_utils import PortOwner
from kiro_bridge.server.bootstrap import (
    BridgeContext,
    ConflictChoice,
    activate,
    deactivate,
    force_restart_servers,
    start_servers_with_port_conflict_handling,
)

HOLDER_SCRIPT = (
    "import socket, sys, time\n"
    "s = socket.socket(); s.bind(('127.0.0.1', 0)); s.listen(1)\n"
    "print(s.getsockname()[1], flush=True)\n"
    "time.sleep(60)\n"
)


@pytest.fixture
def busy_port():
    """A port held by a listener in this process."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def holder_process():
    """A child process listening on an ephemeral port; yields (proc, port)."""
    proc = subprocess.Popen([sys.executable, "-c", HOLDER_SCRIPT], stdout=subprocess.PIPE, text=True)
    port = int(proc.stdout.readline().strip())
    yield proc, port
    if proc.poll() is None:
        proc.kill()
    proc.wait(timeout=5)
    proc.stdout.close()


def test_initialize_twice_raises(settings, fake_runner):
    ctx = BridgeContext(settings, runner=fake_runner)
    ctx.initialize()
    api_server = ctx.api_server
    with pytest.raises(AlreadyInitializedError):
        ctx.initialize()
    assert ctx.api_server is api_server


async def test_initialize_wires_settings_into_components(settings, fake_runner, tmp_path):
    (tmp_path / "template" / ".kiro").mkdir(parents=True)
    settings.workspace_template_dir = tmp_path / "template"
    settings.finished_job_retention_s = 0
    ctx = BridgeContext(settings, runner=fake_runner)
    ctx.initialize()
    try:
        assert ctx.workspace_manager.template_dir == (tmp_path / "template").resolve()
        assert "kiro.spec.design" in ctx.command_proxy.get_available_commands()

        from kiro_bridge.core.jobs import JobRequest

        old = ctx.job_manager.submit(JobRequest(application_id="old", title="Old", description="d"))
        await ctx.job_manager.wait_for(old.id, timeout=5)
        assert ctx.progress_board.events(old.id)

        ctx.job_manager.submit(JobRequest(application_id="new", title="New", description="d"))
        assert ctx.progress_board.events(old.id) == []
    finally:
        await ctx.dispose()


async def test_activate_serves_and_deactivate_is_idempotent(settings, fake_runner):
    context = await activate(settings, runner=fake_runner)
    port = context.api_server.port
    assert context.is_initialized

    async with httpx.AsyncClient() as client:
        response = await client.get(f"http://127.0.0.1:{port}/health")
    assert response.status_code == 200
    assert response.json()["server"]["port"] == port

    await deactivate(context)
    await deactivate(context)
    await deactivate(None)
    assert context.is_disposed
    assert not context.api_server.is_running


async def test_activate_without_auto_start(settings, fake_runner):
    settings.auto_start = False
    context = await activate(settings, runner=fake_runner)
    try:
        assert context.is_initialized
        assert not context.api_server.is_running
    finally:
        await deactivate(context)


async def test_deactivate_cancels_running_jobs(settings, fake_runner):
    from kiro_bridge.core.jobs import JobRequest, JobState

    fake_runner.hold = True
    context = await activate(settings, runner=fake_runner)
    job = context.job_manager.submit(JobRequest(application_id="app", title="App", description=""))
    await deactivate(context)
    assert job.state is JobState.CANCELLED


async def test_conflict_aborts_by_default(settings, fake_runner, busy_port):
    settings.api_port = busy_port
    with pytest.raises(PortConflictError) as excinfo:
        await activate(settings, runner=fake_runner)
    assert excinfo.value.port == busy_port
    assert "failover" in excinfo.value.remediation


async def test_activation_failure_disposes_context(settings, fake_runner, busy_port, monkeypatch):
    disposed = []
    original = BridgeContext.dispose

    async def tracking_dispose(self):
        disposed.append(self)
        await original(self)

    monkeypatch.setattr(BridgeContext, "dispose", tracking_dispose)
    settings.api_port = busy_port
    with pytest.raises(PortConflictError):
        await activate(settings, runner=fake_runner)
    assert len(disposed) == 1
    assert disposed[0].is_disposed


async def test_conflict_failover_picks_next_port(settings, fake_runner, busy_port):
    settings.api_port = busy_port
    seen = []

    def resolve(error):
        seen.append(error)
        return ConflictChoice.FAILOVER

    context = await activate(settings, resolve=resolve, runner=fake_runner)
    try:
        assert seen[0].port == busy_port
        assert context.api_server.port != busy_port
        assert busy_port < context.api_server.port <= busy_port + settings.port_scan_span
    finally:
        await deactivate(context)


async def test_async_resolver_is_awaited(settings, fake_runner, busy_port):
    settings.api_port = busy_port

    async def resolve(error):
        await asyncio.sleep(0)
        return "abort"

    context = BridgeContext(settings, runner=fake_runner)
    context.initialize()
    try:
        with pytest.raises(PortConflictError):
            await start_servers_with_port_conflict_handling(context, resolve)
    finally:
        await context.dispose()


async def test_force_restart_refuses_own_process(settings, fake_runner, busy_port):
    settings.api_port = busy_port
    context = BridgeContext(settings, runner=fake_runner)
    context.initialize()
    try:
        error = PortConflictError(busy_port, "127.0.0.1", PortOwner(pid=os.getpid(), name="python"))
        with pytest.raises(StartupError) as excinfo:
            await force_restart_servers(context, error)
        assert "refusing" in excinfo.value.message
    finally:
        await context.dispose()


async def test_force_restart_kills_owner_and_binds(settings, fake_runner, holder_process):
    proc, port = holder_process
    settings.api_port = port
    context = BridgeContext(settings, runner=fake_runner)
    context.initialize()
    try:
        error = PortConflictError(port, "127.0.0.1", PortOwner(pid=proc.pid))
        bound = await force_restart_servers(context, error)
        assert bound == port
        assert context.api_server.is_running
        assert proc.wait(timeout=5) is not None
    finally:
        await context.dispose()


async def test_force_restart_retry_failure_is_startup_error(settings, fake_runner, busy_port):
    settings.api_port = busy_port
    settings.port_probe_timeout_s = 0.1
    context = BridgeContext(settings, runner=fake_runner)
    context.initialize()
    try:
        # No known owner: the bind is retried once and still fails.
        error = PortConflictError(busy_port, "127.0.0.1", None)
        with pytest.raises(StartupError):
            await force_restart_servers(context, error)
    finally:
        await context.dispose()
