"""
Pytest Configuration and Fixtures
=================================

Central pytest configuration and shared fixtures for all tests.
Includes async fixtures for the job manager, the bridge context and the
FastAPI app.
"""

import asyncio
import sys
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest

from kiro_bridge.agent.command_proxy import CancelToken, CommandExecution, CommandProxy, CommandResult
from kiro_bridge.agent.progress import ProgressBoard
from kiro_bridge.core.config import BridgeSettings
from kiro_bridge.core.errors import AgentTimeoutError, CommandCancelledError
from kiro_bridge.core.job_manager import JobManager
from kiro_bridge.core.metadata_store import MetadataStore
from kiro_bridge.core.workspace_manager import WorkspaceManager

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


# =============================================================================
# Fake agent
# =============================================================================


class FakeRunner:
    """Scriptable stand-in for the agent process.

    With ``hold`` set, every command blocks until its workspace is released
    (``release(path)`` / ``release_all()``), cancelled, or timed out.
    """

    def __init__(self):
        self.available = True
        self.hold = False
        self.failures: dict[str, str] = {}
        self.calls: list[CommandExecution] = []
        self._gates: dict[Optional[str], asyncio.Event] = {}

    def is_available(self) -> bool:
        return self.available

    def _gate(self, path: Optional[str]) -> asyncio.Event:
        return self._gates.setdefault(path, asyncio.Event())

    def release(self, path: Optional[str]) -> None:
        self._gate(path).set()

    def release_all(self) -> None:
        self.hold = False
        for gate in self._gates.values():
            gate.set()

    def commands_for(self, path: Optional[str]) -> list[str]:
        return [c.command for c in self.calls if c.workspace_path == path]

    async def run(self, execution: CommandExecution, *, timeout_s: float, token: CancelToken) -> CommandResult:
        self.calls.append(execution)
        if self.hold:
            gate = asyncio.ensure_future(self._gate(execution.workspace_path).wait())
            cancelled = asyncio.ensure_future(token.wait())
            try:
                done, _ = await asyncio.wait(
                    {gate, cancelled}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                gate.cancel()
                cancelled.cancel()
            if token.cancelled:
                raise CommandCancelledError("cancelled", command=execution.command, args=execution.args)
            if not done:
                raise AgentTimeoutError("timed out", command=execution.command, args=execution.args)

        if execution.command in self.failures:
            return CommandResult(
                success=False,
                command=execution.command,
                args=list(execution.args),
                error=self.failures[execution.command],
                exit_code=1,
            )
        return CommandResult(
            success=True,
            command=execution.command,
            args=list(execution.args),
            output=f"{execution.command} done",
            exit_code=0,
            files_changed=["src/main.py"],
        )


class RecordingSink:
    """Progress sink that keeps every update."""

    def __init__(self):
        self.updates: list[tuple[str, object]] = []

    def report(self, job_id, progress) -> None:
        self.updates.append((job_id, progress))

    def states_for(self, job_id: str) -> list[str]:
        return [u.state.value for jid, u in self.updates if jid == job_id]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


# =============================================================================
# Basic Fixtures
# =============================================================================


@pytest.fixture
def fake_agent_argv() -> list[str]:
    """Argv prefix that runs tests/fake_agent.py as the agent executable."""
    return [sys.executable, str(FAKE_AGENT)]


@pytest.fixture
def settings(tmp_path: Path, fake_agent_argv) -> BridgeSettings:
    """Settings isolated in tmp_path with fast timings and an ephemeral port."""
    return BridgeSettings(
        api_host="127.0.0.1",
        api_port=0,
        workspace_root=tmp_path / "apps",
        log_dir=None,
        max_concurrent_jobs=2,
        job_timeout_s=10.0,
        progress_interval_s=0.05,
        cancel_grace_s=0.5,
        agent_command=fake_agent_argv,
        agent_timeout_s=5.0,
        shutdown_timeout_s=2.0,
        port_probe_timeout_s=0.5,
        port_scan_span=20,
    )


@pytest.fixture
def workspace_manager(tmp_path: Path) -> WorkspaceManager:
    manager = WorkspaceManager(tmp_path / "apps")
    manager.initialize()
    return manager


@pytest.fixture
def metadata_store(workspace_manager: WorkspaceManager) -> MetadataStore:
    return MetadataStore(workspace_manager.root / ".metadata")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def command_proxy(fake_runner: FakeRunner) -> CommandProxy:
    return CommandProxy(fake_runner, default_timeout_s=5.0, max_concurrent_commands=16)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
async def job_manager(workspace_manager, command_proxy, metadata_store, sink) -> AsyncGenerator[JobManager, None]:
    """Job manager with cap 2 over the fake runner; disposed after the test."""
    manager = JobManager(
        workspace_manager,
        command_proxy,
        max_concurrent_jobs=2,
        job_timeout_s=10.0,
        progress_interval_s=0.05,
        cancel_grace_s=0.5,
        metadata_store=metadata_store,
        progress_sink=sink,
    )
    yield manager
    await manager.dispose()


# =============================================================================
# Bridge context / FastAPI Fixtures
# =============================================================================


@pytest.fixture
async def context(settings, fake_runner):
    """Initialized BridgeContext (API server not started)."""
    from kiro_bridge.server.bootstrap import BridgeContext

    ctx = BridgeContext(settings, runner=fake_runner)
    ctx.initialize()
    yield ctx
    await ctx.dispose()


@pytest.fixture
async def async_client(context) -> AsyncGenerator:
    """Create an async HTTP client for testing FastAPI endpoints.

    Usage:
        async def test_endpoint(async_client):
            response = await async_client.get("/health")
            assert response.status_code == 200
    """
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=context.api_server.app),
        base_url="http://test"
    ) as client:
        yield client


@pytest.fixture
def board() -> ProgressBoard:
    return ProgressBoard(history=50)
