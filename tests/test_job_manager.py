"""
Job Manager Tests
=================

Admission, FIFO promotion, terminal transitions, cancellation and
progress pushes.

Run with: pytest tests/test_job_manager.py -v
"""

import asyncio
import sys
from pathlib import Path

import pytest

from conftest import FakeRunner, RecordingSink, wait_until
from kiro_bridge.agent.command_proxy import CommandProxy, SubprocessCommandRunner
from kiro_bridge.agent.progress import ProgressBoard
from kiro_bridge.core.errors import InvalidJobTransitionError, JobNotFoundError, ValidationError
from kiro_bridge.core.job_manager import DEFAULT_PIPELINE, AgentStep, JobManager
from kiro_bridge.core.jobs import DevelopmentPhase, JobRequest, JobState


def _request(app_id: str, title: str = "Todo app") -> JobRequest:
    return JobRequest(application_id=app_id, title=title, description="A todo list with due dates")


# =============================================================================
# Submission and admission
# =============================================================================


async def test_submit_runs_immediately_when_slot_free(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.hold = True
    job = job_manager.submit(_request("todo"))

    assert job.state is JobState.RUNNING
    assert job.started_at is not None
    assert job.workspace_path is not None
    assert Path(job.workspace_path).is_dir()

    fake_runner.release_all()
    await job_manager.wait_for(job.id, timeout=5)
    assert job.state is JobState.SUCCEEDED


async def test_cap_and_fifo_promotion(job_manager: JobManager, fake_runner: FakeRunner):
    """Four jobs with a cap of two: A and B run, C then D follow in order."""
    fake_runner.hold = True
    a, b, c, d = (job_manager.submit(_request(name)) for name in ("a", "b", "c", "d"))

    assert [a.state, b.state] == [JobState.RUNNING, JobState.RUNNING]
    assert [c.state, d.state] == [JobState.QUEUED, JobState.QUEUED]
    assert job_manager.get_active_job_count() == 2
    assert job_manager.get_queued_job_ids() == [c.id, d.id]

    fake_runner.release(a.workspace_path)
    await job_manager.wait_for(a.id, timeout=5)
    await wait_until(lambda: c.state is JobState.RUNNING)

    assert d.state is JobState.QUEUED
    assert job_manager.get_active_job_count() == 2
    assert job_manager.get_queued_job_ids() == [d.id]

    fake_runner.release_all()
    for job in (b, c, d):
        await job_manager.wait_for(job.id, timeout=5)
    assert all(j.state is JobState.SUCCEEDED for j in (a, b, c, d))
    assert c.started_at <= d.started_at


async def test_running_count_never_exceeds_cap(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.hold = True
    jobs = [job_manager.submit(_request(f"app-{i}")) for i in range(6)]
    peak = 0

    async def watch():
        nonlocal peak
        while not all(j.is_terminal for j in jobs):
            peak = max(peak, job_manager.get_active_job_count())
            await asyncio.sleep(0.005)

    watcher = asyncio.create_task(watch())
    for job in jobs:
        await wait_until(lambda: job.state is JobState.RUNNING or job.is_terminal)
        fake_runner.release(job.workspace_path)
    await asyncio.wait_for(watcher, timeout=10)

    assert peak <= 2
    assert all(j.state is JobState.SUCCEEDED for j in jobs)


async def test_submit_validates_request(job_manager: JobManager):
    with pytest.raises(ValidationError):
        job_manager.submit(JobRequest(application_id=" ", title="x", description=""))
    with pytest.raises(ValidationError):
        job_manager.submit(JobRequest(application_id="ok", title="", description=""))


# =============================================================================
# Pipeline outcomes
# =============================================================================


async def test_successful_pipeline_runs_every_phase(job_manager: JobManager, fake_runner: FakeRunner):
    job = job_manager.submit(_request("shop", title="Shop"))
    path = job.workspace_path
    await job_manager.wait_for(job.id, timeout=5)

    assert job.state is JobState.SUCCEEDED
    assert job.error is None
    assert job.progress.percentage == 100.0
    assert fake_runner.commands_for(path) == [step.command for step in DEFAULT_PIPELINE]
    assert job.progress.completed_milestones == [step.milestone for step in DEFAULT_PIPELINE]

    first = next(c for c in fake_runner.calls if c.workspace_path == path)
    assert first.args == ["--title", "Shop", "--description", "A todo list with due dates"]


async def test_agent_failure_fails_job_with_detail(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.failures["kiro.spec.design"] = "design generation crashed"
    job = job_manager.submit(_request("broken"))
    await job_manager.wait_for(job.id, timeout=5)

    assert job.state is JobState.FAILED
    assert "design generation crashed" in job.error
    assert job.error_code == "AGENT_COMMAND_FAILED"
    assert job.progress.milestone("Design completed").status == "failed"
    assert job.ended_at is not None


async def test_provisioning_failure_fails_job_and_promotes_next(
    job_manager: JobManager, workspace_manager, fake_runner: FakeRunner
):
    # A non-empty directory at the target path blocks provisioning.
    blocked = workspace_manager.workspace_path_for("blocked")
    blocked.mkdir(parents=True)
    (blocked / "leftover.txt").write_text("x")

    fake_runner.hold = True
    job = job_manager.submit(_request("blocked"))
    assert job.state is JobState.FAILED
    assert job.error_code == "WORKSPACE_CREATION_FAILED"
    assert "not empty" in job.error
    assert job.started_at is None

    other = job_manager.submit(_request("fine"))
    assert other.state is JobState.RUNNING
    fake_runner.release_all()
    await job_manager.wait_for(other.id, timeout=5)


async def test_unexpected_provisioning_error_fails_job_and_promotes_next(
    job_manager: JobManager, workspace_manager, fake_runner: FakeRunner, monkeypatch
):
    real_create = workspace_manager.create_workspace

    def create(application_id, **kwargs):
        if application_id == "denied":
            raise RuntimeError("disk went away")
        return real_create(application_id, **kwargs)

    monkeypatch.setattr(workspace_manager, "create_workspace", create)

    fake_runner.hold = True
    job = job_manager.submit(_request("denied"))
    assert job.state is JobState.FAILED
    assert job.error_code == "WORKSPACE_CREATION_FAILED"
    assert "disk went away" in job.error
    await job_manager.wait_for(job.id, timeout=1)

    other = job_manager.submit(_request("fine"))
    assert other.state is JobState.RUNNING
    fake_runner.release_all()
    await job_manager.wait_for(other.id, timeout=5)


async def test_job_timeout_fails_job(workspace_manager, command_proxy, fake_runner: FakeRunner):
    manager = JobManager(workspace_manager, command_proxy, job_timeout_s=0.2, cancel_grace_s=0.1)
    fake_runner.hold = True
    try:
        job = manager.submit(_request("slow"))
        await manager.wait_for(job.id, timeout=5)
        assert job.state is JobState.FAILED
        assert job.error_code == "JOB_TIMEOUT"
        assert "timed out" in job.error
    finally:
        await manager.dispose()


async def test_one_failure_does_not_touch_other_jobs(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.failures["kiro.spec.test"] = "tests red"
    fake_runner.hold = True
    a = job_manager.submit(_request("a"))
    b = job_manager.submit(_request("b"))
    fake_runner.release_all()
    await job_manager.wait_for(a.id, timeout=5)
    await job_manager.wait_for(b.id, timeout=5)

    assert a.state is JobState.FAILED and b.state is JobState.FAILED
    assert a.workspace_path != b.workspace_path


# =============================================================================
# Terminal states
# =============================================================================


async def test_terminal_state_is_final(job_manager: JobManager):
    job = job_manager.submit(_request("done"))
    await job_manager.wait_for(job.id, timeout=5)
    assert job.state is JobState.SUCCEEDED

    with pytest.raises(InvalidJobTransitionError):
        await job_manager.cancel(job.id)
    assert job.state is JobState.SUCCEEDED


async def test_workspace_archived_on_completion(job_manager: JobManager, workspace_manager):
    job = job_manager.submit(_request("archive-me"))
    original = Path(job.workspace_path)
    await job_manager.wait_for(job.id, timeout=5)

    assert not original.exists()
    assert Path(job.workspace_path).parent == workspace_manager.archive_root
    assert workspace_manager.get_workspace("archive-me") is None


async def test_workspace_destroyed_with_destroy_retention(workspace_manager, command_proxy):
    manager = JobManager(workspace_manager, command_proxy, retention="destroy")
    try:
        job = manager.submit(_request("gone"))
        path = Path(job.workspace_path)
        await manager.wait_for(job.id, timeout=5)
        assert not path.exists()
        assert not workspace_manager.archive_root.exists()
    finally:
        await manager.dispose()


async def test_same_application_can_run_again_after_completion(job_manager: JobManager):
    first = job_manager.submit(_request("repeat"))
    await job_manager.wait_for(first.id, timeout=5)
    second = job_manager.submit(_request("repeat"))
    await job_manager.wait_for(second.id, timeout=5)
    assert second.state is JobState.SUCCEEDED


async def test_metadata_follows_transitions(job_manager: JobManager, metadata_store, fake_runner: FakeRunner):
    fake_runner.hold = True
    job = job_manager.submit(_request("meta"))
    assert metadata_store.load("meta").status == "developing"

    fake_runner.release_all()
    await job_manager.wait_for(job.id, timeout=5)
    stored = metadata_store.load("meta")
    assert stored.status == "completed"
    assert stored.job_id == job.id
    assert stored.progress.percentage == 100.0


# =============================================================================
# Cancellation
# =============================================================================


async def test_cancel_queued_job(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.hold = True
    job_manager.submit(_request("a"))
    job_manager.submit(_request("b"))
    queued = job_manager.submit(_request("c"))
    assert queued.state is JobState.QUEUED

    await job_manager.cancel(queued.id)
    assert queued.state is JobState.CANCELLED
    assert queued.error is None
    assert queued.workspace_path is None
    assert queued.id not in job_manager.get_queued_job_ids()
    fake_runner.release_all()


async def test_cancel_running_job_frees_slot(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.hold = True
    a = job_manager.submit(_request("a"))
    job_manager.submit(_request("b"))
    c = job_manager.submit(_request("c"))

    await job_manager.cancel(a.id)
    assert a.state is JobState.CANCELLED
    assert a.ended_at is not None
    assert c.state is JobState.RUNNING
    fake_runner.release_all()


async def test_cancel_unknown_job_raises(job_manager: JobManager):
    with pytest.raises(JobNotFoundError):
        await job_manager.cancel("nope")


@pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX SIGTERM semantics")
async def test_cancel_terminates_stubborn_agent_process(workspace_manager, fake_agent_argv):
    """An agent that ignores SIGTERM is force-killed and the job still ends cancelled."""
    proxy = CommandProxy(SubprocessCommandRunner(fake_agent_argv, cancel_grace_s=0.3), default_timeout_s=30)
    pipeline = [AgentStep(DevelopmentPhase.IMPLEMENTATION, "Implemented", "stubborn", ("30",))]
    manager = JobManager(workspace_manager, proxy, cancel_grace_s=0.3, pipeline=pipeline)
    try:
        job = manager.submit(_request("stubborn"))
        await wait_until(lambda: proxy.get_active_executions(), timeout=5)
        await asyncio.sleep(0.5)  # let the script install its SIGTERM handler

        loop = asyncio.get_running_loop()
        started = loop.time()
        await manager.cancel(job.id)
        elapsed = loop.time() - started

        assert job.state is JobState.CANCELLED
        assert elapsed < 5
        assert proxy.get_active_executions() == []
    finally:
        await manager.dispose()


# =============================================================================
# Progress
# =============================================================================


async def test_progress_pushed_in_order(job_manager: JobManager, sink: RecordingSink):
    job = job_manager.submit(_request("progress"))
    await job_manager.wait_for(job.id, timeout=5)

    states = sink.states_for(job.id)
    assert states[0] == "queued"
    assert states[-1] == "succeeded"
    assert "running" in states
    percentages = [u.progress.percentage for jid, u in sink.updates if jid == job.id]
    assert percentages == sorted(percentages)


async def test_ticker_pushes_while_running(job_manager: JobManager, sink: RecordingSink, fake_runner: FakeRunner):
    fake_runner.hold = True
    job = job_manager.submit(_request("tick"))
    before = len(sink.updates)
    await asyncio.sleep(0.3)
    assert len(sink.updates) - before >= 2
    fake_runner.release_all()
    await job_manager.wait_for(job.id, timeout=5)


async def test_failing_sink_does_not_break_job(job_manager: JobManager):
    class ExplodingSink:
        def report(self, job_id, progress):
            raise RuntimeError("frontend gone")

    job_manager.set_progress_sink(ExplodingSink())
    job = job_manager.submit(_request("robust"))
    await job_manager.wait_for(job.id, timeout=5)
    assert job.state is JobState.SUCCEEDED


async def test_no_sink_is_fine(job_manager: JobManager):
    job_manager.set_progress_sink(None)
    job = job_manager.submit(_request("silent"))
    await job_manager.wait_for(job.id, timeout=5)
    assert job.state is JobState.SUCCEEDED


# =============================================================================
# Queries and shutdown
# =============================================================================


async def test_list_jobs_filters(job_manager: JobManager, fake_runner: FakeRunner):
    fake_runner.hold = True
    a = job_manager.submit(_request("a"))
    b = job_manager.submit(_request("b"))
    c = job_manager.submit(_request("c"))

    assert [j.id for j in job_manager.list_jobs()] == [a.id, b.id, c.id]
    assert [j.id for j in job_manager.list_jobs(state=JobState.QUEUED)] == [c.id]
    assert [j.id for j in job_manager.list_jobs(application_id="b")] == [b.id]
    fake_runner.release_all()


async def test_prune_finished(job_manager: JobManager):
    job = job_manager.submit(_request("old"))
    await job_manager.wait_for(job.id, timeout=5)
    assert job_manager.prune_finished(max_age_s=0) == 1
    with pytest.raises(JobNotFoundError):
        job_manager.get_job(job.id)


async def test_dispose_cancels_everything(workspace_manager, command_proxy, fake_runner: FakeRunner):
    manager = JobManager(workspace_manager, command_proxy, max_concurrent_jobs=1, cancel_grace_s=0.2)
    fake_runner.hold = True
    running = manager.submit(_request("r"))
    queued = manager.submit(_request("q"))

    await manager.dispose()
    await manager.dispose()

    assert running.state is JobState.CANCELLED
    assert queued.state is JobState.CANCELLED
    with pytest.raises(ValidationError):
        manager.submit(_request("late"))


async def test_submit_prunes_expired_jobs_and_their_progress(workspace_manager, command_proxy):
    board = ProgressBoard()
    manager = JobManager(
        workspace_manager,
        command_proxy,
        progress_sink=board,
        finished_retention_s=0,
        on_prune=board.forget,
    )
    try:
        old = manager.submit(_request("old"))
        await manager.wait_for(old.id, timeout=5)
        assert board.events(old.id)

        new = manager.submit(_request("new"))
        with pytest.raises(JobNotFoundError):
            manager.get_job(old.id)
        assert board.events(old.id) == []
        await manager.wait_for(new.id, timeout=5)
    finally:
        await manager.dispose()


async def test_without_retention_finished_jobs_are_kept(job_manager: JobManager):
    job = job_manager.submit(_request("keep"))
    await job_manager.wait_for(job.id, timeout=5)
    job_manager.submit(_request("another"))
    assert job_manager.get_job(job.id) is job


# =============================================================================
# Jobs alongside ad-hoc commands
# =============================================================================


async def test_jobs_run_while_adhoc_commands_fill_the_limit(workspace_manager, fake_runner: FakeRunner):
    proxy = CommandProxy(fake_runner, max_concurrent_commands=2)
    manager = JobManager(workspace_manager, proxy, max_concurrent_jobs=2, cancel_grace_s=0.2)
    fake_runner.hold = True
    adhoc = [asyncio.create_task(proxy.execute("kiro.status", workspace_path="/adhoc")) for _ in range(2)]
    try:
        await wait_until(lambda: len(proxy.get_active_executions()) == 2)

        job = manager.submit(_request("busy-agent"))
        assert job.state is JobState.RUNNING
        workspace_path = job.workspace_path
        fake_runner.release(workspace_path)
        await manager.wait_for(job.id, timeout=5)

        assert job.state is JobState.SUCCEEDED, job.error
        assert len(fake_runner.commands_for(workspace_path)) == len(DEFAULT_PIPELINE)
    finally:
        fake_runner.release_all()
        await asyncio.gather(*adhoc)
        await manager.dispose()
