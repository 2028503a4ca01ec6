"""
Job Manager
===========

Owns every development job from submission to a terminal state.

- Jobs enter ``queued`` and are admitted in FIFO order while fewer than
  ``max_concurrent_jobs`` are ``running``.
- Admission provisions the job's workspace first; a provisioning failure
  sends the job straight to ``failed`` and the next queued job is tried.
- A running job drives the agent through a fixed pipeline of commands, one
  per development phase, via the command proxy.
- Progress is pushed to the registered sink after every step and on a
  fixed interval while the job runs.
- Terminal transitions release the workspace (archive or destroy), persist
  the application metadata and free the slot for the next queued job.

All state lives on the event loop thread; nothing here is thread-safe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from kiro_bridge.agent.command_proxy import CancelToken, CommandProxy
from kiro_bridge.agent.progress import ProgressSink, ProgressUpdate
from kiro_bridge.core.errors import (
    BridgeError,
    CommandCancelledError,
    InvalidJobTransitionError,
    JobNotFoundError,
    ValidationError,
    WorkspaceError,
)
from kiro_bridge.core.jobs import (
    DevelopmentJob,
    DevelopmentPhase,
    JobRequest,
    JobState,
    Milestone,
    TERMINAL_STATES,
    utcnow,
    validate_transition,
)
from kiro_bridge.core.metadata_store import MetadataStore
from kiro_bridge.core.workspace_manager import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

# Extra time allowed on top of the cancel grace period for the pipeline to unwind.
CANCEL_MARGIN_S = 2.0

RETENTION_ARCHIVE = "archive"
RETENTION_DESTROY = "destroy"


@dataclass(frozen=True)
class AgentStep:
    """One pipeline step: an agent command tied to a phase and a milestone."""

    phase: DevelopmentPhase
    milestone: str
    command: str
    args: tuple[str, ...] = ()

    def render_args(self, job: DevelopmentJob) -> list[str]:
        values = {
            "application_id": job.application_id,
            "title": job.request.title,
            "description": job.request.description,
            "job_id": job.id,
        }
        return [arg.format(**values) for arg in self.args]


DEFAULT_PIPELINE: tuple[AgentStep, ...] = (
    AgentStep(
        DevelopmentPhase.REQUIREMENTS,
        "Requirements gathered",
        "kiro.spec.requirements",
        ("--title", "{title}", "--description", "{description}"),
    ),
    AgentStep(DevelopmentPhase.DESIGN, "Design completed", "kiro.spec.design", ("--app", "{application_id}")),
    AgentStep(
        DevelopmentPhase.IMPLEMENTATION, "Implementation completed", "kiro.spec.implement", ("--app", "{application_id}")
    ),
    AgentStep(DevelopmentPhase.TESTING, "Tests passing", "kiro.spec.test", ("--app", "{application_id}")),
    AgentStep(DevelopmentPhase.FINALIZATION, "Application finalized", "kiro.spec.finalize", ("--app", "{application_id}")),
)


class JobManager:
    """Admission, execution and bookkeeping of development jobs."""

    def __init__(
        self,
        workspace_manager: WorkspaceManager,
        command_proxy: CommandProxy,
        *,
        max_concurrent_jobs: int = 3,
        job_timeout_s: float = 1800.0,
        progress_interval_s: float = 5.0,
        cancel_grace_s: float = 5.0,
        retention: str = RETENTION_ARCHIVE,
        metadata_store: Optional[MetadataStore] = None,
        progress_sink: Optional[ProgressSink] = None,
        pipeline: Sequence[AgentStep] = DEFAULT_PIPELINE,
        finished_retention_s: Optional[float] = None,
        on_prune: Optional[Callable[[str], None]] = None,
    ):
        if retention not in (RETENTION_ARCHIVE, RETENTION_DESTROY):
            raise ValueError(f"Unknown workspace retention: {retention!r}")
        if not pipeline:
            raise ValueError("pipeline must contain at least one step")
        self.workspace_manager = workspace_manager
        self.command_proxy = command_proxy
        self.max_concurrent_jobs = max(1, int(max_concurrent_jobs))
        self.job_timeout_s = job_timeout_s
        self.progress_interval_s = progress_interval_s
        self.cancel_grace_s = cancel_grace_s
        self.retention = retention
        self.metadata_store = metadata_store
        self.pipeline = tuple(pipeline)
        self._sink = progress_sink
        self.finished_retention_s = finished_retention_s
        self._on_prune = on_prune

        self._jobs: dict[str, DevelopmentJob] = {}
        self._queue: deque[str] = deque()
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._workspaces: dict[str, Workspace] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._disposed = False

    # ------------------------------------------------------------------
    # Progress sink
    # ------------------------------------------------------------------

    def set_progress_sink(self, sink: Optional[ProgressSink]) -> None:
        self._sink = sink

    def _push(self, job: DevelopmentJob, message: str = "") -> None:
        sink = self._sink
        if sink is None:
            return
        try:
            sink.report(job.id, ProgressUpdate(state=job.state, progress=job.progress.snapshot(), message=message))
        except Exception:
            logger.exception("Progress sink failed for job %s", job.id)

    # ------------------------------------------------------------------
    # Submission and admission
    # ------------------------------------------------------------------

    def submit(self, request: JobRequest) -> DevelopmentJob:
        """
        Accept a job in ``queued`` and admit it if a slot is free.

        Must be called from the event loop: admission starts the job's task.
        The returned job is already ``running`` (or ``failed``) when a slot
        was available.
        """
        if self._disposed:
            raise ValidationError("Job manager is shut down; no new jobs accepted")
        if not request.application_id or not request.application_id.strip():
            raise ValidationError("application_id must be a non-empty string", field="application_id",
                                  value=request.application_id)
        if not request.title or not request.title.strip():
            raise ValidationError("title must be a non-empty string", field="title", value=request.title)
        if self.finished_retention_s is not None:
            self.prune_finished(self.finished_retention_s)

        job = DevelopmentJob(request=request)
        job.progress.milestones = [Milestone(step.milestone) for step in self.pipeline]
        job.progress.current_task = "Waiting for an execution slot"
        self._jobs[job.id] = job
        self._finished[job.id] = asyncio.Event()
        self._queue.append(job.id)
        logger.info("Job %s queued for application %s (%d in queue)", job.id, job.application_id, len(self._queue))
        self._persist(job)
        self._push(job, "Job queued")
        self._promote()
        return job

    def _promote(self) -> None:
        while not self._disposed and self._queue and len(self._tasks) < self.max_concurrent_jobs:
            job = self._jobs[self._queue.popleft()]
            try:
                workspace = self.workspace_manager.create_workspace(job.application_id, job_id=job.id)
            except BridgeError as e:
                logger.warning("Workspace provisioning failed for job %s: %s", job.id, e.message)
                self._complete(job, JobState.FAILED, error=e.message, error_code=e.code)
                continue
            except Exception as e:
                logger.exception("Workspace provisioning crashed for job %s", job.id)
                self._complete(job, JobState.FAILED, error=f"Workspace provisioning failed: {e}",
                               error_code="WORKSPACE_CREATION_FAILED")
                continue

            token = CancelToken()
            self._workspaces[job.id] = workspace
            self._tokens[job.id] = token
            job.workspace_path = str(workspace.path)
            self._transition(job, JobState.RUNNING)
            job.started_at = utcnow()
            job.progress.current_task = "Workspace provisioned"
            job.progress.updated_at = utcnow()
            self._persist(job)
            self._push(job, "Job started")
            self._tasks[job.id] = asyncio.create_task(self._run_job(job, workspace, token), name=f"job-{job.id}")
            logger.info("Job %s running in %s (%d/%d slots)", job.id, workspace.path,
                        len(self._tasks), self.max_concurrent_jobs)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_job(self, job: DevelopmentJob, workspace: Workspace, token: CancelToken) -> None:
        ticker = asyncio.create_task(self._tick(job), name=f"job-{job.id}-progress")
        state, error, error_code = JobState.FAILED, "Job ended unexpectedly", "INTERNAL_ERROR"
        try:
            await asyncio.wait_for(self._run_pipeline(job, workspace, token), timeout=self.job_timeout_s)
            state, error, error_code = JobState.SUCCEEDED, None, None
        except asyncio.TimeoutError:
            error, error_code = f"Job timed out after {self.job_timeout_s:g}s", "JOB_TIMEOUT"
        except CommandCancelledError:
            state, error, error_code = JobState.CANCELLED, None, None
        except BridgeError as e:
            error, error_code = e.message, e.code
        except asyncio.CancelledError:
            state, error, error_code = JobState.CANCELLED, None, None
            raise
        except Exception as e:
            logger.exception("Job %s crashed", job.id)
            error = f"Internal error: {e}"
        finally:
            ticker.cancel()
            if token.cancelled:
                state, error, error_code = JobState.CANCELLED, None, None
            self._tasks.pop(job.id, None)
            self._tokens.pop(job.id, None)
            if not job.is_terminal:
                self._complete(job, state, error=error, error_code=error_code)
            self._promote()

    async def _run_pipeline(self, job: DevelopmentJob, workspace: Workspace, token: CancelToken) -> None:
        total = len(self.pipeline)
        for index, step in enumerate(self.pipeline):
            if token.cancelled:
                raise CommandCancelledError("Job cancelled between steps", command=step.command)

            milestone = job.progress.milestone(step.milestone)
            job.progress.phase = step.phase
            job.progress.current_task = f"Running {step.command}"
            job.progress.updated_at = utcnow()
            if milestone is not None:
                milestone.status = "in_progress"
            self._push(job, f"Phase {step.phase.value} started")

            try:
                result = await self.command_proxy.execute(
                    step.command,
                    step.render_args(job),
                    workspace_path=str(workspace.path),
                    token=token,
                    job_id=job.id,
                )
                self.command_proxy.require_success(result)
            except BridgeError:
                if milestone is not None:
                    milestone.status = "failed"
                raise

            if milestone is not None:
                milestone.status = "completed"
                milestone.completed_at = utcnow()
            job.progress.percentage = (index + 1) * 100.0 / total
            job.progress.updated_at = utcnow()
            if result.files_changed:
                logger.debug("Job %s %s changed %d files", job.id, step.command, len(result.files_changed))
            self._push(job, f"Phase {step.phase.value} completed")

    async def _tick(self, job: DevelopmentJob) -> None:
        while not job.is_terminal:
            await asyncio.sleep(self.progress_interval_s)
            if job.is_terminal:
                return
            self._push(job)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, job: DevelopmentJob, to_state: JobState) -> None:
        validate_transition(job.id, job.state, to_state)
        logger.debug("Job %s: %s -> %s", job.id, job.state.value, to_state.value)
        job.state = to_state

    def _complete(self, job: DevelopmentJob, state: JobState, *, error: Optional[str] = None,
                  error_code: Optional[str] = None) -> None:
        self._transition(job, state)
        job.ended_at = utcnow()
        job.error = error if state is JobState.FAILED else None
        job.error_code = error_code if state is JobState.FAILED else None
        if state is JobState.SUCCEEDED:
            job.progress.percentage = 100.0
            job.progress.current_task = "Development completed"
        elif state is JobState.FAILED:
            job.progress.current_task = "Development failed"
        else:
            job.progress.current_task = "Development cancelled"
        job.progress.updated_at = utcnow()

        self._release_workspace(job, state)
        self._persist(job)
        self._push(job, job.error or f"Job {state.value}")
        self._finished[job.id].set()

        if state is JobState.FAILED:
            logger.warning("Job %s failed: %s", job.id, job.error)
        else:
            logger.info("Job %s %s", job.id, state.value)

    def _release_workspace(self, job: DevelopmentJob, state: JobState) -> None:
        workspace = self._workspaces.pop(job.id, None)
        if workspace is None:
            return
        try:
            if self.retention == RETENTION_ARCHIVE:
                target = self.workspace_manager.archive_workspace(workspace, label=f"{job.id[:8]}-{state.value}")
                job.workspace_path = str(target)
            else:
                self.workspace_manager.destroy_workspace(workspace)
        except WorkspaceError as e:
            logger.error("Failed to release workspace for job %s: %s", job.id, e.message)

    def _persist(self, job: DevelopmentJob) -> None:
        if self.metadata_store is None:
            return
        try:
            self.metadata_store.update_from_job(job)
        except WorkspaceError as e:
            logger.error("Failed to persist metadata for job %s: %s", job.id, e.message)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> DevelopmentJob:
        """
        Cancel a queued or running job and return it in ``cancelled``.

        A running job's agent process is terminated first (force-killed
        after the grace period). Cancelling a terminal job raises
        InvalidJobTransitionError.
        """
        job = self.get_job(job_id)
        if job.is_terminal:
            raise InvalidJobTransitionError(job.id, job.state.value, JobState.CANCELLED.value)

        if job.state is JobState.QUEUED:
            self._queue.remove(job.id)
            self._complete(job, JobState.CANCELLED)
            return job

        token = self._tokens.get(job.id)
        task = self._tasks.get(job.id)
        if token is not None:
            token.cancel("cancelled by request")
        if task is not None:
            bound = self.cancel_grace_s + CANCEL_MARGIN_S
            done, _ = await asyncio.wait({task}, timeout=bound)
            if not done:
                logger.warning("Job %s did not stop within %.1fs; cancelling its task", job.id, bound)
                task.cancel()
                await asyncio.wait({task}, timeout=bound)

        if not job.is_terminal:
            # The task never got to run its cleanup.
            self._tasks.pop(job.id, None)
            self._tokens.pop(job.id, None)
            self._complete(job, JobState.CANCELLED)
            self._promote()
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> DevelopmentJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, state: Optional[JobState] = None, application_id: Optional[str] = None) -> list[DevelopmentJob]:
        jobs: Iterable[DevelopmentJob] = self._jobs.values()
        if state is not None:
            jobs = (j for j in jobs if j.state is state)
        if application_id is not None:
            jobs = (j for j in jobs if j.application_id == application_id)
        return list(jobs)

    def get_active_job_count(self) -> int:
        return sum(1 for j in self._jobs.values() if j.state is JobState.RUNNING)

    def get_queued_job_ids(self) -> list[str]:
        return list(self._queue)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> DevelopmentJob:
        """Wait until the job is terminal. Raises asyncio.TimeoutError on timeout."""
        job = self.get_job(job_id)
        if job.is_terminal:
            return job
        await asyncio.wait_for(self._finished[job.id].wait(), timeout=timeout)
        return job

    def prune_finished(self, max_age_s: float) -> int:
        """Forget terminal jobs that ended more than ``max_age_s`` ago."""
        cutoff = time.time() - max_age_s
        stale = [
            j.id
            for j in self._jobs.values()
            if j.state in TERMINAL_STATES and j.ended_at is not None and j.ended_at.timestamp() <= cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
            self._finished.pop(job_id, None)
            if self._on_prune is not None:
                try:
                    self._on_prune(job_id)
                except Exception:
                    logger.exception("Prune callback failed for job %s", job_id)
        if stale:
            logger.debug("Pruned %d finished jobs", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def dispose(self) -> None:
        """Cancel every queued and running job. Safe to call twice."""
        if self._disposed:
            return
        self._disposed = True
        for job_id in list(self._queue):
            job = self._jobs[job_id]
            self._queue.remove(job_id)
            self._complete(job, JobState.CANCELLED)

        running = [self._jobs[job_id] for job_id in list(self._tasks)]
        if running:
            logger.info("Cancelling %d running jobs", len(running))
            await asyncio.gather(*(self.cancel(job.id) for job in running), return_exceptions=True)
        self._sink = None
