"""
Development Jobs
================

Data model and state machine for development jobs.

    queued -> running -> {succeeded | failed | cancelled}

``queued`` may also go straight to ``failed`` (workspace provisioning failed)
or ``cancelled``. Terminal states never transition again.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from kiro_bridge.core.errors import InvalidJobTransitionError


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}
)

VALID_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.FAILED, JobState.CANCELLED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

_STATE_DESCRIPTIONS: dict[JobState, str] = {
    JobState.QUEUED: "Waiting for a free execution slot",
    JobState.RUNNING: "Workspace provisioned; the agent is developing the application",
    JobState.SUCCEEDED: "Development completed successfully",
    JobState.FAILED: "Development failed",
    JobState.CANCELLED: "Development was cancelled",
}


def is_valid_transition(from_state: JobState, to_state: JobState) -> bool:
    return to_state in VALID_TRANSITIONS[from_state]


def validate_transition(job_id: str, from_state: JobState, to_state: JobState) -> None:
    """Raise InvalidJobTransitionError unless ``from_state -> to_state`` is allowed."""
    if not is_valid_transition(from_state, to_state):
        raise InvalidJobTransitionError(job_id, from_state.value, to_state.value)


def describe_state(state: JobState) -> str:
    return _STATE_DESCRIPTIONS[state]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat().replace("+00:00", "Z") if dt else None


class DevelopmentPhase(str, Enum):
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    FINALIZATION = "finalization"


@dataclass
class Milestone:
    name: str
    status: str = "pending"  # pending|in_progress|completed|failed
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status, "completed_at": _iso(self.completed_at)}


@dataclass
class JobProgress:
    """Mutable progress summary; only the job manager writes it while the job runs."""

    percentage: float = 0.0
    phase: Optional[DevelopmentPhase] = None
    current_task: str = ""
    milestones: list[Milestone] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def milestone(self, name: str) -> Optional[Milestone]:
        for m in self.milestones:
            if m.name == name:
                return m
        return None

    @property
    def completed_milestones(self) -> list[str]:
        return [m.name for m in self.milestones if m.status == "completed"]

    def snapshot(self) -> "JobProgress":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "percentage": round(self.percentage, 1),
            "phase": self.phase.value if self.phase else None,
            "current_task": self.current_task,
            "milestones": [m.to_dict() for m in self.milestones],
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class JobRequest:
    application_id: str
    title: str
    description: str
    conversation_id: Optional[str] = None
    priority: str = "normal"  # low|normal|high (informational; admission is FIFO)


@dataclass
class DevelopmentJob:
    request: JobRequest
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.QUEUED
    workspace_path: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    progress: JobProgress = field(default_factory=JobProgress)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def application_id(self) -> str:
        return self.request.application_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "application_id": self.application_id,
            "title": self.request.title,
            "description": self.request.description,
            "conversation_id": self.request.conversation_id,
            "priority": self.request.priority,
            "state": self.state.value,
            "state_description": describe_state(self.state),
            "workspace_path": self.workspace_path,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "progress": self.progress.to_dict(),
            "error": self.error,
            "error_code": self.error_code,
        }
