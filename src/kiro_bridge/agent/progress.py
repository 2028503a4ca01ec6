"""
Progress Reporting
==================

``ProgressSink`` is the capability the job manager pushes progress into.
``ProgressBoard`` is the sink the HTTP API exposes to the polling frontend.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from kiro_bridge.core.jobs import JobProgress, JobState, utcnow

DEFAULT_HISTORY = 200


class ProgressSink(Protocol):
    def report(self, job_id: str, progress: "ProgressUpdate") -> None:
        ...


@dataclass(frozen=True)
class ProgressUpdate:
    """What the job manager pushes: the job's state plus a progress snapshot."""

    state: JobState
    progress: JobProgress
    message: str = ""


@dataclass(frozen=True)
class ProgressEvent:
    sequence: int
    job_id: str
    state: JobState
    progress: JobProgress
    message: str = ""
    reported_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "job_id": self.job_id,
            "state": self.state.value,
            "progress": self.progress.to_dict(),
            "message": self.message,
            "reported_at": self.reported_at.isoformat().replace("+00:00", "Z"),
        }


class ProgressBoard:
    """In-memory, per-job ordered event log polled over HTTP."""

    def __init__(self, history: int = DEFAULT_HISTORY):
        self._history = max(1, history)
        self._events: dict[str, deque[ProgressEvent]] = {}
        self._sequences: dict[str, int] = {}
        self._lock = threading.Lock()

    def report(self, job_id: str, progress: ProgressUpdate) -> None:
        with self._lock:
            seq = self._sequences.get(job_id, 0) + 1
            self._sequences[job_id] = seq
            log = self._events.setdefault(job_id, deque(maxlen=self._history))
            log.append(
                ProgressEvent(
                    sequence=seq,
                    job_id=job_id,
                    state=progress.state,
                    progress=progress.progress,
                    message=progress.message,
                )
            )

    def events(self, job_id: str, since: int = 0) -> list[ProgressEvent]:
        """Events with ``sequence > since``, oldest first."""
        with self._lock:
            return [e for e in self._events.get(job_id, ()) if e.sequence > since]

    def latest(self, job_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            log = self._events.get(job_id)
            return log[-1] if log else None

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._events.pop(job_id, None)
            self._sequences.pop(job_id, None)

    def job_ids(self) -> list[str]:
        with self._lock:
            return list(self._events)
