"""
Application Metadata Store
==========================

One JSON document per application, kept under ``<workspace_root>/.metadata``.

The job manager updates the document on every state transition so the
frontend can show application status without asking for job details.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from kiro_bridge.core.errors import WorkspaceError
from kiro_bridge.core.jobs import DevelopmentJob, JobState, utcnow
from kiro_bridge.core.workspace_manager import workspace_dirname

logger = logging.getLogger(__name__)

# Application status as seen by the frontend, derived from the latest job.
_APPLICATION_STATUS = {
    JobState.QUEUED: "queued",
    JobState.RUNNING: "developing",
    JobState.SUCCEEDED: "completed",
    JobState.FAILED: "failed",
    JobState.CANCELLED: "cancelled",
}


class ProgressSummary(BaseModel):
    percentage: float = 0.0
    phase: Optional[str] = None
    current_task: str = ""
    completed_milestones: list[str] = Field(default_factory=list)
    remaining_milestones: list[str] = Field(default_factory=list)


class ApplicationMetadata(BaseModel):
    id: str
    title: str
    description: str = ""
    status: str = "queued"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    job_id: Optional[str] = None
    workspace_path: Optional[str] = None
    progress: ProgressSummary = Field(default_factory=ProgressSummary)
    error: Optional[str] = None
    launch_config: dict[str, Any] = Field(default_factory=dict)


class MetadataStore:
    """Simple key-value JSON store keyed by application id."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, application_id: str) -> Path:
        return self.root / f"{workspace_dirname(application_id)}.json"

    def load(self, application_id: str) -> Optional[ApplicationMetadata]:
        path = self._path(application_id)
        if not path.exists():
            return None
        try:
            return ApplicationMetadata.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            raise WorkspaceError(
                f"Failed to read metadata for {application_id}: {e}", path=str(path), operation="read"
            ) from e

    def save(self, metadata: ApplicationMetadata) -> None:
        path = self._path(metadata.id)
        with self._lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".tmp")
                tmp.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")
                tmp.replace(path)
            except OSError as e:
                raise WorkspaceError(
                    f"Failed to write metadata for {metadata.id}: {e}", path=str(path), operation="write"
                ) from e

    def update_from_job(self, job: DevelopmentJob) -> ApplicationMetadata:
        """Fold the job's current state into the application's document."""
        try:
            metadata = self.load(job.application_id)
        except WorkspaceError as e:
            logger.warning("Replacing unreadable metadata for %s: %s", job.application_id, e.message)
            metadata = None

        if metadata is None:
            metadata = ApplicationMetadata(
                id=job.application_id,
                title=job.request.title,
                description=job.request.description,
                created_at=job.created_at,
            )

        progress = job.progress
        metadata.title = job.request.title or metadata.title
        metadata.description = job.request.description or metadata.description
        metadata.status = _APPLICATION_STATUS[job.state]
        metadata.updated_at = utcnow()
        metadata.job_id = job.id
        metadata.workspace_path = job.workspace_path
        metadata.error = job.error
        metadata.progress = ProgressSummary(
            percentage=round(progress.percentage, 1),
            phase=progress.phase.value if progress.phase else None,
            current_task=progress.current_task,
            completed_milestones=progress.completed_milestones,
            remaining_milestones=[m.name for m in progress.milestones if m.status != "completed"],
        )
        self.save(metadata)
        return metadata

    def list_all(self) -> list[ApplicationMetadata]:
        if not self.root.exists():
            return []
        items = []
        for path in sorted(self.root.glob("*.json")):
            try:
                items.append(ApplicationMetadata.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, PydanticValidationError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable metadata file %s: %s", path, e)
        return items

    def delete(self, application_id: str) -> bool:
        path = self._path(application_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
