"""
Workspace Manager
=================

Creates and destroys isolated application workspaces.

Each application gets its own directory under the workspace root, where the
agent develops it without touching other applications.

Key Features:
- Deterministic paths (slug + hash of the application id), so a crashed run
  leaves a workspace that can be found again
- Marker file (.kiro-bridge/workspace.json) recording the owner process
- Stale workspace reclamation (owner process gone)
- Idempotent destroy, archive on success

Layout of a fresh workspace:

    <root>/<slug>-<hash8>/
        src/  tests/  docs/
        .kiro/specs/  .kiro/steering/
        .kiro-bridge/workspace.json
        .gitignore
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import stat
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import psutil

from kiro_bridge.core.errors import WorkspaceCreationError, WorkspaceError
from kiro_bridge.core.jobs import utcnow

logger = logging.getLogger(__name__)

MARKER_DIR = ".kiro-bridge"
MARKER_FILE = "workspace.json"
ARCHIVE_DIR = ".archive"

WORKSPACE_DIRS = (
    "src",
    "tests",
    "docs",
    ".kiro/specs",
    ".kiro/steering",
)

GITIGNORE = """# Dependencies
node_modules/
.venv/
*.log

# Build outputs
dist/
build/
out/

# IDE files
.vscode/
.idea/

# OS files
.DS_Store
Thumbs.db

# Bridge bookkeeping
.kiro-bridge/
"""

CODING_STANDARDS = """# Coding Standards

Coding standards and conventions for this application.

## General Principles

- Write clean, readable, and maintainable code
- Follow the conventions of the chosen stack
- Handle errors explicitly
- Write tests for all functionality
- Document complex logic and business rules
"""

_SLUG_STRIP = re.compile(r"[^a-z0-9_-]+")


@dataclass
class Workspace:
    application_id: str
    path: Path
    created_at: datetime = field(default_factory=utcnow)
    job_id: Optional[str] = None
    port: Optional[int] = None
    session_id: Optional[str] = None
    pid: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "application_id": self.application_id,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "job_id": self.job_id,
            "port": self.port,
            "session_id": self.session_id,
            "pid": self.pid,
        }


@dataclass(frozen=True)
class WorkspaceValidation:
    is_valid: bool
    issues: list[str]
    recoverable: bool


def workspace_dirname(application_id: str) -> str:
    """Deterministic directory name: readable slug plus a hash suffix.

    The suffix keeps ids that slugify identically (``My App`` / ``my-app``) apart.
    """
    slug = _SLUG_STRIP.sub("-", application_id.strip().lower()).strip("-")[:40] or "app"
    digest = hashlib.sha1(application_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        return psutil.pid_exists(int(pid))
    except (TypeError, ValueError):
        return False


class WorkspaceManager:
    """Manages isolated workspaces, one per active application."""

    def __init__(self, root: Path, *, template_dir: Optional[Path] = None):
        self.root = Path(root).expanduser().resolve()
        self.template_dir = Path(template_dir).resolve() if template_dir else None
        self._active: dict[str, Workspace] = {}
        self._lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(
                f"Failed to create workspace root {self.root}: {e}", path=str(self.root), operation="create"
            ) from e
        if not os.access(self.root, os.R_OK | os.W_OK):
            raise WorkspaceError(
                f"Insufficient permissions for workspace root {self.root}",
                path=str(self.root),
                operation="permissions",
            )
        self._initialized = True
        logger.info("WorkspaceManager initialized: %s", self.root)

    def dispose(self) -> None:
        with self._lock:
            self._active.clear()
        self._initialized = False
        logger.info("WorkspaceManager disposed")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise WorkspaceError("WorkspaceManager is not initialized", path=str(self.root))

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def workspace_path_for(self, application_id: str) -> Path:
        return self.root / workspace_dirname(application_id)

    @property
    def archive_root(self) -> Path:
        return self.root / ARCHIVE_DIR

    def _check_owned_path(self, path: Path) -> Path:
        """Only direct children of the root may be removed or moved."""
        resolved = Path(path).resolve()
        if resolved.parent != self.root or resolved.name in (ARCHIVE_DIR, ".metadata"):
            raise WorkspaceError(
                f"Refusing to touch {resolved}: not a workspace under {self.root}",
                path=str(resolved),
                operation="delete",
            )
        return resolved

    # ------------------------------------------------------------------
    # Create / destroy
    # ------------------------------------------------------------------

    def create_workspace(self, application_id: str, *, job_id: Optional[str] = None) -> Workspace:
        """
        Allocate a fresh, empty workspace for ``application_id``.

        Raises:
            WorkspaceCreationError: the application already has a live workspace,
                the target exists and is non-empty, or the filesystem refuses.
        """
        self._ensure_initialized()
        if not application_id or not application_id.strip():
            raise WorkspaceCreationError("Application id must be a non-empty string", application_id=application_id)

        path = self.workspace_path_for(application_id)
        with self._lock:
            if application_id in self._active:
                raise WorkspaceCreationError(
                    f"Workspace already active for application {application_id}",
                    path=str(path),
                    application_id=application_id,
                )
            try:
                created_here = not path.exists()
                occupied = not created_here and (not path.is_dir() or any(path.iterdir()))
            except OSError as e:
                raise WorkspaceCreationError(
                    f"Cannot inspect workspace path {path}: {e}",
                    path=str(path),
                    application_id=application_id,
                ) from e
            if occupied:
                raise WorkspaceCreationError(
                    f"Workspace path {path} already exists and is not empty",
                    path=str(path),
                    application_id=application_id,
                )

            workspace = Workspace(application_id=application_id, path=path, job_id=job_id, pid=os.getpid())
            try:
                self._build_structure(workspace)
            except OSError as e:
                if created_here:
                    self._rmtree_force(path)
                raise WorkspaceCreationError(
                    f"Failed to create workspace for {application_id}: {e}",
                    path=str(path),
                    application_id=application_id,
                ) from e

            self._active[application_id] = workspace

        logger.info("Workspace created for %s: %s", application_id, path)
        return workspace

    def _build_structure(self, workspace: Workspace) -> None:
        path = workspace.path
        path.mkdir(parents=True, exist_ok=True)
        for rel in WORKSPACE_DIRS:
            (path / rel).mkdir(parents=True, exist_ok=True)

        if self.template_dir and (self.template_dir / ".kiro").is_dir():
            shutil.copytree(self.template_dir / ".kiro", path / ".kiro", dirs_exist_ok=True)
        else:
            (path / ".kiro" / "steering" / "coding-standards.md").write_text(CODING_STANDARDS, encoding="utf-8")

        (path / ".gitignore").write_text(GITIGNORE, encoding="utf-8")
        self._write_marker(workspace)

    def _write_marker(self, workspace: Workspace) -> None:
        marker_dir = workspace.path / MARKER_DIR
        marker_dir.mkdir(parents=True, exist_ok=True)
        tmp = marker_dir / (MARKER_FILE + ".tmp")
        tmp.write_text(json.dumps(workspace.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(marker_dir / MARKER_FILE)

    @staticmethod
    def _rmtree_force(path: Path) -> None:
        def onerror(func, p, excinfo):  # type: ignore[no-untyped-def]
            # Read-only files (e.g. git objects) need the write bit before unlink.
            try:
                os.chmod(p, stat.S_IWRITE)
                func(p)
            except FileNotFoundError:
                pass

        shutil.rmtree(path, onerror=onerror)

    def destroy_workspace(self, workspace: Workspace) -> None:
        """Recursively remove the workspace. Calling it again is a no-op."""
        path = self._check_owned_path(workspace.path)
        with self._lock:
            current = self._active.get(workspace.application_id)
            if current is not None and current.path == workspace.path:
                del self._active[workspace.application_id]
        if not path.exists():
            logger.debug("Workspace already removed: %s", path)
            return
        try:
            self._rmtree_force(path)
        except OSError as e:
            raise WorkspaceError(f"Failed to remove workspace {path}: {e}", path=str(path), operation="delete") from e
        logger.info("Workspace destroyed: %s", path)

    def archive_workspace(self, workspace: Workspace, *, label: str) -> Path:
        """Move the workspace under ``<root>/.archive`` and release it."""
        path = self._check_owned_path(workspace.path)
        target = self.archive_root / f"{path.name}-{label}"
        with self._lock:
            current = self._active.get(workspace.application_id)
            if current is not None and current.path == workspace.path:
                del self._active[workspace.application_id]
        if not path.exists():
            return target
        try:
            self.archive_root.mkdir(parents=True, exist_ok=True)
            if target.exists():
                self._rmtree_force(target)
            shutil.move(str(path), str(target))
        except OSError as e:
            raise WorkspaceError(f"Failed to archive workspace {path}: {e}", path=str(path), operation="archive") from e
        logger.info("Workspace archived: %s -> %s", path, target)
        return target

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_workspace(self, application_id: str) -> Optional[Workspace]:
        with self._lock:
            return self._active.get(application_id)

    def active_workspaces(self) -> list[Workspace]:
        with self._lock:
            return list(self._active.values())

    def list_workspaces(self) -> Iterator[Workspace]:
        """
        Lazily enumerate workspaces on disk.

        The directory listing is taken when iteration starts; call again for a
        fresh scan. Live registrations are returned as-is, other directories are
        rebuilt from their marker file.
        """
        self._ensure_initialized()
        try:
            entries = sorted(p for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))
        except OSError as e:
            raise WorkspaceError(f"Failed to list workspaces: {e}", path=str(self.root), operation="read") from e
        with self._lock:
            active_by_path = {ws.path: ws for ws in self._active.values()}

        for entry in entries:
            if entry in active_by_path:
                yield active_by_path[entry]
                continue
            workspace = self._read_marker(entry)
            if workspace is not None:
                yield workspace

    def _read_marker(self, path: Path) -> Optional[Workspace]:
        marker = path / MARKER_DIR / MARKER_FILE
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
            created = data.get("created_at")
            return Workspace(
                application_id=str(data["application_id"]),
                path=path,
                created_at=datetime.fromisoformat(created) if created else utcnow(),
                job_id=data.get("job_id"),
                port=data.get("port"),
                session_id=data.get("session_id"),
                pid=data.get("pid"),
            )
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable workspace marker %s: %s", marker, e)
            return None

    def validate_workspace(self, application_id: str) -> WorkspaceValidation:
        path = self.workspace_path_for(application_id)
        issues: list[str] = []
        recoverable = True

        if not path.is_dir():
            return WorkspaceValidation(is_valid=False, issues=["Workspace directory does not exist"], recoverable=False)
        if self._read_marker(path) is None:
            issues.append("workspace marker is missing or unreadable")
        for rel in (".kiro/specs", ".kiro/steering"):
            if not (path / rel).is_dir():
                issues.append(f"{rel} directory is missing")
        if not os.access(path, os.R_OK | os.W_OK):
            issues.append("Insufficient permissions for workspace directory")
            recoverable = False

        return WorkspaceValidation(is_valid=not issues, issues=issues, recoverable=recoverable)

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def find_stale_workspaces(self) -> list[Workspace]:
        """Workspaces on disk that nobody alive owns (left behind by a crash)."""
        with self._lock:
            active_paths = {ws.path for ws in self._active.values()}
        stale = []
        for workspace in self.list_workspaces():
            if workspace.path in active_paths:
                continue
            if workspace.pid == os.getpid() or _pid_alive(workspace.pid):
                continue
            stale.append(workspace)
        return stale

    def reclaim_stale_workspaces(self) -> int:
        """Wipe stale workspaces so their applications can be provisioned again."""
        reclaimed = 0
        for workspace in self.find_stale_workspaces():
            try:
                self.destroy_workspace(workspace)
                reclaimed += 1
                logger.info(
                    "Reclaimed stale workspace for %s (owner PID %s gone)", workspace.application_id, workspace.pid
                )
            except WorkspaceError as e:
                logger.warning("Could not reclaim %s: %s", workspace.path, e.message)
        return reclaimed
