"""
Pydantic Schemas
================

Request/Response models for the bridge API.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from kiro_bridge.core.metadata_store import ApplicationMetadata


# ============================================================================
# Job Schemas
# ============================================================================

class CreateJobRequest(BaseModel):
    """Request schema for submitting a development job."""
    application_id: str = Field(..., min_length=1, max_length=200)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=20000)
    conversation_id: Optional[str] = None
    priority: Literal["low", "normal", "high"] = "normal"


class MilestoneModel(BaseModel):
    name: str
    status: str
    completed_at: Optional[str] = None


class JobProgressModel(BaseModel):
    percentage: float
    phase: Optional[str] = None
    current_task: str = ""
    milestones: list[MilestoneModel] = Field(default_factory=list)
    updated_at: Optional[str] = None


class JobResponse(BaseModel):
    """A development job as returned by the API."""
    id: str
    application_id: str
    title: str
    description: str
    conversation_id: Optional[str] = None
    priority: str
    state: Literal["queued", "running", "succeeded", "failed", "cancelled"]
    state_description: str
    workspace_path: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    progress: JobProgressModel
    error: Optional[str] = None
    error_code: Optional[str] = None


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    total: int
    running: int
    queued: int


class ProgressEventModel(BaseModel):
    sequence: int
    job_id: str
    state: str
    progress: JobProgressModel
    message: str = ""
    reported_at: str


class JobProgressResponse(BaseModel):
    """Progress events newer than the ``since`` cursor."""
    job_id: str
    state: str
    events: list[ProgressEventModel]
    last_sequence: int


# ============================================================================
# Agent Schemas
# ============================================================================

class ExecuteCommandRequest(BaseModel):
    """Request schema for running a single agent command."""
    command: str = Field(..., min_length=1, max_length=200)
    args: list[str] = Field(default_factory=list)
    application_id: Optional[str] = Field(
        None, description="Run inside this application's active workspace"
    )
    timeout_s: Optional[float] = Field(None, gt=0, le=3600)


class CommandResultResponse(BaseModel):
    success: bool
    command: str
    args: list[str]
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    execution_time_ms: int = 0
    files_changed: list[str] = Field(default_factory=list)
    views_opened: list[str] = Field(default_factory=list)


class CommandExecutionModel(BaseModel):
    id: str
    command: str
    args: list[str]
    workspace_path: Optional[str] = None
    job_id: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None
    status: str
    error: Optional[str] = None


class AgentStatusResponse(BaseModel):
    status: Literal["ready", "busy", "unavailable"]
    current_command: Optional[str] = None
    active_executions: int = 0
    executions: list[CommandExecutionModel] = Field(default_factory=list)


class UserInputRequest(BaseModel):
    """An answer for a command that is waiting on the user."""
    execution_id: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1, max_length=20000)
    type: Literal["text", "choice", "file", "confirmation"] = "text"


class UserInputResponse(BaseModel):
    success: bool
    execution_id: str
    error: Optional[str] = None


class AvailableCommandsResponse(BaseModel):
    commands: list[str]


# ============================================================================
# Workspace / Application Schemas
# ============================================================================

class WorkspaceResponse(BaseModel):
    application_id: str
    path: str
    created_at: str
    job_id: Optional[str] = None
    port: Optional[int] = None
    session_id: Optional[str] = None
    pid: Optional[int] = None
    active: bool = False


class WorkspaceListResponse(BaseModel):
    workspaces: list[WorkspaceResponse]
    total: int


class ApplicationListResponse(BaseModel):
    applications: list[ApplicationMetadata]
    total: int


# ============================================================================
# Health Schemas
# ============================================================================

class ServerInfo(BaseModel):
    name: str = "kiro-bridge"
    version: str
    host: str
    port: Optional[int] = None
    pid: int
    uptime_s: float


class JobCounts(BaseModel):
    running: int
    queued: int
    total: int


class HealthResponse(BaseModel):
    status: Literal["healthy"] = "healthy"
    timestamp: str
    server: ServerInfo
    jobs: JobCounts
    agent: AgentStatusResponse
