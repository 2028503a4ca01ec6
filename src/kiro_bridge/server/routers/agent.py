"""
Agent Router
============

Direct access to the coding agent: run one command, answer a command that
is waiting on the user, inspect agent status.
"""

from fastapi import APIRouter, Depends

from kiro_bridge.agent.command_proxy import CommandProxy
from kiro_bridge.core.errors import JobNotFoundError, ValidationError, WorkspaceBusyError
from kiro_bridge.core.job_manager import JobManager
from kiro_bridge.core.workspace_manager import WorkspaceManager

from ..dependencies import get_command_proxy, get_job_manager, get_workspace_manager
from ..schemas import (
    AgentStatusResponse,
    AvailableCommandsResponse,
    CommandResultResponse,
    ExecuteCommandRequest,
    UserInputRequest,
    UserInputResponse,
)

router = APIRouter(prefix="/api/agent", tags=["agent"])


@router.post("/execute", response_model=CommandResultResponse)
async def execute_command(
    request: ExecuteCommandRequest,
    proxy: CommandProxy = Depends(get_command_proxy),
    workspaces: WorkspaceManager = Depends(get_workspace_manager),
    jobs: JobManager = Depends(get_job_manager),
):
    """
    Run a single agent command and return its result.

    With ``application_id`` the command runs in that application's active
    workspace, unless a job is still working in it; otherwise in the
    workspace root.
    """
    if request.application_id:
        workspace = workspaces.get_workspace(request.application_id)
        if workspace is None:
            raise ValidationError(
                f"No active workspace for application {request.application_id}",
                field="application_id",
                value=request.application_id,
            )
        if workspace.job_id:
            try:
                owner = jobs.get_job(workspace.job_id)
            except JobNotFoundError:
                owner = None
            if owner is not None and not owner.is_terminal:
                raise WorkspaceBusyError(request.application_id, owner.id, path=str(workspace.path))
        cwd = str(workspace.path)
    else:
        cwd = str(workspaces.root)

    result = await proxy.execute(request.command, request.args, workspace_path=cwd, timeout_s=request.timeout_s)
    return CommandResultResponse(**result.to_dict())


@router.post("/input", response_model=UserInputResponse)
async def send_user_input(request: UserInputRequest, proxy: CommandProxy = Depends(get_command_proxy)):
    result = proxy.send_input(request.execution_id, request.value, request.type)
    return UserInputResponse(**result.to_dict())


@router.get("/commands", response_model=AvailableCommandsResponse)
async def get_available_commands(proxy: CommandProxy = Depends(get_command_proxy)):
    return AvailableCommandsResponse(commands=proxy.get_available_commands())


@router.get("/status", response_model=AgentStatusResponse)
async def get_agent_status(proxy: CommandProxy = Depends(get_command_proxy)):
    status = proxy.get_status()
    return AgentStatusResponse(
        **status.to_dict(),
        executions=[e.to_dict() for e in proxy.get_active_executions()],
    )
