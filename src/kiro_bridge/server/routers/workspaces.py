"""
Workspaces Router
=================

Read-only views of workspaces on disk and of application metadata.
"""

from fastapi import APIRouter, Depends

from kiro_bridge.core.errors import ApplicationNotFoundError
from kiro_bridge.core.metadata_store import ApplicationMetadata, MetadataStore
from kiro_bridge.core.workspace_manager import WorkspaceManager

from ..dependencies import get_metadata_store, get_workspace_manager
from ..schemas import ApplicationListResponse, WorkspaceListResponse, WorkspaceResponse

router = APIRouter(prefix="/api", tags=["workspaces"])


@router.get("/workspaces", response_model=WorkspaceListResponse)
async def list_workspaces(manager: WorkspaceManager = Depends(get_workspace_manager)):
    active = {ws.path for ws in manager.active_workspaces()}
    items = [
        WorkspaceResponse(**ws.to_dict(), active=ws.path in active)
        for ws in manager.list_workspaces()
    ]
    return WorkspaceListResponse(workspaces=items, total=len(items))


@router.get("/applications", response_model=ApplicationListResponse)
async def list_applications(store: MetadataStore = Depends(get_metadata_store)):
    applications = store.list_all()
    return ApplicationListResponse(applications=applications, total=len(applications))


@router.get("/applications/{application_id}", response_model=ApplicationMetadata)
async def get_application(application_id: str, store: MetadataStore = Depends(get_metadata_store)):
    metadata = store.load(application_id)
    if metadata is None:
        raise ApplicationNotFoundError(application_id)
    return metadata
