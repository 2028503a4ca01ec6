"""
Server Dependencies
===================

FastAPI dependencies that hand routers their collaborators.

Everything comes from the ``BridgeContext`` stored on ``app.state`` by
``create_app``; routers never reach for module globals.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from kiro_bridge.agent.command_proxy import CommandProxy
from kiro_bridge.agent.progress import ProgressBoard
from kiro_bridge.core.errors import NotInitializedError
from kiro_bridge.core.job_manager import JobManager
from kiro_bridge.core.metadata_store import MetadataStore
from kiro_bridge.core.workspace_manager import WorkspaceManager

if TYPE_CHECKING:
    from kiro_bridge.server.bootstrap import BridgeContext


def get_context(request: Request) -> "BridgeContext":
    context = getattr(request.app.state, "context", None)
    if context is None or not context.is_initialized:
        raise NotInitializedError("Bridge is not initialized")
    return context


def get_job_manager(request: Request) -> JobManager:
    return get_context(request).job_manager


def get_command_proxy(request: Request) -> CommandProxy:
    return get_context(request).command_proxy


def get_progress_board(request: Request) -> ProgressBoard:
    return get_context(request).progress_board


def get_workspace_manager(request: Request) -> WorkspaceManager:
    return get_context(request).workspace_manager


def get_metadata_store(request: Request) -> MetadataStore:
    return get_context(request).metadata_store
