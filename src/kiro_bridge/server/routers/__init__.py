"""
API Routers
===========

FastAPI routers for the different API endpoints.
"""

from .agent import router as agent_router
from .jobs import router as jobs_router
from .workspaces import router as workspaces_router

__all__ = [
    "agent_router",
    "jobs_router",
    "workspaces_router",
]
