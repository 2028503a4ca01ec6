"""
FastAPI Application
===================

Builds the bridge's HTTP API around an explicit ``BridgeContext``.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kiro_bridge import __version__
from kiro_bridge.core.errors import BridgeError
from kiro_bridge.core.jobs import utcnow

from .dependencies import get_context
from .routers import agent_router, jobs_router, workspaces_router
from .schemas import AgentStatusResponse, HealthResponse, JobCounts, ServerInfo

if TYPE_CHECKING:
    from kiro_bridge.server.bootstrap import BridgeContext

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost", "testclient", None)
PUBLIC_PATHS = ("/health",)


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.headers.get("x-api-key", "").strip()


def create_app(context: "BridgeContext") -> FastAPI:
    """Create the API app; routers find their collaborators on ``app.state.context``."""
    settings = context.settings
    app = FastAPI(
        title="Kiro Bridge",
        description="Local orchestration API between the desktop frontend and the Kiro coding agent",
        version=__version__,
    )
    app.state.context = context

    # ========================================================================
    # Error handling
    # ========================================================================

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_client_info())

    # ========================================================================
    # Security Middleware
    # ========================================================================

    @app.middleware("http")
    async def require_api_key(request: Request, call_next):
        """Bearer token check when an API key is configured."""
        if settings.api_key and request.url.path not in PUBLIC_PATHS:
            if not secrets.compare_digest(_bearer_token(request), settings.api_key):
                return JSONResponse(
                    status_code=401,
                    content={"error": "UnauthorizedError", "code": "UNAUTHORIZED",
                             "message": "Missing or invalid API key", "details": {}},
                )
        return await call_next(request)

    @app.middleware("http")
    async def require_localhost(request: Request, call_next):
        """Only allow requests from localhost."""
        if not settings.allow_remote:
            client_host = request.client.host if request.client else None
            if client_host not in LOCAL_HOSTS:
                return JSONResponse(
                    status_code=403,
                    content={"error": "ForbiddenError", "code": "LOCALHOST_ONLY",
                             "message": "Localhost access only", "details": {}},
                )
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        logger.debug(
            "%s %s -> %d (%.1fms)",
            request.method, request.url.path, response.status_code, (time.monotonic() - started) * 1000,
        )
        return response

    # ========================================================================
    # Routers
    # ========================================================================

    app.include_router(jobs_router)
    app.include_router(agent_router)
    app.include_router(workspaces_router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Liveness plus a summary of jobs and agent state."""
        ctx = get_context(request)
        manager = ctx.job_manager
        proxy = ctx.command_proxy
        server = ctx.api_server
        return HealthResponse(
            timestamp=utcnow().isoformat().replace("+00:00", "Z"),
            server=ServerInfo(
                version=__version__,
                host=server.host if server else settings.api_host,
                port=server.port if server and server.is_running else None,
                pid=os.getpid(),
                uptime_s=round(ctx.uptime_s, 3),
            ),
            jobs=JobCounts(
                running=manager.get_active_job_count(),
                queued=len(manager.get_queued_job_ids()),
                total=len(manager.list_jobs()),
            ),
            agent=AgentStatusResponse(**proxy.get_status().to_dict()),
        )

    return app
