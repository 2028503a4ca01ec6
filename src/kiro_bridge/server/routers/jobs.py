"""
Jobs Router
===========

API endpoints for development jobs (submit, inspect, poll progress, cancel).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from kiro_bridge.agent.progress import ProgressBoard
from kiro_bridge.core.job_manager import JobManager
from kiro_bridge.core.jobs import DevelopmentJob, JobRequest, JobState

from ..dependencies import get_job_manager, get_progress_board
from ..schemas import CreateJobRequest, JobListResponse, JobProgressResponse, JobResponse

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _to_response(job: DevelopmentJob) -> JobResponse:
    return JobResponse(**job.to_dict())


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(request: CreateJobRequest, manager: JobManager = Depends(get_job_manager)):
    """Submit a development job. It starts at once if a slot is free."""
    job = manager.submit(
        JobRequest(
            application_id=request.application_id.strip(),
            title=request.title.strip(),
            description=request.description,
            conversation_id=request.conversation_id,
            priority=request.priority,
        )
    )
    return _to_response(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    state: Optional[JobState] = None,
    application_id: Optional[str] = None,
    manager: JobManager = Depends(get_job_manager),
):
    """List jobs in submission order, optionally filtered."""
    jobs = manager.list_jobs(state=state, application_id=application_id)
    return JobListResponse(
        jobs=[_to_response(j) for j in jobs],
        total=len(jobs),
        running=manager.get_active_job_count(),
        queued=len(manager.get_queued_job_ids()),
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)):
    return _to_response(manager.get_job(job_id))


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
async def get_job_progress(
    job_id: str,
    since: int = Query(0, ge=0, description="Only return events with a higher sequence number"),
    manager: JobManager = Depends(get_job_manager),
    board: ProgressBoard = Depends(get_progress_board),
):
    """Poll progress events for a job."""
    job = manager.get_job(job_id)
    events = board.events(job.id, since=since)
    return JobProgressResponse(
        job_id=job.id,
        state=job.state.value,
        events=[e.to_dict() for e in events],
        last_sequence=events[-1].sequence if events else since,
    )


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)):
    """Cancel a queued or running job. Terminal jobs answer 409."""
    job = await manager.cancel(job_id)
    return _to_response(job)
