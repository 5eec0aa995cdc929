"""
Template matching job endpoints.

Route summary
-------------
POST   /jobs            — start a matching job (returns immediately with job_id).
GET    /jobs            — every job, newest first.
GET    /jobs/{job_id}   — one job with counters, steps and logs.
DELETE /jobs/{job_id}   — request cancellation.
POST   /jobs/clear      — drop the whole job history.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies.auth import get_optional_user_id
from app.dependencies.services import get_job_manager, get_matching_service
from app.models.schemas import (
    JobCancelResponse,
    JobClearResponse,
    JobCreatedResponse,
    JobResponse,
    MatchingJobCreate,
)
from app.services.job_manager import Job, JobManager
from app.services.matching import MatchingService

logger = logging.getLogger(__name__)

router = APIRouter()


def job_response(job: Job) -> JobResponse:
    return JobResponse.model_validate(job)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

@router.post(
    "/jobs",
    response_model=JobCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a template matching job",
)
async def create_job(
    body: MatchingJobCreate,
    service: MatchingService = Depends(get_matching_service),
    user_id: Optional[str] = Depends(get_optional_user_id),
) -> JobCreatedResponse:
    """
    Score documents against templates in the background.

    Omit ``template_slugs`` / ``customer_ids`` to match everything.  Pairs
    that already have a score are skipped unless ``force_recalculate`` is set.
    Poll ``GET /jobs/{job_id}`` for progress.
    """
    try:
        job_id = await service.start(
            template_slugs=body.template_slugs,
            customer_ids=body.customer_ids,
            force_recalculate=body.force_recalculate,
            created_by=body.created_by or user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    return JobCreatedResponse(job_id=job_id, message="Template matching job started")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@router.get("/jobs", response_model=List[JobResponse], summary="List jobs, newest first")
async def list_jobs(manager: JobManager = Depends(get_job_manager)) -> List[JobResponse]:
    return [job_response(job) for job in await manager.list_jobs()]


@router.post("/jobs/clear", response_model=JobClearResponse, summary="Clear job history")
async def clear_jobs(manager: JobManager = Depends(get_job_manager)) -> JobClearResponse:
    """Remove every job record; running jobs are asked to stop first."""
    cleared = await manager.clear_all()
    return JobClearResponse(cleared_count=cleared)


@router.get("/jobs/{job_id}", response_model=JobResponse, summary="Job status")
async def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobResponse:
    job = await manager.get_status(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found.",
        )
    return job_response(job)


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

@router.delete("/jobs/{job_id}", response_model=JobCancelResponse, summary="Cancel a job")
async def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobCancelResponse:
    """
    Request cancellation.  A running job stops at its next batch boundary;
    ``cancelled`` is false when the job is unknown or already finished.
    """
    return JobCancelResponse(cancelled=await manager.cancel(job_id))
