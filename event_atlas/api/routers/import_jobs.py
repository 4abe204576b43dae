"""
Endpoints for tracking, cancelling and reading the output of import jobs.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from event_atlas.api.dependencies import ensure_owner
from event_atlas.api.schemas.imports import EventListResponse, ImportJobListResponse, ImportJobResponse
from event_atlas.core.security import User, get_current_user
from event_atlas.db.models import TERMINAL_STAGES
from event_atlas.domain.imports.jobs import (
    CANCELLED_MESSAGE,
    cancel_job,
    count_import_jobs,
    get_import_job,
    list_import_jobs,
    list_job_events,
)
from event_atlas.domain.imports.schedules import record_job_outcome
from event_atlas.utils.clock import utcnow

router = APIRouter(tags=["import-jobs"])


@router.get("/import-jobs", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    stage: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
):
    user_id = None if current_user.is_admin else current_user.id
    jobs = list_import_jobs(user_id=user_id, stage=stage, limit=limit, offset=offset)
    total = count_import_jobs(user_id=user_id, stage=stage)
    return ImportJobListResponse(success=True, jobs=jobs, total_count=total, limit=limit, offset=offset)


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str, current_user: User = Depends(get_current_user)):
    job = ensure_owner(get_import_job(job_id), current_user, "Job")
    return ImportJobResponse(success=True, job=job)


@router.post("/import-jobs/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_job_endpoint(job_id: str, current_user: User = Depends(get_current_user)):
    """Fail a running job; a worker holding it notices before its next commit."""
    job = ensure_owner(get_import_job(job_id), current_user, "Job")
    if job["stage"] in TERMINAL_STAGES:
        raise HTTPException(status_code=409, detail=f"Job already {job['stage']}")

    now = utcnow()
    if not cancel_job(job_id, now=now):
        raise HTTPException(status_code=409, detail="Job finished before it could be cancelled")
    record_job_outcome(job.get("scheduled_import_id"), job_id, False, CANCELLED_MESSAGE, now=now)
    return ImportJobResponse(success=True, job=get_import_job(job_id))


@router.get("/import-jobs/{job_id}/events", response_model=EventListResponse)
async def list_job_events_endpoint(
    job_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
):
    ensure_owner(get_import_job(job_id), current_user, "Job")
    events, total = list_job_events(job_id, limit=limit, offset=offset)
    return EventListResponse(success=True, events=events, total_count=total, limit=limit, offset=offset)
