"""
Admin endpoint that runs worker iterations inside the API process.

Useful in development and for deployments without a separate worker.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from event_atlas.api.dependencies import get_pipeline_deps
from event_atlas.api.schemas.admin import RunJobsRequest, RunJobsResponse
from event_atlas.core.config import settings
from event_atlas.core.security import User, require_admin
from event_atlas.domain.imports.jobs import count_jobs_by_stage
from event_atlas.domain.imports.schedules import count_due_schedules
from event_atlas.domain.imports.stages import PipelineDeps
from event_atlas.utils.clock import utcnow
from event_atlas.worker.loop import JobWorker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])


def collection_counts() -> Dict[str, Any]:
    return {
        "import_jobs": count_jobs_by_stage(),
        "scheduled_imports": {"due": count_due_schedules(utcnow())},
    }


@router.post("/jobs/run", response_model=RunJobsResponse)
def run_jobs(
    request: Optional[RunJobsRequest] = None,
    current_user: User = Depends(require_admin),
    deps: PipelineDeps = Depends(get_pipeline_deps),
):
    if not settings.enable_run_jobs_endpoint:
        raise HTTPException(status_code=403, detail="The job runner endpoint is disabled")

    request = request or RunJobsRequest()
    before = collection_counts()
    worker = JobWorker(worker_id=f"api-{current_user.id}", batch_limit=request.limit, deps=deps)
    runs = [worker.run_once(request.limit).to_dict() for _ in range(request.iterations)]
    after = collection_counts()
    logger.info("Admin %s ran %d worker iteration(s)", current_user.id, request.iterations)
    return RunJobsResponse(success=True, iterations=request.iterations, before=before, after=after, runs=runs)
