"""
Endpoints for bringing source files in: direct uploads and URL imports.

Both create an ImportFile plus an ImportJob; the worker does the rest.
"""
import hashlib
import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from event_atlas.api.dependencies import ensure_owner, get_ledger
from event_atlas.api.schemas.imports import ImportCreatedResponse, ImportFileResponse, ImportFromUrlRequest
from event_atlas.core.config import settings
from event_atlas.core.errors import ParseError
from event_atlas.core.security import User, get_current_user
from event_atlas.db.session import get_engine
from event_atlas.domain.imports.jobs import create_import_file, create_import_job, get_import_file
from event_atlas.domain.imports.parsing import detect_file_type
from event_atlas.domain.mapping.store import get_field_mapping
from event_atlas.domain.quotas.constants import (
    FILE_UPLOADS_TODAY,
    IMPORT_JOBS_TODAY,
    MAX_FILE_SIZE_MB,
    MAX_FILE_UPLOADS_PER_DAY,
    MAX_IMPORT_JOBS_PER_DAY,
    MAX_URL_FETCHES_PER_DAY,
    URL_FETCHES_TODAY,
)
from event_atlas.domain.quotas.ledger import QuotaLedger
from event_atlas.integrations.fetch import file_name_from_url
from event_atlas.integrations.storage import StorageError, upload_file
from event_atlas.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["import-files"])

BYTES_PER_MB = 1024 * 1024


def _ensure_within_size_limit(file_size: int, file_name: str) -> None:
    """Raise an HTTPException if a file exceeds the configured upload limit."""
    if file_size > settings.upload_max_file_size_mb * BYTES_PER_MB:
        raise HTTPException(
            status_code=413,
            detail=(
                f"{file_name} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            ),
        )


def _check_mapping(field_mapping_id: Optional[str], user: User) -> None:
    if field_mapping_id:
        ensure_owner(get_field_mapping(field_mapping_id), user, "Field mapping")


def _create_file_and_job(user: User, trigger_source: str, field_mapping_id: Optional[str], now, **file_values):
    with get_engine().begin() as conn:
        import_file = create_import_file(user_id=user.id, now=now, conn=conn, **file_values)
        job = create_import_job(
            import_file_id=import_file["id"],
            user_id=user.id,
            trigger_source=trigger_source,
            field_mapping_id=field_mapping_id,
            now=now,
            conn=conn,
        )
    return get_import_file(import_file["id"]), job


@router.post("/import-files", response_model=ImportCreatedResponse)
async def upload_import_file(
    file: UploadFile = File(...),
    field_mapping_id: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """
    Upload a CSV, Excel or JSON file and queue an import job for it.

    Quotas checked: daily uploads, file size and daily import jobs.
    """
    now = utcnow()
    file_name = file.filename or "upload.csv"
    try:
        detect_file_type(file_name, file.content_type)
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    content = await file.read()
    _ensure_within_size_limit(len(content), file_name)
    _check_mapping(field_mapping_id, current_user)

    ledger.require_quota(current_user, MAX_FILE_UPLOADS_PER_DAY, 1, now)
    ledger.require_quota(current_user, MAX_FILE_SIZE_MB, math.ceil(len(content) / BYTES_PER_MB), now)
    ledger.require_quota(current_user, MAX_IMPORT_JOBS_PER_DAY, 1, now)

    content_hash = hashlib.sha256(content).hexdigest()
    try:
        stored = upload_file(content, f"{content_hash[:16]}_{file_name}", folder=f"uploads/{current_user.id}")
    except StorageError as exc:
        logger.error("Upload of %s failed: %s", file_name, exc)
        raise HTTPException(status_code=500, detail=f"Upload failed: {exc}")

    import_file, job = _create_file_and_job(
        current_user,
        "upload",
        field_mapping_id,
        now,
        file_name=file_name,
        storage_locator=stored["file_path"],
        file_size=stored["size"],
        content_type=file.content_type,
        content_hash=content_hash,
    )
    ledger.increment_usage(current_user.id, FILE_UPLOADS_TODAY, 1, now)
    ledger.increment_usage(current_user.id, IMPORT_JOBS_TODAY, 1, now)
    logger.info("User %s uploaded %s (%d bytes) -> job %s", current_user.id, file_name, len(content), job["id"])
    return ImportCreatedResponse(success=True, file=import_file, job=job)


@router.post("/import-files/from-url", response_model=ImportCreatedResponse)
async def import_from_url(
    request: ImportFromUrlRequest,
    current_user: User = Depends(get_current_user),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """Queue an import of a remote file; the worker fetches it during the fetching stage."""
    now = utcnow()
    _check_mapping(request.field_mapping_id, current_user)
    ledger.require_quota(current_user, MAX_URL_FETCHES_PER_DAY, 1, now)
    ledger.require_quota(current_user, MAX_IMPORT_JOBS_PER_DAY, 1, now)

    import_file, job = _create_file_and_job(
        current_user,
        "api",
        request.field_mapping_id,
        now,
        file_name=request.file_name or file_name_from_url(request.url),
        source_url=request.url,
    )
    ledger.increment_usage(current_user.id, URL_FETCHES_TODAY, 1, now)
    ledger.increment_usage(current_user.id, IMPORT_JOBS_TODAY, 1, now)
    return ImportCreatedResponse(success=True, file=import_file, job=job)


@router.get("/import-files/{file_id}", response_model=ImportFileResponse)
async def get_import_file_endpoint(file_id: str, current_user: User = Depends(get_current_user)):
    import_file = ensure_owner(get_import_file(file_id), current_user, "Import file")
    return ImportFileResponse(success=True, file=import_file)
