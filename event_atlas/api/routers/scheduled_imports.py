"""
Endpoints for scheduled URL imports, including the manual trigger.
"""
from fastapi import APIRouter, Depends, HTTPException

from event_atlas.api.dependencies import ensure_owner, get_ledger
from event_atlas.api.schemas.imports import (
    ScheduledImportCreateRequest,
    ScheduledImportListResponse,
    ScheduledImportResponse,
    ScheduledImportTriggerResponse,
    ScheduledImportUpdateRequest,
)
from event_atlas.core.security import User, get_current_user
from event_atlas.domain.imports.schedules import (
    ScheduleBusyError,
    ScheduleError,
    create_schedule,
    delete_schedule,
    get_schedule,
    list_schedules,
    set_schedule_enabled,
    set_webhook_enabled,
    trigger_schedule,
)
from event_atlas.domain.mapping.store import get_field_mapping
from event_atlas.domain.quotas.ledger import QuotaLedger
from event_atlas.utils.clock import utcnow

router = APIRouter(tags=["scheduled-imports"])


@router.post("/scheduled-imports", response_model=ScheduledImportResponse)
async def create_scheduled_import(
    request: ScheduledImportCreateRequest,
    current_user: User = Depends(get_current_user),
    ledger: QuotaLedger = Depends(get_ledger),
):
    if request.field_mapping_id:
        ensure_owner(get_field_mapping(request.field_mapping_id), current_user, "Field mapping")
    try:
        schedule = create_schedule(
            user=current_user,
            ledger=ledger,
            name=request.name,
            source_url=request.source_url,
            schedule_type=request.schedule_type,
            frequency=request.frequency,
            cron_expression=request.cron_expression,
            field_mapping_id=request.field_mapping_id,
            enabled=request.enabled,
            webhook_enabled=request.webhook_enabled,
            now=utcnow(),
        )
    except ScheduleError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return ScheduledImportResponse(success=True, schedule=schedule)


@router.get("/scheduled-imports", response_model=ScheduledImportListResponse)
async def list_scheduled_imports(current_user: User = Depends(get_current_user)):
    return ScheduledImportListResponse(success=True, schedules=list_schedules(user_id=current_user.id))


@router.get("/scheduled-imports/{schedule_id}", response_model=ScheduledImportResponse)
async def get_scheduled_import(schedule_id: str, current_user: User = Depends(get_current_user)):
    schedule = ensure_owner(get_schedule(schedule_id), current_user, "Scheduled import")
    return ScheduledImportResponse(success=True, schedule=schedule)


@router.patch("/scheduled-imports/{schedule_id}", response_model=ScheduledImportResponse)
async def update_scheduled_import(
    schedule_id: str,
    request: ScheduledImportUpdateRequest,
    current_user: User = Depends(get_current_user),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """
    Enable or disable a schedule or its webhook trigger; enabling a schedule
    counts against ``max_active_schedules``.
    """
    schedule = ensure_owner(get_schedule(schedule_id), current_user, "Scheduled import")
    if request.enabled is not None:
        schedule = set_schedule_enabled(schedule_id, request.enabled, ledger=ledger, now=utcnow())
    if schedule is not None and request.webhook_enabled is not None:
        schedule = set_webhook_enabled(schedule_id, request.webhook_enabled, now=utcnow())
    if schedule is None:
        raise HTTPException(status_code=404, detail="Scheduled import not found")
    return ScheduledImportResponse(success=True, schedule=schedule)


@router.delete("/scheduled-imports/{schedule_id}")
async def delete_scheduled_import(
    schedule_id: str,
    current_user: User = Depends(get_current_user),
    ledger: QuotaLedger = Depends(get_ledger),
):
    ensure_owner(get_schedule(schedule_id), current_user, "Scheduled import")
    if not delete_schedule(schedule_id, ledger=ledger, now=utcnow()):
        raise HTTPException(status_code=404, detail="Scheduled import not found")
    return {"success": True, "message": "Scheduled import deleted"}


@router.post("/scheduled-imports/{schedule_id}/trigger", response_model=ScheduledImportTriggerResponse)
async def trigger_scheduled_import(
    schedule_id: str,
    current_user: User = Depends(get_current_user),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """
    Run a schedule now.

    ``last_status`` becomes ``running`` immediately; the worker records the
    real outcome when the job finishes.
    """
    schedule = ensure_owner(get_schedule(schedule_id), current_user, "Scheduled import")
    try:
        job = trigger_schedule(schedule, ledger=ledger, trigger_source="manual", now=utcnow())
    except ScheduleBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return ScheduledImportTriggerResponse(success=True, schedule=get_schedule(schedule_id), job=job)
