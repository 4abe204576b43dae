"""
Token-authenticated webhook that lets external systems run a scheduled import.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from event_atlas.api.dependencies import get_ledger, get_webhook_limiter
from event_atlas.api.rate_limit import SlidingWindowRateLimiter
from event_atlas.api.schemas.imports import WebhookTriggerResponse
from event_atlas.domain.imports.schedules import ScheduleBusyError, get_schedule_by_webhook_token, trigger_schedule
from event_atlas.domain.quotas.ledger import QuotaLedger
from event_atlas.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

RATE_LIMIT_MESSAGES = {
    "burst": "Too many requests. Please wait between webhook calls.",
    "hourly": "Hourly webhook rate limit exceeded.",
}


@router.post("/webhooks/trigger/{token}", response_model=WebhookTriggerResponse)
async def trigger_webhook(
    token: str,
    ledger: QuotaLedger = Depends(get_ledger),
    limiter: SlidingWindowRateLimiter = Depends(get_webhook_limiter),
):
    """
    Queue a run of the schedule owning ``token``.

    Unknown tokens and disabled webhooks get the same 401. Calls are
    rate limited per token; a run that is still in progress makes the call
    a no-op rather than an error.
    """
    schedule = get_schedule_by_webhook_token(token)
    if schedule is None or not schedule.get("webhook_enabled"):
        raise HTTPException(status_code=401, detail="Invalid or disabled webhook")

    decision = limiter.check(token)
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "message": RATE_LIMIT_MESSAGES.get(decision.failed_window, "Rate limit exceeded"),
                "limit_type": decision.failed_window,
                "retry_after": decision.reset_time.isoformat() if decision.reset_time else None,
            },
            headers={"Retry-After": str(decision.retry_after)},
        )

    try:
        job = trigger_schedule(schedule, ledger=ledger, trigger_source="webhook", now=utcnow())
    except ScheduleBusyError:
        logger.info("Webhook for scheduled import %s skipped: previous run still in progress", schedule["id"])
        return WebhookTriggerResponse(success=True, status="skipped", message="Import already running, skipped")

    return WebhookTriggerResponse(
        success=True,
        status="triggered",
        message="Import triggered",
        job_id=job["id"],
    )
