from fastapi import APIRouter, Depends

from event_atlas.api.dependencies import get_ledger
from event_atlas.api.schemas.admin import QuotaSummaryResponse
from event_atlas.core.security import User, get_current_user
from event_atlas.domain.quotas.ledger import QuotaLedger
from event_atlas.utils.clock import utcnow

router = APIRouter(tags=["quotas"])


@router.get("/quotas/me", response_model=QuotaSummaryResponse)
async def get_my_quotas(current_user: User = Depends(get_current_user), ledger: QuotaLedger = Depends(get_ledger)):
    return QuotaSummaryResponse(success=True, **ledger.summary(current_user, now=utcnow()))
