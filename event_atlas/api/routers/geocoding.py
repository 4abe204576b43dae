"""
Geocoding diagnostics and provider management (admin only).
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from event_atlas.api.dependencies import get_geocoder
from event_atlas.api.schemas.admin import (
    GeocodeTestRequest,
    GeocodeTestResponse,
    GeocodingProviderCreateRequest,
    GeocodingProviderInfo,
    GeocodingProviderListResponse,
)
from event_atlas.core.errors import GeocodingProviderError
from event_atlas.core.security import User, require_admin
from event_atlas.db.models import GeocodingProviderRecord, new_id
from event_atlas.db.session import get_engine
from event_atlas.domain.geocoding.normalize import normalize_address
from event_atlas.domain.geocoding.providers import DEFAULT_PRIORITIES
from event_atlas.domain.geocoding.service import GeocodingService
from event_atlas.utils.clock import utcnow

router = APIRouter(tags=["geocoding"])

_providers = GeocodingProviderRecord.__table__


def _provider_info(row) -> GeocodingProviderInfo:
    return GeocodingProviderInfo(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        enabled=bool(row["enabled"]),
        priority=row["priority"],
        tags=row["tags"] or [],
        timeout_seconds=row["timeout_seconds"],
        created_at=row["created_at"],
    )


@router.post("/geocoding/test", response_model=GeocodeTestResponse)
def test_geocoding(
    request: GeocodeTestRequest,
    _: User = Depends(require_admin),
    geocoder: GeocodingService = Depends(get_geocoder),
):
    """Geocode one address through the live cache and provider chain."""
    normalized = normalize_address(request.address)
    if normalized is None:
        raise HTTPException(status_code=400, detail="Address is empty")
    try:
        result = geocoder.geocode(request.address, now=utcnow())
    except GeocodingProviderError as exc:
        return GeocodeTestResponse(
            success=False,
            address=request.address,
            normalized_address=normalized,
            error=exc.message,
            provider=exc.provider,
        )
    if result is None:
        return GeocodeTestResponse(
            success=False,
            address=request.address,
            normalized_address=normalized,
            error="Geocoding is disabled",
        )
    return GeocodeTestResponse(
        success=True,
        address=request.address,
        normalized_address=normalized,
        result=result.to_dict(),
        provider=result.provider,
    )


@router.get("/admin/geocoding-providers", response_model=GeocodingProviderListResponse)
async def list_geocoding_providers(_: User = Depends(require_admin)):
    with get_engine().connect() as conn:
        rows = conn.execute(select(_providers).order_by(_providers.c.priority, _providers.c.name)).mappings().all()
    return GeocodingProviderListResponse(success=True, providers=[_provider_info(row) for row in rows])


@router.post("/admin/geocoding-providers", response_model=GeocodingProviderInfo)
async def create_geocoding_provider(
    request: GeocodingProviderCreateRequest,
    _: User = Depends(require_admin),
    geocoder: GeocodingService = Depends(get_geocoder),
):
    """Register a provider; stored API keys are never echoed back."""
    values = {
        "id": new_id(),
        "name": request.name,
        "type": request.type,
        "enabled": request.enabled,
        "priority": request.priority if request.priority is not None else DEFAULT_PRIORITIES[request.type],
        "tags": request.tags,
        "config": request.config,
        "timeout_seconds": request.timeout_seconds,
        "created_at": utcnow(),
    }
    try:
        with get_engine().begin() as conn:
            conn.execute(_providers.insert().values(**values))
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Provider '{request.name}' already exists")
    geocoder.registry.invalidate()
    return _provider_info(values)
