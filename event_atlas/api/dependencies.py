"""
Shared collaborators for the API routers.

Each getter is a FastAPI dependency so tests can swap in fakes through
``app.dependency_overrides``.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException

from event_atlas.api.rate_limit import SlidingWindowRateLimiter, webhook_windows
from event_atlas.core.security import User
from event_atlas.domain.cache.registry import CacheRegistry, get_cache_registry
from event_atlas.domain.geocoding.service import GeocodingService
from event_atlas.domain.imports.stages import PipelineDeps
from event_atlas.domain.quotas.ledger import QuotaLedger

_ledger: Optional[QuotaLedger] = None
_geocoder: Optional[GeocodingService] = None
_webhook_limiter: Optional[SlidingWindowRateLimiter] = None


def get_ledger() -> QuotaLedger:
    global _ledger
    if _ledger is None:
        _ledger = QuotaLedger()
    return _ledger


def get_caches() -> CacheRegistry:
    return get_cache_registry()


def get_geocoder() -> GeocodingService:
    global _geocoder
    if _geocoder is None:
        _geocoder = PipelineDeps.default().geocoder
    return _geocoder


def get_pipeline_deps() -> PipelineDeps:
    return PipelineDeps(geocoder=get_geocoder(), ledger=get_ledger(), caches=get_caches())


def get_webhook_limiter() -> SlidingWindowRateLimiter:
    global _webhook_limiter
    if _webhook_limiter is None:
        _webhook_limiter = SlidingWindowRateLimiter(webhook_windows())
    return _webhook_limiter


def reset_dependencies() -> None:
    global _ledger, _geocoder, _webhook_limiter
    _ledger = None
    _geocoder = None
    _webhook_limiter = None


def ensure_owner(record: Optional[Dict[str, Any]], user: User, label: str) -> Dict[str, Any]:
    """404 for missing records, 403 for records owned by someone else (admins see everything)."""
    if record is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    if not user.is_admin and record.get("user_id") != user.id:
        raise HTTPException(status_code=403, detail=f"{label} belongs to another user")
    return record
