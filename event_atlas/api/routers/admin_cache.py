"""
Admin access to the named caches (``geocoding``, ``url-fetch``).
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from event_atlas.api.dependencies import get_caches
from event_atlas.api.schemas.admin import (
    CacheCleanupResponse,
    CacheEntryRequest,
    CacheEntryResponse,
    CacheKeysResponse,
)
from event_atlas.core.security import User, require_admin
from event_atlas.domain.cache.registry import CacheRegistry
from event_atlas.utils.clock import utcnow

router = APIRouter(prefix="/admin/cache", tags=["admin-cache"])


def _cache(caches: CacheRegistry, name: str):
    try:
        return caches.get(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown cache '{name}'. Available: {caches.names()}")


@router.get("/entry", response_model=CacheEntryResponse)
async def get_cache_entry(
    cache: str,
    key: str,
    _: User = Depends(require_admin),
    caches: CacheRegistry = Depends(get_caches),
):
    entry = _cache(caches, cache).get_entry(key)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Key '{key}' not found in cache '{cache}'")
    return CacheEntryResponse(success=True, cache=cache, key=key, entry=entry)


@router.put("/entry", response_model=CacheEntryResponse)
async def put_cache_entry(
    request: CacheEntryRequest,
    _: User = Depends(require_admin),
    caches: CacheRegistry = Depends(get_caches),
):
    target = _cache(caches, request.cache)
    try:
        target.set_entry(request.key, request.value, ttl_seconds=request.ttl_seconds, now=utcnow())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return CacheEntryResponse(success=True, cache=request.cache, key=request.key, entry=target.get_entry(request.key))


@router.delete("/entry", response_model=CacheEntryResponse)
async def delete_cache_entry(
    cache: str,
    key: str,
    _: User = Depends(require_admin),
    caches: CacheRegistry = Depends(get_caches),
):
    if not _cache(caches, cache).delete(key):
        raise HTTPException(status_code=404, detail=f"Key '{key}' not found in cache '{cache}'")
    return CacheEntryResponse(success=True, cache=cache, key=key)


@router.get("/keys", response_model=CacheKeysResponse)
async def list_cache_keys(
    cache: str,
    pattern: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    include_metadata: bool = False,
    _: User = Depends(require_admin),
    caches: CacheRegistry = Depends(get_caches),
):
    page = _cache(caches, cache).keys(pattern=pattern, limit=limit, offset=offset, include_metadata=include_metadata)
    return CacheKeysResponse(success=True, cache=cache, **page)


@router.post("/cleanup", response_model=CacheCleanupResponse)
async def cleanup_caches(
    cache: Optional[str] = None,
    _: User = Depends(require_admin),
    caches: CacheRegistry = Depends(get_caches),
):
    """Purge expired entries from one cache, or from every cache when ``cache`` is omitted."""
    if cache:
        _cache(caches, cache)
    result = caches.cleanup(cache, now=utcnow())
    return CacheCleanupResponse(success=True, **result)
