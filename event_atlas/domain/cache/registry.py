"""
Named cache instances exposed to the cache admin API.

* ``geocoding`` is the database-backed geocode cache.
* ``url-fetch`` keeps ETag/Last-Modified validators of fetched source URLs.
"""
import logging
from typing import Any, Dict, List, Optional

from event_atlas.core.config import settings
from event_atlas.domain.cache.memory import MemoryCache
from event_atlas.domain.geocoding.cache import GeocodeCache

logger = logging.getLogger(__name__)

GEOCODING_CACHE = "geocoding"
URL_FETCH_CACHE = "url-fetch"


class CacheRegistry:
    def __init__(self, caches: Dict[str, Any]):
        self._caches = dict(caches)

    def names(self) -> List[str]:
        return sorted(self._caches)

    def get(self, name: str) -> Any:
        try:
            return self._caches[name]
        except KeyError:
            raise KeyError(f"Unknown cache '{name}'") from None

    def cleanup(self, name: Optional[str] = None, now=None) -> Dict[str, Any]:
        """Purge expired entries from one cache or from all of them."""
        targets = [name] if name else self.names()
        per_cache = {cache_name: self.get(cache_name).cleanup(now=now) for cache_name in targets}
        removed = sum(per_cache.values())
        logger.info("Cache cleanup removed %d entries (%s)", removed, per_cache)
        return {"removed": removed, "per_cache": per_cache}


def build_cache_registry(engine=None) -> CacheRegistry:
    return CacheRegistry({
        GEOCODING_CACHE: GeocodeCache(engine),
        URL_FETCH_CACHE: MemoryCache(URL_FETCH_CACHE, settings.url_fetch_cache_ttl_seconds),
    })


_registry: Optional[CacheRegistry] = None


def get_cache_registry() -> CacheRegistry:
    global _registry
    if _registry is None:
        _registry = build_cache_registry()
    return _registry


def reset_cache_registry() -> None:
    global _registry
    _registry = None
