"""
Geocoding service: cache lookup, provider chain and cache write-back.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from event_atlas.core.config import settings
from event_atlas.core.errors import GeocodingProviderError
from event_atlas.domain.geocoding.cache import GeocodeCache
from event_atlas.domain.geocoding.normalize import normalize_address
from event_atlas.domain.geocoding.providers import GeocodingProvider, GeocodingResult
from event_atlas.domain.geocoding.registry import ProviderRegistry
from event_atlas.utils.clock import resolve_now

logger = logging.getLogger(__name__)


@dataclass
class GeocodeOutcome:
    address: str
    result: Optional[GeocodingResult] = None
    error: Optional[GeocodingProviderError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


class GeocodingService:
    """
    Resolves addresses to coordinates.

    Lookups go cache first; on a miss the provider chain selected by the
    configured strategy is tried in order. With fallback disabled the chain
    stops at the first failing provider.
    """

    def __init__(self, cache: Optional[GeocodeCache] = None, registry: Optional[ProviderRegistry] = None):
        self.cache = cache or GeocodeCache()
        self.registry = registry or ProviderRegistry()

    @property
    def enabled(self) -> bool:
        return settings.geocoding_enabled

    def geocode(self, address: str, now: Optional[datetime] = None) -> Optional[GeocodingResult]:
        """
        Geocode one address.

        Returns None when geocoding is disabled or the address is blank;
        raises ``GeocodingProviderError`` when no provider produced a result.
        """
        if not settings.geocoding_enabled:
            return None
        key = normalize_address(address)
        if key is None:
            return None
        now = resolve_now(now)

        if settings.geocoding_cache_enabled:
            cached = self.cache.get(key, now=now)
            if cached is not None:
                logger.debug("Geocode cache hit for '%s'", key)
                return cached

        result = self._run_chain(key, self.registry.candidates())

        if settings.geocoding_cache_enabled:
            self.cache.put(key, result, now=now, ttl_days=settings.geocoding_cache_ttl_days)
        return result

    def _run_chain(self, address: str, candidates: List[GeocodingProvider]) -> GeocodingResult:
        if not candidates:
            raise GeocodingProviderError("No enabled geocoding providers available", reason="no_providers")

        failures: List[str] = []
        for provider in candidates:
            try:
                result = provider.geocode(address)
                if result.confidence < settings.geocoding_min_confidence:
                    raise GeocodingProviderError(
                        f"{provider.name} confidence {result.confidence:.2f} below minimum",
                        provider=provider.name,
                        reason="low_confidence",
                    )
                logger.debug("Geocoded '%s' with %s", address, provider.name)
                return result
            except GeocodingProviderError as exc:
                failures.append(f"{provider.name}: {exc.message}")
                logger.warning("Geocoding provider %s failed for '%s': %s", provider.name, address, exc.message)
                if not settings.geocoding_fallback_enabled:
                    raise GeocodingProviderError(
                        f"Geocoding failed for '{address}' (fallback disabled): {exc.message}",
                        provider=provider.name,
                        reason=exc.reason,
                    ) from exc

        raise GeocodingProviderError(
            f"All geocoding providers failed for '{address}': " + "; ".join(failures),
            reason="exhausted",
        )

    def geocode_many(
        self,
        addresses: Iterable[str],
        now: Optional[datetime] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, GeocodeOutcome]:
        """
        Geocode unique normalized addresses with bounded concurrency.

        Returns ``{normalized_address: GeocodeOutcome}``; failures are
        captured per address, never raised. Addresses are worked off in
        chunks of ``geocoding_heartbeat_batch_size`` and ``on_progress(done,
        total)`` runs after each chunk; whatever it raises aborts the run.
        """
        unique: List[str] = []
        seen = set()
        for address in addresses:
            key = normalize_address(address)
            if key is not None and key not in seen:
                seen.add(key)
                unique.append(key)

        if not unique or not settings.geocoding_enabled:
            return {}
        now = resolve_now(now)

        def _resolve(key: str) -> GeocodeOutcome:
            try:
                return GeocodeOutcome(key, result=self.geocode(key, now=now))
            except GeocodingProviderError as exc:
                return GeocodeOutcome(key, error=exc)

        max_workers = max(1, min(settings.geocoding_max_concurrency, len(unique)))
        chunk_size = max(1, settings.geocoding_heartbeat_batch_size)
        outcomes: Dict[str, GeocodeOutcome] = {}
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for start in range(0, len(unique), chunk_size):
                for outcome in executor.map(_resolve, unique[start:start + chunk_size]):
                    outcomes[outcome.address] = outcome
                if on_progress is not None:
                    on_progress(len(outcomes), len(unique))
        return outcomes
