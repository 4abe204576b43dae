"""
Provider registry and selection strategies.

Provider rows are read from ``geocoding_providers`` through a ``TTLValue`` so
configuration changes are picked up without restarting the worker. When no
rows exist, defaults are derived from settings: Google and OpenCage when an
API key is configured, Nominatim always.
"""
import logging
from typing import Callable, List, Optional, Sequence

from sqlalchemy import select

from event_atlas.core.config import settings
from event_atlas.db.models import GeocodingProviderRecord
from event_atlas.db.session import get_engine
from event_atlas.domain.geocoding.providers import GeocodingProvider, build_provider
from event_atlas.utils.ttl import TTLValue

logger = logging.getLogger(__name__)

STRATEGY_PRIORITY = "priority"
STRATEGY_TAG_BASED = "tag-based"


def default_providers() -> List[GeocodingProvider]:
    providers = []
    if settings.geocoding_google_api_key.strip():
        providers.append(build_provider("google", config={"api_key": settings.geocoding_google_api_key}))
    if settings.geocoding_opencage_api_key.strip():
        providers.append(build_provider("opencage", config={"api_key": settings.geocoding_opencage_api_key}))
    providers.append(build_provider("nominatim"))
    return providers


def load_providers_from_db(engine=None) -> List[GeocodingProvider]:
    """Build providers from stored rows; falls back to defaults when none are stored."""
    table = GeocodingProviderRecord.__table__
    with (engine or get_engine()).connect() as conn:
        rows = conn.execute(select(table).order_by(table.c.priority, table.c.name)).mappings().all()

    if not rows:
        logger.info("No geocoding providers configured in the database, using defaults")
        return default_providers()

    providers = []
    for row in rows:
        provider = build_provider(
            row["type"],
            row["name"],
            priority=row["priority"],
            tags=row["tags"],
            config=row["config"],
            timeout=row["timeout_seconds"],
            enabled=bool(row["enabled"]),
        )
        if provider is not None:
            providers.append(provider)
    logger.debug("Loaded %d geocoding providers from the database", len(providers))
    return providers


def select_providers(
    providers: Sequence[GeocodingProvider],
    strategy: str = STRATEGY_PRIORITY,
    required_tags: Optional[Sequence[str]] = None,
) -> List[GeocodingProvider]:
    """
    Return the ordered candidate list for one lookup.

    ``priority`` keeps every enabled provider; ``tag-based`` keeps only
    providers carrying all ``required_tags``. Both sort by priority (lower
    first), ties broken by name.
    """
    candidates = [provider for provider in providers if provider.enabled]
    if strategy == STRATEGY_TAG_BASED and required_tags:
        wanted = set(required_tags)
        candidates = [provider for provider in candidates if wanted.issubset(provider.tags)]
    elif strategy not in (STRATEGY_PRIORITY, STRATEGY_TAG_BASED):
        logger.warning("Unknown provider strategy '%s', using priority order", strategy)
    return sorted(candidates, key=lambda provider: (provider.priority, provider.name))


class ProviderRegistry:
    """Read-through cache of the configured providers."""

    def __init__(self, loader: Optional[Callable[[], List[GeocodingProvider]]] = None, ttl_seconds: Optional[float] = None):
        self._providers = TTLValue(
            loader or load_providers_from_db,
            settings.provider_config_ttl_seconds if ttl_seconds is None else ttl_seconds,
        )

    def providers(self) -> List[GeocodingProvider]:
        return self._providers.get()

    def candidates(self, strategy: Optional[str] = None, required_tags: Optional[Sequence[str]] = None) -> List[GeocodingProvider]:
        return select_providers(
            self.providers(),
            strategy or settings.geocoding_provider_strategy,
            settings.geocoding_required_tags if required_tags is None else required_tags,
        )

    def invalidate(self) -> None:
        self._providers.invalidate()
