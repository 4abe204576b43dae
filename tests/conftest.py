"""
Pytest configuration and fixtures for Event Atlas tests.

Every test gets its own SQLite database and local storage directory under
``tmp_path``, so tests never share pipeline state. Geocoding never leaves
the process: the ``provider`` fixture answers from a fixed address table
and counts its calls.
"""

import os

# The API lifespan must not bootstrap tables against the default database.
os.environ.setdefault("SKIP_DB_INIT", "1")

from datetime import datetime, timedelta

import pytest

from event_atlas.api.dependencies import reset_dependencies
from event_atlas.core.config import settings
from event_atlas.core.errors import GeocodingProviderError
from event_atlas.core.security import create_user
from event_atlas.db.session import create_all_tables, get_session_local, reset_engine
from event_atlas.domain.cache.memory import MemoryCache
from event_atlas.domain.cache.registry import (
    GEOCODING_CACHE,
    URL_FETCH_CACHE,
    CacheRegistry,
    reset_cache_registry,
)
from event_atlas.domain.geocoding.cache import GeocodeCache
from event_atlas.domain.geocoding.providers import GeocodingProvider, GeocodingResult
from event_atlas.domain.geocoding.registry import ProviderRegistry
from event_atlas.domain.geocoding.service import GeocodingService
from event_atlas.domain.imports.stages import PipelineDeps
from event_atlas.domain.quotas.ledger import QuotaLedger

# A Monday, so weekly schedules have a full week ahead of them.
FROZEN_NOW = datetime(2026, 3, 2, 9, 0, 0)

KNOWN_ADDRESSES = {
    "Alexanderplatz Berlin": (52.5219, 13.4132),
    "Marienplatz Munich": (48.1374, 11.5755),
}


class FrozenClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeProvider(GeocodingProvider):
    """Answers from a fixed table; unknown or failing addresses raise like a real provider."""

    type = "fake"

    def __init__(self, name="fake", results=None, failing=(), confidence=0.9, **kwargs):
        super().__init__(name, **kwargs)
        self.results = dict(KNOWN_ADDRESSES if results is None else results)
        self.failing = set(failing)
        self.confidence = confidence
        self.calls = []

    def _geocode(self, address):
        self.calls.append(address)
        if address in self.failing:
            raise GeocodingProviderError(f"{self.name} is unavailable", provider=self.name, reason="http_status")
        if address not in self.results:
            raise self._empty(address)
        latitude, longitude = self.results[address]
        return GeocodingResult(
            latitude=latitude,
            longitude=longitude,
            confidence=self.confidence,
            provider=self.name,
            formatted_address=address,
        )


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch):
    """
    Point the application at a fresh SQLite file and storage directory.

    Provider and quota profile caches are disabled (TTL 0) so settings and
    user changes made inside a test are visible immediately.
    """
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'event_atlas_test.db'}")
    monkeypatch.setattr(settings, "storage_provider", "local")
    monkeypatch.setattr(settings, "storage_local_dir", str(tmp_path / "storage"))
    monkeypatch.setattr(settings, "quota_config_ttl_seconds", 0)
    monkeypatch.setattr(settings, "provider_config_ttl_seconds", 0)
    monkeypatch.setattr(settings, "geocoding_enabled", True)
    monkeypatch.setattr(settings, "geocoding_fallback_enabled", True)
    monkeypatch.setattr(settings, "geocoding_cache_enabled", True)
    monkeypatch.setattr(settings, "geocoding_max_concurrency", 1)
    monkeypatch.setattr(settings, "geocoding_min_confidence", 0.0)
    monkeypatch.setattr(settings, "job_max_retries", 3)
    monkeypatch.setattr(settings, "job_retry_backoff_seconds", 30)
    monkeypatch.setattr(settings, "event_batch_size", 100)
    monkeypatch.setattr(settings, "default_trust_level", 2)
    monkeypatch.setattr(settings, "enable_run_jobs_endpoint", True)

    reset_engine()
    reset_cache_registry()
    create_all_tables()
    reset_dependencies()

    yield

    reset_dependencies()
    reset_cache_registry()
    reset_engine()


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def make_user():
    """Factory creating users through the same helper the seeding scripts use."""
    counter = {"value": 0}

    def _make_user(role="user", trust_level=None, custom_quotas=None, email=None):
        counter["value"] += 1
        db = get_session_local()()
        try:
            return create_user(
                db,
                email=email or f"user{counter['value']}@example.com",
                full_name=f"Test User {counter['value']}",
                role=role,
                trust_level=trust_level,
                custom_quotas=custom_quotas,
            )
        finally:
            db.close()

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin_user(make_user):
    return make_user(role="admin", email="admin@example.com")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def geocoder(provider):
    return GeocodingService(
        cache=GeocodeCache(),
        registry=ProviderRegistry(loader=lambda: [provider], ttl_seconds=0),
    )


@pytest.fixture
def ledger():
    return QuotaLedger(profile_ttl_seconds=0)


@pytest.fixture
def caches(geocoder):
    return CacheRegistry({
        GEOCODING_CACHE: geocoder.cache,
        URL_FETCH_CACHE: MemoryCache(URL_FETCH_CACHE, 3600),
    })


@pytest.fixture
def deps(geocoder, ledger, caches):
    return PipelineDeps(geocoder=geocoder, ledger=ledger, caches=caches)


@pytest.fixture
def worker(deps, clock):
    from event_atlas.worker.loop import JobWorker

    return JobWorker(worker_id="test-worker", batch_limit=10, poll_interval=0, clock=clock, deps=deps)
