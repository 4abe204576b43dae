"""
Tests for the geocode cache, provider selection and the geocoding service.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from conftest import FROZEN_NOW, FakeProvider
from event_atlas.core.config import settings
from event_atlas.core.errors import GeocodingProviderError
from event_atlas.domain.geocoding.cache import GeocodeCache, glob_to_like
from event_atlas.domain.geocoding.normalize import normalize_address
from event_atlas.domain.geocoding.providers import (
    GeocodingResult,
    GoogleGeocodingProvider,
    NominatimGeocodingProvider,
    build_provider,
)
from event_atlas.domain.geocoding.registry import ProviderRegistry, select_providers
from event_atlas.domain.geocoding.service import GeocodingService


def _service(*providers):
    return GeocodingService(
        cache=GeocodeCache(),
        registry=ProviderRegistry(loader=lambda: list(providers), ttl_seconds=0),
    )


def test_normalize_address_collapses_whitespace_and_keeps_case():
    assert normalize_address("  Alexanderplatz \t Berlin\n") == "Alexanderplatz Berlin"
    assert normalize_address("berlin") != normalize_address("Berlin")
    assert normalize_address("   ") is None
    assert normalize_address(None) is None


def test_cache_hit_returns_identical_coordinates_without_provider_call(geocoder, provider):
    first = geocoder.geocode("Alexanderplatz Berlin", now=FROZEN_NOW)
    second = geocoder.geocode("Alexanderplatz  Berlin", now=FROZEN_NOW + timedelta(hours=1))

    assert provider.calls == ["Alexanderplatz Berlin"]
    assert first.cached is False
    assert second.cached is True
    assert (second.latitude, second.longitude, second.confidence) == (first.latitude, first.longitude, first.confidence)
    assert second.provider == first.provider


def test_expired_cache_entry_triggers_fresh_lookup(geocoder, provider, monkeypatch):
    monkeypatch.setattr(settings, "geocoding_cache_ttl_days", 1)

    geocoder.geocode("Marienplatz Munich", now=FROZEN_NOW)
    geocoder.geocode("Marienplatz Munich", now=FROZEN_NOW + timedelta(days=2))

    assert provider.calls == ["Marienplatz Munich", "Marienplatz Munich"]


def test_cache_keys_are_case_sensitive(geocoder, provider):
    provider.results["alexanderplatz berlin"] = (52.5, 13.4)

    geocoder.geocode("Alexanderplatz Berlin", now=FROZEN_NOW)
    geocoder.geocode("alexanderplatz berlin", now=FROZEN_NOW)

    assert provider.calls == ["Alexanderplatz Berlin", "alexanderplatz berlin"]


def test_cache_entry_records_hits_and_can_be_cleaned_up():
    cache = GeocodeCache()
    result = GeocodingResult(52.5, 13.4, 0.9, "fake", formatted_address="Berlin")
    cache.put("Berlin", result, now=FROZEN_NOW, ttl_days=1)
    cache.put("Bern", result, now=FROZEN_NOW, ttl_days=10)

    assert cache.get("Berlin", now=FROZEN_NOW).latitude == 52.5
    assert cache.get_entry("Berlin")["hit_count"] == 1
    assert cache.keys(pattern="Ber*")["total"] == 2
    assert cache.keys(pattern="Berl?n")["keys"] == ["Berlin"]

    assert cache.cleanup(now=FROZEN_NOW + timedelta(days=2)) == 1
    assert cache.get_entry("Berlin") is None
    assert cache.delete("Bern") is True
    assert cache.delete("Bern") is False


def test_cache_set_entry_requires_coordinates():
    cache = GeocodeCache()

    cache.set_entry("Hamburg", {"latitude": "53.55", "longitude": 9.99}, now=FROZEN_NOW)
    assert cache.get_entry("Hamburg")["provider"] == "manual"

    with pytest.raises(ValueError):
        cache.set_entry("Hamburg", {"latitude": "north"}, now=FROZEN_NOW)


def test_glob_to_like_escapes_sql_wildcards():
    assert glob_to_like("*") is None
    assert glob_to_like("100%_*") == "100\\%\\_%"


def test_fallback_uses_next_provider():
    broken = FakeProvider("broken", priority=1, failing={"Alexanderplatz Berlin"})
    backup = FakeProvider("backup", priority=5)
    service = _service(backup, broken)

    result = service.geocode("Alexanderplatz Berlin", now=FROZEN_NOW)

    assert result.provider == "backup"
    assert broken.calls == ["Alexanderplatz Berlin"]


def test_fallback_disabled_stops_at_first_failure(monkeypatch):
    monkeypatch.setattr(settings, "geocoding_fallback_enabled", False)
    broken = FakeProvider("broken", priority=1, failing={"Alexanderplatz Berlin"})
    backup = FakeProvider("backup", priority=5)
    service = _service(broken, backup)

    with pytest.raises(GeocodingProviderError) as exc_info:
        service.geocode("Alexanderplatz Berlin", now=FROZEN_NOW)

    assert exc_info.value.provider == "broken"
    assert backup.calls == []


def test_all_providers_failing_raises_and_caches_nothing():
    service = _service(FakeProvider("only", results={}))

    with pytest.raises(GeocodingProviderError) as exc_info:
        service.geocode("Atlantis", now=FROZEN_NOW)

    assert exc_info.value.reason == "exhausted"
    assert service.cache.get_entry("Atlantis") is None


def test_low_confidence_result_is_rejected(monkeypatch):
    monkeypatch.setattr(settings, "geocoding_min_confidence", 0.5)
    vague = FakeProvider("vague", priority=1, confidence=0.2)
    precise = FakeProvider("precise", priority=2, confidence=0.95)

    result = _service(vague, precise).geocode("Marienplatz Munich", now=FROZEN_NOW)

    assert result.provider == "precise"


def test_disabled_geocoding_returns_none(geocoder, provider, monkeypatch):
    monkeypatch.setattr(settings, "geocoding_enabled", False)

    assert geocoder.geocode("Alexanderplatz Berlin", now=FROZEN_NOW) is None
    assert geocoder.geocode_many(["Alexanderplatz Berlin"], now=FROZEN_NOW) == {}
    assert provider.calls == []


def test_geocode_many_deduplicates_and_captures_failures(geocoder, provider):
    outcomes = geocoder.geocode_many(
        ["Alexanderplatz Berlin", " Alexanderplatz Berlin ", "Atlantis", None], now=FROZEN_NOW
    )

    assert set(outcomes) == {"Alexanderplatz Berlin", "Atlantis"}
    assert outcomes["Alexanderplatz Berlin"].ok
    assert not outcomes["Atlantis"].ok
    assert outcomes["Atlantis"].error.reason == "exhausted"
    assert sorted(provider.calls) == ["Alexanderplatz Berlin", "Atlantis"]


def test_geocode_many_reports_progress_per_chunk(geocoder, monkeypatch):
    monkeypatch.setattr(settings, "geocoding_heartbeat_batch_size", 2)
    progress = []

    outcomes = geocoder.geocode_many(
        ["Alexanderplatz Berlin", "Marienplatz Munich", "Atlantis"],
        now=FROZEN_NOW,
        on_progress=lambda done, total: progress.append((done, total)),
    )

    assert len(outcomes) == 3
    assert progress == [(2, 3), (3, 3)]


def test_geocode_many_stops_when_progress_callback_raises(geocoder, provider, monkeypatch):
    monkeypatch.setattr(settings, "geocoding_heartbeat_batch_size", 1)

    def give_up(done, total):
        raise RuntimeError("claim gone")

    with pytest.raises(RuntimeError):
        geocoder.geocode_many(["Alexanderplatz Berlin", "Marienplatz Munich"], now=FROZEN_NOW, on_progress=give_up)

    assert provider.calls == ["Alexanderplatz Berlin"]


def test_select_providers_priority_and_tags():
    a = FakeProvider("a", priority=5, tags=["eu"])
    b = FakeProvider("b", priority=1, tags=["global"])
    c = FakeProvider("c", priority=1, tags=["eu", "premium"], enabled=False)
    d = FakeProvider("d", priority=3, tags=["eu", "premium"])

    assert [p.name for p in select_providers([a, b, c, d], "priority")] == ["b", "d", "a"]
    assert [p.name for p in select_providers([a, b, c, d], "tag-based", ["eu"])] == ["d", "a"]
    assert [p.name for p in select_providers([a, b, c, d], "tag-based", ["premium"])] == ["d"]


def test_registry_reloads_after_invalidate():
    loads = []

    def loader():
        loads.append(1)
        return [FakeProvider("a")]

    registry = ProviderRegistry(loader=loader, ttl_seconds=3600)
    registry.providers()
    registry.providers()
    assert len(loads) == 1

    registry.invalidate()
    registry.providers()
    assert len(loads) == 2


def test_build_provider_requires_api_key_for_keyed_providers():
    assert build_provider("google") is None
    assert build_provider("unknown") is None
    google = build_provider("google", config={"api_key": "k"})
    assert isinstance(google, GoogleGeocodingProvider)
    assert google.priority == 1


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


def test_nominatim_parses_first_result():
    session = MagicMock()
    session.get.return_value = _response(payload=[
        {"lat": "52.52", "lon": "13.41", "importance": 0.7, "display_name": "Berlin, Germany", "address": {"city": "Berlin"}}
    ])
    provider = NominatimGeocodingProvider("osm", session=session)

    result = provider.geocode("Berlin")

    assert (result.latitude, result.longitude) == (52.52, 13.41)
    assert result.confidence == 0.7
    assert result.components == {"city": "Berlin"}


def test_provider_errors_are_classified():
    session = MagicMock()
    provider = NominatimGeocodingProvider("osm", session=session)

    session.get.return_value = _response(payload=[])
    with pytest.raises(GeocodingProviderError) as exc_info:
        provider.geocode("Nowhere")
    assert exc_info.value.reason == "empty"

    session.get.return_value = _response(status_code=503)
    with pytest.raises(GeocodingProviderError) as exc_info:
        provider.geocode("Berlin")
    assert exc_info.value.reason == "http_status"

    session.get.side_effect = requests.exceptions.Timeout("slow")
    with pytest.raises(GeocodingProviderError) as exc_info:
        provider.geocode("Berlin")
    assert exc_info.value.reason == "timeout"


def test_out_of_range_provider_result_is_malformed():
    session = MagicMock()
    session.get.return_value = _response(payload=[{"lat": "152.0", "lon": "13.41"}])

    with pytest.raises(GeocodingProviderError) as exc_info:
        NominatimGeocodingProvider("osm", session=session).geocode("Berlin")

    assert exc_info.value.reason == "malformed"
