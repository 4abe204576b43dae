"""
HTTP geocoding providers.

Each provider turns one address into a ``GeocodingResult`` or raises
``GeocodingProviderError``. Providers never touch the cache; ordering,
fallback and caching live in ``GeocodingService``.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from event_atlas.core.config import settings
from event_atlas.core.errors import GeocodingProviderError

logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
OPENCAGE_GEOCODE_URL = "https://api.opencagedata.com/geocode/v1/json"

GOOGLE_LOCATION_CONFIDENCE = {
    "ROOFTOP": 1.0,
    "RANGE_INTERPOLATED": 0.8,
    "GEOMETRIC_CENTER": 0.6,
    "APPROXIMATE": 0.4,
}


@dataclass
class GeocodingResult:
    latitude: float
    longitude: float
    confidence: float
    provider: str
    formatted_address: Optional[str] = None
    components: Dict[str, Any] = field(default_factory=dict)
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "confidence": self.confidence,
            "provider": self.provider,
            "formatted_address": self.formatted_address,
            "components": self.components,
            "cached": self.cached,
        }


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class GeocodingProvider:
    """Base class: subclasses implement ``_geocode`` on top of ``_get_json``."""

    type = "base"

    def __init__(
        self,
        name: str,
        priority: int = 10,
        tags: Optional[List[str]] = None,
        timeout: Optional[float] = None,
        enabled: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.name = name
        self.priority = priority
        self.tags = list(tags or [])
        self.timeout = timeout or settings.geocoding_request_timeout_seconds
        self.enabled = enabled
        self._session = session

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} priority={self.priority}>"

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def geocode(self, address: str) -> GeocodingResult:
        result = self._geocode(address)
        if not (-90 <= result.latitude <= 90 and -180 <= result.longitude <= 180):
            raise GeocodingProviderError(
                f"{self.name} returned out-of-range coordinates", provider=self.name, reason="malformed"
            )
        return result

    def _geocode(self, address: str) -> GeocodingResult:
        raise NotImplementedError

    def _get_json(self, url: str, params: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise GeocodingProviderError(f"{self.name} timed out", provider=self.name, reason="timeout") from exc
        except requests.exceptions.RequestException as exc:
            raise GeocodingProviderError(
                f"{self.name} request failed: {exc}", provider=self.name, reason="network"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise GeocodingProviderError(
                f"{self.name} responded with HTTP {response.status_code}",
                provider=self.name,
                reason="http_status",
            )
        try:
            return response.json()
        except ValueError as exc:
            raise GeocodingProviderError(
                f"{self.name} returned a malformed body", provider=self.name, reason="malformed"
            ) from exc

    def _empty(self, address: str) -> GeocodingProviderError:
        return GeocodingProviderError(f"{self.name} found no result for '{address}'", provider=self.name, reason="empty")


class GoogleGeocodingProvider(GeocodingProvider):
    type = "google"

    def __init__(self, name: str, api_key: str, **kwargs):
        super().__init__(name, **kwargs)
        self.api_key = api_key

    def _geocode(self, address: str) -> GeocodingResult:
        payload = self._get_json(GOOGLE_GEOCODE_URL, {"address": address, "key": self.api_key})
        status = payload.get("status") if isinstance(payload, dict) else None
        if status == "ZERO_RESULTS":
            raise self._empty(address)
        if status != "OK":
            raise GeocodingProviderError(f"google status {status}", provider=self.name, reason="http_status")
        results = payload.get("results") or []
        if not results:
            raise self._empty(address)
        try:
            first = results[0]
            geometry = first["geometry"]
            location = geometry["location"]
            return GeocodingResult(
                latitude=float(location["lat"]),
                longitude=float(location["lng"]),
                confidence=GOOGLE_LOCATION_CONFIDENCE.get(geometry.get("location_type"), 0.5),
                provider=self.name,
                formatted_address=first.get("formatted_address"),
                components={
                    component["types"][0]: component.get("long_name")
                    for component in first.get("address_components", [])
                    if component.get("types")
                },
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingProviderError("google returned a malformed result", provider=self.name, reason="malformed") from exc


class OpenCageGeocodingProvider(GeocodingProvider):
    type = "opencage"

    def __init__(self, name: str, api_key: str, **kwargs):
        super().__init__(name, **kwargs)
        self.api_key = api_key

    def _geocode(self, address: str) -> GeocodingResult:
        payload = self._get_json(OPENCAGE_GEOCODE_URL, {"q": address, "key": self.api_key, "limit": 1})
        results = payload.get("results") if isinstance(payload, dict) else None
        if not results:
            raise self._empty(address)
        try:
            first = results[0]
            return GeocodingResult(
                latitude=float(first["geometry"]["lat"]),
                longitude=float(first["geometry"]["lng"]),
                confidence=_clamp(float(first.get("confidence", 0)) / 10.0),
                provider=self.name,
                formatted_address=first.get("formatted"),
                components={
                    key: value for key, value in (first.get("components") or {}).items() if not key.startswith("_")
                },
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingProviderError("opencage returned a malformed result", provider=self.name, reason="malformed") from exc


class NominatimGeocodingProvider(GeocodingProvider):
    type = "nominatim"

    def __init__(self, name: str, base_url: Optional[str] = None, user_agent: Optional[str] = None, **kwargs):
        super().__init__(name, **kwargs)
        self.base_url = (base_url or settings.geocoding_nominatim_base_url).rstrip("/")
        self.user_agent = user_agent or settings.geocoding_user_agent

    def _geocode(self, address: str) -> GeocodingResult:
        payload = self._get_json(
            f"{self.base_url}/search",
            {"q": address, "format": "jsonv2", "limit": 1, "addressdetails": 1},
            headers={"User-Agent": self.user_agent},
        )
        if not isinstance(payload, list) or not payload:
            raise self._empty(address)
        try:
            first = payload[0]
            return GeocodingResult(
                latitude=float(first["lat"]),
                longitude=float(first["lon"]),
                confidence=_clamp(float(first.get("importance", 0.5))),
                provider=self.name,
                formatted_address=first.get("display_name"),
                components=dict(first.get("address") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingProviderError("nominatim returned a malformed result", provider=self.name, reason="malformed") from exc


PROVIDER_TYPES = {
    "google": GoogleGeocodingProvider,
    "opencage": OpenCageGeocodingProvider,
    "nominatim": NominatimGeocodingProvider,
}

DEFAULT_PRIORITIES = {"google": 1, "opencage": 5, "nominatim": 10}


def build_provider(
    provider_type: str,
    name: Optional[str] = None,
    *,
    priority: Optional[int] = None,
    tags: Optional[List[str]] = None,
    config: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    enabled: bool = True,
) -> Optional[GeocodingProvider]:
    """
    Instantiate a provider from its stored configuration.

    Returns None (and logs) when a keyed provider has no API key.
    """
    config = config or {}
    provider_cls = PROVIDER_TYPES.get(provider_type)
    if provider_cls is None:
        logger.warning("Unknown geocoding provider type: %s", provider_type)
        return None

    common = {
        "priority": priority if priority is not None else DEFAULT_PRIORITIES[provider_type],
        "tags": tags,
        "timeout": timeout,
        "enabled": enabled,
    }
    name = name or provider_type

    if provider_type in ("google", "opencage"):
        api_key = (config.get("api_key") or "").strip()
        if not api_key:
            logger.warning("%s provider %s has no API key configured", provider_type, name)
            return None
        return provider_cls(name, api_key=api_key, **common)

    return provider_cls(name, base_url=config.get("base_url"), user_agent=config.get("user_agent"), **common)
