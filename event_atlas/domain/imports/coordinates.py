"""
Per-row coordinate resolution.

Priority is fixed: explicit latitude/longitude when both are valid, then a
geocoded free-text address, otherwise no location. Invalid explicit
coordinates are never corrected (no swapping, no clamping).
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from event_atlas.db.models import CoordinateSource
from event_atlas.domain.geocoding.normalize import normalize_address
from event_atlas.domain.geocoding.providers import GeocodingResult
from event_atlas.domain.mapping.types import parse_number


@dataclass
class CoordinateResolution:
    source: CoordinateSource
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    confidence: Optional[float] = None
    normalized_address: Optional[str] = None
    formatted_address: Optional[str] = None
    explicit_rejected: bool = False

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def valid_latitude(value: Optional[float]) -> bool:
    return value is not None and -90.0 <= value <= 90.0


def valid_longitude(value: Optional[float]) -> bool:
    return value is not None and -180.0 <= value <= 180.0


def explicit_coordinates(latitude: Any, longitude: Any) -> Optional[Tuple[float, float]]:
    """Both values parse as numbers within range, else None."""
    lat = parse_number(latitude)
    lon = parse_number(longitude)
    if valid_latitude(lat) and valid_longitude(lon):
        return lat, lon
    return None


def resolve_coordinates(
    values: Dict[str, Any],
    lookup: Optional[Callable[[str], Optional[GeocodingResult]]] = None,
) -> CoordinateResolution:
    """
    Decide where a row's location comes from.

    ``values`` are the mapped (pre-coercion or coerced) target values.
    ``lookup`` returns the geocoding result for a normalized address or None
    when it could not be resolved; omit it when geocoding is unavailable.
    """
    raw_lat = values.get("latitude")
    raw_lon = values.get("longitude")
    explicit_present = raw_lat is not None or raw_lon is not None

    explicit = explicit_coordinates(raw_lat, raw_lon)
    if explicit is not None:
        return CoordinateResolution(CoordinateSource.IMPORT, latitude=explicit[0], longitude=explicit[1])

    address = normalize_address(values.get("address"))
    if address is not None and lookup is not None:
        result = lookup(address)
        if result is not None:
            return CoordinateResolution(
                CoordinateSource.GEOCODED,
                latitude=result.latitude,
                longitude=result.longitude,
                confidence=result.confidence,
                normalized_address=address,
                formatted_address=result.formatted_address,
                explicit_rejected=explicit_present,
            )

    return CoordinateResolution(CoordinateSource.NONE, explicit_rejected=explicit_present)
