"""
Turning one source row into an Event draft.

Row-scoped problems never abort a batch: they are collected into
``validation_errors`` and the Event is stored with status ``invalid``.
Problems with explicit coordinates are warnings only, because the row may
still be located through its address.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from event_atlas.core.errors import RowValidationError
from event_atlas.db.models import ValidationStatus
from event_atlas.domain.geocoding.providers import GeocodingResult
from event_atlas.domain.imports.coordinates import CoordinateResolution, resolve_coordinates
from event_atlas.domain.mapping.resolver import ResolvedMapping, apply_mapping

COORDINATE_FIELDS = ("latitude", "longitude")


@dataclass
class EventDraft:
    row_number: int
    title: Optional[str]
    event_timestamp: Optional[datetime]
    data: Dict[str, Any]
    coordinates: CoordinateResolution
    validation_status: str
    validation_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.validation_status != ValidationStatus.INVALID.value


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def check_row(values: Dict[str, Any]) -> None:
    """Cross-field rules; raises ``RowValidationError``."""
    problems = []
    start = values.get("timestamp")
    end = values.get("end_timestamp")
    if isinstance(start, datetime) and isinstance(end, datetime) and end < start:
        problems.append({
            "type": "invalid_range",
            "field": "end_timestamp",
            "message": "end_timestamp is before timestamp",
        })
    url = values.get("url")
    if url:
        parsed = urlparse(str(url))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            problems.append({"type": "invalid_url", "field": "url", "message": f"'{url}' is not an http(s) URL", "value": url})
    if problems:
        raise RowValidationError(problems)


def build_event_draft(
    row: Dict[str, Any],
    row_number: int,
    resolved: ResolvedMapping,
    lookup: Optional[Callable[[str], Optional[GeocodingResult]]] = None,
) -> EventDraft:
    values, mapping_errors = apply_mapping(row, resolved)

    errors: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    for error in mapping_errors:
        if error.get("field") in COORDINATE_FIELDS:
            warnings.append(dict(error, severity="warning"))
        else:
            errors.append(error)

    try:
        check_row(values)
    except RowValidationError as exc:
        errors.extend(exc.errors)

    coordinates = resolve_coordinates(values, lookup)
    if coordinates.explicit_rejected and not warnings:
        warnings.append({
            "type": "invalid_coordinates",
            "field": "latitude",
            "severity": "warning",
            "message": "explicit coordinates are missing or out of range",
        })

    data = {name: _json_safe(value) for name, value in values.items() if name not in COORDINATE_FIELDS}

    if errors:
        status = ValidationStatus.INVALID.value
    elif any(entry.transforms for entry in resolved.entries):
        status = ValidationStatus.TRANSFORMED.value
    else:
        status = ValidationStatus.VALID.value

    title = values.get("title")
    timestamp = values.get("timestamp")
    return EventDraft(
        row_number=row_number,
        title=str(title) if title is not None else None,
        event_timestamp=timestamp if isinstance(timestamp, datetime) else None,
        data=data,
        coordinates=coordinates,
        validation_status=status,
        validation_errors=errors + warnings,
    )


def row_is_valid(row: Dict[str, Any], resolved: ResolvedMapping) -> bool:
    """Validity of a row ignoring location (used by the validating stage)."""
    values, mapping_errors = apply_mapping(row, resolved)
    if any(error.get("field") not in COORDINATE_FIELDS for error in mapping_errors):
        return False
    try:
        check_row(values)
    except RowValidationError:
        return False
    return True
