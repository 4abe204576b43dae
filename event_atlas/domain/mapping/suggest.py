"""Automatic field-mapping suggestions from column names and inferred types."""
import re
from typing import Any, Dict, List, Optional

from event_atlas.domain.mapping.schema import EVENT_TARGET_FIELDS, InferredType

# Patterns are ordered by specificity; the first matching unused column wins.
FIELD_PATTERNS: Dict[str, List[str]] = {
    "title": [r"^title$", r"^event[ _-]?(name|title)$", r"^name$", r"^label$", r"^event$", r"^titel$"],
    "timestamp": [
        r"^(start[ _-]?)?(date|time|timestamp|datetime)$",
        r"^start$",
        r"^(event[ _-]?)?date$",
        r"^(begin|starts?[ _-]?at|occurred[ _-]?at|created[ _-]?at)$",
        r"^datum$",
    ],
    "end_timestamp": [r"^end[ _-]?(date|time|timestamp|datetime)?$", r"^ends?[ _-]?at$", r"^finish$"],
    "description": [r"^description$", r"^details$", r"^summary$", r"^notes$", r"^beschreibung$"],
    "category": [r"^category$", r"^type$", r"^event[ _-]?type$", r"^kind$", r"^tags?$"],
    "latitude": [r"^lat(itude)?$", r"^y$", r"^breitengrad$"],
    "longitude": [r"^(lon|lng|long|longitude)$", r"^x$", r"^laengengrad$"],
    "address": [
        r"^(full[ _-]?)?address$",
        r"^location$",
        r"^place$",
        r"^venue$",
        r"^city$",
        r"^adresse$",
        r"^ort$",
    ],
    "url": [r"^url$", r"^link$", r"^website$", r"^source[ _-]?url$"],
}

# Type-based fallback when no column name matches.
TYPE_FALLBACKS = {"title": InferredType.STRING, "timestamp": InferredType.DATE}


def _match_column(patterns: List[str], columns: List[str], used: set) -> Optional[str]:
    for pattern in patterns:
        regex = re.compile(pattern, re.IGNORECASE)
        for column in columns:
            if column not in used and regex.match(column.strip()):
                return column
    return None


def suggest_mapping(columns: List[str], column_types: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build a mapping graph by matching column names against known patterns.

    The result is a plain graph (same shape users submit) so it goes through
    ``resolve_mapping`` like any other mapping.
    """
    column_types = column_types or {}
    used: set = set()
    assignments: Dict[str, str] = {}

    for target in EVENT_TARGET_FIELDS:
        column = _match_column(FIELD_PATTERNS.get(target.name, []), columns, used)
        if column is None and target.name in TYPE_FALLBACKS:
            wanted = TYPE_FALLBACKS[target.name]
            column = next(
                (
                    candidate
                    for candidate in columns
                    if candidate not in used and column_types.get(candidate) == wanted
                ),
                None,
            )
        if column is not None:
            used.add(column)
            assignments[target.name] = column

    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []
    for index, (field_name, column) in enumerate(assignments.items()):
        source_id = f"source-{index}"
        target_id = f"target-{field_name}"
        nodes.append({"id": source_id, "kind": "source", "column": column})
        nodes.append({"id": target_id, "kind": "target", "field": field_name})
        edges.append({"from": source_id, "to": target_id})

    return {"nodes": nodes, "edges": edges}
