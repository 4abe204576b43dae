"""
Column type inference and value coercion.

Every source column gets exactly one ``InferredType``. Coercion is the
row-level counterpart: it turns a raw cell into the Python value a target
field expects, or raises ``ValueError`` with a human-readable reason.
"""
import math
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from event_atlas.domain.mapping.schema import InferredType
from event_atlas.utils.dates import looks_like_date, parse_flexible_date

_NUMBER_PATTERN = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$')
TRUE_STRINGS = {"true", "yes"}
FALSE_STRINGS = {"false", "no"}


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    return isinstance(value, str) and value.strip() == ""


def parse_number(value: Any) -> Optional[float]:
    """
    Parse ints, floats and numeric strings.

    Surrounding whitespace is ignored; decimal commas and thousands
    separators are rejected. Returns None when the value is not numeric.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMBER_PATTERN.match(text):
            return None
        number = float(text)
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    return None


def infer_value_type(value: Any) -> Optional[InferredType]:
    """Type of a single non-empty cell (None for empty cells)."""
    if is_empty(value):
        return None
    if isinstance(value, bool) or parse_boolean(value) is not None:
        return InferredType.BOOLEAN
    if parse_number(value) is not None:
        return InferredType.NUMBER
    if isinstance(value, (datetime, date, pd.Timestamp)) or looks_like_date(value):
        return InferredType.DATE
    return InferredType.STRING


def infer_column_type(values: Iterable[Any]) -> InferredType:
    """
    Infer one type for a column.

    Empty cells are ignored, an all-empty column is ``string`` and a column
    whose cells disagree is ``mixed``.
    """
    seen = set()
    for value in values:
        value_type = infer_value_type(value)
        if value_type is not None:
            seen.add(value_type)
    if not seen:
        return InferredType.STRING
    if len(seen) == 1:
        return seen.pop()
    return InferredType.MIXED


def infer_column_types(
    records: List[Dict[str, Any]],
    columns: List[str],
    sample_size: Optional[int] = None,
) -> Dict[str, InferredType]:
    sample = records[:sample_size] if sample_size else records
    return {
        column: infer_column_type(record.get(column) for record in sample)
        for column in columns
    }


def coerce_value(value: Any, target_type: InferredType, *, date_format: Optional[str] = None) -> Any:
    """Convert ``value`` to ``target_type``; raises ValueError when impossible."""
    if is_empty(value):
        return None

    if target_type == InferredType.STRING:
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        if isinstance(value, (datetime, pd.Timestamp)):
            return value.isoformat()
        return str(value).strip()

    if target_type == InferredType.NUMBER:
        number = parse_number(value)
        if number is None:
            raise ValueError(f"'{value}' is not a number")
        return number

    if target_type == InferredType.BOOLEAN:
        parsed = parse_boolean(value)
        if parsed is None:
            number = parse_number(value)
            if number in (0.0, 1.0):
                return bool(number)
            raise ValueError(f"'{value}' is not a boolean")
        return parsed

    if target_type == InferredType.DATE:
        parsed_date = parse_flexible_date(value, input_format=date_format, log_failures=False)
        if parsed_date is None:
            raise ValueError(f"'{value}' is not a recognised date")
        return parsed_date

    return value
