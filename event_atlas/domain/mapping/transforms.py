"""
Value transforms that sit on a mapping path between a source column and a
target field.

Supported transform specs::

    {"type": "string-op", "operation": "uppercase" | "lowercase" | "trim" | "replace",
     "pattern": "...", "replacement": "..."}
    {"type": "date-parse", "input_format": "%d.%m.%Y"}
    {"type": "type-cast", "to_type": "string" | "number" | "boolean" | "date"}
"""
from typing import Any, Dict, List, Optional

from event_atlas.domain.mapping.schema import InferredType
from event_atlas.domain.mapping.types import coerce_value, is_empty

STRING_OPERATIONS = {"uppercase", "lowercase", "trim", "replace"}
CASTABLE_TYPES = {
    InferredType.STRING.value,
    InferredType.NUMBER.value,
    InferredType.BOOLEAN.value,
    InferredType.DATE.value,
}
TRANSFORM_TYPES = {"string-op", "date-parse", "type-cast"}


def validate_transform(spec: Dict[str, Any]) -> List[str]:
    """Return human-readable problems with a transform spec (empty when valid)."""
    if not isinstance(spec, dict):
        return ["transform must be an object"]

    transform_type = spec.get("type")
    if transform_type not in TRANSFORM_TYPES:
        return [f"unknown transform type '{transform_type}'"]

    problems = []
    if transform_type == "string-op":
        operation = spec.get("operation")
        if operation not in STRING_OPERATIONS:
            problems.append(f"unknown string operation '{operation}'")
        elif operation == "replace" and not spec.get("pattern"):
            problems.append("replace requires a non-empty 'pattern'")
    elif transform_type == "date-parse":
        input_format = spec.get("input_format")
        if input_format is not None and not isinstance(input_format, str):
            problems.append("'input_format' must be a string")
    elif transform_type == "type-cast":
        if spec.get("to_type") not in CASTABLE_TYPES:
            problems.append(f"cannot cast to '{spec.get('to_type')}'")
    return problems


def output_type(spec: Dict[str, Any]) -> Optional[InferredType]:
    """Type produced by the transform, or None when it preserves its input type."""
    transform_type = spec.get("type")
    if transform_type == "date-parse":
        return InferredType.DATE
    if transform_type == "type-cast":
        return InferredType(spec["to_type"])
    if transform_type == "string-op":
        return InferredType.STRING
    return None


def apply_transform(value: Any, spec: Dict[str, Any]) -> Any:
    """Apply one transform; raises ValueError when the value cannot be converted."""
    if is_empty(value):
        return None

    transform_type = spec["type"]

    if transform_type == "string-op":
        text = value if isinstance(value, str) else coerce_value(value, InferredType.STRING)
        operation = spec["operation"]
        if operation == "uppercase":
            return text.upper()
        if operation == "lowercase":
            return text.lower()
        if operation == "trim":
            return text.strip()
        return text.replace(spec["pattern"], spec.get("replacement") or "")

    if transform_type == "date-parse":
        return coerce_value(value, InferredType.DATE, date_format=spec.get("input_format"))

    if transform_type == "type-cast":
        return coerce_value(value, InferredType(spec["to_type"]))

    raise ValueError(f"unknown transform type '{transform_type}'")
