"""Target event schema and the per-column inferred type vocabulary."""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class InferredType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    MIXED = "mixed"


@dataclass(frozen=True)
class TargetField:
    name: str
    type: InferredType
    required: bool = False


EVENT_TARGET_FIELDS: List[TargetField] = [
    TargetField("title", InferredType.STRING, required=True),
    TargetField("timestamp", InferredType.DATE, required=True),
    TargetField("end_timestamp", InferredType.DATE),
    TargetField("description", InferredType.STRING),
    TargetField("category", InferredType.STRING),
    TargetField("latitude", InferredType.NUMBER),
    TargetField("longitude", InferredType.NUMBER),
    TargetField("address", InferredType.STRING),
    TargetField("url", InferredType.STRING),
]


def target_fields_by_name(fields: List[TargetField] = None) -> Dict[str, TargetField]:
    return {field.name: field for field in (fields or EVENT_TARGET_FIELDS)}


def is_compatible(source: InferredType, target: InferredType) -> bool:
    """Whether values of ``source`` type can be stored in a ``target`` field without coercion."""
    if source == target:
        return True
    # Everything renders as a string.
    if target == InferredType.STRING and source != InferredType.MIXED:
        return True
    return False
