"""
Duplicate detection for import rows.

Every row gets a ``unique_id`` derived from the field mapping's id strategy:

    {"type": "external", "field": "Event ID"}          -> ext:<sanitized value>
    {"type": "computed", "fields": ["Name", "Date"]}   -> comp:<sha256[:16]>
    {"type": "hybrid", "field": "...", "fields": [...]} -> external, else computed
    {"type": "content-hash"}                           -> hash:<sha256[:16]> of the whole row

``analyze_duplicates`` runs before any event is written and reports rows
repeating an earlier row of the same file (internal) and rows whose id is
already taken by one of the owner's existing events (external). The mapping's
``deduplication`` mode decides what materializing does with them: ``skip``
leaves them out, ``flag`` stores them with ``is_duplicate`` set.
"""
import hashlib
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ID_STRATEGY_TYPES = ("external", "computed", "hybrid", "content-hash")
DEDUPLICATION_MODES = ("disabled", "skip", "flag")
DEFAULT_ID_STRATEGY = {"type": "content-hash"}

EXISTING_LOOKUP_CHUNK = 1000
MAX_EXTERNAL_ID_LENGTH = 255
_EXTERNAL_ID_PATTERN = re.compile(r"^[\w\-.:]+$")


class IdGenerationError(ValueError):
    """A row does not carry the values its id strategy needs."""


def validate_id_strategy(strategy: Optional[Dict[str, Any]]) -> List[str]:
    """Problems with an id strategy definition; empty when it is usable."""
    if strategy is None:
        return []
    if not isinstance(strategy, dict):
        return ["id strategy must be an object"]
    kind = strategy.get("type")
    if kind not in ID_STRATEGY_TYPES:
        return [f"id strategy type must be one of {list(ID_STRATEGY_TYPES)}"]
    problems = []
    if kind in ("external", "hybrid") and not strategy.get("field"):
        problems.append(f"'{kind}' id strategy needs a 'field'")
    if kind in ("computed", "hybrid"):
        fields = strategy.get("fields")
        if not isinstance(fields, list) or not fields or not all(isinstance(name, str) and name for name in fields):
            problems.append(f"'{kind}' id strategy needs a non-empty list of 'fields'")
    return problems


def _stable_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def sanitize_external_id(value: Any) -> str:
    text = str(value).strip()
    if not text or len(text) > MAX_EXTERNAL_ID_LENGTH:
        raise IdGenerationError(f"External id must be 1-{MAX_EXTERNAL_ID_LENGTH} characters")
    if not _EXTERNAL_ID_PATTERN.match(text):
        raise IdGenerationError(f"External id contains invalid characters: {text!r}")
    return text


def _external_id(row: Dict[str, Any], column: str) -> str:
    value = row.get(column)
    if _missing(value):
        raise IdGenerationError(f"Missing external id in column '{column}'")
    return "ext:" + sanitize_external_id(value)


def _computed_id(row: Dict[str, Any], columns: List[str]) -> str:
    missing = [column for column in columns if _missing(row.get(column))]
    if missing:
        raise IdGenerationError(f"Missing values for computed id: {', '.join(missing)}")
    parts = [f"{column}:{json.dumps(row[column], default=str)}" for column in sorted(columns)]
    return "comp:" + _stable_hash("|".join(parts))


def content_hash(row: Dict[str, Any]) -> str:
    return _stable_hash(json.dumps(row, sort_keys=True, default=str))


def generate_unique_id(row: Dict[str, Any], strategy: Optional[Dict[str, Any]] = None) -> str:
    """
    Derive a row's unique id. Raises ``IdGenerationError`` when the row lacks
    the values the strategy needs.
    """
    strategy = strategy or DEFAULT_ID_STRATEGY
    kind = strategy.get("type")
    if kind == "external":
        return _external_id(row, strategy["field"])
    if kind == "computed":
        return _computed_id(row, strategy["fields"])
    if kind == "hybrid":
        try:
            return _external_id(row, strategy["field"])
        except IdGenerationError:
            return _computed_id(row, strategy["fields"])
    if kind == "content-hash":
        return "hash:" + content_hash(row)
    raise IdGenerationError(f"Unknown id strategy: {kind}")


def row_unique_id(row: Dict[str, Any], strategy: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """``generate_unique_id`` for pipeline use: None when the row has no usable id."""
    try:
        return generate_unique_id(row, strategy)
    except IdGenerationError:
        return None


@dataclass
class DuplicateAnalysis:
    mode: str
    strategy: Dict[str, Any]
    total_rows: int = 0
    unique_rows: int = 0
    rows_without_id: int = 0
    internal: List[Dict[str, Any]] = field(default_factory=list)
    external: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duplicate_rows(self) -> List[int]:
        return sorted({item["row_number"] for item in self.internal + self.external})

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["duplicate_rows"] = self.duplicate_rows
        return payload


def analyze_duplicates(
    records: List[Dict[str, Any]],
    strategy: Optional[Dict[str, Any]],
    mode: str,
    find_existing: Callable[[List[str]], Dict[str, str]],
) -> DuplicateAnalysis:
    """
    Classify rows (1-based ``row_number``) as internal or external duplicates.

    ``find_existing(unique_ids) -> {unique_id: event_id}`` is called in chunks
    of ``EXISTING_LOOKUP_CHUNK`` ids. Nothing is analysed when ``mode`` is
    ``disabled``.
    """
    strategy = strategy or DEFAULT_ID_STRATEGY
    analysis = DuplicateAnalysis(mode=mode, strategy=strategy, total_rows=len(records))
    if mode == "disabled":
        analysis.unique_rows = len(records)
        return analysis

    first_seen: Dict[str, int] = {}
    for index, row in enumerate(records, start=1):
        unique_id = row_unique_id(row, strategy)
        if unique_id is None:
            analysis.rows_without_id += 1
            continue
        if unique_id in first_seen:
            analysis.internal.append(
                {"row_number": index, "unique_id": unique_id, "first_occurrence": first_seen[unique_id]}
            )
        else:
            first_seen[unique_id] = index

    candidates = list(first_seen)
    existing: Dict[str, str] = {}
    for chunk in _chunks(candidates, EXISTING_LOOKUP_CHUNK):
        existing.update(find_existing(chunk))
    for unique_id, row_number in first_seen.items():
        if unique_id in existing:
            analysis.external.append(
                {"row_number": row_number, "unique_id": unique_id, "existing_event_id": existing[unique_id]}
            )

    analysis.unique_rows = len(records) - len(analysis.duplicate_rows)
    logger.info(
        "Duplicate analysis: %d row(s), %d internal, %d external duplicate(s)",
        analysis.total_rows, len(analysis.internal), len(analysis.external),
    )
    return analysis


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]
