"""Persistence for field-mapping graphs."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select

from event_atlas.db.models import FieldMapping, new_id
from event_atlas.db.session import get_engine
from event_atlas.domain.imports.duplicates import DEDUPLICATION_MODES, validate_id_strategy
from event_atlas.utils.clock import resolve_now

logger = logging.getLogger(__name__)

_mappings = FieldMapping.__table__


def create_field_mapping(
    graph: Dict[str, Any],
    *,
    user_id: Optional[int] = None,
    name: Optional[str] = None,
    id_strategy: Optional[Dict[str, Any]] = None,
    deduplication: str = "disabled",
    now: Optional[datetime] = None,
    engine=None,
) -> Dict[str, Any]:
    """Store a mapping graph. Raises ValueError on a bad id strategy or deduplication mode."""
    problems = validate_id_strategy(id_strategy)
    if deduplication not in DEDUPLICATION_MODES:
        problems.append(f"deduplication must be one of {list(DEDUPLICATION_MODES)}")
    if problems:
        raise ValueError("; ".join(problems))

    now = resolve_now(now)
    values = {
        "id": new_id(),
        "user_id": user_id,
        "name": name,
        "graph": graph,
        "id_strategy": id_strategy,
        "deduplication": deduplication,
        "version": 1,
        "created_at": now,
        "updated_at": now,
    }
    with (engine or get_engine()).begin() as conn:
        conn.execute(_mappings.insert().values(**values))
    logger.info("Stored field mapping %s (%d nodes)", values["id"], len(graph.get("nodes") or []))
    return values


def get_field_mapping(mapping_id: str, engine=None) -> Optional[Dict[str, Any]]:
    with (engine or get_engine()).connect() as conn:
        row = conn.execute(select(_mappings).where(_mappings.c.id == mapping_id)).mappings().first()
    return dict(row) if row else None
