"""
Database-backed geocode cache.

Keys are normalized addresses (case-sensitive). Writes are idempotent
upserts so concurrent workers resolving the same address cannot corrupt an
entry; the last write wins.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update

from event_atlas.db.dialect import insert_for
from event_atlas.db.models import GeocodeCacheEntry
from event_atlas.db.session import get_engine
from event_atlas.domain.geocoding.normalize import normalize_address
from event_atlas.domain.geocoding.providers import GeocodingResult
from event_atlas.utils.clock import resolve_now

logger = logging.getLogger(__name__)

_table = GeocodeCacheEntry.__table__


def glob_to_like(pattern: Optional[str]) -> Optional[str]:
    """Translate a ``*``/``?`` glob into a SQL LIKE pattern."""
    if not pattern or pattern == "*":
        return None
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%").replace("?", "_")


def _row_to_result(row: Any) -> GeocodingResult:
    return GeocodingResult(
        latitude=row["latitude"],
        longitude=row["longitude"],
        confidence=row["confidence"],
        provider=row["provider"],
        formatted_address=row["formatted_address"],
        components=row["components"] or {},
        cached=True,
    )


def _row_to_metadata(row: Any) -> Dict[str, Any]:
    return {
        "key": row["normalized_address"],
        "original_address": row["original_address"],
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "confidence": row["confidence"],
        "provider": row["provider"],
        "formatted_address": row["formatted_address"],
        "components": row["components"],
        "hit_count": row["hit_count"],
        "created_at": row["created_at"],
        "expires_at": row["expires_at"],
        "last_used_at": row["last_used_at"],
    }


class GeocodeCache:
    name = "geocoding"

    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        return self._engine or get_engine()

    def get(self, address: str, now: Optional[datetime] = None) -> Optional[GeocodingResult]:
        """Return a non-expired entry and record the hit, or None."""
        key = normalize_address(address)
        if key is None:
            return None
        now = resolve_now(now)
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_table).where(_table.c.normalized_address == key, _table.c.expires_at > now)
            ).mappings().first()
            if row is None:
                return None
            conn.execute(
                update(_table)
                .where(_table.c.normalized_address == key)
                .values(hit_count=_table.c.hit_count + 1, last_used_at=now)
            )
        return _row_to_result(row)

    def put(
        self,
        address: str,
        result: GeocodingResult,
        now: Optional[datetime] = None,
        ttl_days: float = 30,
    ) -> None:
        key = normalize_address(address)
        if key is None:
            return
        now = resolve_now(now)
        values = {
            "normalized_address": key,
            "original_address": address,
            "latitude": result.latitude,
            "longitude": result.longitude,
            "confidence": result.confidence,
            "provider": result.provider,
            "formatted_address": result.formatted_address,
            "components": result.components or {},
            "hit_count": 0,
            "created_at": now,
            "expires_at": now + timedelta(days=ttl_days),
            "last_used_at": None,
        }
        with self.engine.begin() as conn:
            stmt = insert_for(conn, _table).values(**values)
            overwrite = {name: stmt.excluded[name] for name in values if name != "normalized_address"}
            conn.execute(stmt.on_conflict_do_update(index_elements=["normalized_address"], set_=overwrite))

    # Admin operations --------------------------------------------------

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """Raw entry including expired ones (admin inspection)."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_table).where(_table.c.normalized_address == key)).mappings().first()
        return _row_to_metadata(row) if row else None

    def set_entry(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None, now: Optional[datetime] = None) -> None:
        try:
            result = GeocodingResult(
                latitude=float(value["latitude"]),
                longitude=float(value["longitude"]),
                confidence=float(value.get("confidence", 1.0)),
                provider=str(value.get("provider", "manual")),
                formatted_address=value.get("formatted_address"),
                components=value.get("components") or {},
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("geocoding cache values need numeric 'latitude' and 'longitude'") from exc
        ttl_days = (ttl_seconds / 86400.0) if ttl_seconds else 30
        self.put(key, result, now=now, ttl_days=ttl_days)

    def delete(self, key: str) -> bool:
        with self.engine.begin() as conn:
            deleted = conn.execute(delete(_table).where(_table.c.normalized_address == key)).rowcount
        return deleted > 0

    def keys(
        self,
        pattern: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        include_metadata: bool = False,
    ) -> Dict[str, Any]:
        like = glob_to_like(pattern)
        query = select(_table)
        count_query = select(func.count()).select_from(_table)
        if like is not None:
            query = query.where(_table.c.normalized_address.like(like, escape="\\"))
            count_query = count_query.where(_table.c.normalized_address.like(like, escape="\\"))
        query = query.order_by(_table.c.normalized_address).limit(limit).offset(offset)

        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar_one()
            rows = conn.execute(query).mappings().all()

        items: List[Any]
        if include_metadata:
            items = [_row_to_metadata(row) for row in rows]
        else:
            items = [row["normalized_address"] for row in rows]
        return {"keys": items, "total": total, "limit": limit, "offset": offset}

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete expired entries and return how many were removed."""
        now = resolve_now(now)
        with self.engine.begin() as conn:
            removed = conn.execute(delete(_table).where(_table.c.expires_at <= now)).rowcount
        if removed:
            logger.info("Removed %d expired geocode cache entries", removed)
        return removed
