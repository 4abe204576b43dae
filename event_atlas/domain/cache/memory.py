"""In-process TTL cache used for URL fetch validators."""
import fnmatch
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from event_atlas.utils.clock import resolve_now


@dataclass
class _Entry:
    value: Any
    created_at: datetime
    expires_at: Optional[datetime]


class MemoryCache:
    def __init__(self, name: str, default_ttl_seconds: Optional[int] = None):
        self.name = name
        self.default_ttl_seconds = default_ttl_seconds
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _expired(self, entry: _Entry, now: datetime) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    def get(self, key: str, now: Optional[datetime] = None) -> Any:
        now = resolve_now(now)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, now):
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None, now: Optional[datetime] = None) -> None:
        now = resolve_now(now)
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires_at = now + timedelta(seconds=ttl) if ttl else None
        with self._lock:
            self._entries[key] = _Entry(value, now, expires_at)

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return {"key": key, "value": entry.value, "created_at": entry.created_at, "expires_at": entry.expires_at}

    def set_entry(self, key: str, value: Any, ttl_seconds: Optional[int] = None, now: Optional[datetime] = None) -> None:
        self.set(key, value, ttl_seconds=ttl_seconds, now=now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def keys(
        self,
        pattern: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        include_metadata: bool = False,
    ) -> Dict[str, Any]:
        with self._lock:
            matching = sorted(
                key for key in self._entries if not pattern or fnmatch.fnmatchcase(key, pattern)
            )
        page = matching[offset:offset + limit]
        items = [self.get_entry(key) for key in page] if include_metadata else page
        return {"keys": [item for item in items if item is not None], "total": len(matching), "limit": limit, "offset": offset}

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = resolve_now(now)
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
