"""
Per-user quota ledger.

Checking and consuming are separate steps: ``check_quota`` is read-only and
``increment_usage`` runs only after the resource was actually created. Each
mutation is a single SQL statement (``col = col + :amount``), never a
read-modify-write in Python, so concurrent workers can at worst overshoot a
limit briefly but never corrupt or underflow a counter.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import case, select, update

from event_atlas.core.config import settings
from event_atlas.core.errors import QuotaExceededError
from event_atlas.core.security import User
from event_atlas.db.dialect import insert_for
from event_atlas.db.models import UserUsage
from event_atlas.db.session import get_engine
from event_atlas.domain.quotas.constants import (
    DAILY_USAGE_TYPES,
    DEFAULT_QUOTAS,
    QUOTA_TYPES,
    QUOTA_USAGE,
    UNLIMITED,
    USAGE_TYPES,
)
from event_atlas.utils.clock import as_date, resolve_now
from event_atlas.utils.ttl import TTLValue, needs_refresh

logger = logging.getLogger(__name__)

_usage = UserUsage.__table__
_users = User.__table__


@dataclass
class QuotaSubject:
    """The quota-relevant slice of a user."""

    user_id: int
    role: str = "user"
    trust_level: Optional[int] = None
    custom_quotas: Dict[str, int] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_user(cls, user: Any) -> "QuotaSubject":
        if isinstance(user, QuotaSubject):
            return user
        return cls(
            user_id=user.id,
            role=user.role or "user",
            trust_level=user.trust_level,
            custom_quotas=dict(user.custom_quotas or {}),
        )


@dataclass
class QuotaCheckResult:
    allowed: bool
    quota_type: str
    current: int
    limit: int
    remaining: Optional[int]
    reset_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "quota_type": self.quota_type,
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
        }


def next_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), time.min)


def resolve_limits(subject: QuotaSubject) -> Dict[str, int]:
    """Trust-level defaults with per-user overrides applied."""
    level = subject.trust_level if subject.trust_level is not None else settings.default_trust_level
    limits = dict(DEFAULT_QUOTAS.get(level, DEFAULT_QUOTAS[settings.default_trust_level]))
    for quota_type, value in (subject.custom_quotas or {}).items():
        if quota_type in QUOTA_TYPES and value is not None:
            limits[quota_type] = int(value)
    return limits


class QuotaLedger:
    def __init__(self, engine=None, profile_ttl_seconds: Optional[float] = None):
        self._engine = engine
        self._profile_ttl = settings.quota_config_ttl_seconds if profile_ttl_seconds is None else profile_ttl_seconds
        self._profiles: Dict[int, TTLValue] = {}
        self._profiles_lock = threading.Lock()

    @property
    def engine(self):
        return self._engine or get_engine()

    # Subjects ----------------------------------------------------------

    def _load_subject(self, user_id: int) -> Optional[QuotaSubject]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id, _users.c.role, _users.c.trust_level, _users.c.custom_quotas)
                .where(_users.c.id == user_id)
            ).mappings().first()
        if row is None:
            return None
        return QuotaSubject(
            user_id=row["id"],
            role=row["role"] or "user",
            trust_level=row["trust_level"],
            custom_quotas=dict(row["custom_quotas"] or {}),
        )

    def _prune_profiles(self, now: datetime) -> None:
        stale = [
            user_id for user_id, entry in self._profiles.items()
            if entry.fetched_at is not None and needs_refresh(now, entry.fetched_at, self._profile_ttl)
        ]
        for user_id in stale:
            del self._profiles[user_id]

    def subject_for(self, user: Any, now: Optional[datetime] = None) -> Optional[QuotaSubject]:
        """Accept a ``User``, a ``QuotaSubject`` or a user id (looked up through a TTL cache)."""
        if user is None:
            return None
        if not isinstance(user, int):
            return QuotaSubject.from_user(user)
        now = resolve_now(now)
        with self._profiles_lock:
            self._prune_profiles(now)
            cached = self._profiles.get(user)
            if cached is None:
                cached = TTLValue(lambda user_id=user: self._load_subject(user_id), self._profile_ttl)
                self._profiles[user] = cached
        return cached.get(now)

    # Reads -------------------------------------------------------------

    def get_usage(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, int]:
        """Current counters; daily counters read as 0 once the stored day has passed."""
        now = resolve_now(now)
        with self.engine.connect() as conn:
            row = conn.execute(select(_usage).where(_usage.c.user_id == user_id)).mappings().first()
        if row is None:
            return {usage_type: 0 for usage_type in USAGE_TYPES}
        stale = as_date(row["last_reset_date"]) < now.date()
        return {
            usage_type: 0 if (stale and usage_type in DAILY_USAGE_TYPES) else int(row[usage_type] or 0)
            for usage_type in USAGE_TYPES
        }

    def check_quota(self, user: Any, quota_type: str, amount: int = 1, now: Optional[datetime] = None) -> QuotaCheckResult:
        if quota_type not in QUOTA_TYPES:
            raise ValueError(f"Unknown quota type: {quota_type}")
        now = resolve_now(now)
        subject = self.subject_for(user, now)
        if subject is None:
            raise ValueError(f"Unknown user: {user}")

        if subject.is_admin:
            return QuotaCheckResult(True, quota_type, 0, UNLIMITED, None)

        limit = resolve_limits(subject)[quota_type]
        usage_type = QUOTA_USAGE[quota_type]
        if usage_type is None:
            current = amount
        else:
            current = self.get_usage(subject.user_id, now)[usage_type]

        if limit == UNLIMITED:
            return QuotaCheckResult(True, quota_type, current, UNLIMITED, None)

        if usage_type is None:
            allowed = amount <= limit
            remaining = limit
        else:
            allowed = current + amount <= limit
            remaining = max(0, limit - current)

        reset_time = next_midnight(now) if usage_type in DAILY_USAGE_TYPES else None
        return QuotaCheckResult(allowed, quota_type, current, limit, remaining, reset_time)

    def require_quota(self, user: Any, quota_type: str, amount: int = 1, now: Optional[datetime] = None) -> QuotaCheckResult:
        result = self.check_quota(user, quota_type, amount, now)
        if not result.allowed:
            logger.info(
                "Quota %s denied for user %s (current=%s limit=%s amount=%s)",
                quota_type,
                getattr(self.subject_for(user, now), "user_id", user),
                result.current,
                result.limit,
                amount,
            )
            raise QuotaExceededError(quota_type, result.current, result.limit, result.reset_time)
        return result

    # Writes ------------------------------------------------------------

    def _ensure_row(self, conn, user_id: int, today: date, now: datetime) -> None:
        stmt = insert_for(conn, _usage).values(user_id=user_id, last_reset_date=today, updated_at=now)
        conn.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))

    def _reset_daily_statement(self, today: date, now: datetime):
        return (
            update(_usage)
            .where(_usage.c.last_reset_date < today)
            .values(
                url_fetches_today=0,
                file_uploads_today=0,
                import_jobs_today=0,
                last_reset_date=today,
                updated_at=now,
            )
        )

    def increment_usage(
        self,
        user_id: int,
        usage_type: str,
        amount: int = 1,
        now: Optional[datetime] = None,
        conn=None,
    ) -> None:
        """
        Atomically add ``amount`` to one counter, creating the row on first use.

        Pass ``conn`` to count inside the transaction that created the resource.
        """
        if usage_type not in USAGE_TYPES:
            raise ValueError(f"Unknown usage type: {usage_type}")
        if amount < 0:
            raise ValueError("Usage increments must be non-negative; use decrement_usage")
        if amount == 0 or user_id is None:
            return
        now = resolve_now(now)
        today = now.date()
        column = _usage.c[usage_type]

        def _increment(connection):
            self._ensure_row(connection, user_id, today, now)
            connection.execute(self._reset_daily_statement(today, now).where(_usage.c.user_id == user_id))
            connection.execute(
                update(_usage)
                .where(_usage.c.user_id == user_id)
                .values({usage_type: column + amount, "updated_at": now})
            )

        if conn is not None:
            _increment(conn)
        else:
            with self.engine.begin() as connection:
                _increment(connection)
        logger.debug("Incremented %s by %d for user %s", usage_type, amount, user_id)

    def decrement_usage(self, user_id: int, usage_type: str, amount: int = 1, now: Optional[datetime] = None) -> None:
        """Atomically subtract ``amount``, never going below zero."""
        if usage_type not in USAGE_TYPES:
            raise ValueError(f"Unknown usage type: {usage_type}")
        if amount <= 0 or user_id is None:
            return
        now = resolve_now(now)
        column = _usage.c[usage_type]
        with self.engine.begin() as conn:
            conn.execute(
                update(_usage)
                .where(_usage.c.user_id == user_id)
                .values({
                    usage_type: case((column >= amount, column - amount), else_=0),
                    "updated_at": now,
                })
            )

    def reset_daily_counters(self, now: Optional[datetime] = None) -> int:
        """Zero per-day counters for every user whose last reset was before today."""
        now = resolve_now(now)
        with self.engine.begin() as conn:
            reset = conn.execute(self._reset_daily_statement(now.date(), now)).rowcount
        if reset:
            logger.info("Reset daily quota counters for %d user(s)", reset)
        return reset

    def summary(self, user: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Limits, usage and per-quota check results for display."""
        now = resolve_now(now)
        subject = self.subject_for(user, now)
        return {
            "user_id": subject.user_id,
            "trust_level": subject.trust_level if subject.trust_level is not None else settings.default_trust_level,
            "is_admin": subject.is_admin,
            "limits": resolve_limits(subject),
            "usage": self.get_usage(subject.user_id, now),
            "checks": {
                quota_type: self.check_quota(subject, quota_type, 1, now).to_dict()
                for quota_type in QUOTA_TYPES
                if QUOTA_USAGE[quota_type] is not None
            },
        }
