"""
Scheduled URL imports.

A schedule periodically (or on a manual trigger) creates an ImportFile for
its source URL plus an ImportJob. ``last_status`` is written optimistically
as ``running`` at trigger time; the worker writes the authoritative outcome
when the job reaches a terminal stage.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

from croniter import croniter
from sqlalchemy import delete, func, or_, select, update

from event_atlas.core.config import settings
from event_atlas.core.errors import QuotaExceededError
from event_atlas.db.models import ImportJob, ScheduledImport, new_id
from event_atlas.db.session import get_engine
from event_atlas.domain.imports.jobs import create_import_file, create_import_job
from event_atlas.domain.quotas.constants import (
    CURRENT_ACTIVE_SCHEDULES,
    IMPORT_JOBS_TODAY,
    MAX_ACTIVE_SCHEDULES,
    MAX_IMPORT_JOBS_PER_DAY,
    MAX_URL_FETCHES_PER_DAY,
    URL_FETCHES_TODAY,
)
from event_atlas.integrations.fetch import file_name_from_url
from event_atlas.utils.clock import resolve_now

logger = logging.getLogger(__name__)

_schedules = ScheduledImport.__table__
_jobs = ImportJob.__table__

FREQUENCIES = ("hourly", "daily", "weekly", "monthly")
SCHEDULE_TYPES = ("frequency", "cron")

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


class ScheduleError(ValueError):
    """Invalid schedule definition."""


class ScheduleBusyError(Exception):
    """The schedule's previous run is still in progress."""


# Next execution ----------------------------------------------------------

def next_frequency_execution(frequency: str, from_time: datetime) -> datetime:
    start_of_hour = from_time.replace(minute=0, second=0, microsecond=0)
    midnight = datetime.combine(from_time.date(), time.min)
    if frequency == "hourly":
        return start_of_hour + timedelta(hours=1)
    if frequency == "daily":
        return midnight + timedelta(days=1)
    if frequency == "weekly":
        # Sunday midnight; Monday is weekday() == 0
        days_ahead = 6 - from_time.weekday()
        if days_ahead <= 0:
            days_ahead += 7
        return midnight + timedelta(days=days_ahead)
    if frequency == "monthly":
        if from_time.month == 12:
            return datetime(from_time.year + 1, 1, 1)
        return datetime(from_time.year, from_time.month + 1, 1)
    raise ScheduleError(f"Invalid frequency: {frequency}")


def next_cron_execution(expression: str, from_time: datetime) -> datetime:
    """Next fire time strictly after ``from_time`` for a cron expression (UTC)."""
    validate_cron_expression(expression)
    try:
        return croniter(expression, from_time).get_next(datetime)
    except Exception as exc:
        raise ScheduleError(f"Invalid cron expression: {expression}") from exc


def validate_cron_expression(expression: Optional[str]) -> None:
    """Accepts 5-field expressions, names (MON, JAN) and macros such as @daily."""
    try:
        valid = bool(expression) and croniter.is_valid(expression)
    except Exception:
        valid = False
    if not valid:
        raise ScheduleError(f"Invalid cron expression: {expression}")


def next_execution(schedule: Dict[str, Any], from_time: Optional[datetime] = None) -> datetime:
    from_time = resolve_now(from_time)
    if schedule.get("schedule_type") == "cron":
        return next_cron_execution(schedule.get("cron_expression") or "", from_time)
    return next_frequency_execution(schedule.get("frequency") or "", from_time)


def validate_schedule_definition(schedule_type: str, frequency: Optional[str], cron_expression: Optional[str]) -> None:
    if schedule_type not in SCHEDULE_TYPES:
        raise ScheduleError(f"schedule_type must be one of {SCHEDULE_TYPES}")
    if schedule_type == "frequency":
        if frequency not in FREQUENCIES:
            raise ScheduleError(f"frequency must be one of {FREQUENCIES}")
    else:
        validate_cron_expression(cron_expression)


# Store -------------------------------------------------------------------

def _row_to_schedule(row: Any) -> Dict[str, Any]:
    return {column.name: row[column.name] for column in _schedules.columns}


def get_schedule(schedule_id: str, engine=None) -> Optional[Dict[str, Any]]:
    with (engine or get_engine()).connect() as conn:
        row = conn.execute(select(_schedules).where(_schedules.c.id == schedule_id)).mappings().first()
    return _row_to_schedule(row) if row else None


def get_schedule_by_webhook_token(token: str, engine=None) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    with (engine or get_engine()).connect() as conn:
        row = conn.execute(select(_schedules).where(_schedules.c.webhook_token == token)).mappings().first()
    return _row_to_schedule(row) if row else None


def list_schedules(user_id: Optional[int] = None, engine=None) -> List[Dict[str, Any]]:
    query = select(_schedules).order_by(_schedules.c.created_at)
    if user_id is not None:
        query = query.where(_schedules.c.user_id == user_id)
    with (engine or get_engine()).connect() as conn:
        return [_row_to_schedule(row) for row in conn.execute(query).mappings().all()]


def create_schedule(
    *,
    user: Any,
    ledger,
    name: str,
    source_url: str,
    schedule_type: str = "frequency",
    frequency: Optional[str] = "daily",
    cron_expression: Optional[str] = None,
    field_mapping_id: Optional[str] = None,
    enabled: bool = True,
    webhook_enabled: bool = False,
    now: Optional[datetime] = None,
    engine=None,
) -> Dict[str, Any]:
    now = resolve_now(now)
    validate_schedule_definition(schedule_type, frequency, cron_expression)
    subject = ledger.subject_for(user)
    if enabled:
        ledger.require_quota(subject, MAX_ACTIVE_SCHEDULES, 1, now)

    values = {
        "id": new_id(),
        "user_id": subject.user_id,
        "name": name,
        "source_url": source_url,
        "field_mapping_id": field_mapping_id,
        "enabled": enabled,
        "schedule_type": schedule_type,
        "frequency": frequency if schedule_type == "frequency" else None,
        "cron_expression": cron_expression if schedule_type == "cron" else None,
        "run_count": 0,
        "webhook_enabled": webhook_enabled,
        "webhook_token": new_webhook_token() if webhook_enabled else None,
        "created_at": now,
        "updated_at": now,
    }
    values["next_run"] = next_execution(values, now)
    with (engine or get_engine()).begin() as conn:
        conn.execute(_schedules.insert().values(**values))

    if enabled:
        ledger.increment_usage(subject.user_id, CURRENT_ACTIVE_SCHEDULES, 1, now)
    logger.info("Created scheduled import %s for user %s (next run %s)", values["id"], subject.user_id, values["next_run"])
    return get_schedule(values["id"], engine=engine)


def set_schedule_enabled(schedule_id: str, enabled: bool, *, ledger, now: Optional[datetime] = None, engine=None) -> Optional[Dict[str, Any]]:
    """Enable or disable a schedule, keeping ``current_active_schedules`` in step."""
    now = resolve_now(now)
    schedule = get_schedule(schedule_id, engine=engine)
    if schedule is None:
        return None
    if bool(schedule["enabled"]) == enabled:
        return schedule

    if enabled:
        ledger.require_quota(schedule["user_id"], MAX_ACTIVE_SCHEDULES, 1, now)

    values = {"enabled": enabled, "updated_at": now}
    if enabled:
        values["next_run"] = next_execution(schedule, now)
    with (engine or get_engine()).begin() as conn:
        changed = conn.execute(
            update(_schedules)
            .where(_schedules.c.id == schedule_id, _schedules.c.enabled == (not enabled))
            .values(**values)
        ).rowcount == 1

    if changed:
        if enabled:
            ledger.increment_usage(schedule["user_id"], CURRENT_ACTIVE_SCHEDULES, 1, now)
        else:
            ledger.decrement_usage(schedule["user_id"], CURRENT_ACTIVE_SCHEDULES, 1, now)
    return get_schedule(schedule_id, engine=engine)


def new_webhook_token() -> str:
    return secrets.token_urlsafe(32)


def set_webhook_enabled(schedule_id: str, enabled: bool, now: Optional[datetime] = None, engine=None) -> Optional[Dict[str, Any]]:
    """
    Turn the webhook trigger on or off. A token is issued the first time the
    webhook is enabled and kept while it is disabled.
    """
    now = resolve_now(now)
    schedule = get_schedule(schedule_id, engine=engine)
    if schedule is None:
        return None
    values: Dict[str, Any] = {"webhook_enabled": enabled, "updated_at": now}
    if enabled and not schedule.get("webhook_token"):
        values["webhook_token"] = new_webhook_token()
    with (engine or get_engine()).begin() as conn:
        conn.execute(update(_schedules).where(_schedules.c.id == schedule_id).values(**values))
    logger.info("Webhook trigger for scheduled import %s %s", schedule_id, "enabled" if enabled else "disabled")
    return get_schedule(schedule_id, engine=engine)


def delete_schedule(schedule_id: str, *, ledger, now: Optional[datetime] = None, engine=None) -> bool:
    now = resolve_now(now)
    schedule = get_schedule(schedule_id, engine=engine)
    if schedule is None:
        return False
    with (engine or get_engine()).begin() as conn:
        conn.execute(
            update(_jobs).where(_jobs.c.scheduled_import_id == schedule_id).values(scheduled_import_id=None)
        )
        deleted = conn.execute(delete(_schedules).where(_schedules.c.id == schedule_id)).rowcount == 1
    if deleted and schedule["enabled"]:
        ledger.decrement_usage(schedule["user_id"], CURRENT_ACTIVE_SCHEDULES, 1, now)
    return deleted


# Triggering --------------------------------------------------------------

def trigger_schedule(
    schedule: Dict[str, Any],
    *,
    ledger,
    trigger_source: str = "manual",
    now: Optional[datetime] = None,
    engine=None,
) -> Dict[str, Any]:
    """
    Enqueue a job for a schedule's source URL.

    Quotas are checked against the schedule owner before anything is
    written; usage is incremented only after the job exists.
    """
    now = resolve_now(now)
    if schedule.get("last_status") == STATUS_RUNNING:
        raise ScheduleBusyError(f"Scheduled import {schedule['id']} is already running")

    owner = schedule["user_id"]
    ledger.require_quota(owner, MAX_URL_FETCHES_PER_DAY, 1, now)
    ledger.require_quota(owner, MAX_IMPORT_JOBS_PER_DAY, 1, now)

    with (engine or get_engine()).begin() as conn:
        import_file = create_import_file(
            user_id=owner,
            file_name=file_name_from_url(schedule["source_url"]),
            source_url=schedule["source_url"],
            now=now,
            conn=conn,
        )
        job = create_import_job(
            import_file_id=import_file["id"],
            user_id=owner,
            trigger_source=trigger_source,
            field_mapping_id=schedule.get("field_mapping_id"),
            scheduled_import_id=schedule["id"],
            requested_status=STATUS_RUNNING,
            now=now,
            conn=conn,
        )
        conn.execute(
            update(_schedules)
            .where(_schedules.c.id == schedule["id"])
            .values(
                last_run=now,
                last_status=STATUS_RUNNING,
                last_error=None,
                last_job_id=job["id"],
                run_count=_schedules.c.run_count + 1,
                updated_at=now,
            )
        )

    ledger.increment_usage(owner, IMPORT_JOBS_TODAY, 1, now)
    ledger.increment_usage(owner, URL_FETCHES_TODAY, 1, now)
    logger.info("Triggered scheduled import %s (%s) -> job %s", schedule["id"], trigger_source, job["id"])
    return job


def list_due_schedules(now: Optional[datetime] = None, limit: int = 50, engine=None) -> List[Dict[str, Any]]:
    now = resolve_now(now)
    query = (
        select(_schedules)
        .where(
            _schedules.c.enabled.is_(True),
            or_(_schedules.c.next_run.is_(None), _schedules.c.next_run <= now),
        )
        .order_by(_schedules.c.next_run)
        .limit(limit)
    )
    with (engine or get_engine()).connect() as conn:
        return [_row_to_schedule(row) for row in conn.execute(query).mappings().all()]


def _advance_next_run(schedule: Dict[str, Any], now: datetime, engine=None) -> bool:
    """Move ``next_run`` forward only if nobody else did it first."""
    previous = schedule["next_run"]
    condition = _schedules.c.next_run.is_(None) if previous is None else _schedules.c.next_run == previous
    with (engine or get_engine()).begin() as conn:
        return conn.execute(
            update(_schedules)
            .where(_schedules.c.id == schedule["id"], condition)
            .values(next_run=next_execution(schedule, now), updated_at=now)
        ).rowcount == 1


def sweep_due_schedules(*, ledger, now: Optional[datetime] = None, limit: int = 50, engine=None) -> List[str]:
    """Trigger every due schedule once; returns the created job ids."""
    now = resolve_now(now)
    job_ids: List[str] = []
    for schedule in list_due_schedules(now, limit, engine=engine):
        if not _advance_next_run(schedule, now, engine=engine):
            continue
        try:
            job = trigger_schedule(schedule, ledger=ledger, trigger_source="schedule", now=now, engine=engine)
        except ScheduleBusyError:
            logger.info("Skipping scheduled import %s: previous run still in progress", schedule["id"])
            continue
        except QuotaExceededError as exc:
            _record_status(schedule["id"], STATUS_FAILED, exc.message, now, engine=engine)
            logger.warning("Scheduled import %s not triggered: %s", schedule["id"], exc.message)
            continue
        job_ids.append(job["id"])
    return job_ids


def _record_status(schedule_id: str, status: str, error: Optional[str], now: datetime, job_id: Optional[str] = None, engine=None) -> bool:
    conditions = [_schedules.c.id == schedule_id]
    if job_id is not None:
        conditions.append(_schedules.c.last_job_id == job_id)
    with (engine or get_engine()).begin() as conn:
        return conn.execute(
            update(_schedules).where(*conditions).values(last_status=status, last_error=error, updated_at=now)
        ).rowcount == 1


def record_job_outcome(
    schedule_id: Optional[str],
    job_id: str,
    succeeded: bool,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
    engine=None,
) -> bool:
    """Authoritative status write once the schedule's latest job is terminal."""
    if not schedule_id:
        return False
    now = resolve_now(now)
    return _record_status(
        schedule_id,
        STATUS_SUCCESS if succeeded else STATUS_FAILED,
        None if succeeded else error,
        now,
        job_id=job_id,
        engine=engine,
    )


def reset_stuck_schedules(now: Optional[datetime] = None, timeout_minutes: Optional[int] = None, engine=None) -> int:
    """Mark schedules stuck in ``running`` for too long as failed so they can run again."""
    now = resolve_now(now)
    timeout = settings.stuck_schedule_timeout_minutes if timeout_minutes is None else timeout_minutes
    cutoff = now - timedelta(minutes=timeout)
    with (engine or get_engine()).begin() as conn:
        reset = conn.execute(
            update(_schedules)
            .where(_schedules.c.last_status == STATUS_RUNNING, _schedules.c.last_run < cutoff)
            .values(last_status=STATUS_FAILED, last_error=f"Run did not finish within {timeout} minutes", updated_at=now)
        ).rowcount
    if reset:
        logger.warning("Reset %d stuck scheduled import(s)", reset)
    return reset


def count_due_schedules(now: Optional[datetime] = None, engine=None) -> int:
    now = resolve_now(now)
    query = (
        select(func.count())
        .select_from(_schedules)
        .where(
            _schedules.c.enabled.is_(True),
            or_(_schedules.c.next_run.is_(None), _schedules.c.next_run <= now),
        )
    )
    with (engine or get_engine()).connect() as conn:
        return conn.execute(query).scalar_one()
