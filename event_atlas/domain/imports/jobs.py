"""
Persistent store for import jobs.

Every state change is a single conditional ``UPDATE`` checked through
``rowcount``: a claim only succeeds when the job is still claimable, and a
stage commit only succeeds while the committing worker still holds the claim
and the job is still in the stage it started from. A job failed externally
(cancelled) therefore can never be moved on by a worker that still holds it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import and_, func, or_, select, update

from event_atlas.core.config import settings
from event_atlas.core.errors import PipelineError
from event_atlas.db.models import TERMINAL_STAGES, Event, ImportFile, ImportJob, JobStage, new_id
from event_atlas.db.session import get_engine
from event_atlas.utils.clock import resolve_now

logger = logging.getLogger(__name__)

_jobs = ImportJob.__table__
_files = ImportFile.__table__
_events = Event.__table__

CANCELLED_MESSAGE = "Cancelled by user"


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {column.name: row[column.name] for column in _jobs.columns}


def _engine(engine=None):
    return engine or get_engine()


def _not_terminal():
    return _jobs.c.stage.notin_(list(TERMINAL_STAGES))


def create_import_job(
    *,
    import_file_id: str,
    user_id: Optional[int],
    trigger_source: str,
    field_mapping_id: Optional[str] = None,
    scheduled_import_id: Optional[str] = None,
    requested_status: str = "running",
    stage: str = JobStage.FETCHING.value,
    now: Optional[datetime] = None,
    conn=None,
    engine=None,
) -> Dict[str, Any]:
    """Insert a new job; runnable immediately."""
    now = resolve_now(now)
    values = {
        "id": new_id(),
        "user_id": user_id,
        "import_file_id": import_file_id,
        "field_mapping_id": field_mapping_id,
        "scheduled_import_id": scheduled_import_id,
        "trigger_source": trigger_source,
        "requested_status": requested_status,
        "stage": stage,
        "attempts": 0,
        "run_after": now,
        "rows_processed": 0,
        "rows_succeeded": 0,
        "rows_failed": 0,
        "rows_skipped": 0,
        "checkpoint": 0,
        "error_log": [],
        "created_at": now,
        "updated_at": now,
    }

    def _insert(connection):
        connection.execute(_jobs.insert().values(**values))
        return connection.execute(select(_jobs).where(_jobs.c.id == values["id"])).mappings().one()

    if conn is not None:
        row = _insert(conn)
    else:
        with _engine(engine).begin() as connection:
            row = _insert(connection)

    logger.info("Created import job %s (trigger=%s, file=%s)", values["id"], trigger_source, import_file_id)
    return _row_to_job(row)


def get_import_job(job_id: str, engine=None) -> Optional[Dict[str, Any]]:
    with _engine(engine).connect() as conn:
        row = conn.execute(select(_jobs).where(_jobs.c.id == job_id)).mappings().first()
    return _row_to_job(row) if row else None


def list_import_jobs(
    *,
    user_id: Optional[int] = None,
    stage: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    engine=None,
) -> List[Dict[str, Any]]:
    query = select(_jobs)
    if user_id is not None:
        query = query.where(_jobs.c.user_id == user_id)
    if stage is not None:
        query = query.where(_jobs.c.stage == stage)
    query = query.order_by(_jobs.c.created_at.desc()).limit(limit).offset(offset)
    with _engine(engine).connect() as conn:
        rows = conn.execute(query).mappings().all()
    return [_row_to_job(row) for row in rows]


def count_import_jobs(*, user_id: Optional[int] = None, stage: Optional[str] = None, engine=None) -> int:
    query = select(func.count()).select_from(_jobs)
    if user_id is not None:
        query = query.where(_jobs.c.user_id == user_id)
    if stage is not None:
        query = query.where(_jobs.c.stage == stage)
    with _engine(engine).connect() as conn:
        return conn.execute(query).scalar_one()


def count_jobs_by_stage(engine=None) -> Dict[str, int]:
    with _engine(engine).connect() as conn:
        rows = conn.execute(select(_jobs.c.stage, func.count()).group_by(_jobs.c.stage)).all()
    return {stage: count for stage, count in rows}


def _claimable(now: datetime, lease_seconds: int):
    lease_cutoff = now - timedelta(seconds=lease_seconds)
    return and_(
        _not_terminal(),
        or_(_jobs.c.run_after.is_(None), _jobs.c.run_after <= now),
        or_(_jobs.c.claimed_by.is_(None), _jobs.c.claimed_at < lease_cutoff),
    )


def list_runnable_jobs(
    limit: int,
    now: Optional[datetime] = None,
    lease_seconds: Optional[int] = None,
    engine=None,
) -> List[str]:
    """Ids of claimable jobs, oldest first."""
    now = resolve_now(now)
    lease = settings.job_claim_lease_seconds if lease_seconds is None else lease_seconds
    query = (
        select(_jobs.c.id)
        .where(_claimable(now, lease))
        .order_by(_jobs.c.created_at, _jobs.c.id)
        .limit(limit)
    )
    with _engine(engine).connect() as conn:
        return [row[0] for row in conn.execute(query).all()]


def claim_job(
    job_id: str,
    worker_id: str,
    now: Optional[datetime] = None,
    lease_seconds: Optional[int] = None,
    engine=None,
) -> bool:
    """
    Atomically take ownership of a job.

    Returns False, without side effects, when another worker already holds
    an unexpired claim or the job is no longer runnable.
    """
    now = resolve_now(now)
    lease = settings.job_claim_lease_seconds if lease_seconds is None else lease_seconds
    stmt = (
        update(_jobs)
        .where(_jobs.c.id == job_id, _claimable(now, lease))
        .values(
            claimed_by=worker_id,
            claimed_at=now,
            started_at=func.coalesce(_jobs.c.started_at, now),
            updated_at=now,
        )
    )
    with _engine(engine).begin() as conn:
        claimed = conn.execute(stmt).rowcount == 1
    if claimed:
        logger.debug("Worker %s claimed job %s", worker_id, job_id)
    else:
        logger.debug("Worker %s could not claim job %s (already claimed or not runnable)", worker_id, job_id)
    return claimed


def release_claim(job_id: str, worker_id: str, now: Optional[datetime] = None, engine=None) -> bool:
    now = resolve_now(now)
    stmt = (
        update(_jobs)
        .where(_jobs.c.id == job_id, _jobs.c.claimed_by == worker_id)
        .values(claimed_by=None, claimed_at=None, updated_at=now)
    )
    with _engine(engine).begin() as conn:
        return conn.execute(stmt).rowcount == 1


def guarded_job_update(conn, job_id: str, worker_id: str, stage: str, values: Dict[str, Any]) -> bool:
    """
    Update a job inside the caller's transaction, only while ``worker_id``
    holds it in ``stage``.
    """
    stmt = (
        update(_jobs)
        .where(_jobs.c.id == job_id, _jobs.c.stage == stage, _jobs.c.claimed_by == worker_id)
        .values(**values)
    )
    return conn.execute(stmt).rowcount == 1


def advance_stage(
    job_id: str,
    worker_id: str,
    from_stage: str,
    to_stage: str,
    updates: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    engine=None,
) -> bool:
    """Commit a finished stage and move to the next one; releases the claim."""
    now = resolve_now(now)
    values = dict(updates or {})
    values.update(
        stage=to_stage,
        attempts=0,
        run_after=now,
        claimed_by=None,
        claimed_at=None,
        updated_at=now,
    )
    if to_stage in TERMINAL_STAGES:
        values["completed_at"] = now
    with _engine(engine).begin() as conn:
        moved = guarded_job_update(conn, job_id, worker_id, from_stage, values)
    if moved:
        logger.info("Job %s: %s -> %s", job_id, from_stage, to_stage)
    else:
        logger.warning("Job %s left %s while worker %s held it; stage result discarded", job_id, from_stage, worker_id)
    return moved


def _error_entry(stage: str, attempt: int, error: Union[PipelineError, str], now: datetime) -> Dict[str, Any]:
    if isinstance(error, PipelineError):
        entry = error.to_log_entry()
    else:
        entry = {"type": "error", "message": str(error)}
    entry.update({"stage": stage, "attempt": attempt, "at": now.isoformat()})
    return entry


def _locked_error_log(job_id: str):
    return select(_jobs.c.error_log).where(_jobs.c.id == job_id).with_for_update()


def _append_error_log(conn, job_id: str, entry: Dict[str, Any]) -> None:
    """
    Append one entry to a job's error log.

    Call only after this transaction has updated the job row: the row is then
    locked, so a concurrent append waits instead of overwriting this one.
    """
    current = conn.execute(_locked_error_log(job_id)).scalar()
    conn.execute(update(_jobs).where(_jobs.c.id == job_id).values(error_log=list(current or []) + [entry]))


def schedule_retry(
    job_id: str,
    worker_id: str,
    stage: str,
    attempts: int,
    error: PipelineError,
    now: Optional[datetime] = None,
    engine=None,
) -> bool:
    """Keep the job in ``stage`` and make it runnable again after linear backoff."""
    now = resolve_now(now)
    run_after = now + timedelta(seconds=attempts * settings.job_retry_backoff_seconds)
    with _engine(engine).begin() as conn:
        scheduled = guarded_job_update(conn, job_id, worker_id, stage, {
            "attempts": attempts,
            "run_after": run_after,
            "error_message": error.message,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
        })
        if scheduled:
            _append_error_log(conn, job_id, _error_entry(stage, attempts, error, now))
    if scheduled:
        logger.warning(
            "Job %s: %s failed (attempt %d/%d), retrying after %s: %s",
            job_id, stage, attempts, settings.job_max_retries, run_after, error.message,
        )
    return scheduled


def fail_job(
    job_id: str,
    error: Union[PipelineError, str],
    *,
    worker_id: Optional[str] = None,
    stage: Optional[str] = None,
    attempt: int = 0,
    requested_status: Optional[str] = None,
    now: Optional[datetime] = None,
    engine=None,
) -> bool:
    """
    Move a non-terminal job to ``failed`` with the error recorded.

    When ``worker_id`` is given the update only applies while that worker
    still holds the job in ``stage``.
    """
    now = resolve_now(now)
    message = error.message if isinstance(error, PipelineError) else str(error)
    with _engine(engine).begin() as conn:
        current_stage = stage or conn.execute(select(_jobs.c.stage).where(_jobs.c.id == job_id)).scalar()
        if current_stage is None:
            return False
        values = {
            "stage": JobStage.FAILED.value,
            "error_message": message,
            "claimed_by": None,
            "claimed_at": None,
            "completed_at": now,
            "updated_at": now,
        }
        if requested_status is not None:
            values["requested_status"] = requested_status
        conditions = [_jobs.c.id == job_id, _not_terminal()]
        if worker_id is not None:
            conditions.extend([_jobs.c.claimed_by == worker_id, _jobs.c.stage == current_stage])
        failed = conn.execute(update(_jobs).where(*conditions).values(**values)).rowcount == 1
        if failed:
            _append_error_log(conn, job_id, _error_entry(current_stage, attempt, error, now))
    if failed:
        logger.error("Job %s failed during %s: %s", job_id, current_stage, message)
    return failed


def cancel_job(job_id: str, now: Optional[datetime] = None, engine=None) -> bool:
    """Fail a job from outside the worker; the holding worker observes it before its next commit."""
    return fail_job(
        job_id,
        CANCELLED_MESSAGE,
        requested_status="cancel-requested",
        now=now,
        engine=engine,
    )


def get_import_file(file_id: str, engine=None) -> Optional[Dict[str, Any]]:
    with _engine(engine).connect() as conn:
        row = conn.execute(select(_files).where(_files.c.id == file_id)).mappings().first()
    return {column.name: row[column.name] for column in _files.columns} if row else None


def create_import_file(
    *,
    user_id: Optional[int],
    file_name: str,
    source_url: Optional[str] = None,
    storage_locator: Optional[str] = None,
    file_size: Optional[int] = None,
    content_type: Optional[str] = None,
    content_hash: Optional[str] = None,
    now: Optional[datetime] = None,
    conn=None,
    engine=None,
) -> Dict[str, Any]:
    now = resolve_now(now)
    values = {
        "id": new_id(),
        "user_id": user_id,
        "file_name": file_name,
        "source_url": source_url,
        "storage_locator": storage_locator,
        "file_size": file_size,
        "content_type": content_type,
        "content_hash": content_hash,
        "parse_status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    if conn is not None:
        conn.execute(_files.insert().values(**values))
    else:
        with _engine(engine).begin() as connection:
            connection.execute(_files.insert().values(**values))
    return values


def update_import_file(file_id: str, values: Dict[str, Any], now: Optional[datetime] = None, engine=None) -> bool:
    """Update a file that is not ``ready`` yet; ready files are immutable."""
    now = resolve_now(now)
    values = dict(values, updated_at=now)
    stmt = update(_files).where(_files.c.id == file_id, _files.c.parse_status != "ready").values(**values)
    with _engine(engine).begin() as conn:
        return conn.execute(stmt).rowcount == 1


def record_column_types(file_id: str, column_types: Dict[str, str], now: Optional[datetime] = None, engine=None) -> bool:
    """Write-once: column types are attached after parsing and never change afterwards."""
    now = resolve_now(now)
    stmt = (
        update(_files)
        .where(_files.c.id == file_id, _files.c.column_types.is_(None))
        .values(column_types=column_types, updated_at=now)
    )
    with _engine(engine).begin() as conn:
        return conn.execute(stmt).rowcount == 1


def list_expired_files(now: Optional[datetime] = None, retention_days: Optional[int] = None, engine=None) -> List[Dict[str, Any]]:
    """
    Stored files older than the retention window that no running job still needs.

    A 304 refetch reuses the previous object, so a locator is only listed
    when every file row pointing at it is expired and idle.
    """
    now = resolve_now(now)
    days = settings.import_file_retention_days if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)
    in_use = select(_jobs.c.import_file_id).where(_jobs.c.import_file_id.isnot(None), _not_terminal())
    live_locators = select(_files.c.storage_locator).where(
        _files.c.storage_locator.isnot(None),
        or_(_files.c.created_at >= cutoff, _files.c.id.in_(in_use)),
    )
    query = select(_files.c.id, _files.c.storage_locator).where(
        _files.c.created_at < cutoff,
        _files.c.storage_locator.isnot(None),
        _files.c.id.notin_(in_use),
        _files.c.storage_locator.notin_(live_locators),
    )
    with _engine(engine).connect() as conn:
        return [dict(row) for row in conn.execute(query).mappings().all()]


def purge_expired_files(delete_object, now: Optional[datetime] = None, retention_days: Optional[int] = None, engine=None) -> int:
    """
    Remove stored objects past retention and clear their locators.

    ``delete_object(storage_locator) -> bool``; the metadata row is kept so
    jobs and events still reference it.
    """
    now = resolve_now(now)
    purged = 0
    deleted = set()
    for row in list_expired_files(now, retention_days, engine=engine):
        locator = row["storage_locator"]
        if locator not in deleted:
            if not delete_object(locator):
                logger.warning("Could not delete stored object %s for import file %s", locator, row["id"])
                continue
            deleted.add(locator)
        with _engine(engine).begin() as conn:
            conn.execute(update(_files).where(_files.c.id == row["id"]).values(storage_locator=None, updated_at=now))
        purged += 1
    if purged:
        logger.info("Retention cleanup removed %d stored import file(s)", purged)
    return purged


def list_job_events(job_id: str, limit: int = 100, offset: int = 0, engine=None) -> Tuple[List[Dict[str, Any]], int]:
    """Events of one job in source row order, plus the total count."""
    query = (
        select(_events)
        .where(_events.c.import_job_id == job_id)
        .order_by(_events.c.row_number)
        .limit(limit)
        .offset(offset)
    )
    count_query = select(func.count()).select_from(_events).where(_events.c.import_job_id == job_id)
    with _engine(engine).connect() as conn:
        rows = conn.execute(query).mappings().all()
        total = conn.execute(count_query).scalar_one()
    return [dict(row) for row in rows], total
