"""
Stage handlers for import jobs.

Each handler performs the work of exactly one stage for a claimed job and
returns a ``StageResult`` naming the next stage plus the job columns to
write with the transition. ``advance_job`` runs one handler and commits the
outcome through the conditional updates in ``jobs``:

    fetching -> parsing -> detecting-schema -> mapping -> geocoding
             -> validating -> materializing -> completed

Any stage may end in ``failed``. Retryable errors keep the job in its stage
with linear backoff until ``job_max_retries`` is used up.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from event_atlas.core.config import settings
from event_atlas.core.errors import (
    ClaimLostError,
    JobCancelledError,
    MappingValidationError,
    ParseError,
    PipelineError,
    TransientStageError,
)
from event_atlas.db.dialect import insert_for
from event_atlas.db.models import (
    STAGE_ORDER,
    TERMINAL_STAGES,
    Event,
    ImportJob,
    JobStage,
    ParseStatus,
    ValidationStatus,
    new_id,
)
from event_atlas.db.session import get_engine
from event_atlas.domain.cache.registry import GEOCODING_CACHE, URL_FETCH_CACHE, CacheRegistry, get_cache_registry
from event_atlas.domain.geocoding.normalize import normalize_address
from event_atlas.domain.geocoding.providers import GeocodingResult
from event_atlas.domain.geocoding.service import GeocodingService
from event_atlas.domain.imports import jobs as job_store
from event_atlas.domain.imports.coordinates import explicit_coordinates
from event_atlas.domain.imports.duplicates import analyze_duplicates, row_unique_id
from event_atlas.domain.imports.parsing import ParsedFile, parse_file
from event_atlas.domain.imports.schedules import record_job_outcome
from event_atlas.domain.imports.validation import EventDraft, build_event_draft, row_is_valid
from event_atlas.domain.mapping.resolver import ResolvedMapping, apply_mapping, resolve_mapping
from event_atlas.domain.mapping.store import create_field_mapping, get_field_mapping
from event_atlas.domain.mapping.suggest import suggest_mapping
from event_atlas.domain.mapping.types import infer_column_types
from event_atlas.domain.quotas.constants import MAX_EVENTS_PER_IMPORT, MAX_TOTAL_EVENTS, TOTAL_EVENTS_CREATED
from event_atlas.domain.quotas.ledger import QuotaLedger
from event_atlas.integrations.fetch import UrlFetchError, fetch_url
from event_atlas.integrations.storage import StorageDownloadError, StorageError, download_file, upload_file
from event_atlas.utils.clock import resolve_now, utcnow

logger = logging.getLogger(__name__)

_events = Event.__table__
_jobs = ImportJob.__table__


@dataclass
class PipelineDeps:
    """Collaborators shared by every stage run of a worker."""

    geocoder: GeocodingService
    ledger: QuotaLedger
    caches: CacheRegistry
    fetch: Callable[..., Any] = fetch_url
    engine: Any = None

    @classmethod
    def default(cls, engine=None) -> "PipelineDeps":
        caches = get_cache_registry()
        return cls(
            geocoder=GeocodingService(cache=caches.get(GEOCODING_CACHE)),
            ledger=QuotaLedger(engine),
            caches=caches,
            engine=engine,
        )


@dataclass
class StageResult:
    next_stage: str
    updates: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepOutcome:
    """What happened to one job during one worker step."""

    job_id: str
    from_stage: Optional[str]
    to_stage: Optional[str]
    status: str  # advanced | retry | failed | cancelled | claim-lost | skipped
    error: Optional[str] = None


def next_stage_after(stage: str) -> str:
    order = [item.value for item in STAGE_ORDER]
    return order[order.index(stage) + 1]


class StageContext:
    """
    One stage run of one job. ``now`` is fixed when the run starts;
    ``clock`` gives fresh readings for renewing the claim lease.
    """

    def __init__(
        self,
        job: Dict[str, Any],
        worker_id: str,
        now: datetime,
        deps: PipelineDeps,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.job = job
        self.worker_id = worker_id
        self.now = now
        self.deps = deps
        self.clock = clock or utcnow
        self._import_file: Optional[Dict[str, Any]] = None
        self._parsed: Optional[ParsedFile] = None

    @property
    def job_id(self) -> str:
        return self.job["id"]

    @property
    def stage(self) -> str:
        return self.job["stage"]

    @property
    def engine(self):
        return self.deps.engine or get_engine()

    def advance(self, updates: Optional[Dict[str, Any]] = None) -> StageResult:
        return StageResult(next_stage_after(self.stage), dict(updates or {}))

    def claim_lost(self) -> JobCancelledError:
        """The error for a guarded update that matched nothing: cancelled, or taken over after the lease ran out."""
        current = job_store.get_import_job(self.job_id, engine=self.deps.engine)
        if current is None or current["stage"] in TERMINAL_STAGES:
            return JobCancelledError(f"Job {self.job_id} was cancelled during {self.stage}")
        return ClaimLostError(
            f"Job {self.job_id} is no longer held by worker {self.worker_id} in {self.stage} "
            f"(now {current['stage']}, held by {current.get('claimed_by')})"
        )

    def heartbeat(self) -> None:
        """Renew the claim lease so long-running stages are not taken over mid-way."""
        with self.engine.begin() as conn:
            renewed = job_store.guarded_job_update(
                conn, self.job_id, self.worker_id, self.stage, {"claimed_at": self.clock()}
            )
        if not renewed:
            raise self.claim_lost()

    def import_file(self, refresh: bool = False) -> Dict[str, Any]:
        if self._import_file is None or refresh:
            file_id = self.job.get("import_file_id")
            record = job_store.get_import_file(file_id, engine=self.deps.engine) if file_id else None
            if record is None:
                raise PipelineError(f"Import file for job {self.job_id} no longer exists")
            self._import_file = record
        return self._import_file

    def parsed(self) -> ParsedFile:
        """Source rows, re-read from storage; parsing is deterministic so every stage sees the same rows."""
        if self._parsed is None:
            import_file = self.import_file()
            content = load_stored_content(import_file)
            self._parsed = parse_file(content, import_file["file_name"], import_file.get("content_type"))
        return self._parsed

    def resolved_mapping(self) -> ResolvedMapping:
        payload = self.job.get("resolved_mapping")
        if not payload:
            raise MappingValidationError(
                [{"code": "missing_mapping", "message": "Job reached row processing without a resolved mapping"}]
            )
        return ResolvedMapping.from_dict(payload)


def load_stored_content(import_file: Dict[str, Any]) -> bytes:
    locator = import_file.get("storage_locator")
    if not locator:
        raise PipelineError(f"Import file {import_file['id']} has no stored content")
    try:
        return download_file(locator)
    except StorageDownloadError as exc:
        if "not found" in str(exc).lower():
            raise PipelineError(f"Stored file is missing: {locator}") from exc
        raise TransientStageError(f"Could not read stored file {locator}: {exc}") from exc


# Stage handlers ---------------------------------------------------------

def fetch_stage(ctx: StageContext) -> StageResult:
    import_file = ctx.import_file()
    url = import_file.get("source_url")
    if not url:
        if not import_file.get("storage_locator"):
            raise PipelineError(f"Import file {import_file['id']} has neither a source URL nor stored content")
        return ctx.advance()

    url_cache = ctx.deps.caches.get(URL_FETCH_CACHE)
    previous = url_cache.get(url, now=ctx.now) or {}
    result = ctx.deps.fetch(url, etag=previous.get("etag"), last_modified=previous.get("last_modified"))

    if result.not_modified:
        if not previous.get("storage_locator"):
            raise UrlFetchError(f"{url} answered 304 Not Modified without a previous copy")
        stored = {key: previous.get(key) for key in ("storage_locator", "file_size", "content_type", "content_hash")}
        logger.info("Job %s: reusing stored copy of %s", ctx.job_id, url)
    else:
        content = result.content or b""
        upload = upload_file(content, f"{import_file['id']}_{import_file['file_name']}", folder="imports")
        stored = {
            "storage_locator": upload["file_path"],
            "file_size": upload["size"],
            "content_type": result.content_type,
            "content_hash": hashlib.sha256(content).hexdigest(),
        }
        url_cache.set(url, dict(stored, etag=result.etag, last_modified=result.last_modified), now=ctx.now)
        logger.info("Job %s: fetched %s (%d bytes)", ctx.job_id, url, len(content))

    job_store.update_import_file(import_file["id"], stored, now=ctx.now, engine=ctx.deps.engine)
    return ctx.advance()


def parse_stage(ctx: StageContext) -> StageResult:
    import_file = ctx.import_file()
    if import_file["parse_status"] == ParseStatus.READY.value:
        return ctx.advance()

    file_id = import_file["id"]
    job_store.update_import_file(file_id, {"parse_status": ParseStatus.PARSING.value}, now=ctx.now, engine=ctx.deps.engine)
    try:
        parsed = ctx.parsed()
    except ParseError as exc:
        job_store.update_import_file(
            file_id,
            {"parse_status": ParseStatus.FAILED.value, "error_message": exc.message},
            now=ctx.now,
            engine=ctx.deps.engine,
        )
        raise

    job_store.update_import_file(
        file_id,
        {
            "sheet_names": parsed.sheet_names,
            "column_names": parsed.columns,
            "sample_rows": parsed.preview(settings.preview_row_limit),
            "row_count": parsed.row_count,
            "parse_status": ParseStatus.READY.value,
            "error_message": None,
        },
        now=ctx.now,
        engine=ctx.deps.engine,
    )
    return ctx.advance()


def detect_schema_stage(ctx: StageContext) -> StageResult:
    import_file = ctx.import_file()
    parsed = ctx.parsed()

    column_types = import_file.get("column_types")
    if not column_types:
        inferred = infer_column_types(parsed.records, parsed.columns, settings.type_inference_sample_size)
        column_types = {column: value.value for column, value in inferred.items()}
        job_store.record_column_types(import_file["id"], column_types, now=ctx.now, engine=ctx.deps.engine)
    logger.info("Job %s: column types %s", ctx.job_id, column_types)

    updates: Dict[str, Any] = {}
    if not ctx.job.get("field_mapping_id"):
        graph = suggest_mapping(parsed.columns, column_types)
        mapping = create_field_mapping(
            graph,
            user_id=ctx.job.get("user_id"),
            name=f"Suggested mapping for {import_file['file_name']}",
            now=ctx.now,
            engine=ctx.deps.engine,
        )
        updates["field_mapping_id"] = mapping["id"]
        logger.info("Job %s: no field mapping given, suggested %s", ctx.job_id, mapping["id"])
    return ctx.advance(updates)


def mapping_stage(ctx: StageContext) -> StageResult:
    mapping_id = ctx.job.get("field_mapping_id")
    mapping = get_field_mapping(mapping_id, engine=ctx.deps.engine) if mapping_id else None
    if mapping is None:
        raise MappingValidationError([{"code": "missing_mapping", "message": "Job has no field mapping"}])

    resolved = resolve_mapping(mapping["graph"], column_types=ctx.import_file().get("column_types"))
    for warning in resolved.warnings:
        logger.info("Job %s: mapping warning: %s", ctx.job_id, warning["message"])
    return ctx.advance({"resolved_mapping": resolved.to_dict(), "mapping_warnings": resolved.warnings})


def addresses_to_geocode(records: List[Dict[str, Any]], resolved: ResolvedMapping) -> List[str]:
    """Unique normalized addresses of rows lacking valid explicit coordinates, in first-seen order."""
    if not resolved.has_field("address"):
        return []
    addresses: List[str] = []
    seen = set()
    for row in records:
        values, _ = apply_mapping(row, resolved)
        if explicit_coordinates(values.get("latitude"), values.get("longitude")) is not None:
            continue
        address = normalize_address(values.get("address"))
        if address is not None and address not in seen:
            seen.add(address)
            addresses.append(address)
    return addresses


def geocoding_stage(ctx: StageContext) -> StageResult:
    resolved = ctx.resolved_mapping()
    addresses = addresses_to_geocode(ctx.parsed().records, resolved)
    geocoder = ctx.deps.geocoder

    summary: Dict[str, Any] = {"total": len(addresses), "resolved": 0, "failed": 0, "cached": 0, "results": {}}
    if not addresses:
        return ctx.advance({"geocoding_summary": summary})
    if not geocoder.enabled:
        summary["disabled"] = True
        logger.info("Job %s: geocoding disabled, %d address(es) left unresolved", ctx.job_id, len(addresses))
        return ctx.advance({"geocoding_summary": summary})

    outcomes = geocoder.geocode_many(addresses, now=ctx.now, on_progress=lambda done, total: ctx.heartbeat())
    failures = [outcome for outcome in outcomes.values() if not outcome.ok]
    if failures and not settings.geocoding_fallback_enabled:
        first = failures[0]
        raise TransientStageError(
            f"Geocoding failed for {len(failures)} address(es); first: {first.error.message if first.error else first.address}"
        )

    for address, outcome in outcomes.items():
        if outcome.ok:
            summary["resolved"] += 1
            summary["cached"] += 1 if outcome.result.cached else 0
            summary["results"][address] = outcome.result.to_dict()
        else:
            summary["failed"] += 1
    logger.info(
        "Job %s: geocoded %d/%d address(es) (%d cached, %d failed)",
        ctx.job_id, summary["resolved"], summary["total"], summary["cached"], summary["failed"],
    )
    return ctx.advance({"geocoding_summary": summary})


def _field_mapping(ctx: StageContext) -> Optional[Dict[str, Any]]:
    mapping_id = ctx.job.get("field_mapping_id")
    return get_field_mapping(mapping_id, engine=ctx.deps.engine) if mapping_id else None


def _existing_event_ids(ctx: StageContext) -> Callable[[List[str]], Dict[str, str]]:
    """Lookup of the owner's events from other jobs by ``unique_id``."""
    user_id = ctx.job.get("user_id")
    owner = _events.c.user_id.is_(None) if user_id is None else _events.c.user_id == user_id

    def find(unique_ids: List[str]) -> Dict[str, str]:
        query = select(_events.c.unique_id, _events.c.id).where(
            owner,
            _events.c.unique_id.in_(unique_ids),
            _events.c.import_job_id != ctx.job_id,
        )
        with ctx.engine.connect() as conn:
            return {unique_id: event_id for unique_id, event_id in conn.execute(query).all()}

    return find


def validating_stage(ctx: StageContext) -> StageResult:
    resolved = ctx.resolved_mapping()
    records = ctx.parsed().records
    rows_total = len(records)
    valid = sum(1 for row in records if row_is_valid(row, resolved))

    mapping = _field_mapping(ctx) or {}
    mode = mapping.get("deduplication") or "disabled"
    analysis = analyze_duplicates(records, mapping.get("id_strategy"), mode, _existing_event_ids(ctx))
    expected = rows_total - len(analysis.duplicate_rows) if mode == "skip" else rows_total

    user_id = ctx.job.get("user_id")
    if user_id is not None:
        ctx.deps.ledger.require_quota(user_id, MAX_EVENTS_PER_IMPORT, expected, ctx.now)

    logger.info(
        "Job %s: %d row(s), %d valid, %d invalid, %d duplicate(s) (%s)",
        ctx.job_id, rows_total, valid, rows_total - valid, len(analysis.duplicate_rows), mode,
    )
    return ctx.advance({"rows_total": rows_total, "duplicates": analysis.to_dict()})


def _geocode_lookup(summary: Optional[Dict[str, Any]]) -> Callable[[str], Optional[GeocodingResult]]:
    results = (summary or {}).get("results") or {}

    def lookup(address: str) -> Optional[GeocodingResult]:
        payload = results.get(address)
        return GeocodingResult(**payload) if payload else None

    return lookup


def _event_row(ctx: StageContext, draft: EventDraft, schema_version: int) -> Dict[str, Any]:
    coordinates = draft.coordinates
    return {
        "id": new_id(),
        "import_job_id": ctx.job_id,
        "user_id": ctx.job.get("user_id"),
        "row_number": draft.row_number,
        "title": draft.title,
        "event_timestamp": draft.event_timestamp,
        "data": draft.data,
        "latitude": coordinates.latitude,
        "longitude": coordinates.longitude,
        "coordinate_source": coordinates.source.value,
        "coordinate_confidence": coordinates.confidence,
        "normalized_address": coordinates.normalized_address,
        "validation_status": draft.validation_status,
        "validation_errors": draft.validation_errors or None,
        "schema_version_number": schema_version,
        "created_at": ctx.now,
    }


def _checkpoint_values(
    checkpoint: int,
    processed: int,
    succeeded: int,
    failed: int,
    skipped: int,
    now: datetime,
) -> Dict[str, Any]:
    """Counter increments for one committed batch; also renews the claim lease."""
    return {
        "checkpoint": checkpoint,
        "rows_processed": _jobs.c.rows_processed + processed,
        "rows_succeeded": _jobs.c.rows_succeeded + succeeded,
        "rows_failed": _jobs.c.rows_failed + failed,
        "rows_skipped": _jobs.c.rows_skipped + skipped,
        "claimed_at": now,
        "updated_at": now,
    }


def _insert_rows_individually(ctx: StageContext, rows: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Insert each row in its own transaction.

    Returns ``(inserted, already_stored)``; rows that hit the
    ``(import_job_id, row_number)`` constraint were written by an earlier
    attempt whose checkpoint never committed.
    """
    inserted, already_stored = [], []
    for row in rows:
        try:
            with ctx.engine.begin() as conn:
                stmt = insert_for(conn, _events).values(**row).on_conflict_do_nothing(
                    index_elements=["import_job_id", "row_number"]
                )
                if conn.execute(stmt).rowcount == 1:
                    inserted.append(row)
                else:
                    already_stored.append(row)
        except SQLAlchemyError as exc:
            logger.warning("Job %s: row %s could not be stored: %s", ctx.job_id, row["row_number"], exc)
    return inserted, already_stored


def _succeeded(rows: List[Dict[str, Any]]) -> int:
    return sum(1 for row in rows if row["validation_status"] != ValidationStatus.INVALID.value)


def _count_events(ctx: StageContext, conn, created: int) -> None:
    user_id = ctx.job.get("user_id")
    if user_id is not None and created:
        ctx.deps.ledger.increment_usage(user_id, TOTAL_EVENTS_CREATED, created, ctx.now, conn=conn)


def _commit_batch(ctx: StageContext, rows: List[Dict[str, Any]], checkpoint: int, skipped: int = 0) -> int:
    """
    Insert one batch and advance the checkpoint in the same transaction. The
    owner's ``total_events_created`` counter moves in that transaction too.

    ``skipped`` rows were left out as duplicates and only count as processed.
    Returns the number of events the batch accounts for. Raises
    ``JobCancelledError`` when the job left this stage (or this worker)
    meanwhile.
    """
    processed = len(rows) + skipped
    try:
        with ctx.engine.begin() as conn:
            if rows:
                conn.execute(_events.insert(), rows)
            succeeded = _succeeded(rows)
            values = _checkpoint_values(checkpoint, processed, succeeded, len(rows) - succeeded, skipped, ctx.clock())
            if not job_store.guarded_job_update(conn, ctx.job_id, ctx.worker_id, ctx.stage, values):
                raise ctx.claim_lost()
            _count_events(ctx, conn, len(rows))
        return len(rows)
    except SQLAlchemyError as exc:
        logger.warning("Job %s: batch insert failed (%s), retrying row by row", ctx.job_id, exc)

    inserted, already_stored = _insert_rows_individually(ctx, rows)
    if already_stored:
        logger.info(
            "Job %s: %d row(s) were already stored by an earlier attempt", ctx.job_id, len(already_stored)
        )
    stored = inserted + already_stored
    succeeded = _succeeded(stored)
    with ctx.engine.begin() as conn:
        values = _checkpoint_values(checkpoint, processed, succeeded, len(rows) - succeeded, skipped, ctx.clock())
        if not job_store.guarded_job_update(conn, ctx.job_id, ctx.worker_id, ctx.stage, values):
            raise ctx.claim_lost()
        _count_events(ctx, conn, len(stored))
    return len(stored)


def materializing_stage(ctx: StageContext) -> StageResult:
    """
    Create Events in source order, one batch per transaction, resuming from
    the job's checkpoint. ``max_total_events`` is checked per batch before
    anything is written. Rows found by the duplicate analysis are left out
    in ``skip`` mode and stored with ``is_duplicate`` in ``flag`` mode.
    """
    resolved = ctx.resolved_mapping()
    records = ctx.parsed().records
    lookup = _geocode_lookup(ctx.job.get("geocoding_summary"))
    mapping = _field_mapping(ctx)
    schema_version = mapping["version"] if mapping else 1
    id_strategy = mapping.get("id_strategy") if mapping else None
    duplicates = ctx.job.get("duplicates") or {}
    mode = duplicates.get("mode") or "disabled"
    duplicate_rows = set(duplicates.get("duplicate_rows") or [])
    user_id = ctx.job.get("user_id")
    batch_size = max(1, settings.event_batch_size)

    created_total = 0
    skipped_total = 0
    start = int(ctx.job.get("checkpoint") or 0)
    for offset in range(start, len(records), batch_size):
        batch = records[offset:offset + batch_size]
        numbered = [(offset + index + 1, row) for index, row in enumerate(batch)]
        kept = [(number, row) for number, row in numbered if not (mode == "skip" and number in duplicate_rows)]
        skipped = len(numbered) - len(kept)
        if user_id is not None and kept:
            ctx.deps.ledger.require_quota(user_id, MAX_TOTAL_EVENTS, len(kept), ctx.now)

        rows = []
        for number, row in kept:
            event_row = _event_row(ctx, build_event_draft(row, number, resolved, lookup), schema_version)
            event_row["unique_id"] = row_unique_id(row, id_strategy)
            event_row["is_duplicate"] = mode == "flag" and number in duplicate_rows
            rows.append(event_row)
        created = _commit_batch(ctx, rows, offset + len(batch), skipped)
        created_total += created
        skipped_total += skipped
        logger.debug("Job %s: committed rows %d-%d", ctx.job_id, offset + 1, offset + len(batch))

    logger.info("Job %s: created %d event(s), skipped %d duplicate(s)", ctx.job_id, created_total, skipped_total)
    return ctx.advance()


STAGE_HANDLERS: Dict[str, Callable[[StageContext], StageResult]] = {
    JobStage.FETCHING.value: fetch_stage,
    JobStage.PARSING.value: parse_stage,
    JobStage.DETECTING_SCHEMA.value: detect_schema_stage,
    JobStage.MAPPING.value: mapping_stage,
    JobStage.GEOCODING.value: geocoding_stage,
    JobStage.VALIDATING.value: validating_stage,
    JobStage.MATERIALIZING.value: materializing_stage,
}


# Runner -----------------------------------------------------------------

def _finish_schedule(job: Dict[str, Any], succeeded: bool, error: Optional[str], now: datetime, engine=None) -> None:
    if job.get("scheduled_import_id"):
        record_job_outcome(job["scheduled_import_id"], job["id"], succeeded, error, now=now, engine=engine)


def _handle_failure(job: Dict[str, Any], worker_id: str, error: PipelineError, now: datetime, deps: PipelineDeps) -> StepOutcome:
    stage = job["stage"]
    attempts = int(job.get("attempts") or 0) + 1
    if error.retryable and attempts <= settings.job_max_retries:
        job_store.schedule_retry(job["id"], worker_id, stage, attempts, error, now=now, engine=deps.engine)
        return StepOutcome(job["id"], stage, stage, "retry", error.message)

    if job_store.fail_job(job["id"], error, worker_id=worker_id, stage=stage, attempt=attempts, now=now, engine=deps.engine):
        _finish_schedule(job, False, error.message, now, engine=deps.engine)
        return StepOutcome(job["id"], stage, JobStage.FAILED.value, "failed", error.message)
    return StepOutcome(job["id"], stage, None, "cancelled", error.message)


def advance_job(
    job_id: str,
    worker_id: str,
    deps: PipelineDeps,
    now: Optional[datetime] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> StepOutcome:
    """
    Run the current stage of a job this worker has claimed.

    The job is re-read first so a cancellation between claim and run is
    observed; every commit afterwards is conditional on the claim and stage.
    ``clock`` renews the claim lease while the stage runs.
    """
    now = resolve_now(now)
    job = job_store.get_import_job(job_id, engine=deps.engine)
    if job is None:
        return StepOutcome(job_id, None, None, "skipped", "job not found")
    stage = job["stage"]
    if stage in TERMINAL_STAGES or job.get("claimed_by") != worker_id:
        job_store.release_claim(job_id, worker_id, now=now, engine=deps.engine)
        return StepOutcome(job_id, stage, None, "skipped")

    handler = STAGE_HANDLERS[stage]
    ctx = StageContext(job, worker_id, now, deps, clock=clock)
    try:
        result = handler(ctx)
    except ClaimLostError as exc:
        logger.warning("Job %s: %s; abandoning this stage run", job_id, exc.message)
        return StepOutcome(job_id, stage, None, "claim-lost", exc.message)
    except JobCancelledError as exc:
        logger.warning("Job %s: %s", job_id, exc.message)
        return StepOutcome(job_id, stage, None, "cancelled", exc.message)
    except PipelineError as exc:
        return _handle_failure(job, worker_id, exc, now, deps)
    except StorageError as exc:
        return _handle_failure(job, worker_id, TransientStageError(f"Storage error: {exc}"), now, deps)
    except SQLAlchemyError as exc:
        logger.warning("Job %s: database error during %s: %s", job_id, stage, exc)
        return _handle_failure(job, worker_id, TransientStageError(f"Database error during {stage}: {exc}"), now, deps)
    except Exception as exc:
        logger.exception("Job %s: unexpected error during %s", job_id, stage)
        return _handle_failure(job, worker_id, PipelineError(f"Unexpected error during {stage}: {exc}"), now, deps)

    if not job_store.advance_stage(job_id, worker_id, stage, result.next_stage, result.updates, now=now, engine=deps.engine):
        lost = ctx.claim_lost()
        status = "claim-lost" if isinstance(lost, ClaimLostError) else "cancelled"
        return StepOutcome(job_id, stage, None, status, lost.message)

    if result.next_stage == JobStage.COMPLETED.value:
        _finish_schedule(job, True, None, now, engine=deps.engine)
    return StepOutcome(job_id, stage, result.next_stage, "advanced")
