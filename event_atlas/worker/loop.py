"""
Polling worker for import jobs.

One ``run_once`` call triggers due schedules, then claims runnable jobs and
advances each by exactly one stage. ``run_forever`` repeats that until its
stop event is set; the wait between iterations is the stop event itself, so
shutdown never has to sit out a full poll interval.
"""
import logging
import os
import socket
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from event_atlas.core.config import settings
from event_atlas.domain.imports import jobs as job_store
from event_atlas.domain.imports.schedules import reset_stuck_schedules, sweep_due_schedules
from event_atlas.domain.imports.stages import PipelineDeps, StepOutcome, advance_job
from event_atlas.integrations.storage import delete_file
from event_atlas.utils.clock import utcnow
from event_atlas.utils.ttl import needs_refresh

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


@dataclass
class WorkerRunSummary:
    started_at: datetime
    schedules_triggered: int = 0
    jobs_found: int = 0
    claimed: int = 0
    claim_conflicts: int = 0
    advanced: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    claims_lost: int = 0
    maintenance: Dict[str, int] = field(default_factory=dict)
    steps: List[StepOutcome] = field(default_factory=list)

    def record(self, outcome: StepOutcome) -> None:
        self.steps.append(outcome)
        if outcome.status == "advanced":
            self.advanced += 1
            if outcome.to_stage == "completed":
                self.completed += 1
        elif outcome.status == "retry":
            self.retried += 1
        elif outcome.status == "failed":
            self.failed += 1
        elif outcome.status == "cancelled":
            self.cancelled += 1
        elif outcome.status == "claim-lost":
            self.claims_lost += 1

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        return payload


class JobWorker:
    def __init__(
        self,
        worker_id: Optional[str] = None,
        batch_limit: Optional[int] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        deps: Optional[PipelineDeps] = None,
        maintenance_interval: Optional[int] = None,
    ):
        self.worker_id = worker_id or default_worker_id()
        self.batch_limit = batch_limit or settings.worker_batch_limit
        self.poll_interval = settings.worker_poll_interval_seconds if poll_interval is None else poll_interval
        self.clock = clock
        self.deps = deps or PipelineDeps.default()
        self.maintenance_interval = (
            settings.worker_maintenance_interval_seconds if maintenance_interval is None else maintenance_interval
        )
        self._last_maintenance: Optional[datetime] = None
        self._stop = threading.Event()

    def run_maintenance(self, now: datetime) -> Dict[str, int]:
        """Daily quota reset on every pass; cache, retention and stuck-schedule cleanup when due."""
        results = {"daily_resets": self.deps.ledger.reset_daily_counters(now)}
        if not needs_refresh(now, self._last_maintenance, self.maintenance_interval):
            return results

        self._last_maintenance = now
        results["cache_entries_removed"] = self.deps.caches.cleanup(now=now)["removed"]
        results["files_purged"] = job_store.purge_expired_files(delete_file, now=now, engine=self.deps.engine)
        results["schedules_reset"] = reset_stuck_schedules(now, engine=self.deps.engine)
        return results

    def run_once(self, limit: Optional[int] = None) -> WorkerRunSummary:
        now = self.clock()
        summary = WorkerRunSummary(started_at=now)
        summary.maintenance = self.run_maintenance(now)
        summary.schedules_triggered = len(
            sweep_due_schedules(ledger=self.deps.ledger, now=now, engine=self.deps.engine)
        )

        job_ids = job_store.list_runnable_jobs(limit or self.batch_limit, now=now, engine=self.deps.engine)
        summary.jobs_found = len(job_ids)
        for job_id in job_ids:
            if not job_store.claim_job(job_id, self.worker_id, now=now, engine=self.deps.engine):
                summary.claim_conflicts += 1
                continue
            summary.claimed += 1
            summary.record(advance_job(job_id, self.worker_id, self.deps, now=self.clock(), clock=self.clock))

        if summary.jobs_found or summary.schedules_triggered:
            logger.info(
                "Worker %s: %d job(s) found, %d advanced, %d completed, %d retried, %d failed",
                self.worker_id,
                summary.jobs_found,
                summary.advanced,
                summary.completed,
                summary.retried,
                summary.failed,
            )
        return summary

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        if stop_event is not None:
            self._stop = stop_event
        stop_event = self._stop
        logger.info("Worker %s started (poll interval %.1fs)", self.worker_id, self.poll_interval)
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Worker %s: iteration failed", self.worker_id)
            stop_event.wait(self.poll_interval)
        logger.info("Worker %s stopped", self.worker_id)

    def stop(self) -> None:
        self._stop.set()
