"""
Tests for the polling worker: iteration summaries, maintenance and shutdown.
"""
import threading
from datetime import timedelta

from rich.console import Console

from conftest import FROZEN_NOW
from event_atlas.domain.cache.registry import URL_FETCH_CACHE
from event_atlas.domain.imports.schedules import create_schedule
from event_atlas.integrations.fetch import FetchResult
from event_atlas.worker.__main__ import main, parse_args, render_summary
from event_atlas.worker.loop import JobWorker, WorkerRunSummary, default_worker_id
from tests.utils.pipeline import SAMPLE_CSV, queue_upload


def test_idle_iteration(worker):
    summary = worker.run_once()

    assert summary.started_at == FROZEN_NOW
    assert summary.jobs_found == 0
    assert summary.steps == []
    assert summary.maintenance["daily_resets"] == 0


def test_iteration_advances_every_runnable_job(worker, user, clock):
    for name in ("a.csv", "b.csv", "c.csv"):
        queue_upload(SAMPLE_CSV, name, user_id=user.id, now=clock.now)

    summary = worker.run_once(limit=2)

    assert summary.jobs_found == 2
    assert summary.claimed == 2
    assert summary.advanced == 2
    assert [step.to_stage for step in summary.steps] == ["parsing", "parsing"]


def test_summary_counts_completed_jobs(worker, user, clock):
    queue_upload(SAMPLE_CSV, "events.csv", user_id=user.id, now=clock.now)

    summaries = [worker.run_once() for _ in range(7)]

    assert summaries[-1].completed == 1
    assert sum(summary.advanced for summary in summaries) == 7


def test_sweep_runs_inside_the_iteration(worker, user, ledger, clock):
    worker.deps.fetch = lambda url, etag=None, last_modified=None: FetchResult(url, 200, content=SAMPLE_CSV)
    create_schedule(user=user, ledger=ledger, name="Feed", source_url="https://example.com/events.csv", now=clock.now)
    clock.advance(days=1)

    summary = worker.run_once()

    assert summary.schedules_triggered == 1
    assert summary.jobs_found == 1


def test_maintenance_runs_cleanup_only_when_due(deps, clock):
    url_cache = deps.caches.get(URL_FETCH_CACHE)
    url_cache.set("https://example.com/old.csv", {"etag": '"x"'}, ttl_seconds=60, now=FROZEN_NOW - timedelta(minutes=5))
    worker = JobWorker(worker_id="w", clock=clock, deps=deps, poll_interval=0, maintenance_interval=3600)

    first = worker.run_once().maintenance
    second = worker.run_once().maintenance
    clock.advance(hours=1)
    third = worker.run_once().maintenance

    assert first["cache_entries_removed"] == 1
    assert first["files_purged"] == 0
    assert first["schedules_reset"] == 0
    assert set(second) == {"daily_resets"}
    assert "cache_entries_removed" in third


def test_daily_counters_reset_by_maintenance(worker, user, ledger, clock):
    ledger.increment_usage(user.id, "file_uploads_today", 2, now=clock.now)
    clock.advance(days=1)

    summary = worker.run_once()

    assert summary.maintenance["daily_resets"] == 1


def test_run_forever_stops_on_event(deps, clock):
    worker = JobWorker(worker_id="w", clock=clock, deps=deps, poll_interval=0)
    stop = threading.Event()
    calls = []

    def fake_run_once():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient database hiccup")
        if len(calls) == 3:
            stop.set()

    worker.run_once = fake_run_once
    worker.run_forever(stop)

    assert len(calls) == 3


def test_stop_ends_loop_before_first_iteration(deps, clock):
    worker = JobWorker(worker_id="w", clock=clock, deps=deps, poll_interval=0)
    worker.stop()

    worker.run_forever()


def test_summary_to_dict_is_json_friendly(worker, user, clock):
    queue_upload(SAMPLE_CSV, "events.csv", user_id=user.id, now=clock.now)

    payload = worker.run_once().to_dict()

    assert payload["started_at"] == FROZEN_NOW.isoformat()
    assert payload["advanced"] == 1
    assert payload["steps"][0]["status"] == "advanced"


def test_render_summary_lists_metrics_and_steps(worker, user, clock):
    job = queue_upload(SAMPLE_CSV, "events.csv", user_id=user.id, now=clock.now)
    console = Console(record=True, width=200)

    render_summary(console, worker.run_once())

    output = console.export_text()
    assert "Jobs found" in output
    assert "maintenance: daily_resets" in output
    assert job["id"] in output


def test_render_summary_without_steps():
    console = Console(record=True, width=200)

    render_summary(console, WorkerRunSummary(started_at=FROZEN_NOW))

    assert "Steps" not in console.export_text()


def test_cli_arguments():
    args = parse_args(["--once", "--limit", "3", "--interval", "0.5", "--worker-id", "w1"])

    assert args.once is True
    assert args.limit == 3
    assert args.interval == 0.5
    assert args.worker_id == "w1"


def test_cli_single_iteration(capsys):
    assert main(["--once", "--worker-id", "cli-worker"]) == 0

    assert "Jobs found" in capsys.readouterr().out


def test_default_worker_ids_are_unique():
    assert default_worker_id() != default_worker_id()
