"""
Run the import job worker.

Usage:
    python -m event_atlas.worker                 # poll until SIGINT/SIGTERM
    python -m event_atlas.worker --once          # single iteration, then exit
    python -m event_atlas.worker --limit 20 --interval 2 --worker-id w1
"""
import argparse
import signal
import sys
import threading

from rich.console import Console
from rich.table import Table

from event_atlas.core.config import settings
from event_atlas.core.logging_config import configure_logging
from event_atlas.db.session import create_all_tables
from event_atlas.worker.loop import JobWorker, WorkerRunSummary


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Advance import jobs stage by stage.")
    parser.add_argument("--once", action="store_true", help="Run a single iteration and exit")
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs claimed per iteration")
    parser.add_argument("--interval", type=float, default=None, help="Seconds to wait between iterations")
    parser.add_argument("--worker-id", default=None, help="Identifier recorded on claimed jobs")
    return parser.parse_args(argv)


def render_summary(console: Console, summary: WorkerRunSummary) -> None:
    table = Table(title=f"Worker run at {summary.started_at:%Y-%m-%d %H:%M:%S} UTC")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", style="white", justify="right")

    for label, value in (
        ("Schedules triggered", summary.schedules_triggered),
        ("Jobs found", summary.jobs_found),
        ("Claimed", summary.claimed),
        ("Claim conflicts", summary.claim_conflicts),
        ("Advanced", summary.advanced),
        ("Completed", summary.completed),
        ("Retried", summary.retried),
        ("Failed", summary.failed),
        ("Cancelled", summary.cancelled),
    ):
        table.add_row(label, str(value))
    for key, value in summary.maintenance.items():
        table.add_row(f"maintenance: {key}", str(value))
    console.print(table)

    if summary.steps:
        steps = Table(title="Steps")
        steps.add_column("Job", style="cyan")
        steps.add_column("From")
        steps.add_column("To")
        steps.add_column("Status")
        steps.add_column("Error", style="red")
        for step in summary.steps:
            steps.add_row(step.job_id, step.from_stage or "-", step.to_stage or "-", step.status, step.error or "")
        console.print(steps)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(settings.log_level, role="worker", force=True)
    create_all_tables()

    console = Console()
    worker = JobWorker(worker_id=args.worker_id, batch_limit=args.limit, poll_interval=args.interval)

    if args.once:
        render_summary(console, worker.run_once(args.limit))
        return 0

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        console.print(f"[yellow]Received signal {signum}, finishing current iteration...[/yellow]")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    console.print(f"[green]Worker {worker.worker_id} polling every {worker.poll_interval}s[/green]")
    worker.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
