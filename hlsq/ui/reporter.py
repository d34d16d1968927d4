from datetime import datetime
from typing import Dict, Optional
from rich.console import Console
from hlsq.infrastructure.event_bus import EventBus
from hlsq.domain.events import (
    JobQueued, JobStarted, JobCompleted, JobFailed, JobAborted,
    JobProgressUpdated, StaleJobReclaimed, WorkerStopping,
)

PROGRESS_STEP = 10

class ConsoleReporter:
    """Subscribes to EventBus and prints one line per job lifecycle change."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None):
        self.bus = bus
        self.console = console or Console()
        self._last_bucket: Dict[str, int] = {}
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(JobQueued, self.on_job_queued)
        self.bus.subscribe(JobStarted, self.on_job_started)
        self.bus.subscribe(JobProgressUpdated, self.on_job_progress)
        self.bus.subscribe(JobCompleted, self.on_job_completed)
        self.bus.subscribe(JobFailed, self.on_job_failed)
        self.bus.subscribe(JobAborted, self.on_job_aborted)
        self.bus.subscribe(StaleJobReclaimed, self.on_stale_job)
        self.bus.subscribe(WorkerStopping, self.on_worker_stopping)

    def _print(self, message: str):
        self.console.print(f"[dim]{datetime.now().strftime('%H:%M:%S')}[/dim] {message}")

    def on_job_queued(self, event: JobQueued):
        self._print(f"[cyan]queued[/cyan] {event.job.source_file.logical_path}")

    def on_job_started(self, event: JobStarted):
        self._last_bucket.pop(event.job.id, None)
        self._print(
            f"[bold cyan]started[/bold cyan] {event.job.source_file.logical_path} "
            f"(attempt {event.job.attempts})"
        )

    def on_job_progress(self, event: JobProgressUpdated):
        # One line per PROGRESS_STEP percent
        bucket = event.progress_percent // PROGRESS_STEP
        if self._last_bucket.get(event.job.id) == bucket:
            return
        self._last_bucket[event.job.id] = bucket
        self._print(f"[blue]{event.progress_percent:3d}%[/blue] {event.job.source_file.filename}")

    def on_job_completed(self, event: JobCompleted):
        self._last_bucket.pop(event.job.id, None)
        self._print(f"[bold green]completed[/bold green] {event.job.source_file.logical_path}")

    def on_job_failed(self, event: JobFailed):
        first_line = event.error_message.splitlines()[0] if event.error_message else ""
        self._print(
            f"[yellow]failed[/yellow] {event.job.source_file.logical_path} "
            f"(attempt {event.job.attempts}, will retry): {first_line}"
        )

    def on_job_aborted(self, event: JobAborted):
        self._last_bucket.pop(event.job.id, None)
        self._print(f"[bold red]aborted[/bold red] {event.job.source_file.logical_path}: {event.error_message}")

    def on_stale_job(self, event: StaleJobReclaimed):
        self._print(f"[magenta]reclaimed stale job[/magenta] {event.job.id}")

    def on_worker_stopping(self, event: WorkerStopping):
        detail = f" ({event.detail})" if event.detail else ""
        self._print(f"[bold]worker stopping[/bold]: {event.reason}{detail}")
