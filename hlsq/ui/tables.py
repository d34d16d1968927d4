"""rich renderables for the status commands."""

from datetime import datetime
from typing import Dict, List, Optional
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from hlsq.domain.models import CacheStatistics, JobStatus, LockRecord, ProgressRecord, TranscodeJob

STATUS_STYLES = {
    JobStatus.PENDING: "cyan",
    JobStatus.PROCESSING: "bold blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "yellow",
    JobStatus.ABORTED: "red",
}


def format_ts(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if value < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


def jobs_table(jobs: List[TranscodeJob], progress: Optional[Dict[str, ProgressRecord]] = None) -> Table:
    progress = progress or {}
    table = Table(title="HLS jobs", expand=True)
    table.add_column("ID", no_wrap=True)
    table.add_column("Owner")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Tries", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Added")
    table.add_column("Error", overflow="fold")
    for job in jobs:
        record = progress.get(job.id)
        percent = f"{record.progress}%" if record and job.status == JobStatus.PROCESSING else "-"
        table.add_row(
            job.id,
            job.owner_id,
            job.source_file.logical_path,
            Text(job.status.value, style=STATUS_STYLES[job.status]),
            str(job.attempts),
            percent,
            format_ts(job.added_at),
            (job.error or "").splitlines()[0] if job.error else "",
        )
    return table


def locks_table(locks: List[LockRecord], max_concurrency: int) -> Table:
    table = Table(title=f"FFmpeg slots ({len(locks)}/{max_concurrency})")
    table.add_column("Lock")
    table.add_column("PID", justify="right")
    table.add_column("Host")
    table.add_column("Acquired")
    for lock in locks:
        table.add_row(lock.lock_id, str(lock.pid) if lock.pid else "?", lock.hostname, format_ts(lock.acquired_at))
    return table


def progress_panel(record: ProgressRecord) -> Panel:
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column()
    grid.add_row("File", record.filename)
    grid.add_row("Status", record.status.value)
    grid.add_row("Progress", f"{record.progress}%")
    grid.add_row("Resolutions", ", ".join(record.resolutions) or "-")
    grid.add_row("Frame / FPS", f"{record.frame} / {record.fps:g}")
    grid.add_row("Time / Speed", f"{record.time} / {record.speed}")
    grid.add_row("Bitrate", record.bitrate)
    grid.add_row("Size", f"{record.size} ({format_bytes(record.size_bytes)})")
    grid.add_row("Updated", format_ts(record.last_update))
    if record.error:
        grid.add_row("Error", Text(record.error, style="red"))
    return Panel(grid, title="PROGRESS", border_style="cyan")


def statistics_panel(stats: CacheStatistics) -> Panel:
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column(justify="right")
    grid.add_row("Cache directories", str(stats.total_jobs))
    grid.add_row("Completed", str(stats.completed_jobs))
    grid.add_row("Incomplete", str(stats.pending_jobs))
    grid.add_row("Queue pending", str(stats.queue_pending))
    grid.add_row("Queue processing", str(stats.queue_active))
    grid.add_row("Queue failed", str(stats.queue_failed))
    grid.add_row("Queue aborted", str(stats.queue_aborted))
    grid.add_row("Queue completed", str(stats.queue_completed))
    if stats.missing_outputs:
        grid.add_row(
            Text("Missing packages", style="red"),
            Text(str(len(stats.missing_outputs)), style="red"),
        )
    return Panel(grid, title="STATISTICS", border_style="cyan")
