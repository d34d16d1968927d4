import typer
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from rich.console import Console
from hlsq.config.loader import load_config
from hlsq.config.models import AppConfig
from hlsq.domain.errors import JobInputError
from hlsq.domain.models import CacheLocation, JobSettings, JobStatus
from hlsq.infrastructure.event_bus import EventBus
from hlsq.infrastructure.ffmpeg import FFmpegAdapter
from hlsq.infrastructure.ffprobe import FFprobeAdapter
from hlsq.infrastructure.file_scanner import FileScanner
from hlsq.infrastructure.housekeeping import HousekeepingService
from hlsq.infrastructure.job_store import JsonJobStore
from hlsq.infrastructure.logging import setup_logging
from hlsq.infrastructure.storage import LocalStorage
from hlsq.infrastructure.tool_lock import ExternalToolLock
from hlsq.pipeline.cache_service import HlsCacheService
from hlsq.pipeline.dispatcher import Dispatcher
from hlsq.pipeline.executor import TranscodeExecutor
from hlsq.pipeline.job_queue import JobQueue
from hlsq.pipeline.supervisor import WorkerSupervisor
from hlsq.pipeline.watchdog import Watchdog
from hlsq.ui.reporter import ConsoleReporter
from hlsq.ui.tables import jobs_table, locks_table, progress_panel, statistics_panel

DEFAULT_CONFIG = Path("conf/hlsq.yaml")

app = typer.Typer(help="hlsq - HLS transcoding job queue")
console = Console()


@dataclass
class CliState:
    config_path: Optional[Path] = None
    debug: bool = False


@dataclass
class Components:
    config: AppConfig
    queue: JobQueue
    storage: LocalStorage
    tool_lock: ExternalToolLock
    executor: TranscodeExecutor
    dispatcher: Dispatcher
    service: HlsCacheService


def _fail(message: str):
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load(ctx: typer.Context) -> AppConfig:
    state: CliState = ctx.obj or CliState()
    try:
        if state.config_path is None:
            config = load_config(DEFAULT_CONFIG, required=False)
        else:
            config = load_config(state.config_path)
    except FileNotFoundError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(f"Invalid config: {e}")
    if state.debug:
        config.debug = True
    log_path = Path(config.storage.log_path) if config.storage.log_path else None
    setup_logging(config.storage.state_dir, debug=config.debug, log_path=log_path)
    return config


def build_components(config: AppConfig, bus: Optional[EventBus] = None) -> Components:
    queue = JobQueue(JsonJobStore(config.queue_path), max_attempts=config.queue.max_attempts, event_bus=bus)
    storage = LocalStorage(config.storage.data_root)
    tool_lock = ExternalToolLock(config.tool_lock)
    executor = TranscodeExecutor(
        config=config,
        storage=storage,
        ffmpeg=FFmpegAdapter(config.ffmpeg, config.progress),
        ffprobe=FFprobeAdapter(config.ffmpeg.ffprobe_binary),
        tool_lock=tool_lock,
        housekeeping=HousekeepingService(),
        event_bus=bus,
    )
    dispatcher = Dispatcher(queue, executor, config.queue, event_bus=bus)
    service = HlsCacheService(config, queue, storage, FileScanner(config.defaults.extensions))
    return Components(config, queue, storage, tool_lock, executor, dispatcher, service)


def _settings(
    config: AppConfig,
    resolutions: Optional[str],
    location: str,
    custom_path: str,
    overwrite: bool,
) -> JobSettings:
    try:
        cache_location = CacheLocation(location)
    except ValueError:
        _fail(f"Unknown cache location: {location}")
    names = [r.strip() for r in resolutions.split(",") if r.strip()] if resolutions else list(config.defaults.resolutions)
    try:
        return JobSettings(
            resolutions=names,
            cache_location=cache_location,
            custom_path=custom_path,
            overwrite_existing=overwrite,
        )
    except ValueError as e:
        _fail(str(e))


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config (default: conf/hlsq.yaml)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    ctx.obj = CliState(config_path=config_path, debug=debug)


@app.command()
def submit(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    filename: str = typer.Argument(..., help="Video file name"),
    directory: str = typer.Option("/", "--dir", "-d", help="Directory of the file inside the owner's storage"),
    resolutions: Optional[str] = typer.Option(None, "--resolutions", "-r", help="Comma-separated ladder rungs, e.g. 720p,480p"),
    location: str = typer.Option("relative", "--location", "-l", help="Cache location: relative, home or custom"),
    custom_path: str = typer.Option("", "--custom-path", help="Cache root for --location custom"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Regenerate an existing package"),
):
    """Queue one video for HLS generation."""
    config = _load(ctx)
    components = build_components(config)
    settings = _settings(config, resolutions, location, custom_path, overwrite)
    try:
        job_id = components.service.submit(owner, filename, directory, settings)
    except JobInputError as e:
        _fail(str(e))
    typer.echo(job_id)


@app.command()
def autogen(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    directory: str = typer.Argument("/", help="Directory to scan recursively"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list videos without a cache"),
    resolutions: Optional[str] = typer.Option(None, "--resolutions", "-r", help="Comma-separated ladder rungs"),
    location: str = typer.Option("relative", "--location", "-l", help="Cache location: relative, home or custom"),
    custom_path: str = typer.Option("", "--custom-path", help="Cache root for --location custom"),
):
    """Queue every video under a directory that has no HLS cache yet."""
    config = _load(ctx)
    components = build_components(config)
    try:
        if dry_run:
            for source in components.service.discover_uncached(owner, directory):
                typer.echo(source.logical_path)
            return
        settings = _settings(config, resolutions, location, custom_path, False)
        job_ids = components.service.auto_generate(owner, directory, settings)
    except JobInputError as e:
        _fail(str(e))
    typer.secho(f"Queued {len(job_ids)} jobs", fg=typer.colors.GREEN)


@app.command()
def worker(
    ctx: typer.Context,
    exit_when_idle: Optional[bool] = typer.Option(None, "--exit-when-idle/--keep-running", help="Stop once the queue is empty"),
    max_runtime: Optional[int] = typer.Option(None, "--max-runtime", help="Override maximum runtime in seconds"),
    max_jobs: Optional[int] = typer.Option(None, "--max-jobs", "-j", help="Override concurrent job limit"),
):
    """Run the worker loop until a stop condition is met."""
    config = _load(ctx)
    if exit_when_idle is not None:
        config.worker.exit_when_idle = exit_when_idle
    if max_runtime:
        config.worker.max_runtime_s = max_runtime
    if max_jobs:
        config.queue.max_concurrent_jobs = max_jobs

    bus = EventBus()
    ConsoleReporter(bus, console)
    components = build_components(config, bus)
    supervisor = WorkerSupervisor(config, components.dispatcher, components.queue, event_bus=bus)
    raise typer.Exit(code=supervisor.run())


@app.command()
def watchdog(
    ctx: typer.Context,
    loop: bool = typer.Option(False, "--loop", help="Keep checking every worker.watchdog_interval_s seconds"),
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Repeat the check every N seconds"),
):
    """Start a worker if none is alive."""
    config = _load(ctx)
    state: CliState = ctx.obj or CliState()
    dog = Watchdog(config, config_path=state.config_path)
    if interval or loop:
        dog.run(interval or config.worker.watchdog_interval_s)
        return
    if dog.check():
        typer.secho("Worker started", fg=typer.colors.GREEN)
    else:
        typer.echo("Worker is alive")


@app.command("run-job")
def run_job(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id")):
    """Run a single queued job in the foreground."""
    config = _load(ctx)
    bus = EventBus()
    ConsoleReporter(bus, console)
    components = build_components(config, bus)
    try:
        job = components.dispatcher.run_job(job_id)
    finally:
        components.dispatcher.shutdown()
    if job is None:
        _fail(f"Job {job_id} not found or not runnable")
    typer.echo(job.status.value)
    if job.status != JobStatus.COMPLETED:
        raise typer.Exit(code=1)


@app.command()
def status(
    ctx: typer.Context,
    owner: Optional[str] = typer.Option(None, "--owner", "-o", help="Only jobs of this owner"),
):
    """Show the job queue."""
    config = _load(ctx)
    components = build_components(config)
    jobs = components.service.list_jobs(owner)
    if not jobs:
        typer.echo("Queue is empty")
        return
    progress = {}
    for job in jobs:
        if job.status == JobStatus.PROCESSING:
            record = components.service.progress_for_job(job)
            if record is not None:
                progress[job.id] = record
    console.print(jobs_table(jobs, progress))


@app.command()
def locks(ctx: typer.Context):
    """Show held ffmpeg slots."""
    config = _load(ctx)
    tool_lock = ExternalToolLock(config.tool_lock)
    console.print(locks_table(tool_lock.active_locks(), config.tool_lock.max_concurrency))


@app.command()
def progress(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    cache_path: str = typer.Argument(..., help="Output directory, e.g. /videos/.cached_hls/clip"),
):
    """Show the progress record of an output directory."""
    config = _load(ctx)
    components = build_components(config)
    try:
        record = components.service.get_progress(owner, cache_path)
    except JobInputError as e:
        _fail(str(e))
    if record is None:
        _fail(f"No progress found for {cache_path}")
    console.print(progress_panel(record))


@app.command()
def stats(ctx: typer.Context, owner: str = typer.Argument(..., help="Owner id")):
    """Show cache statistics reconciled with the queue."""
    config = _load(ctx)
    components = build_components(config)
    try:
        statistics = components.service.get_statistics(owner)
    except JobInputError as e:
        _fail(str(e))
    console.print(statistics_panel(statistics))


@app.command()
def check(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner id"),
    directory: str = typer.Argument(..., help="Directory of the files"),
    filenames: List[str] = typer.Argument(..., help="File names to check"),
):
    """Print the given files that already have an HLS cache."""
    config = _load(ctx)
    components = build_components(config)
    try:
        cached = components.service.batch_check_cache(owner, directory, filenames)
    except JobInputError as e:
        _fail(str(e))
    for name in cached:
        typer.echo(name)


@app.command()
def remove(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id"),
    owner: str = typer.Argument(..., help="Owner id"),
):
    """Delete a job record."""
    config = _load(ctx)
    components = build_components(config)
    if not components.service.delete_job(job_id, owner):
        _fail(f"Job {job_id} not found for owner {owner}")
    typer.secho(f"Removed {job_id}", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
