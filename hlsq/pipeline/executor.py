"""Runs one transcode job: source resolution, ffmpeg strategies and verdict.

The adaptive ladder is tried first; any ``TranscodeFailed`` from it falls back
to a single 720p playlist. ``ToolSlotUnavailable`` is the exception: when no
ffmpeg slot was freed in time, the attempt ends without a fallback.
Exceptions propagate to the dispatcher, which owns the queue transitions.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional
from hlsq.config.models import AppConfig
from hlsq.domain.errors import ToolSlotUnavailable, TranscodeFailed
from hlsq.domain.events import JobProgressUpdated
from hlsq.domain.models import ProgressRecord, Rendition, TranscodeJob
from hlsq.infrastructure.event_bus import EventBus
from hlsq.infrastructure.ffmpeg import FFmpegAdapter
from hlsq.infrastructure.ffprobe import FFprobeAdapter
from hlsq.infrastructure.housekeeping import HousekeepingService
from hlsq.infrastructure.output_classifier import classify_output, package_exists, summarize_error
from hlsq.infrastructure.storage import LocalStorage
from hlsq.infrastructure.tool_lock import ExternalToolLock
from hlsq.pipeline.output_locations import output_path_for
from hlsq.pipeline.progress import ProgressMonitor


class TranscodeExecutor:
    def __init__(
        self,
        config: AppConfig,
        storage: LocalStorage,
        ffmpeg: FFmpegAdapter,
        ffprobe: FFprobeAdapter,
        tool_lock: ExternalToolLock,
        housekeeping: Optional[HousekeepingService] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.storage = storage
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.tool_lock = tool_lock
        self.housekeeping = housekeeping or HousekeepingService()
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def run(self, job: TranscodeJob) -> Path:
        """Produces the HLS package for ``job`` and returns its local directory."""
        source = self.storage.resolve_source(job.owner_id, job.source_file)
        logical_output = output_path_for(job.source_file, job.settings)
        output_dir = self.storage.ensure_dir(job.owner_id, logical_output)

        if package_exists(output_dir):
            if not job.settings.overwrite_existing:
                self.logger.info(f"HLS cache already exists for {job.source_file.filename}, skipping")
                return output_dir
            self.housekeeping.clear_hls_output(output_dir)

        has_audio = self.ffprobe.has_audio_stream(source)
        self.logger.info(
            f"Starting HLS generation for {job.source_file.logical_path} -> {logical_output} "
            f"(resolutions={','.join(job.settings.resolutions)}, audio={has_audio})"
        )

        try:
            self._run_adaptive(job, source, output_dir, has_audio)
        except ToolSlotUnavailable:
            raise
        except TranscodeFailed as e:
            self.logger.warning(
                f"Adaptive HLS generation failed for {job.source_file.filename}, "
                f"falling back to single bitrate: {e}"
            )
            self.housekeeping.clear_hls_output(output_dir)
            self._run_single(job, source, output_dir, has_audio)
        finally:
            self.housekeeping.cleanup_raw_progress(output_dir)

        self.logger.info(f"HLS generation completed for {job.source_file.filename}")
        return output_dir

    def _run_adaptive(self, job: TranscodeJob, source: Path, output_dir: Path, has_audio: bool):
        renditions: Dict[str, Rendition] = self.ffmpeg.select_renditions(job.settings.resolutions)
        if not renditions:
            raise TranscodeFailed("No valid resolutions selected")

        monitor = self._monitor(job, output_dir, list(renditions))
        cmd = self.ffmpeg.build_adaptive_command(
            source, output_dir, renditions, has_audio, progress_path=monitor.raw_path
        )
        self._execute(cmd, monitor, output_dir, label="Adaptive HLS generation")

    def _run_single(self, job: TranscodeJob, source: Path, output_dir: Path, has_audio: bool):
        monitor = self._monitor(job, output_dir, ["720p"])
        cmd = self.ffmpeg.build_single_command(source, output_dir, has_audio, progress_path=monitor.raw_path)
        self._execute(cmd, monitor, output_dir, label="Single HLS generation")

    def _monitor(self, job: TranscodeJob, output_dir: Path, resolutions: List[str]) -> ProgressMonitor:
        return ProgressMonitor(
            output_dir,
            job.source_file.filename,
            resolutions,
            self.config.progress,
            on_update=self._progress_publisher(job),
        )

    def _progress_publisher(self, job: TranscodeJob) -> Optional[Callable[[ProgressRecord], None]]:
        if self.event_bus is None:
            return None
        last = {"percent": -1}

        def publish(record: ProgressRecord):
            if record.progress != last["percent"]:
                last["percent"] = record.progress
                self.event_bus.publish(JobProgressUpdated(job=job, progress_percent=record.progress))

        return publish

    def _execute(self, cmd: List[str], monitor: ProgressMonitor, output_dir: Path, label: str):
        """Runs one ffmpeg invocation while holding a tool slot."""
        lock_id = self.tool_lock.acquire()
        try:
            monitor.start()
            result = self.ffmpeg.run(cmd, on_tick=monitor.poll)
        except TranscodeFailed as e:
            monitor.finalize(False, str(e))
            raise
        finally:
            self.tool_lock.release(lock_id)

        verdict = classify_output(result.output, output_dir, result.returncode)
        if verdict.succeeded:
            if result.returncode != 0:
                self.logger.debug(
                    f"{label} completed despite return code {result.returncode} ({verdict.tag.value})"
                )
            monitor.finalize(True)
            return

        self.logger.error(
            f"{label} failed: return code {result.returncode}, verdict {verdict.tag.value}"
            + (f" ({verdict.marker})" if verdict.marker else "")
        )
        monitor.finalize(False, result.output)
        raise TranscodeFailed(
            f"{label} failed with return code {result.returncode}: {summarize_error(result.output)}",
            output=result.output,
        )
