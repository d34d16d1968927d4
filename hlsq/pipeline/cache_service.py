"""Entry points used by callers outside the worker (the CLI, an HTTP layer).

Submission only touches the queue; all queries read the filesystem or the
queue document, so none of them needs a running worker.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union
from hlsq.config.models import AppConfig
from hlsq.domain.errors import JobInputError
from hlsq.domain.models import (
    CacheStatistics,
    JobSettings,
    JobStatus,
    MASTER_PLAYLIST,
    PROGRESS_FILE,
    ProgressRecord,
    SINGLE_PLAYLIST,
    SourceFile,
    TranscodeJob,
)
from hlsq.infrastructure.file_scanner import FileScanner
from hlsq.infrastructure.output_classifier import package_exists
from hlsq.infrastructure.storage import LocalStorage
from hlsq.pipeline.job_queue import JobQueue, coerce_settings
from hlsq.pipeline.output_locations import cache_roots, candidate_cache_paths, output_path_for
from hlsq.pipeline.progress import read_progress

SettingsInput = Union[JobSettings, Dict, None]


def _is_completed_dir(path: Path) -> bool:
    if (path / MASTER_PLAYLIST).exists() or (path / SINGLE_PLAYLIST).exists():
        return True
    return any(path.glob("playlist_*p.m3u8"))


class HlsCacheService:
    def __init__(
        self,
        config: AppConfig,
        queue: JobQueue,
        storage: LocalStorage,
        scanner: Optional[FileScanner] = None,
    ):
        self.config = config
        self.queue = queue
        self.storage = storage
        self.scanner = scanner or FileScanner(config.defaults.extensions)
        self.logger = logging.getLogger(__name__)

    def _settings(self, settings: SettingsInput) -> JobSettings:
        if settings is None:
            return JobSettings(resolutions=list(self.config.defaults.resolutions))
        return coerce_settings(settings)

    def submit(self, owner_id: str, filename: str, directory: str = "/", settings: SettingsInput = None) -> str:
        return self.queue.enqueue(owner_id, filename, directory, self._settings(settings))

    def submit_many(self, owner_id: str, files: Iterable[SourceFile], settings: SettingsInput = None) -> List[str]:
        job_settings = self._settings(settings)
        pending = self.queue.filter_unqueued(list(files), owner_id)
        job_ids = [self.queue.enqueue(owner_id, f.filename, f.directory, job_settings) for f in pending]
        if job_ids:
            self.logger.info(f"Queued {len(job_ids)} HLS jobs for {owner_id}")
        return job_ids

    def get_progress(self, owner_id: str, cache_path: str) -> Optional[ProgressRecord]:
        """Progress record for an output directory, or None when there is none."""
        local = self.storage.local_path(owner_id, cache_path)
        if not local.is_dir():
            return None
        return read_progress(local / PROGRESS_FILE)

    def progress_for_job(self, job: TranscodeJob) -> Optional[ProgressRecord]:
        return self.get_progress(job.owner_id, output_path_for(job.source_file, job.settings))

    def find_cache(self, owner_id: str, filename: str, directory: str = "/") -> Optional[str]:
        """Logical path of an existing package for the file, next-to-source location first."""
        source = SourceFile(filename=filename, directory=directory or "/")
        for candidate in candidate_cache_paths(source, self.config.defaults.cache_locations):
            try:
                if package_exists(self.storage.local_path(owner_id, candidate)):
                    return candidate
            except JobInputError:
                continue
        return None

    def batch_check_cache(self, owner_id: str, directory: str, filenames: List[str]) -> List[str]:
        return [name for name in filenames if self.find_cache(owner_id, name, directory) is not None]

    def get_statistics(self, owner_id: str) -> CacheStatistics:
        stats = CacheStatistics()
        for root in cache_roots(self.config.defaults.cache_locations):
            local_root = self.storage.local_path(owner_id, root)
            if not local_root.is_dir():
                continue
            for entry in sorted(local_root.iterdir()):
                if not entry.is_dir():
                    continue
                stats.total_jobs += 1
                if _is_completed_dir(entry):
                    stats.completed_jobs += 1
                    stats.completed_job_filenames.append(entry.name)
        stats.pending_jobs = stats.total_jobs - stats.completed_jobs

        counts = self.queue.statistics(owner_id)
        stats.queue_active = counts[JobStatus.PROCESSING.value]
        stats.queue_pending = counts[JobStatus.PENDING.value]
        stats.queue_failed = counts[JobStatus.FAILED.value]
        stats.queue_aborted = counts[JobStatus.ABORTED.value]
        stats.queue_completed = counts[JobStatus.COMPLETED.value]
        stats.queue_total = counts["total"]

        # Cross-check: the queue says completed, the disk must agree
        for job in self.list_jobs(owner_id):
            if job.status != JobStatus.COMPLETED:
                continue
            try:
                output = self.storage.local_path(owner_id, output_path_for(job.source_file, job.settings))
            except JobInputError:
                continue
            if not package_exists(output):
                stats.missing_outputs.append(job.source_file.logical_path)
        if stats.missing_outputs:
            self.logger.warning(
                f"{len(stats.missing_outputs)} completed jobs of {owner_id} have no package on disk"
            )
        return stats

    def discover_uncached(self, owner_id: str, directory: str = "/") -> List[SourceFile]:
        """Videos under ``directory`` that have neither a package nor a queue record."""
        root = self.storage.local_path(owner_id, directory)
        if not root.is_dir():
            raise JobInputError(f"Directory not found: {directory}")
        uncached = [
            source for source in self.scanner.scan(root, directory)
            if self.find_cache(owner_id, source.filename, source.directory) is None
        ]
        return self.queue.filter_unqueued(uncached, owner_id)

    def auto_generate(self, owner_id: str, directory: str = "/", settings: SettingsInput = None) -> List[str]:
        found = self.discover_uncached(owner_id, directory)
        self.logger.info(f"Found {len(found)} videos without HLS cache in {directory}")
        return self.submit_many(owner_id, found, settings)

    def delete_job(self, job_id: str, owner_id: str) -> bool:
        return self.queue.remove(job_id, owner_id)

    def list_jobs(self, owner_id: Optional[str] = None) -> List[TranscodeJob]:
        jobs = self.queue.snapshot()
        if owner_id is None:
            return jobs
        return [job for job in jobs if job.owner_id == owner_id]
