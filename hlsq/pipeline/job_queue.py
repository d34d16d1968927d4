"""Durable, ordered job queue with the transcode job state machine.

States: pending → processing → completed | failed; failed records stay
``failed`` but are moved to the end of the queue and re-selected while
``attempts < max_attempts``; the failure after the last attempt turns the
record ``aborted``. ``completed`` and ``aborted`` are terminal.

All operations go through ``JsonJobStore.locked()`` and read the full
document, mutate it in memory and write it back.
"""

import logging
import os
import time
from typing import Dict, Iterable, List, Optional, Union
from pydantic import ValidationError
from hlsq.domain.errors import JobInputError
from hlsq.domain.events import JobQueued
from hlsq.domain.models import JobSettings, JobStatus, SourceFile, TranscodeJob
from hlsq.infrastructure.event_bus import EventBus
from hlsq.infrastructure.job_store import JsonJobStore


def coerce_settings(settings: Union[JobSettings, Dict, None]) -> JobSettings:
    if settings is None:
        return JobSettings()
    if isinstance(settings, JobSettings):
        return settings
    try:
        return JobSettings.model_validate(settings)
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise JobInputError(f"Invalid job settings: {messages}") from e


class JobQueue:
    def __init__(self, store: JsonJobStore, max_attempts: int = 3, event_bus: Optional[EventBus] = None):
        self.store = store
        self.max_attempts = max_attempts
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def enqueue(
        self,
        owner_id: str,
        filename: str,
        directory: str,
        settings: Union[JobSettings, Dict, None] = None,
    ) -> str:
        """Adds a job, or returns the id of the existing non-aborted job for the same file."""
        if not owner_id:
            raise JobInputError("Owner id is required")
        if not filename:
            raise JobInputError("Filename is required")
        directory = directory or "/"
        job_settings = coerce_settings(settings)

        with self.store.locked():
            jobs = self.store.load()
            for existing in jobs:
                if existing.matches(owner_id, filename, directory) and existing.status != JobStatus.ABORTED:
                    self.logger.debug(f"Duplicate submission for {directory}/{filename}, reusing {existing.id}")
                    return existing.id

            job = TranscodeJob(
                owner_id=owner_id,
                source_file=SourceFile(filename=filename, directory=directory),
                settings=job_settings,
            )
            jobs.append(job)
            self.store.save(jobs)

        self.logger.info(f"Queued job {job.id} for {job.source_file.logical_path} (owner={owner_id})")
        if self.event_bus:
            self.event_bus.publish(JobQueued(job=job.model_copy(deep=True)))
        return job.id

    def is_queued(self, owner_id: str, filename: str, directory: str) -> bool:
        return any(
            job.matches(owner_id, filename, directory) and job.status != JobStatus.ABORTED
            for job in self.snapshot()
        )

    def filter_unqueued(self, candidates: Iterable[SourceFile], owner_id: str) -> List[SourceFile]:
        """Returns only candidates without a non-aborted record for this owner."""
        known = {
            (job.source_file.filename, job.source_file.directory)
            for job in self.snapshot()
            if job.owner_id == owner_id and job.status != JobStatus.ABORTED
        }
        return [c for c in candidates if (c.filename, c.directory) not in known]

    def snapshot(self) -> List[TranscodeJob]:
        with self.store.locked():
            return self.store.load()

    def get(self, job_id: str) -> Optional[TranscodeJob]:
        for job in self.snapshot():
            if job.id == job_id:
                return job
        return None

    def is_retriable(self, job: TranscodeJob) -> bool:
        return job.status == JobStatus.FAILED and job.attempts < self.max_attempts

    def mark_started(self, job_id: str) -> Optional[TranscodeJob]:
        """pending/retriable failed → processing; consumes one attempt."""
        with self.store.locked():
            jobs = self.store.load()
            job = next((j for j in jobs if j.id == job_id), None)
            if job is None:
                return None
            if not (job.status == JobStatus.PENDING or self.is_retriable(job)):
                self.logger.warning(f"Job {job_id} is {job.status.value}, not starting it")
                return None
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.started_at = int(time.time())
            job.process_id = os.getpid()
            self.store.save(jobs)
            return job.model_copy(deep=True)

    def update_status(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> Optional[TranscodeJob]:
        """Applies a transition and persists it. Unknown ids are ignored."""
        with self.store.locked():
            jobs = self.store.load()
            index = next((i for i, j in enumerate(jobs) if j.id == job_id), None)
            if index is None:
                self.logger.debug(f"Job {job_id} not found, status update to {status.value} ignored")
                return None

            job = jobs[index]
            if job.status.is_terminal:
                self.logger.warning(
                    f"Job {job_id} is already {job.status.value}, ignoring transition to {status.value}"
                )
                return job.model_copy(deep=True)

            now = int(time.time())
            job.status = status
            if status == JobStatus.COMPLETED:
                job.completed_at = now
                job.error = None
            elif status == JobStatus.FAILED:
                job.failed_at = now
                if error:
                    job.error = error
                if job.attempts < self.max_attempts:
                    # Retried jobs queue behind newer work
                    jobs.append(jobs.pop(index))
                    self.logger.info(
                        f"Job {job_id} failed (attempt {job.attempts}/{self.max_attempts}), "
                        f"moved to end of queue for retry"
                    )
                else:
                    job.status = JobStatus.ABORTED
                    job.aborted_at = now
                    self.logger.error(
                        f"Job {job_id} permanently failed after {job.attempts} attempts, "
                        f"marked as aborted: {error}"
                    )
            elif status == JobStatus.ABORTED:
                job.aborted_at = now
                if error:
                    job.error = error

            self.store.save(jobs)
            return job.model_copy(deep=True)

    def remove(self, job_id: str, owner_id: str) -> bool:
        """Deletes a record only when both id and owner match."""
        with self.store.locked():
            jobs = self.store.load()
            kept = [j for j in jobs if not (j.id == job_id and j.owner_id == owner_id)]
            if len(kept) == len(jobs):
                return False
            self.store.save(kept)
        self.logger.info(f"Removed job {job_id} (owner={owner_id})")
        return True

    def has_outstanding_work(self) -> bool:
        """True while anything is pending, processing or still retriable."""
        return any(
            job.status in (JobStatus.PENDING, JobStatus.PROCESSING) or self.is_retriable(job)
            for job in self.snapshot()
        )

    def statistics(self, owner_id: Optional[str] = None) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        total = 0
        for job in self.snapshot():
            if owner_id is not None and job.owner_id != owner_id:
                continue
            stats[job.status.value] += 1
            total += 1
        stats["total"] = total
        return stats
