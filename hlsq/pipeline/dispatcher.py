"""One scheduling pass over the queue.

Each cycle reclaims processing records that outlived ``stale_after_s``,
collects pending and retriable failed records in queue order, and launches as
many as there are free job slots. Jobs run on a thread pool sized to
``max_concurrent_jobs``; the cycle itself never blocks on a transcode.

This is the only place where executor exceptions become queue transitions.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from hlsq.config.models import QueueConfig
from hlsq.domain.events import (
    DispatchCycleFinished,
    JobAborted,
    JobCompleted,
    JobFailed,
    JobStarted,
    StaleJobReclaimed,
)
from hlsq.domain.models import JobStatus, TranscodeJob
from hlsq.infrastructure.event_bus import EventBus
from hlsq.pipeline.executor import TranscodeExecutor
from hlsq.pipeline.job_queue import JobQueue

STALE_JOB_ERROR = "Job timed out or crashed"


@dataclass
class DispatchReport:
    active: int = 0
    candidates: int = 0
    started: List[str] = field(default_factory=list)
    reclaimed: List[str] = field(default_factory=list)


class Dispatcher:
    def __init__(
        self,
        queue: JobQueue,
        executor: TranscodeExecutor,
        config: QueueConfig,
        event_bus: Optional[EventBus] = None,
    ):
        self.queue = queue
        self.executor = executor
        self.config = config
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.max_concurrent_jobs, thread_name_prefix="hlsq-job"
        )
        self._in_flight: Dict[str, concurrent.futures.Future] = {}
        self._lock = threading.Lock()

    def _publish(self, event):
        if self.event_bus:
            self.event_bus.publish(event)

    def active_count(self) -> int:
        # Done callbacks may lag behind the futures themselves
        with self._lock:
            return sum(1 for f in self._in_flight.values() if not f.done())

    def _forget(self, job_id: str):
        with self._lock:
            self._in_flight.pop(job_id, None)

    def reclaim_stale(self, jobs: List[TranscodeJob]) -> List[str]:
        """Fails processing records older than the staleness ceiling.

        Jobs running in this process are alive by definition and are skipped.
        The ffmpeg process of a reclaimed job is not signalled.
        """
        now = int(time.time())
        with self._lock:
            running_here = set(self._in_flight)
        reclaimed = []
        for job in jobs:
            if job.status != JobStatus.PROCESSING or job.id in running_here:
                continue
            started = job.started_at or job.added_at
            if now - started <= self.config.stale_after_s:
                continue
            self.logger.warning(
                f"Job {job.id} has been processing for {now - started}s, marking it failed"
            )
            updated = self.queue.update_status(job.id, JobStatus.FAILED, STALE_JOB_ERROR)
            if updated is not None:
                reclaimed.append(job.id)
                self._publish(StaleJobReclaimed(job=updated))
        return reclaimed

    def run_cycle(self) -> DispatchReport:
        report = DispatchReport()
        report.reclaimed = self.reclaim_stale(self.queue.snapshot())

        jobs = self.queue.snapshot()
        processing = sum(1 for j in jobs if j.status == JobStatus.PROCESSING)
        report.active = max(processing, self.active_count())
        candidates = [
            j for j in jobs
            if j.id not in report.reclaimed
            and (j.status == JobStatus.PENDING or self.queue.is_retriable(j))
        ]
        report.candidates = len(candidates)

        available = self.config.max_concurrent_jobs - report.active
        if available <= 0 or not candidates:
            if candidates:
                self.logger.debug(f"All {self.config.max_concurrent_jobs} job slots busy, {len(candidates)} waiting")
            self._publish_report(report)
            return report

        for candidate in candidates:
            if len(report.started) >= available:
                break
            job = self.queue.mark_started(candidate.id)
            if job is None:
                continue
            self.logger.info(
                f"Starting job {job.id} for {job.source_file.logical_path} "
                f"(attempt {job.attempts}/{self.queue.max_attempts})"
            )
            self._publish(JobStarted(job=job))
            future = self._pool.submit(self._run_and_record, job)
            with self._lock:
                self._in_flight[job.id] = future
            future.add_done_callback(lambda _f, job_id=job.id: self._forget(job_id))
            report.started.append(job.id)

        self._publish_report(report)
        return report

    def _publish_report(self, report: DispatchReport):
        self._publish(DispatchCycleFinished(
            active=report.active,
            candidates=report.candidates,
            started=len(report.started),
            reclaimed=len(report.reclaimed),
        ))

    def _run_and_record(self, job: TranscodeJob) -> Optional[TranscodeJob]:
        """Executes a started job and records the outcome. Never raises."""
        try:
            self.executor.run(job)
        except Exception as e:
            error = str(e) or type(e).__name__
            self.logger.error(f"Job {job.id} failed: {error}")
            updated = self.queue.update_status(job.id, JobStatus.FAILED, error)
            if updated is not None:
                if updated.status == JobStatus.ABORTED:
                    self._publish(JobAborted(job=updated, error_message=error))
                elif updated.status == JobStatus.FAILED:
                    self._publish(JobFailed(job=updated, error_message=error))
            return updated

        updated = self.queue.update_status(job.id, JobStatus.COMPLETED)
        if updated is not None and updated.status == JobStatus.COMPLETED:
            self.logger.info(f"Job {job.id} completed")
            self._publish(JobCompleted(job=updated))
        return updated

    def run_job(self, job_id: str) -> Optional[TranscodeJob]:
        """Starts and runs one job in the calling thread."""
        job = self.queue.mark_started(job_id)
        if job is None:
            return None
        self._publish(JobStarted(job=job))
        return self._run_and_record(job)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until in-flight jobs finish. Returns False on timeout."""
        with self._lock:
            futures = list(self._in_flight.values())
        if not futures:
            return True
        _done, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)
