"""Long-running worker loop.

At most one supervisor runs per state directory (non-blocking ``flock`` on
``worker.lock``); a second instance exits immediately with status 0. While
running it keeps a liveness file for the watchdog and calls the dispatcher
until a stop condition is met: a signal, the runtime ceiling, the memory
ceiling or, with ``exit_when_idle``, an empty queue. In-flight jobs are always
allowed to finish before the process leaves.
"""

import fcntl
import logging
import os
import signal
import socket
import threading
import time
from pathlib import Path
from typing import Optional, Tuple
import psutil
from hlsq.config.models import AppConfig
from hlsq.domain.events import WorkerStopping
from hlsq.domain.models import WorkerLiveness
from hlsq.infrastructure.event_bus import EventBus
from hlsq.pipeline.dispatcher import Dispatcher
from hlsq.pipeline.job_queue import JobQueue


class WorkerSupervisor:
    def __init__(
        self,
        config: AppConfig,
        dispatcher: Dispatcher,
        queue: JobQueue,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.dispatcher = dispatcher
        self.queue = queue
        self.event_bus = event_bus
        self.liveness_path: Path = config.liveness_path
        self.lock_path: Path = config.worker_lock_path
        self.logger = logging.getLogger(__name__)
        self._stop = threading.Event()
        self._stop_reason: Optional[str] = None
        self._lock_fh = None
        self._previous_handlers = {}

    def _acquire_singleton(self) -> bool:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.lock_path, "a+")
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            return False
        self._lock_fh = fh
        return True

    def _release_singleton(self):
        if self._lock_fh is not None:
            fcntl.flock(self._lock_fh, fcntl.LOCK_UN)
            self._lock_fh.close()
            self._lock_fh = None

    def write_liveness(self):
        record = WorkerLiveness(pid=os.getpid(), started_at=int(time.time()), hostname=socket.gethostname())
        try:
            self.liveness_path.parent.mkdir(parents=True, exist_ok=True)
            self.liveness_path.write_text(record.model_dump_json())
        except OSError as e:
            self.logger.warning(f"Could not write liveness file {self.liveness_path}: {e}")

    def remove_liveness(self):
        try:
            self.liveness_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove liveness file {self.liveness_path}: {e}")

    def request_stop(self, signum=None, frame=None):
        """Signal handler: only records the request, the loop does the rest."""
        if self._stop_reason is None:
            self._stop_reason = f"signal {signum}" if signum is not None else "requested"
        self._stop.set()

    def install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self.request_stop)

    def restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            # None: the previous handler was not installed from Python
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers = {}

    def memory_mb(self) -> float:
        return psutil.Process().memory_info().rss / (1024 * 1024)

    def _limit_reached(self, started: float) -> Optional[Tuple[str, str]]:
        runtime = time.monotonic() - started
        if runtime >= self.config.worker.max_runtime_s:
            return "max_runtime", f"ran for {runtime:.0f}s"
        memory = self.memory_mb()
        if memory > self.config.worker.max_memory_mb:
            return "memory", f"rss {memory:.0f}MB > {self.config.worker.max_memory_mb}MB"
        return None

    def run(self) -> int:
        if not self._acquire_singleton():
            self.logger.info("Another worker is already running, exiting")
            return 0

        self.install_signal_handlers()
        self.write_liveness()
        started = time.monotonic()
        self.logger.info(
            f"Worker started (pid={os.getpid()}, max_jobs={self.config.queue.max_concurrent_jobs}, "
            f"max_runtime={self.config.worker.max_runtime_s}s)"
        )

        reason, detail = "signal", None
        try:
            while True:
                if self._stop.is_set():
                    reason = self._stop_reason or "signal"
                    break
                limit = self._limit_reached(started)
                if limit:
                    reason, detail = limit
                    break

                busy = True
                try:
                    self.dispatcher.run_cycle()
                    busy = self.dispatcher.active_count() > 0
                    idle = self.config.worker.exit_when_idle and not busy and not self.queue.has_outstanding_work()
                except Exception as e:
                    self.logger.error(f"Dispatch cycle failed: {e}")
                    idle = False
                if idle:
                    reason = "idle"
                    break

                delay = self.config.worker.busy_sleep_s if busy else self.config.worker.idle_sleep_s
                self._stop.wait(delay)
        finally:
            self.logger.info(f"Worker stopping ({reason}{': ' + detail if detail else ''}), waiting for active jobs")
            self.dispatcher.wait_idle()
            self.dispatcher.shutdown(wait=True)
            self.remove_liveness()
            self._release_singleton()
            self.restore_signal_handlers()

        if self.event_bus:
            self.event_bus.publish(WorkerStopping(reason=reason, detail=detail))
        self.logger.info("Worker stopped")
        return 0
