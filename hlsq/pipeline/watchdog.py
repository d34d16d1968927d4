import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional
import psutil
from pydantic import ValidationError
from hlsq.config.models import AppConfig
from hlsq.domain.models import WorkerLiveness


class Watchdog:
    """Restarts the worker when its liveness file is missing, too old or points at a dead pid."""

    def __init__(self, config: AppConfig, config_path: Optional[Path] = None):
        self.config = config
        self.config_path = config_path
        self.liveness_path = config.liveness_path
        self.logger = logging.getLogger(__name__)

    def read_liveness(self) -> Optional[WorkerLiveness]:
        try:
            return WorkerLiveness.model_validate_json(self.liveness_path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            self.logger.warning(f"Unreadable liveness file {self.liveness_path}: {e}")
            return None

    def is_alive(self) -> bool:
        record = self.read_liveness()
        if record is None:
            return False
        age = time.time() - record.started_at
        if age > self.config.worker.liveness_stale_after_s:
            self.logger.warning(f"Worker pid {record.pid} liveness file is {age:.0f}s old, treating it as dead")
            return False
        return psutil.pid_exists(record.pid)

    def worker_command(self) -> List[str]:
        cmd = [sys.executable, "-m", "hlsq.main"]
        if self.config_path is not None:
            cmd.extend(["--config", str(self.config_path)])
        cmd.append("worker")
        return cmd

    def spawn_worker(self) -> int:
        process = subprocess.Popen(
            self.worker_command(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
        self.logger.info(f"Spawned detached worker pid={process.pid}")
        return process.pid

    def check(self) -> bool:
        """Returns True when a new worker was spawned."""
        if self.is_alive():
            self.logger.debug("Worker is alive")
            return False
        try:
            self.liveness_path.unlink()
        except FileNotFoundError:
            pass
        self.logger.info("Worker not running, starting a new one")
        self.spawn_worker()
        return True

    def run(self, interval_s: float, iterations: Optional[int] = None):
        count = 0
        while iterations is None or count < iterations:
            try:
                self.check()
            except OSError as e:
                self.logger.error(f"Watchdog check failed: {e}")
            count += 1
            if iterations is None or count < iterations:
                time.sleep(interval_s)
