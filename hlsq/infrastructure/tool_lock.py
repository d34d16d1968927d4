import fcntl
import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional
from hlsq.config.models import ToolLockConfig
from hlsq.domain.errors import ToolSlotUnavailable
from hlsq.domain.models import LockRecord

LOCK_PATTERN = "ffmpeg_*.lock"

class ExternalToolLock:
    """Host-wide admission control for ffmpeg processes.

    Each held slot is one ``ffmpeg_<pid>_<hex>.lock`` file in ``lock_dir``.
    Slots older than ``stale_after_s`` are reclaimed by whoever scans next, so a
    crashed holder never leaks its slot for longer than that.
    """

    def __init__(self, config: ToolLockConfig):
        self.config = config
        self.lock_dir = Path(config.lock_dir)
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        # Serializes scan/count/create across processes
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        with open(self.lock_dir / ".guard", "a+") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)

    def _lock_path(self, lock_id: str) -> Path:
        return self.lock_dir / f"{lock_id}.lock"

    def cleanup_stale_locks(self) -> int:
        threshold = time.time() - self.config.stale_after_s
        removed = 0
        for lock_file in self.lock_dir.glob(LOCK_PATTERN):
            try:
                if lock_file.stat().st_mtime < threshold:
                    lock_file.unlink()
                    removed += 1
                    self.logger.info(f"Removing stale FFmpeg lock {lock_file.name}")
            except FileNotFoundError:
                continue
        return removed

    def _try_acquire(self, max_concurrency: int) -> Optional[str]:
        with self._guard():
            self.cleanup_stale_locks()
            current = len(list(self.lock_dir.glob(LOCK_PATTERN)))
            if current >= max_concurrency:
                return None

            lock_id = f"ffmpeg_{os.getpid()}_{uuid.uuid4().hex[:12]}"
            record = LockRecord(
                lock_id=lock_id,
                pid=os.getpid(),
                acquired_at=int(time.time()),
                hostname=socket.gethostname(),
            )
            fd = os.open(self._lock_path(lock_id), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, "w") as f:
                f.write(record.model_dump_json())
            self.logger.info(f"Acquired FFmpeg concurrency lock {lock_id} ({current + 1}/{max_concurrency})")
            return lock_id

    def acquire(self, max_concurrency: Optional[int] = None, max_wait_s: Optional[float] = None) -> str:
        """Waits for a free slot and returns its lock id.

        Raises ToolSlotUnavailable when the retry budget is exhausted.
        """
        limit = max_concurrency or self.config.max_concurrency
        delay = self.config.retry_delay_s
        retries = self.config.max_retries
        if max_wait_s is not None:
            retries = max(1, int(max_wait_s // delay) + 1) if delay > 0 else 1

        for attempt in range(1, retries + 1):
            lock_id = self._try_acquire(limit)
            if lock_id is not None:
                return lock_id
            if attempt < retries:
                self.logger.info(
                    f"All {limit} FFmpeg slots busy, retrying in {delay:.0f}s (attempt {attempt}/{retries})"
                )
                time.sleep(delay)

        self.logger.error(f"Failed to acquire FFmpeg lock after {retries} attempts")
        raise ToolSlotUnavailable(f"No FFmpeg slot available after {retries} attempts")

    def release(self, lock_id: str) -> None:
        try:
            self._lock_path(lock_id).unlink()
            self.logger.info(f"Released FFmpeg concurrency lock {lock_id}")
        except FileNotFoundError:
            pass

    def active_locks(self) -> List[LockRecord]:
        records = []
        if not self.lock_dir.exists():
            return records
        for lock_file in sorted(self.lock_dir.glob(LOCK_PATTERN)):
            try:
                records.append(LockRecord.model_validate_json(lock_file.read_text()))
            except FileNotFoundError:
                continue
            except (OSError, ValueError):
                # Unreadable record still occupies a slot
                records.append(LockRecord(lock_id=lock_file.stem, pid=0, acquired_at=0, hostname="?"))
        return records
