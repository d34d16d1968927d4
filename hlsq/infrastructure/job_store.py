import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List
from pydantic import ValidationError
from hlsq.domain.models import TranscodeJob

class JsonJobStore:
    """Whole-document JSON store for job records.

    Every read-modify-write must happen inside ``locked()``, which holds an
    in-process lock plus an ``flock`` on ``<path>.lock`` so a worker and a CLI
    submitter never interleave their writes.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._lock_fh = None
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def locked(self) -> Iterator["JsonJobStore"]:
        with self._thread_lock:
            if self._depth == 0:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                self._lock_fh = open(self.lock_path, "a+")
                fcntl.flock(self._lock_fh, fcntl.LOCK_EX)
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
                if self._depth == 0:
                    fcntl.flock(self._lock_fh, fcntl.LOCK_UN)
                    self._lock_fh.close()
                    self._lock_fh = None

    def load(self) -> List[TranscodeJob]:
        """Reads all records. A missing or unreadable document is an empty queue."""
        try:
            content = self.path.read_text()
        except FileNotFoundError:
            return []
        except OSError as e:
            self.logger.error(f"Failed to read queue {self.path}: {e}")
            return []

        if not content.strip():
            return []

        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            self.logger.error(f"Failed to read queue {self.path}: {e}")
            return []
        if not isinstance(raw, list):
            self.logger.error(f"Queue document {self.path} is not a list, ignoring it")
            return []

        jobs = []
        for entry in raw:
            try:
                jobs.append(TranscodeJob.model_validate(entry))
            except ValidationError as e:
                self.logger.warning(f"Skipping malformed queue record: {e.error_count()} errors")
        return jobs

    def save(self, jobs: List[TranscodeJob]) -> bool:
        """Writes all records atomically. Failures are logged, never raised."""
        payload = json.dumps([job.model_dump(mode="json") for job in jobs], indent=2)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
            return True
        except OSError as e:
            self.logger.error(f"Failed to save queue {self.path}: {e}")
            if tmp_name and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            return False
