"""Live progress for a running ffmpeg invocation.

ffmpeg is started with ``-progress <output>/progress.json.raw`` and appends
``key=value`` blocks to that file, each terminated by ``progress=continue``
(or ``progress=end`` for the final block). The monitor polls the file, takes
the most recent complete block and maintains ``progress.json`` next to the
output so any reader can follow the job without talking to the worker.

The percentage is a heuristic: the source duration is never probed, so the
estimate assumes the job is at most halfway done unless the frame count says
otherwise, and it only reaches 100 once ffmpeg reports ``progress=end``.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional
from pydantic import ValidationError
from hlsq.config.models import ProgressConfig
from hlsq.domain.models import PROGRESS_FILE, ProgressRecord, ProgressStatus
from hlsq.infrastructure.output_classifier import summarize_error

RAW_SUFFIX = ".raw"
SENTINEL_KEY = "progress"
SENTINEL_END = "end"


def parse_latest_block(content: str) -> Dict[str, str]:
    """Returns the last block closed by a ``progress=`` line; trailing partial lines are ignored."""
    latest: Dict[str, str] = {}
    current: Dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or "=" not in line:
            continue
        key, value = line.split("=", 1)
        current[key.strip()] = value.strip()
        if key.strip() == SENTINEL_KEY:
            latest = current
            current = {}
    return latest


def parse_out_time(value: str) -> float:
    """``HH:MM:SS.ffffff`` → seconds. Negative or malformed values count as 0."""
    parts = value.split(":")
    if len(parts) != 3:
        return 0.0
    try:
        hours, minutes, seconds = int(parts[0]), int(parts[1]), float(parts[2])
    except ValueError:
        return 0.0
    total = hours * 3600 + minutes * 60 + seconds
    return total if total > 0 else 0.0


def estimate_percent(elapsed_s: float, frame: int, config: ProgressConfig) -> int:
    if elapsed_s > 0:
        estimated_total = max(elapsed_s * 2, config.min_estimated_duration_s)
        time_based = min(elapsed_s / estimated_total * 100, 99)
        frame_based = min(frame / config.assumed_total_frames * 100, 99)
        return int(max(time_based, frame_based))
    if frame > 0:
        return int(min(frame / config.fallback_total_frames * 100, 95))
    return 0


def write_progress(path: Path, record: ProgressRecord) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as f:
            f.write(record.model_dump_json(indent=2))
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_progress(path: Path) -> Optional[ProgressRecord]:
    try:
        return ProgressRecord.model_validate(json.loads(Path(path).read_text()))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError):
        return None


class ProgressMonitor:
    def __init__(
        self,
        output_dir: Path,
        filename: str,
        resolutions: List[str],
        config: Optional[ProgressConfig] = None,
        on_update: Optional[Callable[[ProgressRecord], None]] = None,
    ):
        self.output_dir = Path(output_dir)
        self.progress_path = self.output_dir / PROGRESS_FILE
        self.raw_path = self.output_dir / (PROGRESS_FILE + RAW_SUFFIX)
        self.config = config or ProgressConfig()
        self.on_update = on_update
        self.record = ProgressRecord(filename=filename, resolutions=list(resolutions))
        self._last_block: Dict[str, str] = {}
        self.logger = logging.getLogger(__name__)

    def start(self) -> ProgressRecord:
        """Resets the side files for a new attempt."""
        try:
            self.raw_path.unlink()
        except FileNotFoundError:
            pass
        now = int(time.time())
        self.record = ProgressRecord(
            filename=self.record.filename,
            resolutions=self.record.resolutions,
            start_time=now,
            last_update=now,
        )
        self._last_block = {}
        self._persist()
        return self.record

    def _persist(self) -> None:
        try:
            write_progress(self.progress_path, self.record)
        except OSError as e:
            self.logger.warning(f"Failed to write progress file {self.progress_path}: {e}")
            return
        if self.on_update:
            self.on_update(self.record.model_copy())

    def poll(self) -> bool:
        """Merges the newest complete block into the record. Returns True if it changed."""
        if self.record.status != ProgressStatus.PROCESSING:
            return False
        try:
            content = self.raw_path.read_text(errors="replace")
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.debug(f"Cannot read {self.raw_path}: {e}")
            return False

        block = parse_latest_block(content)
        if not block or block == self._last_block:
            return False
        self._last_block = block
        self._merge(block)
        self._persist()
        return True

    def _merge(self, block: Dict[str, str]) -> None:
        record = self.record
        elapsed_s = 0.0
        for key, value in block.items():
            if value == "N/A":
                continue
            try:
                if key == "frame":
                    record.frame = int(value)
                elif key == "fps":
                    record.fps = float(value)
                elif key == "speed":
                    record.speed = value
                elif key == "out_time":
                    elapsed_s = parse_out_time(value)
                    record.time = value[:8] if elapsed_s > 0 else "00:00:00"
                elif key == "bitrate":
                    record.bitrate = value
                elif key == "total_size":
                    record.size_bytes = int(value)
                    record.size = f"{round(record.size_bytes / 1024)}kB"
            except ValueError:
                self.logger.debug(f"Ignoring malformed progress value {key}={value}")

        if block.get(SENTINEL_KEY) == SENTINEL_END:
            record.status = ProgressStatus.COMPLETED
            record.progress = 100
            self.logger.info("FFmpeg progress detected completion")
        else:
            estimate = estimate_percent(elapsed_s, record.frame, self.config)
            record.progress = max(record.progress, min(estimate, 99))
        record.last_update = int(time.time())

    def finalize(self, success: bool, error: Optional[str] = None) -> ProgressRecord:
        self.poll()
        record = self.record
        record.last_update = int(time.time())
        if success:
            record.status = ProgressStatus.COMPLETED
            record.progress = 100
            record.error = None
        else:
            record.status = ProgressStatus.FAILED
            record.progress = min(record.progress, 99)
            record.error = summarize_error(error) if error else "Unknown error occurred"
        self._persist()
        return record
