from pathlib import Path
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator
from hlsq.domain.models import Rendition

DEFAULT_CACHE_LOCATIONS = ["./.cached_hls/", "~/.cached_hls/", "/mnt/cache/.cached_hls/"]

class QueueConfig(BaseModel):
    max_concurrent_jobs: int = Field(default=2, gt=0)
    max_attempts: int = Field(default=3, gt=0)
    stale_after_s: int = Field(default=8 * 3600, gt=0)  # processing longer than this is presumed dead

class ToolLockConfig(BaseModel):
    """Host-wide ffmpeg admission control."""
    lock_dir: Path = Path("/tmp/hyper_ffmpeg_locks")
    max_concurrency: int = Field(default=4, gt=0)
    max_retries: int = Field(default=18, gt=0)
    retry_delay_s: float = Field(default=10.0, ge=0.0)
    stale_after_s: int = Field(default=4 * 3600, gt=0)

class ProgressConfig(BaseModel):
    poll_interval_s: float = Field(default=0.25, gt=0.0, le=1.0)
    assumed_total_frames: int = Field(default=5000, gt=0)
    fallback_total_frames: int = Field(default=3000, gt=0)
    min_estimated_duration_s: int = Field(default=300, gt=0)
    output_tail_bytes: int = Field(default=10240, ge=1024)

def _default_ladder() -> Dict[str, Rendition]:
    return {
        "1080p": Rendition(resolution="1920x1080", maxrate="12000k", bufsize="16000k", crf=18,
                           preset="medium", profile="high", level="4.1", tune="film"),
        "720p": Rendition(resolution="1280x720", maxrate="3600k", bufsize="6000k", crf=23),
        "480p": Rendition(resolution="854x480", maxrate="1000k", bufsize="1600k", crf=26),
        "360p": Rendition(resolution="640x360", maxrate="600k", bufsize="1000k", crf=28),
        "240p": Rendition(resolution="426x240", maxrate="400k", bufsize="600k", crf=30),
    }

class FFmpegConfig(BaseModel):
    binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    hls_time: int = Field(default=6, gt=0)
    audio_bitrate: str = "128k"
    renditions: Dict[str, Rendition] = Field(default_factory=_default_ladder)
    fallback_rendition: Rendition = Field(
        default_factory=lambda: Rendition(resolution="1280x720", maxrate="3600k", bufsize="6000k", crf=23)
    )

class WorkerConfig(BaseModel):
    busy_sleep_s: float = Field(default=1.0, ge=0.0)
    idle_sleep_s: float = Field(default=10.0, ge=0.0)
    max_runtime_s: int = Field(default=6 * 3600, gt=0)
    max_memory_mb: int = Field(default=512, gt=0)
    liveness_stale_after_s: int = Field(default=24 * 3600, gt=0)
    exit_when_idle: bool = False
    watchdog_interval_s: int = Field(default=300, gt=0)

class StorageConfig(BaseModel):
    """Local stand-in for the storage resolver and worker state files."""
    data_root: Path = Path("data")
    state_dir: Path = Path("/tmp/hlsq")
    queue_file: str = "queue.json"
    liveness_file: str = "worker.pid.json"
    worker_lock_file: str = "worker.lock"
    log_path: Optional[str] = None

class DefaultsConfig(BaseModel):
    resolutions: List[str] = Field(default_factory=lambda: ["720p", "480p", "240p"])
    cache_locations: List[str] = Field(default_factory=lambda: list(DEFAULT_CACHE_LOCATIONS))
    extensions: List[str] = Field(default_factory=lambda: [".mp4", ".mov"])

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]

class AppConfig(BaseModel):
    queue: QueueConfig = Field(default_factory=QueueConfig)
    tool_lock: ToolLockConfig = Field(default_factory=ToolLockConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    debug: bool = False

    @property
    def queue_path(self) -> Path:
        return self.storage.state_dir / self.storage.queue_file

    @property
    def liveness_path(self) -> Path:
        return self.storage.state_dir / self.storage.liveness_file

    @property
    def worker_lock_path(self) -> Path:
        return self.storage.state_dir / self.storage.worker_lock_file
