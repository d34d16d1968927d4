import time
import uuid
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

CACHE_DIR_NAME = ".cached_hls"
MASTER_PLAYLIST = "master.m3u8"
SINGLE_PLAYLIST = "playlist.m3u8"
PROGRESS_FILE = "progress.json"

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ABORTED)

class CacheLocation(str, Enum):
    RELATIVE = "relative"
    HOME = "home"
    CUSTOM = "custom"

class SourceFile(BaseModel):
    filename: str
    directory: str = "/"

    @property
    def logical_path(self) -> str:
        """Path of the source inside the owner's storage root."""
        directory = self.directory.rstrip("/")
        if not directory:
            return f"/{self.filename}"
        return f"{directory}/{self.filename}"

    @property
    def base_name(self) -> str:
        stem, dot, _ext = self.filename.rpartition(".")
        return stem if dot and stem else self.filename

class JobSettings(BaseModel):
    resolutions: List[str] = Field(default_factory=lambda: ["720p", "480p", "240p"])
    cache_location: CacheLocation = CacheLocation.RELATIVE
    custom_path: str = ""
    overwrite_existing: bool = False

    @model_validator(mode="after")
    def validate_custom_path(self):
        if self.cache_location == CacheLocation.CUSTOM and not self.custom_path.strip():
            raise ValueError("Custom cache path is required but not provided")
        return self

class TranscodeJob(BaseModel):
    id: str = Field(default_factory=lambda: f"hls_{uuid.uuid4().hex}")
    owner_id: str
    source_file: SourceFile
    settings: JobSettings = Field(default_factory=JobSettings)
    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    added_at: int = Field(default_factory=lambda: int(time.time()))
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    failed_at: Optional[int] = None
    aborted_at: Optional[int] = None
    error: Optional[str] = None
    process_id: Optional[int] = None

    def matches(self, owner_id: str, filename: str, directory: str) -> bool:
        return (
            self.owner_id == owner_id
            and self.source_file.filename == filename
            and self.source_file.directory == directory
        )

class ProgressStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class ProgressRecord(BaseModel):
    status: ProgressStatus = ProgressStatus.PROCESSING
    filename: str = ""
    resolutions: List[str] = Field(default_factory=list)
    progress: int = Field(default=0, ge=0, le=100)
    frame: int = 0
    fps: float = 0.0
    speed: str = "0x"
    time: str = "00:00:00"
    bitrate: str = "0kbits/s"
    size: str = "0kB"
    size_bytes: int = 0
    start_time: int = Field(default_factory=lambda: int(time.time()))
    last_update: int = Field(default_factory=lambda: int(time.time()))
    error: Optional[str] = None

class LockRecord(BaseModel):
    lock_id: str
    pid: int
    acquired_at: int
    hostname: str

class Rendition(BaseModel):
    """One rung of the adaptive bitrate ladder."""
    resolution: str
    maxrate: str
    bufsize: str
    crf: int = Field(ge=0, le=51)
    preset: str = "superfast"
    profile: str = "main"
    level: Optional[str] = None
    tune: Optional[str] = None

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: str) -> str:
        width, sep, height = v.partition("x")
        if not sep or not width.isdigit() or not height.isdigit():
            raise ValueError(f"Invalid resolution {v!r}, expected WIDTHxHEIGHT")
        return v

class CacheStatistics(BaseModel):
    total_jobs: int = 0
    completed_jobs: int = 0
    pending_jobs: int = 0
    completed_job_filenames: List[str] = Field(default_factory=list)
    queue_active: int = 0
    queue_pending: int = 0
    queue_failed: int = 0
    queue_aborted: int = 0
    queue_completed: int = 0
    queue_total: int = 0
    # Queue records marked completed whose output is not on disk.
    missing_outputs: List[str] = Field(default_factory=list)

class WorkerLiveness(BaseModel):
    """Contents of the worker liveness file."""
    pid: int
    started_at: int
    hostname: str
