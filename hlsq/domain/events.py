"""Domain events for the HLS job pipeline.

Events represent job lifecycle changes flowing through the EventBus, decoupling
the dispatcher and supervisor from console reporting.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Optional
from pydantic import BaseModel
from .models import TranscodeJob


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class JobEvent(Event):
    """Base class for events related to a specific transcode job."""

    job: TranscodeJob


class JobQueued(JobEvent):
    """Emitted when a new record is appended to the queue."""

    pass


class JobStarted(JobEvent):
    """Emitted when the dispatcher moves a job to processing."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted when the progress monitor observes a new tick."""

    progress_percent: int


class JobCompleted(JobEvent):
    """Emitted when a job finished with a valid package on disk."""

    pass


class JobFailed(JobEvent):
    """Emitted when an attempt fails and the job remains retriable."""

    error_message: str


class JobAborted(JobEvent):
    """Emitted when a job used its last attempt."""

    error_message: str


class StaleJobReclaimed(JobEvent):
    """Emitted when a processing record outlived the staleness ceiling."""

    pass


class DispatchCycleFinished(Event):
    """Emitted after every dispatcher cycle with its counters."""

    active: int
    candidates: int
    started: int
    reclaimed: int


class WorkerStopping(Event):
    """Emitted once when the supervisor leaves its loop."""

    reason: str
    detail: Optional[str] = None
