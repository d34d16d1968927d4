"""Exception types shared by the queue, executor and CLI.

Input errors raised at submission fail fast and never create a job. Once a job
is queued, every executor exception consumes one attempt and is converted
into a queue transition by the dispatcher; a source that disappeared before
the run is retried like a failed transcode until the attempts run out.
"""


class HlsqError(Exception):
    """Base class for all hlsq errors."""


class JobInputError(HlsqError):
    """The job request itself is invalid (missing fields, bad policy, missing source)."""


class TranscodeFailed(HlsqError):
    """The external tool did not produce a valid package."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class ToolSlotUnavailable(TranscodeFailed):
    """No ffmpeg slot was freed within the lock retry budget."""
