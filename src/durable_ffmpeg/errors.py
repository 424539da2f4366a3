"""Error taxonomy for durable jobs.

Every step-level failure is classified where it happens (the encoder runner or
the storage layer) and carried upward unchanged. The state machine only reads
``kind`` and ``recoverable`` to decide between retrying and terminating.
"""

from enum import Enum

DEFAULT_EXCERPT_LIMIT = 2000


class ErrorKind(str, Enum):
    """Caller-visible failure kinds carried in a failed JobOutcome."""

    VALIDATION = "ValidationError"
    STAGING = "StagingError"
    PUBLISHING = "PublishingError"
    ENCODING = "EncodingError"
    TRANSIENT_ENCODING = "TransientEncodingError"
    CANCELLED = "Cancelled"


def diagnostic_excerpt(text: str, limit: int = DEFAULT_EXCERPT_LIMIT) -> str:
    """Bound raw process output before it leaves the service.

    Keeps the tail, where ffmpeg prints the fatal line, and marks the cut.
    """
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    marker = "...[truncated]...\n"
    return marker + text[-(limit - len(marker)):]


class DurableFfmpegError(Exception):
    """Base exception for all job errors.

    Attributes:
        kind: The ErrorKind reported to the caller.
    """

    kind = ErrorKind.ENCODING

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(DurableFfmpegError):
    """Raised when a request is malformed. Never retried."""

    kind = ErrorKind.VALIDATION


class StagingError(DurableFfmpegError):
    """Raised when the source cannot be materialized in working storage."""

    kind = ErrorKind.STAGING


class PublishingError(DurableFfmpegError):
    """Raised when the produced artifact cannot be written to its destination."""

    kind = ErrorKind.PUBLISHING


class EncodingError(DurableFfmpegError):
    """Raised for a fatal encoder failure or exhausted encoder retries."""

    kind = ErrorKind.ENCODING


class TransientEncodingError(DurableFfmpegError):
    """Raised for a recoverable encoder failure; escalates to EncodingError on exhaustion."""

    kind = ErrorKind.TRANSIENT_ENCODING


class Cancelled(DurableFfmpegError):
    """Raised when the orchestrator cancels a running job.

    Terminal, but not a failure of the service itself.
    """

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "job cancelled") -> None:
        super().__init__(message)


class StepFailure(DurableFfmpegError):
    """A classified failure raised from the work of one journaled step.

    Attributes:
        kind: ErrorKind assigned at the point of occurrence.
        recoverable: True if retrying the same step may succeed.
    """

    def __init__(self, kind: ErrorKind, message: str, recoverable: bool) -> None:
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.recoverable = recoverable

    def __repr__(self) -> str:
        return (
            f"StepFailure(kind={self.kind.value!r}, recoverable={self.recoverable}, "
            f"message={self.message[:80]!r})"
        )
