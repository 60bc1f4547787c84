"""Error taxonomy of the buffering pipeline."""

from typing import Optional


class BufferingError(Exception):
    """Base class for buffering pipeline errors."""

    code = "buffering_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class EventValidationError(BufferingError):
    """Malformed inbound event. Rejected at the ingest gate, nothing is stored."""

    code = "invalid_event"


class TransientDependencyError(BufferingError):
    """Generator, delivery or storage failure during dispatch. Retried with backoff."""

    code = "transient_dependency"


class PermanentError(BufferingError):
    """Attempts exhausted or the generator returned an unusable decision. Never retried."""

    code = "permanent"


def describe_error(exc: Exception, limit: int = 500) -> str:
    """Short error string stored on the job row."""
    code = getattr(exc, "code", None) or type(exc).__name__
    return f"{code}: {exc}"[:limit]
