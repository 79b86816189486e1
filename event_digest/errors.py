"""Error taxonomy shared across the pipeline."""
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidInputError(PipelineError):
    """Input rejected before any network call (bad URL, empty text)."""


class UpstreamError(PipelineError):
    """An external service failed or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(PipelineError):
    """Entity missing by id."""


class ConflictError(PipelineError):
    """The record changed while an operation on it was in flight."""


TRANSIENT_MARKERS = ("rate limit", "timeout", "timed out", "network", "429", "500", "502", "503", "504")


def is_transient_error(error: BaseException) -> bool:
    """True for errors worth retrying: rate limits, timeouts, network trouble, 5xx."""
    if isinstance(error, UpstreamError) and error.status_code is not None:
        if error.status_code == 429 or error.status_code >= 500:
            return True
    message = f"{type(error).__name__} {error}".lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)
