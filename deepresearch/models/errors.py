from __future__ import annotations


class ResearchError(Exception):
    """Base class for research job failures."""


class TransportError(ResearchError):
    """Network or HTTP failure before a remote status is known. Retryable."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteFailure(ResearchError):
    """The research service reported the job as failed or cancelled."""

    def __init__(self, message: str, *, status: str):
        super().__init__(message)
        self.status = status


class JobTimeoutError(ResearchError):
    """The local job deadline passed before the service finished."""


class ExtractionError(ResearchError):
    """A completed response carried no extractable text."""


class InvalidOutline(ResearchError, ValueError):
    """An outline was rejected at run creation."""


class InvalidTransition(RuntimeError):
    """A job operation was invoked from a state that does not allow it."""
