"""
Defines custom exceptions used throughout the application.

Once a job exists, every one of these is captured into the job's error field
instead of being raised to the caller. Only `ValidationError` (and
`DependencyError`) reach the submitter directly.
"""


class TubeQueueError(Exception):
    """Base exception for all application-specific errors."""


class ValidationError(TubeQueueError):
    """Raised when a submission is rejected before a job is created."""


class DependencyError(TubeQueueError):
    """Raised when the extractor executable cannot be located."""


class ExtractionError(TubeQueueError):
    """Base exception for failures reported by the media extractor."""


class ProbeError(ExtractionError):
    """Raised when metadata extraction fails."""


class ParseError(ExtractionError):
    """Raised when extractor output or an info file cannot be parsed."""


class FetchError(ExtractionError):
    """Raised when the retrieval subprocess fails."""

    def __init__(self, message: str, stderr: str = ''):
        super().__init__(message)
        self.stderr = stderr


class StorageError(TubeQueueError):
    """Raised when an upload or a job store write fails."""


class NotFoundError(TubeQueueError):
    """Raised for operations on an unknown job id."""


class InvalidTransitionError(TubeQueueError):
    """Raised when a control operation is not permitted in the job's current status."""
