"""Exception taxonomy for the optimizer.

Run-level errors end an ``optimize`` call; resource-level errors are caught at
the resource boundary and recorded in the run summary.
"""

from __future__ import annotations


class OptimizerError(Exception):
    """Base error for everything the optimizer raises on purpose."""

    reason = "processing_error"


class ArchiveUnreadable(OptimizerError):
    """Raised when the source container cannot be opened as a ZIP archive."""

    reason = "archive_unreadable"


class SizeIncreased(OptimizerError):
    """Raised when the rebuilt archive is larger than its source."""

    reason = "size_increase"


class PipelineTimeout(OptimizerError):
    """Raised when a run exceeds its wall-clock budget."""

    reason = "timeout"


class InputTooLarge(OptimizerError):
    """Raised when the source exceeds the configured input cap."""

    reason = "too_large"


class ProcessingError(OptimizerError):
    """Raised for run-level failures that fit no narrower category."""


class Cancelled(OptimizerError):
    """Raised inside workers once the run has been cancelled."""

    reason = "timeout"


class ResourceProcessingFailed(OptimizerError):
    """Raised when a single resource cannot be optimized."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class EncodeError(ResourceProcessingFailed):
    """An encoder ran but exited non-zero or produced no output."""


class EncoderUnavailable(ResourceProcessingFailed):
    """The encoder's executable is not installed."""


class DownloadError(OptimizerError):
    """Base error for the downloader collaborator."""


class MalformedURL(DownloadError):
    pass


class DownloadTimeout(DownloadError):
    pass


class HTTPStatusFailure(DownloadError):
    def __init__(self, status_code: int, message: str = ""):
        super().__init__(f"HTTP {status_code}: {message}".rstrip(": "))
        self.status_code = status_code


class IntegrityFailure(DownloadError):
    """The downloaded file is not a plausible EPUB container."""


RUN_LEVEL_ERRORS = {
    cls.reason: cls
    for cls in (ArchiveUnreadable, SizeIncreased, PipelineTimeout, InputTooLarge, ProcessingError)
}
