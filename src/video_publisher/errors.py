"""Error taxonomy for the upload pipeline.

Every error carries a stable ``code``, a human-readable ``message`` (the only
text ever shown in job status) and a ``retryable`` flag that the worker uses
to decide between redelivery and permanent failure.
"""

from typing import Optional


class PublisherError(Exception):
    """Base class for known pipeline failures."""

    code = "PUBLISHER_ERROR"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        super().__init__(f"[{self.code}] {message}")


class ValidationError(PublisherError):
    """Malformed submission. Rejected synchronously, never enqueued."""

    code = "VALIDATION_ERROR"


class AuthError(PublisherError):
    """No stored authorization for the account, or refresh failed."""

    code = "AUTH_ERROR"


class TransientTransportError(PublisherError):
    """Network failure, 5xx or rate limiting that outlived the retry budget."""

    code = "TRANSIENT_TRANSPORT_ERROR"


class RangeMismatchError(TransientTransportError):
    """Server kept disagreeing about the upload offset."""

    code = "RANGE_MISMATCH"


class PermanentTransportError(PublisherError):
    """Request rejected by the platform (4xx other than the resume signal)."""

    code = "PERMANENT_TRANSPORT_ERROR"


class SourceFileError(PublisherError):
    """Source file vanished, became unreadable or changed size."""

    code = "SOURCE_FILE_ERROR"


class FinalizationError(PublisherError):
    """Thumbnail or metadata step failed after the video was uploaded."""

    code = "FINALIZATION_ERROR"
    retryable = True


class JobCancelled(PublisherError):
    """Cancellation was requested while the job was running."""

    code = "CANCELLED"


class DuplicateSubmission(PublisherError):
    """Fingerprint already owned by another job.

    Not a failure: ``resource_id`` is set when the other upload completed,
    otherwise ``job_id`` names the job still working on it.
    """

    code = "DUPLICATE_SUBMISSION"

    def __init__(self, message: str, job_id: str, resource_id: Optional[str] = None):
        self.job_id = job_id
        self.resource_id = resource_id
        super().__init__(message)
