from __future__ import annotations

"""Abstract base classes for the job queue and the idempotency guard.

These abstractions keep the worker and the upload executor independent of the
storage engine. The bundled implementation is SQLite (sqlite_backend.py); a
Redis or Postgres backend only has to honour the same contracts.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from .hashing import compute_content_hash, compute_fingerprint

if TYPE_CHECKING:
    from .models import (
        JobState,
        JobStatusView,
        ProgressAck,
        QueueStats,
        Reservation,
        UploadJob,
    )


class JobQueue(ABC):
    """Durable, retryable work queue that owns job state transitions.

    Implementations must provide:
    - Durable enqueue (a job survives a crash before it is dequeued)
    - Atomic dequeue (one job is never active on two workers)
    - Exponential backoff between retryable failures
    - Monotonic progress reporting
    """

    @abstractmethod
    def enqueue(self, job: "UploadJob") -> str:
        """Persist a new job in 'queued' state.

        Args:
            job: Job to persist

        Returns:
            The job identifier

        Implementation notes:
        - Must be idempotent: enqueueing the same job_id twice is a no-op
        """

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["UploadJob"]:
        """Atomically claim the oldest due job and mark it active.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            UploadJob or None when nothing is due

        Implementation notes:
        - MUST be safe with concurrent workers
        - Jobs whose next_attempt_at lies in the future are not due
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["UploadJob"]:
        """Full job row, or None if unknown."""

    @abstractmethod
    def get_status(self, job_id: str) -> Optional["JobStatusView"]:
        """Caller-facing status: state, progress, human-readable error."""

    @abstractmethod
    def report_progress(self, job_id: str, uploaded_bytes: int) -> "ProgressAck":
        """Record bytes acknowledged by the platform.

        Implementation notes:
        - A value lower than the recorded one is rejected (accepted=False)
        - A value above total_bytes is clamped
        - The ack carries the cancel_requested flag so the caller can stop
        """

    @abstractmethod
    def complete(self, job_id: str, resource_id: str) -> None:
        """Mark job completed with the remote resource id."""

    @abstractmethod
    def fail(self, job_id: str, error: str, retryable: bool) -> "JobState":
        """Mark job as failed with optional retry.

        Args:
            job_id: Job identifier
            error: Human-readable error message
            retry: If True, re-enqueue with backoff and incremented attempt_count

        Returns:
            The state the job ended up in (queued or failed)
        """

    @abstractmethod
    def requeue(self, job_id: str, delay_s: float, reason: str) -> None:
        """Return an active job to the queue without consuming an attempt."""

    @abstractmethod
    def save_session(self, job_id: str, session_uri: str) -> None:
        """Persist the resume location of the current upload session."""

    @abstractmethod
    def clear_session(self, job_id: str) -> None:
        """Forget the resume location (session expired or discarded)."""

    @abstractmethod
    def record_resource(self, job_id: str, resource_id: str) -> None:
        """Store the remote id as soon as the media upload completes."""

    @abstractmethod
    def mark_thumbnail_done(self, job_id: str) -> None:
        """Remember that the thumbnail step succeeded."""

    @abstractmethod
    def mark_metadata_applied(self, job_id: str, metadata_hash: str) -> None:
        """Remember which metadata was applied remotely."""

    @abstractmethod
    def set_phase(self, job_id: str, phase: str) -> None:
        """Mirror the executor state machine on the job row."""

    @abstractmethod
    def request_cancel(self, job_id: str) -> Optional["JobStatusView"]:
        """Cancel a queued job, or flag an active one for cancellation."""

    @abstractmethod
    def mark_cancelled(self, job_id: str, discard_session: bool) -> None:
        """Terminal transition after the worker observed a cancellation."""

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Refresh the liveness timestamp of an active job."""

    @abstractmethod
    def reset_stale_active(self, timeout_s: int) -> int:
        """Crash recovery: return active jobs without heartbeat to the queue.

        Implementation notes:
        - Must not increment attempt_count
        - Keeps session_uri so the next worker resumes the transfer
        """

    @abstractmethod
    def get_all_jobs(self, state_filter: Optional[str] = None) -> List["UploadJob"]:
        """Query jobs by state (for status commands)."""

    @abstractmethod
    def get_stats(self) -> "QueueStats":
        """Job counts per state."""

    @abstractmethod
    def close(self) -> None:
        """Release storage resources."""


class IdempotencyGuard(ABC):
    """Prevents duplicate uploads of the same submission.

    The guard is the sole writer of idempotency records. reserve() must be a
    conditional create-if-absent so that concurrent reservations for one
    fingerprint serialize: exactly one caller proceeds.
    """

    def fingerprint(
        self,
        account_id: str,
        file_path: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Derive the fingerprint of a submission (caller key first, content hash otherwise)."""
        if idempotency_key:
            return compute_fingerprint(account_id, idempotency_key=idempotency_key)
        return compute_fingerprint(account_id, content_hash=compute_content_hash(file_path))

    @abstractmethod
    def reserve(self, fingerprint: str, job_id: str) -> "Reservation":
        """Claim the fingerprint for job_id.

        Returns:
            proceed            - job_id owns the fingerprint (new or existing claim)
            already_completed  - an upload finished; resource_id is set
            in_progress        - another job holds the claim
        """

    @abstractmethod
    def finalize(self, fingerprint: str, resource_id: str) -> None:
        """Record completion of the upload."""

    @abstractmethod
    def release(self, fingerprint: str, job_id: str) -> bool:
        """Drop an in-progress claim held by job_id so the content can be retried."""
