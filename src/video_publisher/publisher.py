"""Submission front door and worker assembly.

This module provides the higher-level API on top of the queue:
validation, fingerprinting and deduplication of submissions, status and
cancellation, and the wiring that builds a ready-to-run worker.

Usage:
    # Submit
    with Publisher.open(config) as publisher:
        result = publisher.submit(request)

    # Process
    worker = build_worker(config, "worker-1")
    worker.run(exit_when_idle=True)
    worker.close()
"""

import os
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

import httpx
import structlog

from .credentials import CredentialProvider, SQLiteCredentialStore, TokenRefresher
from .errors import ValidationError
from .models import CHUNK_ALIGNMENT, PublisherConfig
from .queue.models import (
    JobState,
    JobStatusView,
    ReservationOutcome,
    SubmissionResult,
    UploadJob,
    UploadRequest,
    utcnow,
)
from .queue.sqlite_backend import SQLiteIdempotencyGuard, SQLiteJobQueue, SQLiteStore
from .queue.worker import UploadWorker
from .upload.executor import UploadExecutor
from .upload.platform import THUMBNAIL_CONTENT_TYPES, VideoApiClient
from .upload.transport import ResumableUploadTransport

log = structlog.get_logger(__name__)

# Owner states whose reservation no longer protects anything
ABANDONED_STATES = (JobState.FAILED.value, JobState.CANCELLED.value)

# A reservation whose job row has not appeared yet may belong to a submission
# that is between reserve() and enqueue()
ORPHAN_GRACE_S = 30


class Publisher:
    """Accepts upload requests and answers status inquiries."""

    def __init__(
        self,
        queue: SQLiteJobQueue,
        guard: SQLiteIdempotencyGuard,
        config: Optional[PublisherConfig] = None,
    ):
        self.queue = queue
        self.guard = guard
        self.config = config or PublisherConfig()

    @classmethod
    def open(cls, config: PublisherConfig) -> "Publisher":
        store = SQLiteStore(config.queue.db_path)
        return cls(SQLiteJobQueue(store, config.retry), SQLiteIdempotencyGuard(store), config)

    def submit(self, request: UploadRequest) -> SubmissionResult:
        """Validate, deduplicate and enqueue a request.

        A request whose fingerprint already completed returns the original
        resource without enqueueing; one whose fingerprint is held by a live
        job returns that job. Neither counts as an error.

        Raises:
            ValidationError: Unusable file, thumbnail or options
        """
        chunk_size = request.chunk_size or self.config.upload.chunk_size
        if chunk_size % CHUNK_ALIGNMENT != 0:
            raise ValidationError(f"chunkSize must be a multiple of {CHUNK_ALIGNMENT} bytes")
        max_attempts = request.max_attempts or self.config.retry.max_attempts

        total_bytes = self._check_source(request.file_path)
        if request.thumbnail_path:
            self._check_thumbnail(request.thumbnail_path)

        try:
            fingerprint = self.guard.fingerprint(
                request.account_id, request.file_path, request.idempotency_key
            )
        except (OSError, ValueError) as e:
            raise ValidationError(f"Cannot read video file: {e}") from e

        job_id = str(uuid.uuid4())
        reservation = self._reserve(fingerprint, job_id)

        if reservation.outcome == ReservationOutcome.ALREADY_COMPLETED.value:
            log.info("submission_duplicate", job_id=reservation.job_id, resource_id=reservation.resource_id)
            return SubmissionResult(
                job_id=reservation.job_id,
                state=JobState.COMPLETED.value,
                duplicate=True,
                resource_id=reservation.resource_id,
            )

        if reservation.outcome == ReservationOutcome.IN_PROGRESS.value:
            owner = self.queue.get_job(reservation.job_id)
            log.info("submission_in_progress", job_id=reservation.job_id)
            return SubmissionResult(
                job_id=reservation.job_id,
                state=owner.state if owner else JobState.QUEUED.value,
                duplicate=True,
            )

        job = UploadJob(
            job_id=job_id,
            account_id=request.account_id,
            source_path=str(Path(request.file_path).resolve()),
            thumbnail_path=request.thumbnail_path,
            metadata=request.metadata,
            fingerprint=fingerprint,
            total_bytes=total_bytes,
            chunk_size=chunk_size,
            max_attempts=max_attempts,
        )
        self.queue.enqueue(job)
        return SubmissionResult(job_id=job_id, state=JobState.QUEUED.value)

    def get_status(self, job_id: str) -> Optional[JobStatusView]:
        return self.queue.get_status(job_id)

    def cancel(self, job_id: str) -> Optional[JobStatusView]:
        """Cancel a job. Queued jobs are cancelled at once, active ones between chunks."""
        job = self.queue.get_job(job_id)
        if job is None:
            return None

        status = self.queue.request_cancel(job_id)
        if status is not None and status.state == JobState.CANCELLED.value and not job.resource_id:
            self.guard.release(job.fingerprint, job_id)
        log.info("cancel_requested", job_id=job_id, state=status.state if status else None)
        return status

    def close(self) -> None:
        self.queue.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _reserve(self, fingerprint: str, job_id: str):
        """Reserve the fingerprint, reclaiming it from a dead or given-up owner."""
        reservation = self.guard.reserve(fingerprint, job_id)
        if reservation.outcome != ReservationOutcome.IN_PROGRESS.value:
            return reservation

        owner = self.queue.get_job(reservation.job_id)
        if owner is not None and owner.state not in ABANDONED_STATES:
            return reservation
        if owner is None and not self._is_orphaned(fingerprint):
            return reservation

        log.warning("stale_reservation_released", fingerprint=fingerprint[:12], owner=reservation.job_id)
        self.guard.release(fingerprint, reservation.job_id)
        return self.guard.reserve(fingerprint, job_id)

    def _is_orphaned(self, fingerprint: str) -> bool:
        record = self.guard.get_record(fingerprint)
        if record is None:
            return True
        return record.created_at < utcnow() - timedelta(seconds=ORPHAN_GRACE_S)

    def _check_source(self, file_path: str) -> int:
        path = Path(file_path)
        if not path.is_file():
            raise ValidationError(f"Video file not found: {file_path}")
        if not os.access(path, os.R_OK):
            raise ValidationError(f"Cannot read video file: {file_path}")
        size = path.stat().st_size
        if size == 0:
            raise ValidationError(f"Video file is empty: {file_path}")
        return size

    def _check_thumbnail(self, thumbnail_path: str) -> None:
        path = Path(thumbnail_path)
        if not path.is_file():
            raise ValidationError(f"Thumbnail not found: {thumbnail_path}")
        if path.suffix.lower() not in THUMBNAIL_CONTENT_TYPES:
            raise ValidationError("Thumbnail must be a JPEG or PNG image")
        if path.stat().st_size > self.config.upload.max_thumbnail_bytes:
            raise ValidationError(
                f"Thumbnail exceeds {self.config.upload.max_thumbnail_bytes} bytes"
            )


def build_worker(
    config: PublisherConfig,
    worker_id: str,
    http_transport: Optional[httpx.BaseTransport] = None,
    refresher: Optional[TokenRefresher] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> UploadWorker:
    """Wire one worker with its own database connection and HTTP clients.

    Args:
        config: Resolved configuration
        worker_id: Identifier recorded on claimed jobs
        http_transport: httpx transport override (tests pass a MockTransport)
        refresher: Token refresher (default: expired credentials are rejected)
        sleep: Backoff sleep (tests pass a no-op)
    """
    store = SQLiteStore(config.queue.db_path)
    queue = SQLiteJobQueue(store, config.retry)
    guard = SQLiteIdempotencyGuard(store)
    credentials = CredentialProvider(
        SQLiteCredentialStore(store), refresher, config.credentials.refresh_skew_s
    )
    transport = ResumableUploadTransport.from_config(config.upload, http_transport)
    api = VideoApiClient.from_config(config.upload, http_transport)
    executor = UploadExecutor(
        transport, api, credentials, queue, guard, config.upload, config.retry, sleep=sleep
    )

    def close():
        transport.close()
        api.close()
        store.close()

    return UploadWorker(queue, executor, guard, config.worker, worker_id, on_close=close)
