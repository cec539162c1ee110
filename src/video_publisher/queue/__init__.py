"""Durable job queue and idempotency records for resumable uploads."""

from .backends import IdempotencyGuard, JobQueue
from .hashing import compute_content_hash, compute_fingerprint, compute_metadata_hash
from .models import JobState, JobStatusView, UploadJob, UploadPhase, UploadRequest, VideoMetadata
from .sqlite_backend import SQLiteIdempotencyGuard, SQLiteJobQueue, SQLiteStore
from .worker import UploadWorker, UploadWorkerPool

__all__ = [
    "JobQueue",
    "IdempotencyGuard",
    "JobState",
    "JobStatusView",
    "UploadJob",
    "UploadPhase",
    "UploadRequest",
    "VideoMetadata",
    "SQLiteStore",
    "SQLiteJobQueue",
    "SQLiteIdempotencyGuard",
    "compute_content_hash",
    "compute_fingerprint",
    "compute_metadata_hash",
    "UploadWorker",
    "UploadWorkerPool",
]
