"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time; all stored timestamps use it."""
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Job lifecycle states.

    State transitions:
        queued → active       (worker dequeues)
        active → completed    (upload + finalization done)
        active → queued       (retryable failure, crash recovery, duplicate wait)
        active → failed       (permanent error or attempts exhausted)
        queued → cancelled    (cancel before pickup)
        active → cancelled    (cancel observed between chunks)
        failed → queued       (manual retry)
    """

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (JobState.COMPLETED.value, JobState.FAILED.value, JobState.CANCELLED.value)


class UploadPhase(str, Enum):
    """Upload executor state machine, mirrored on the job row."""

    INITIATING = "initiating"
    UPLOADING = "uploading"
    RETRYING = "retrying"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class Visibility(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class VideoMetadata(BaseModel):
    """Title, description, tags, schedule and visibility of a video."""

    model_config = ConfigDict(use_enum_values=True)

    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=5000)
    tags: List[str] = Field(default_factory=list)
    publish_at: Optional[datetime] = Field(default=None, description="Scheduled publish time")
    visibility: Visibility = Field(default=Visibility.PRIVATE)
    category_id: str = Field(default="22", description="Platform category id")

    @model_validator(mode="after")
    def scheduled_videos_are_private(self) -> "VideoMetadata":
        """The platform only schedules videos that stay private until publish time."""
        if self.publish_at is not None and self.visibility != Visibility.PRIVATE.value:
            raise ValueError("a scheduled publish time requires visibility 'private'")
        return self

    def publish_at_rfc3339(self) -> Optional[str]:
        if self.publish_at is None:
            return None
        when = self.publish_at
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class UploadRequest(BaseModel):
    """Validated submission payload."""

    account_id: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    thumbnail_path: Optional[str] = None
    metadata: VideoMetadata
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=200)
    chunk_size: Optional[int] = Field(default=None, gt=0, description="Per-job override")
    max_attempts: Optional[int] = Field(default=None, ge=1, description="Per-job override")


class UploadJob(BaseModel):
    """One requested upload as stored in the queue."""

    model_config = ConfigDict(use_enum_values=True)

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    account_id: str
    source_path: str
    thumbnail_path: Optional[str] = None
    metadata: VideoMetadata
    fingerprint: str = Field(..., description="Idempotency fingerprint")
    total_bytes: int = Field(..., gt=0)
    uploaded_bytes: int = Field(default=0, ge=0)
    chunk_size: int = Field(..., gt=0)
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    state: JobState = Field(default=JobState.QUEUED)
    phase: Optional[UploadPhase] = None
    session_uri: Optional[str] = None
    session_created_at: Optional[datetime] = None
    resource_id: Optional[str] = None
    thumbnail_done: bool = False
    metadata_hash: Optional[str] = Field(default=None, description="Hash of metadata applied remotely")
    cancel_requested: bool = False
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    worker_id: Optional[str] = None


class ProgressAck(BaseModel):
    """Queue-side answer to a progress report."""

    job_id: str
    accepted: bool = Field(..., description="False when the value was lower than recorded")
    uploaded_bytes: int = Field(..., ge=0, description="Value now recorded")
    cancel_requested: bool = False


class ProgressView(BaseModel):
    bytes_uploaded: int
    total_bytes: int
    percent: float


class JobStatusView(BaseModel):
    """What status inquiries return to callers."""

    id: str
    state: str
    phase: Optional[str] = None
    progress: ProgressView
    error: Optional[str] = None
    resource_id: Optional[str] = None
    attempts: int = 0

    @classmethod
    def from_job(cls, job: UploadJob) -> "JobStatusView":
        percent = round(100.0 * job.uploaded_bytes / job.total_bytes, 2)
        return cls(
            id=job.job_id,
            state=job.state,
            phase=job.phase,
            progress=ProgressView(
                bytes_uploaded=job.uploaded_bytes,
                total_bytes=job.total_bytes,
                percent=percent,
            ),
            error=job.last_error if job.state != JobState.COMPLETED.value else None,
            resource_id=job.resource_id,
            attempts=job.attempt_count,
        )


class ReservationState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ReservationOutcome(str, Enum):
    PROCEED = "proceed"
    ALREADY_COMPLETED = "already_completed"
    IN_PROGRESS = "in_progress"


class IdempotencyRecord(BaseModel):
    """Fingerprint → remote resource mapping."""

    model_config = ConfigDict(use_enum_values=True)

    fingerprint: str
    job_id: str = Field(..., description="Job that owns the reservation")
    state: ReservationState = ReservationState.IN_PROGRESS
    resource_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Reservation(BaseModel):
    """Result of IdempotencyGuard.reserve()."""

    model_config = ConfigDict(use_enum_values=True)

    outcome: ReservationOutcome
    fingerprint: str
    job_id: str = Field(..., description="Owning job")
    resource_id: Optional[str] = None


class SubmissionResult(BaseModel):
    """Returned to the front-end on submission."""

    job_id: str
    state: str
    duplicate: bool = False
    resource_id: Optional[str] = None


class StateTransition(BaseModel):
    """Audit log entry for job state changes.

    Tracks all state transitions for debugging.
    """

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class QueueStats(BaseModel):
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: Dict[str, int]) -> "QueueStats":
        return cls(total=sum(counts.values()), **counts)
