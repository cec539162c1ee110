"""Pydantic models for configuration."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Resumable chunks must be multiples of 256 KiB (except the last one)
CHUNK_ALIGNMENT = 256 * 1024


class UploadConfig(BaseModel):
    """Chunked upload and platform endpoint settings."""

    chunk_size: int = Field(
        default=8388608, gt=0, description="Bytes per chunk (multiple of 256 KiB)"
    )
    chunk_timeout_s: float = Field(
        default=60.0, gt=0.0, description="Bounded wait for a single chunk request"
    )
    max_resyncs: int = Field(
        default=10, ge=0, description="Offset resynchronisations tolerated per attempt"
    )
    content_type: str = Field(default="video/*", description="Declared upload content type")
    upload_base_url: str = Field(
        default="https://www.googleapis.com/upload/youtube/v3",
        description="Media upload endpoint root",
    )
    api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3", description="Data API endpoint root"
    )
    max_thumbnail_bytes: int = Field(
        default=2 * 1024 * 1024, gt=0, description="Largest thumbnail the platform accepts"
    )

    @field_validator("chunk_size")
    @classmethod
    def chunk_size_aligned(cls, v: int) -> int:
        """Validate that the chunk size is 256 KiB aligned."""
        if v % CHUNK_ALIGNMENT != 0:
            raise ValueError(f"chunk_size ({v}) must be a multiple of {CHUNK_ALIGNMENT}")
        return v


class RetryConfig(BaseModel):
    """Retry budget and exponential backoff."""

    max_attempts: int = Field(default=5, ge=1, description="Attempts per chunk and per job")
    backoff_base_ms: int = Field(default=2000, ge=0, description="First retry delay")
    backoff_max_ms: int = Field(default=300000, ge=0, description="Upper bound for any delay")
    backoff_type: Literal["exponential"] = Field(default="exponential")


class QueueConfig(BaseModel):
    """Durable queue settings."""

    db_path: str = Field(default="publisher.db", description="SQLite database file")
    stale_timeout_s: int = Field(
        default=600, gt=0, description="Active job without heartbeat for this long is reset"
    )


class WorkerConfig(BaseModel):
    """Worker loop settings."""

    workers: int = Field(default=1, ge=1, description="Concurrent worker threads")
    poll_interval_s: float = Field(default=2.0, gt=0.0, description="Idle poll delay")
    heartbeat_interval_s: float = Field(default=30.0, gt=0.0)
    duplicate_requeue_delay_s: float = Field(
        default=30.0, ge=0.0, description="Delay before retrying a job blocked by a duplicate"
    )
    discard_session_on_cancel: bool = Field(
        default=False, description="Forget the resume location when a job is cancelled"
    )


class CredentialsConfig(BaseModel):
    """Credential refresh settings."""

    refresh_skew_s: int = Field(
        default=60, ge=0, description="Refresh tokens this many seconds before expiry"
    )


class PublisherConfig(BaseModel):
    """Complete application configuration with validation."""

    upload: UploadConfig = Field(default_factory=UploadConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PublisherConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PublisherConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "chunk_size" in cli_args:
            config_dict["upload"]["chunk_size"] = cli_args["chunk_size"]
        if "max_attempts" in cli_args:
            config_dict["retry"]["max_attempts"] = cli_args["max_attempts"]
        if "db" in cli_args:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if "workers" in cli_args:
            config_dict["worker"]["workers"] = cli_args["workers"]

        return PublisherConfig.from_dict(config_dict)
