"""Upload session and tagged transfer outcomes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..queue.models import utcnow


@dataclass
class UploadSession:
    """One in-progress resumable transfer.

    ``session_uri`` is the opaque resume location handed out by the platform.
    Exactly one session exists per job; it is replaced when the platform
    reports it expired.
    """

    session_uri: str
    total_bytes: int
    next_offset: int = 0
    created_at: datetime = field(default_factory=utcnow)


class OutcomeKind(str, Enum):
    CREATED = "created"  # Session initiated
    ACCEPTED = "accepted"  # Server expects next_offset next
    RANGE_MISMATCH = "range_mismatch"  # Server offset differs from ours
    COMPLETED = "completed"  # Final response carrying the resource id
    TRANSIENT = "transient"  # Network, timeout, 429, 5xx
    PERMANENT = "permanent"  # Other 4xx, malformed request
    EXPIRED = "expired"  # Session URI no longer valid
    UNAUTHORIZED = "unauthorized"  # Bearer token rejected


@dataclass
class TransferOutcome:
    """Result of one request against the platform, tagged by ``kind``."""

    kind: OutcomeKind
    next_offset: Optional[int] = None
    resource_id: Optional[str] = None
    session_uri: Optional[str] = None
    status_code: Optional[int] = None
    message: str = ""
    retry_after_s: Optional[float] = None
    body: Dict[str, Any] = field(default_factory=dict)
