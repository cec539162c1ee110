"""Resumable upload protocol client and executor."""

from .session import OutcomeKind, TransferOutcome, UploadSession
from .transport import ResumableUploadTransport
from .platform import VideoApiClient
from .executor import UploadExecutor, UploadResult

__all__ = [
    "OutcomeKind",
    "TransferOutcome",
    "UploadSession",
    "ResumableUploadTransport",
    "VideoApiClient",
    "UploadExecutor",
    "UploadResult",
]
