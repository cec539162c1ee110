"""Resumable upload chunk transport (YouTube Data API v3 protocol).

Protocol:
    1. POST {upload_base_url}/videos?uploadType=resumable&part=snippet,status
       declares X-Upload-Content-Length / X-Upload-Content-Type; the
       Location response header is the session URI.
    2. PUT <session URI> with "Content-Range: bytes first-last/total" per chunk.
       308 Resume Incomplete + "Range: bytes=0-N" means the server holds
       bytes 0..N and expects N+1 next (no Range header: nothing stored).
       200/201 carries the created video resource (JSON "id").
    3. PUT <session URI> with "Content-Range: bytes */total" and an empty body
       queries the current offset of an interrupted session.

Every request returns a TransferOutcome tagged by kind; the transport never
retries, the caller's retry loop decides what to do.

Dependencies:
    - httpx: sync HTTP client; redirects are NOT followed (308 is the resume signal)
"""

import email.utils
import re
from typing import Any, Dict, Optional, Union

import httpx
import structlog

from ..models import UploadConfig
from ..queue.models import VideoMetadata, Visibility, utcnow
from .session import OutcomeKind, TransferOutcome, UploadSession

log = structlog.get_logger(__name__)

RESUME_INCOMPLETE = 308
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
SESSION_GONE_STATUS_CODES = {404, 410}

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d+)$")


def parse_range_header(value: Optional[str]) -> int:
    """Next expected offset from a 308 Range header ("bytes=0-1048575" -> 1048576)."""
    if not value:
        return 0
    match = _RANGE_RE.match(value.strip())
    if not match:
        raise ValueError(f"Malformed Range header: {value!r}")
    return int(match.group(2)) + 1


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max((when - utcnow()).total_seconds(), 0.0)


def build_video_resource(
    metadata: VideoMetadata,
    video_id: Optional[str] = None,
    privacy_override: Optional[str] = None,
) -> Dict[str, Any]:
    """Video resource body for insert/update calls."""
    resource: Dict[str, Any] = {
        "snippet": {
            "title": metadata.title,
            "description": metadata.description,
            "tags": list(metadata.tags),
            "categoryId": metadata.category_id,
        },
        "status": {"privacyStatus": privacy_override or metadata.visibility},
    }
    if video_id is not None:
        resource["id"] = video_id
    publish_at = metadata.publish_at_rfc3339()
    if publish_at and privacy_override is None:
        resource["status"]["publishAt"] = publish_at
    return resource


def _error_details(response: httpx.Response) -> tuple:
    """(reason, message) from the platform's JSON error envelope."""
    try:
        payload = response.json()
    except ValueError:
        return None, response.reason_phrase or "no details"

    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None, response.reason_phrase or "no details"

    reasons = [e.get("reason") for e in error.get("errors", []) if isinstance(e, dict)]
    return (reasons[0] if reasons else None), error.get("message") or response.reason_phrase


def classify_error(response: httpx.Response, session_request: bool = False) -> TransferOutcome:
    """Map a non-success response to a tagged outcome."""
    status = response.status_code
    reason, detail = _error_details(response)

    if status == 401:
        return TransferOutcome(
            kind=OutcomeKind.UNAUTHORIZED,
            status_code=status,
            message="Platform rejected the access token",
        )

    if status in TRANSIENT_STATUS_CODES or (status == 403 and reason in RATE_LIMIT_REASONS):
        return TransferOutcome(
            kind=OutcomeKind.TRANSIENT,
            status_code=status,
            message=f"Platform temporarily unavailable (HTTP {status}): {detail}",
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        )

    if session_request and status in SESSION_GONE_STATUS_CODES:
        return TransferOutcome(
            kind=OutcomeKind.EXPIRED,
            status_code=status,
            message="Upload session expired",
        )

    return TransferOutcome(
        kind=OutcomeKind.PERMANENT,
        status_code=status,
        message=f"Platform rejected the request (HTTP {status}): {detail}",
    )


def _completed(response: httpx.Response) -> TransferOutcome:
    try:
        body = response.json()
    except ValueError:
        body = {}
    resource_id = body.get("id") if isinstance(body, dict) else None
    if not resource_id:
        return TransferOutcome(
            kind=OutcomeKind.PERMANENT,
            status_code=response.status_code,
            message="Platform reported success without a video id",
        )
    return TransferOutcome(
        kind=OutcomeKind.COMPLETED,
        status_code=response.status_code,
        resource_id=resource_id,
        body=body,
    )


class PlatformHttpClient:
    """Shared httpx plumbing: auth header, network error mapping, close()."""

    def __init__(self, client: httpx.Client):
        self.client = client

    def _request(
        self, method: str, url: str, access_token: str, **kwargs
    ) -> Union[httpx.Response, TransferOutcome]:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {access_token}"
        try:
            return self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException:
            return TransferOutcome(kind=OutcomeKind.TRANSIENT, message="Request to platform timed out")
        except httpx.TransportError as e:
            return TransferOutcome(
                kind=OutcomeKind.TRANSIENT,
                message=f"Network error talking to platform ({type(e).__name__})",
            )

    def close(self) -> None:
        self.client.close()


def build_http_client(config: UploadConfig, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """httpx client with the bounded per-request wait used for chunk calls."""
    return httpx.Client(
        timeout=httpx.Timeout(config.chunk_timeout_s),
        follow_redirects=False,
        transport=transport,
    )


class ResumableUploadTransport(PlatformHttpClient):
    """Performs single requests of the resumable upload protocol.

    Example:
        >>> transport = ResumableUploadTransport(build_http_client(cfg), cfg.upload_base_url)
        >>> outcome = transport.initiate(token, total_bytes, metadata)
        >>> session = UploadSession(outcome.session_uri, total_bytes)
    """

    def __init__(self, client: httpx.Client, upload_base_url: str, content_type: str = "video/*"):
        super().__init__(client)
        self.upload_base_url = upload_base_url.rstrip("/")
        self.content_type = content_type

    @classmethod
    def from_config(
        cls, config: UploadConfig, transport: Optional[httpx.BaseTransport] = None
    ) -> "ResumableUploadTransport":
        return cls(build_http_client(config, transport), config.upload_base_url, config.content_type)

    def initiate(self, access_token: str, total_bytes: int, metadata: VideoMetadata) -> TransferOutcome:
        """Open a resumable session. The video stays private until finalization."""
        response = self._request(
            "POST",
            f"{self.upload_base_url}/videos",
            access_token,
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                "Content-Type": "application/json; charset=UTF-8",
                "X-Upload-Content-Length": str(total_bytes),
                "X-Upload-Content-Type": self.content_type,
            },
            json=build_video_resource(metadata, privacy_override=Visibility.PRIVATE.value),
        )
        if isinstance(response, TransferOutcome):
            return response

        if response.status_code in (200, 201):
            location = response.headers.get("Location")
            if not location:
                return TransferOutcome(
                    kind=OutcomeKind.PERMANENT,
                    status_code=response.status_code,
                    message="Platform did not return an upload session location",
                )
            return TransferOutcome(
                kind=OutcomeKind.CREATED, status_code=response.status_code, session_uri=location
            )

        return classify_error(response)

    def query_offset(self, session: UploadSession, access_token: str) -> TransferOutcome:
        """Ask the platform how much of an interrupted session it holds."""
        response = self._request(
            "PUT",
            session.session_uri,
            access_token,
            headers={"Content-Length": "0", "Content-Range": f"bytes */{session.total_bytes}"},
            content=b"",
        )
        if isinstance(response, TransferOutcome):
            return response

        if response.status_code in (200, 201):
            return _completed(response)

        if response.status_code == RESUME_INCOMPLETE:
            return self._offset_outcome(response, OutcomeKind.ACCEPTED)

        return classify_error(response, session_request=True)

    def send_chunk(
        self,
        session: UploadSession,
        offset: int,
        data: bytes,
        is_final: bool,
        access_token: str,
    ) -> TransferOutcome:
        """Send bytes [offset, offset+len(data)) of the file.

        Returns accepted(next_offset) when the server now expects exactly the
        byte after this chunk, range_mismatch(server_offset) when it reports
        anything else, completed(resource_id) on the final response.
        """
        last = offset + len(data) - 1
        response = self._request(
            "PUT",
            session.session_uri,
            access_token,
            headers={"Content-Range": f"bytes {offset}-{last}/{session.total_bytes}"},
            content=data,
        )
        if isinstance(response, TransferOutcome):
            return response

        if response.status_code in (200, 201):
            return _completed(response)

        if response.status_code == RESUME_INCOMPLETE:
            outcome = self._offset_outcome(response, OutcomeKind.ACCEPTED)
            if outcome.kind == OutcomeKind.ACCEPTED and outcome.next_offset != last + 1:
                outcome.kind = OutcomeKind.RANGE_MISMATCH
                outcome.message = (
                    f"Server expects offset {outcome.next_offset}, client sent {offset}-{last}"
                )
            if is_final and outcome.kind == OutcomeKind.ACCEPTED:
                log.warning("final_chunk_not_finalized", session_uri=session.session_uri)
            return outcome

        return classify_error(response, session_request=True)

    def _offset_outcome(self, response: httpx.Response, kind: OutcomeKind) -> TransferOutcome:
        try:
            next_offset = parse_range_header(response.headers.get("Range"))
        except ValueError as e:
            return TransferOutcome(
                kind=OutcomeKind.TRANSIENT, status_code=response.status_code, message=str(e)
            )
        return TransferOutcome(kind=kind, status_code=response.status_code, next_offset=next_offset)
