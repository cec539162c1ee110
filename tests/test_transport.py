"""Tests for the resumable upload transport and response classification."""

import json

import httpx
import pytest

from video_publisher.models import UploadConfig
from video_publisher.queue.models import VideoMetadata
from video_publisher.upload.platform import VideoApiClient, thumbnail_content_type
from video_publisher.upload.session import OutcomeKind, UploadSession
from video_publisher.upload.transport import (
    ResumableUploadTransport,
    build_video_resource,
    classify_error,
    parse_range_header,
    parse_retry_after,
)

SESSION_URI = "https://www.googleapis.com/upload/youtube/v3/videos?uploadType=resumable&upload_id=abc"


def transport_for(handler) -> ResumableUploadTransport:
    return ResumableUploadTransport.from_config(UploadConfig(), httpx.MockTransport(handler))


def google_error(status, reason):
    return httpx.Response(
        status, json={"error": {"code": status, "message": "nope", "errors": [{"reason": reason}]}}
    )


class TestParsing:
    def test_range_header(self):
        assert parse_range_header("bytes=0-1048575") == 1048576

    def test_missing_range_means_nothing_stored(self):
        assert parse_range_header(None) == 0

    def test_malformed_range(self):
        with pytest.raises(ValueError):
            parse_range_header("bytes 0-10")

    def test_retry_after_seconds(self):
        assert parse_retry_after("7") == 7.0

    def test_retry_after_garbage(self):
        assert parse_retry_after("soon") is None


class TestClassification:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_transient_status(self, status):
        assert classify_error(httpx.Response(status)).kind == OutcomeKind.TRANSIENT

    def test_rate_limit_403_is_transient(self):
        assert classify_error(google_error(403, "rateLimitExceeded")).kind == OutcomeKind.TRANSIENT
        assert classify_error(google_error(403, "userRateLimitExceeded")).kind == OutcomeKind.TRANSIENT

    def test_forbidden_403_is_permanent(self):
        outcome = classify_error(google_error(403, "forbidden"))
        assert outcome.kind == OutcomeKind.PERMANENT
        assert "nope" in outcome.message

    def test_unauthorized(self):
        assert classify_error(httpx.Response(401)).kind == OutcomeKind.UNAUTHORIZED

    def test_session_gone_is_expired(self):
        assert classify_error(httpx.Response(404), session_request=True).kind == OutcomeKind.EXPIRED
        assert classify_error(httpx.Response(410), session_request=True).kind == OutcomeKind.EXPIRED

    def test_not_found_outside_session_is_permanent(self):
        assert classify_error(httpx.Response(404)).kind == OutcomeKind.PERMANENT

    def test_retry_after_honoured(self):
        outcome = classify_error(httpx.Response(429, headers={"Retry-After": "12"}))
        assert outcome.retry_after_s == 12.0


class TestInitiate:
    def test_initiate_request_and_session(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, headers={"Location": SESSION_URI})

        metadata = VideoMetadata(title="Hello", description="d", tags=["a"], visibility="public")
        outcome = transport_for(handler).initiate("tok", 20971520, metadata)

        assert outcome.kind == OutcomeKind.CREATED
        assert outcome.session_uri == SESSION_URI

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/upload/youtube/v3/videos"
        assert request.url.params["uploadType"] == "resumable"
        assert request.url.params["part"] == "snippet,status"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Content-Type"] == "application/json; charset=UTF-8"
        assert request.headers["X-Upload-Content-Length"] == "20971520"
        assert request.headers["X-Upload-Content-Type"] == "video/*"

    def test_initiate_keeps_video_private(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, headers={"Location": SESSION_URI})

        metadata = VideoMetadata(title="Hello", visibility="public")
        transport_for(handler).initiate("tok", 10, metadata)

        body = json.loads(seen[0].content)
        assert body["snippet"]["title"] == "Hello"
        assert body["status"] == {"privacyStatus": "private"}

    def test_initiate_without_location(self):
        outcome = transport_for(lambda r: httpx.Response(200)).initiate("tok", 10, VideoMetadata(title="x"))
        assert outcome.kind == OutcomeKind.PERMANENT


class TestSendChunk:
    def test_chunk_headers_and_accept(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(308, headers={"Range": "bytes=0-262143"})

        session = UploadSession(SESSION_URI, total_bytes=1000000)
        outcome = transport_for(handler).send_chunk(session, 0, b"x" * 262144, False, "tok")

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert outcome.next_offset == 262144
        request = seen[0]
        assert request.method == "PUT"
        assert request.headers["Content-Range"] == "bytes 0-262143/1000000"
        assert request.headers["Content-Length"] == "262144"

    def test_short_range_is_mismatch(self):
        handler = lambda r: httpx.Response(308, headers={"Range": "bytes=0-99999"})  # noqa: E731
        session = UploadSession(SESSION_URI, total_bytes=1000000)

        outcome = transport_for(handler).send_chunk(session, 0, b"x" * 262144, False, "tok")

        assert outcome.kind == OutcomeKind.RANGE_MISMATCH
        assert outcome.next_offset == 100000

    def test_final_chunk_completed(self):
        handler = lambda r: httpx.Response(201, json={"id": "vid-42"})  # noqa: E731
        session = UploadSession(SESSION_URI, total_bytes=10)

        outcome = transport_for(handler).send_chunk(session, 0, b"0123456789", True, "tok")

        assert outcome.kind == OutcomeKind.COMPLETED
        assert outcome.resource_id == "vid-42"

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        session = UploadSession(SESSION_URI, total_bytes=10)
        outcome = transport_for(handler).send_chunk(session, 0, b"0123456789", True, "tok")

        assert outcome.kind == OutcomeKind.TRANSIENT

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        session = UploadSession(SESSION_URI, total_bytes=10)
        outcome = transport_for(handler).send_chunk(session, 0, b"0123456789", True, "tok")

        assert outcome.kind == OutcomeKind.TRANSIENT

    def test_expired_session(self):
        session = UploadSession(SESSION_URI, total_bytes=10)
        outcome = transport_for(lambda r: httpx.Response(404)).send_chunk(session, 0, b"0123456789", True, "tok")
        assert outcome.kind == OutcomeKind.EXPIRED


class TestQueryOffset:
    def test_status_query_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(308, headers={"Range": "bytes=0-524287"})

        session = UploadSession(SESSION_URI, total_bytes=1000000)
        outcome = transport_for(handler).query_offset(session, "tok")

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert outcome.next_offset == 524288
        assert seen[0].headers["Content-Range"] == "bytes */1000000"
        assert seen[0].headers["Content-Length"] == "0"

    def test_nothing_received(self):
        session = UploadSession(SESSION_URI, total_bytes=1000)
        outcome = transport_for(lambda r: httpx.Response(308)).query_offset(session, "tok")
        assert outcome.next_offset == 0


class TestVideoApi:
    def test_metadata_body(self):
        metadata = VideoMetadata(
            title="T",
            description="D",
            tags=["a", "b"],
            publish_at="2030-01-01T10:00:00Z",
            visibility="private",
            category_id="20",
        )

        resource = build_video_resource(metadata, video_id="vid-1")

        assert resource == {
            "id": "vid-1",
            "snippet": {"title": "T", "description": "D", "tags": ["a", "b"], "categoryId": "20"},
            "status": {"privacyStatus": "private", "publishAt": "2030-01-01T10:00:00Z"},
        }

    def test_update_metadata_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "vid-1"})

        api = VideoApiClient.from_config(UploadConfig(), httpx.MockTransport(handler))
        outcome = api.update_metadata("vid-1", "tok", VideoMetadata(title="T"))

        assert outcome.kind == OutcomeKind.COMPLETED
        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/youtube/v3/videos"
        assert seen[0].url.params["part"] == "snippet,status"

    def test_thumbnail_request(self, tmp_path):
        image = tmp_path / "thumb.png"
        image.write_bytes(b"\x89PNG fake")
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        api = VideoApiClient.from_config(UploadConfig(), httpx.MockTransport(handler))
        outcome = api.set_thumbnail("vid-1", "tok", str(image))

        assert outcome.kind == OutcomeKind.COMPLETED
        assert seen[0].url.path == "/upload/youtube/v3/thumbnails/set"
        assert seen[0].url.params["videoId"] == "vid-1"
        assert seen[0].headers["Content-Type"] == "image/png"
        assert seen[0].content == b"\x89PNG fake"

    def test_thumbnail_content_type(self):
        assert thumbnail_content_type("a.JPG") == "image/jpeg"
        assert thumbnail_content_type("a.jpeg") == "image/jpeg"
