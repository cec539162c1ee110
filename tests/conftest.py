import json
import re
import threading
from pathlib import Path

import httpx
import pytest
import structlog
from httpx import ASGITransport, AsyncClient

from video_publisher.api.main import create_app
from video_publisher.credentials import Credential, CredentialProvider, SQLiteCredentialStore
from video_publisher.models import PublisherConfig, RetryConfig, UploadConfig
from video_publisher.publisher import Publisher
from video_publisher.queue.models import UploadRequest, VideoMetadata
from video_publisher.queue.sqlite_backend import SQLiteIdempotencyGuard, SQLiteJobQueue, SQLiteStore
from video_publisher.upload.executor import UploadExecutor
from video_publisher.upload.platform import VideoApiClient
from video_publisher.upload.transport import ResumableUploadTransport

UPLOAD_BASE = "https://www.googleapis.com/upload/youtube/v3"
API_BASE = "https://www.googleapis.com/youtube/v3"
KIB256 = 256 * 1024
ACCOUNT = "channel-1"
TOKEN = "tok-1"


def _error(status: int, reason: str = "backendError", headers=None) -> httpx.Response:
    return httpx.Response(
        status,
        headers=headers or {},
        json={"error": {"code": status, "message": f"fake {reason}", "errors": [{"reason": reason}]}},
    )


class FakeYouTubeServer:
    """In-process stand-in for the resumable upload endpoints.

    Fault injection:
        faults[offset]          status codes (or (status, headers)) answered to
                                chunk requests starting at offset, in order
        lose_bytes[offset]      bytes of that chunk the server "forgets"
        initiate_faults         status codes answered to initiation requests
        thumbnail_faults / metadata_faults
        expired                 upload ids answered with 404
        valid_tokens            anything else gets 401
    """

    def __init__(self):
        self.sessions = {}
        self.requests = []
        self.chunk_requests = []
        self.status_queries = 0
        self.initiations = []
        self.faults = {}
        self.lose_bytes = {}
        self.initiate_faults = []
        self.thumbnail_faults = []
        self.metadata_faults = []
        self.expired = set()
        self.valid_tokens = {TOKEN}
        self.thumbnails = {}
        self.metadata_updates = []
        self._videos = 0
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        # Worker pool tests call in from several threads
        with self._lock:
            return self._dispatch(request)

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        auth = request.headers.get("Authorization", "")
        if auth.removeprefix("Bearer ") not in self.valid_tokens:
            return _error(401, "authError")

        path = request.url.path
        if request.method == "POST" and path == "/upload/youtube/v3/videos":
            return self._initiate(request)
        if request.method == "PUT" and path == "/upload/youtube/v3/videos":
            return self._session_put(request)
        if request.method == "POST" and path == "/upload/youtube/v3/thumbnails/set":
            return self._thumbnail(request)
        if request.method == "PUT" and path == "/youtube/v3/videos":
            return self._metadata(request)
        return _error(404, "notFound")

    @property
    def chunk_calls(self) -> int:
        return len(self.chunk_requests)

    def stored_bytes(self, upload_id: str) -> bytes:
        return bytes(self.sessions[upload_id]["data"])

    def _initiate(self, request):
        if self.initiate_faults:
            return self._fault(self.initiate_faults.pop(0))
        upload_id = f"sess-{len(self.sessions) + 1}"
        self.sessions[upload_id] = {
            "total": int(request.headers["X-Upload-Content-Length"]),
            "data": bytearray(),
            "video_id": None,
        }
        self.initiations.append(request)
        return httpx.Response(
            200, headers={"Location": f"{UPLOAD_BASE}/videos?uploadType=resumable&upload_id={upload_id}"}
        )

    def _session_put(self, request):
        upload_id = request.url.params.get("upload_id")
        if upload_id in self.expired or upload_id not in self.sessions:
            return _error(404, "notFound")
        session = self.sessions[upload_id]

        content_range = request.headers["Content-Range"]
        if content_range.startswith("bytes */"):
            self.status_queries += 1
            return self._progress(session)

        self.chunk_requests.append(request)
        first, last, _ = (int(v) for v in re.match(r"bytes (\d+)-(\d+)/(\d+)", content_range).groups())

        pending = self.faults.get(first)
        if pending:
            return self._fault(pending.pop(0))

        if first != len(session["data"]):
            return self._progress(session)

        body = request.content
        assert len(body) == last - first + 1
        keep = len(body) - self.lose_bytes.pop(first, 0)
        session["data"] += body[:keep]

        if len(session["data"]) == session["total"]:
            self._videos += 1
            session["video_id"] = f"vid-{self._videos}"
        return self._progress(session)

    def _progress(self, session):
        if session["video_id"]:
            return httpx.Response(200, json={"kind": "youtube#video", "id": session["video_id"]})
        stored = len(session["data"])
        headers = {"Range": f"bytes=0-{stored - 1}"} if stored else {}
        return httpx.Response(308, headers=headers)

    def _thumbnail(self, request):
        if self.thumbnail_faults:
            return self._fault(self.thumbnail_faults.pop(0))
        self.thumbnails[request.url.params["videoId"]] = (request.headers["Content-Type"], request.content)
        return httpx.Response(200, json={"items": [{"default": {}}]})

    def _metadata(self, request):
        if self.metadata_faults:
            return self._fault(self.metadata_faults.pop(0))
        body = json.loads(request.content)
        self.metadata_updates.append(body)
        return httpx.Response(200, json=body)

    def _fault(self, fault):
        if isinstance(fault, tuple):
            status, headers = fault
        else:
            status, headers = fault, {}
        reason = "rateLimitExceeded" if status == 403 else "backendError"
        return _error(status, reason, headers)


def write_video(path: Path, size: int, seed: int = 0) -> Path:
    """Deterministic file content; different seeds give different content."""
    pattern = bytes([seed % 256]) + bytes(range(256))
    data = (pattern * (size // len(pattern) + 1))[:size]
    path.write_bytes(data)
    return path


@pytest.fixture
def temp_db(tmp_path):
    return str(tmp_path / "publisher.db")


@pytest.fixture
def store(temp_db):
    store = SQLiteStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def queue(store):
    # Zero backoff: redelivered jobs are due immediately
    return SQLiteJobQueue(store, RetryConfig(backoff_base_ms=0, backoff_max_ms=0))


@pytest.fixture
def guard(store):
    return SQLiteIdempotencyGuard(store)


@pytest.fixture
def credential_store(store):
    credential_store = SQLiteCredentialStore(store)
    credential_store.save(Credential(account_id=ACCOUNT, access_token=TOKEN))
    return credential_store


@pytest.fixture
def credentials(credential_store):
    return CredentialProvider(credential_store)


@pytest.fixture
def upload_config():
    return UploadConfig(chunk_size=KIB256)


@pytest.fixture
def config(temp_db, upload_config):
    return PublisherConfig(
        upload=upload_config,
        retry=RetryConfig(backoff_base_ms=0, backoff_max_ms=0),
        queue={"db_path": temp_db},
        worker={"poll_interval_s": 0.01, "heartbeat_interval_s": 0.05, "duplicate_requeue_delay_s": 0},
    )


@pytest.fixture
def publisher(queue, guard, config):
    return Publisher(queue, guard, config)


@pytest.fixture
def server():
    return FakeYouTubeServer()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_executor(server, credentials, queue, guard, upload_config, sleeps):
    """Build an executor talking to the fake server; sleeps are recorded, not slept."""
    clients = []

    def factory(upload_cfg=None, retry_cfg=None, provider=None):
        upload_cfg = upload_cfg or upload_config
        transport = ResumableUploadTransport.from_config(upload_cfg, httpx.MockTransport(server))
        api = VideoApiClient.from_config(upload_cfg, httpx.MockTransport(server))
        clients.extend([transport, api])
        return UploadExecutor(
            transport,
            api,
            provider or credentials,
            queue,
            guard,
            upload_cfg,
            retry_cfg or RetryConfig(max_attempts=5),
            sleep=sleeps.append,
        )

    yield factory

    for client in clients:
        client.close()


@pytest.fixture
def video(tmp_path):
    """Factory: write a video of ``size`` bytes and return its path."""

    def factory(size: int, name: str = "video.mp4", seed: int = 0) -> str:
        return str(write_video(tmp_path / name, size, seed))

    return factory


@pytest.fixture
def submit(publisher):
    """Factory: submit a request and return the SubmissionResult."""

    def factory(file_path: str, **kwargs):
        metadata = kwargs.pop("metadata", None) or VideoMetadata(title="Test upload", tags=["test"])
        request = UploadRequest(account_id=kwargs.pop("account_id", ACCOUNT), file_path=file_path, metadata=metadata, **kwargs)
        return publisher.submit(request)

    return factory


@pytest.fixture
async def client(publisher):
    app = create_app(publisher=publisher)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def reset_logging():
    # CLI tests configure structlog against a captured stderr that is closed afterwards
    yield
    structlog.reset_defaults()
