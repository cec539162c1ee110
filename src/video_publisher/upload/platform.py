"""Post-upload video API calls: thumbnail and metadata update."""

import mimetypes
from pathlib import Path
from typing import Optional

import httpx

from ..models import UploadConfig
from ..queue.models import VideoMetadata
from .session import OutcomeKind, TransferOutcome
from .transport import PlatformHttpClient, build_http_client, build_video_resource, classify_error

THUMBNAIL_CONTENT_TYPES = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png"}


def thumbnail_content_type(path: str) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in THUMBNAIL_CONTENT_TYPES:
        return THUMBNAIL_CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


class VideoApiClient(PlatformHttpClient):
    """Thumbnail and metadata endpoints of the platform API."""

    def __init__(self, client: httpx.Client, upload_base_url: str, api_base_url: str):
        super().__init__(client)
        self.upload_base_url = upload_base_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")

    @classmethod
    def from_config(
        cls, config: UploadConfig, transport: Optional[httpx.BaseTransport] = None
    ) -> "VideoApiClient":
        return cls(build_http_client(config, transport), config.upload_base_url, config.api_base_url)

    def set_thumbnail(self, video_id: str, access_token: str, image_path: str) -> TransferOutcome:
        data = Path(image_path).read_bytes()
        response = self._request(
            "POST",
            f"{self.upload_base_url}/thumbnails/set",
            access_token,
            params={"videoId": video_id},
            headers={"Content-Type": thumbnail_content_type(image_path)},
            content=data,
        )
        return self._done_or_error(response, video_id)

    def update_metadata(
        self, video_id: str, access_token: str, metadata: VideoMetadata
    ) -> TransferOutcome:
        """Apply title, description, tags, visibility and schedule."""
        response = self._request(
            "PUT",
            f"{self.api_base_url}/videos",
            access_token,
            params={"part": "snippet,status"},
            json=build_video_resource(metadata, video_id=video_id),
        )
        return self._done_or_error(response, video_id)

    def _done_or_error(self, response, video_id: str) -> TransferOutcome:
        if isinstance(response, TransferOutcome):
            return response
        if response.status_code in (200, 201):
            return TransferOutcome(
                kind=OutcomeKind.COMPLETED, status_code=response.status_code, resource_id=video_id
            )
        return classify_error(response)
