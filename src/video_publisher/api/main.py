from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from video_publisher.config import resolve_config
from video_publisher.errors import ValidationError
from video_publisher.models import PublisherConfig
from video_publisher.publisher import Publisher
from video_publisher.queue.models import JobStatusView, QueueStats, UploadRequest, VideoMetadata

log = structlog.get_logger(__name__)


# --- Pydantic Models for Requests/Responses ---
class MetadataIn(BaseModel):
    title: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    publishAt: datetime | None = None  # noqa: N815
    visibility: str = "private"
    categoryId: str | None = None  # noqa: N815


class PublishOptions(BaseModel):
    chunkSize: int | None = None  # noqa: N815
    maxAttempts: int | None = None  # noqa: N815


class PublishRequest(BaseModel):
    accountId: str  # noqa: N815
    filePath: str  # noqa: N815
    thumbnailPath: str | None = None  # noqa: N815
    metadata: MetadataIn
    idempotencyKey: str | None = None  # noqa: N815
    options: PublishOptions | None = None

    def to_upload_request(self) -> UploadRequest:
        metadata = {
            "title": self.metadata.title,
            "description": self.metadata.description,
            "tags": self.metadata.tags,
            "publish_at": self.metadata.publishAt,
            "visibility": self.metadata.visibility,
        }
        if self.metadata.categoryId:
            metadata["category_id"] = self.metadata.categoryId
        options = self.options or PublishOptions()
        return UploadRequest(
            account_id=self.accountId,
            file_path=self.filePath,
            thumbnail_path=self.thumbnailPath,
            metadata=VideoMetadata(**metadata),
            idempotency_key=self.idempotencyKey,
            chunk_size=options.chunkSize,
            max_attempts=options.maxAttempts,
        )


class PublishResponse(BaseModel):
    jobId: str  # noqa: N815
    state: str
    duplicate: bool
    resourceId: str | None = None  # noqa: N815


def _validation_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"code": ValidationError.code, "message": message}},
    )


def _describe(errors: list) -> str:
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def create_app(publisher: Optional[Publisher] = None, config: Optional[PublisherConfig] = None) -> FastAPI:
    """Build the HTTP front-end.

    Without an explicit publisher one is opened from the resolved config at
    startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.publisher is None
        if owned:
            app.state.publisher = Publisher.open(config or resolve_config())
        yield
        if owned:
            app.state.publisher.close()
            app.state.publisher = None

    app = FastAPI(title="video-publisher", lifespan=lifespan)
    app.state.publisher = publisher

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _validation_response(_describe(exc.errors()))

    @app.exception_handler(ModelValidationError)
    async def model_validation_handler(request: Request, exc: ModelValidationError):
        return _validation_response(_describe(exc.errors()))

    @app.exception_handler(ValidationError)
    async def publisher_validation_handler(request: Request, exc: ValidationError):
        return _validation_response(exc.message)

    def get_publisher(request: Request) -> Publisher:
        return request.app.state.publisher

    @app.post("/publish/youtube", response_model=PublishResponse)
    def publish_youtube(body: PublishRequest, request: Request):
        result = get_publisher(request).submit(body.to_upload_request())
        log.info("publish_accepted", job_id=result.job_id, duplicate=result.duplicate)
        return PublishResponse(
            jobId=result.job_id,
            state=result.state,
            duplicate=result.duplicate,
            resourceId=result.resource_id,
        )

    @app.get("/jobs/{job_id}", response_model=JobStatusView)
    def get_job(job_id: str, request: Request):
        view = get_publisher(request).get_status(job_id)
        if view is None:
            raise HTTPException(status_code=404, detail={"code": "JOB_NOT_FOUND", "jobId": job_id})
        return view

    @app.post("/jobs/{job_id}/cancel", response_model=JobStatusView)
    def cancel_job(job_id: str, request: Request):
        view = get_publisher(request).cancel(job_id)
        if view is None:
            raise HTTPException(status_code=404, detail={"code": "JOB_NOT_FOUND", "jobId": job_id})
        return view

    @app.get("/queue/stats", response_model=QueueStats)
    def queue_stats(request: Request):
        return get_publisher(request).queue.get_stats()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
