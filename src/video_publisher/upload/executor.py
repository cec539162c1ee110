"""Upload executor: drives one job through the resumable upload state machine.

    Initiating → Uploading (⇄ Retrying) → Finalizing → Completed
                                                     ↘ Failed (raised to the worker)

The current phase is written to the job row, so a redelivered job resumes
where the previous attempt stopped: a stored session URI is resumed at the
server's offset, a recorded resource id skips straight to Finalizing, and
finished finalization steps are not repeated.

Errors are raised, never swallowed; the worker maps them onto queue state.
"""

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import structlog

from ..credentials import CredentialProvider
from ..errors import (
    AuthError,
    DuplicateSubmission,
    FinalizationError,
    JobCancelled,
    PermanentTransportError,
    RangeMismatchError,
    SourceFileError,
    TransientTransportError,
)
from ..models import RetryConfig, UploadConfig
from ..queue.backends import IdempotencyGuard, JobQueue
from ..queue.hashing import compute_metadata_hash
from ..queue.models import ReservationOutcome, UploadJob, UploadPhase
from ..retry import backoff_delay
from .platform import VideoApiClient
from .session import OutcomeKind, TransferOutcome, UploadSession
from .transport import ResumableUploadTransport

log = structlog.get_logger(__name__)

Call = Callable[[str], TransferOutcome]


@dataclass
class UploadResult:
    """Summary of one execution."""

    job_id: str
    resource_id: Optional[str] = None
    bytes_uploaded: int = 0
    chunk_calls: int = 0
    chunk_attempts: Dict[int, int] = field(default_factory=dict)  # offset -> attempts
    resumed_from: int = 0
    duration_s: float = 0.0


class UploadExecutor:
    """Runs the upload state machine for a claimed job.

    Args:
        transport: Resumable upload protocol client
        api: Thumbnail / metadata client
        credentials: Bearer token source
        queue: Job queue (phase, session, progress, resource bookkeeping)
        guard: Idempotency guard
        upload_config: Chunking and resync budget
        retry_config: Per-request attempt budget and backoff
        sleep: Injected for tests
    """

    def __init__(
        self,
        transport: ResumableUploadTransport,
        api: VideoApiClient,
        credentials: CredentialProvider,
        queue: JobQueue,
        guard: IdempotencyGuard,
        upload_config: Optional[UploadConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.api = api
        self.credentials = credentials
        self.queue = queue
        self.guard = guard
        self.upload_config = upload_config or UploadConfig()
        self.retry_config = retry_config or RetryConfig()
        self.sleep = sleep

    def execute(self, job: UploadJob) -> UploadResult:
        """Upload and finalize one job.

        Raises:
            DuplicateSubmission: Fingerprint owned by another job
            AuthError: No usable authorization for the account
            SourceFileError: Source vanished or changed size
            PermanentTransportError: Platform rejected the upload
            TransientTransportError: Retry budget of one request exhausted
            RangeMismatchError: Offset resync budget exhausted
            FinalizationError: Thumbnail or metadata step failed
            JobCancelled: Cancellation observed between chunks
        """
        started = time.monotonic()
        result = UploadResult(job_id=job.job_id, resumed_from=job.uploaded_bytes)
        self._set_phase(job, UploadPhase.INITIATING)

        reservation = self.guard.reserve(job.fingerprint, job.job_id)
        if reservation.job_id != job.job_id:
            if reservation.outcome == ReservationOutcome.ALREADY_COMPLETED.value:
                raise DuplicateSubmission(
                    f"Already uploaded by job {reservation.job_id}",
                    job_id=reservation.job_id,
                    resource_id=reservation.resource_id,
                )
            raise DuplicateSubmission(
                f"Same upload is in progress in job {reservation.job_id}",
                job_id=reservation.job_id,
            )

        resource_id = job.resource_id or reservation.resource_id
        if resource_id is None:
            resource_id = self._upload(job, result)
        else:
            log.info("upload_already_transferred", job_id=job.job_id, resource_id=resource_id)

        self._finalize(job, resource_id)
        self.guard.finalize(job.fingerprint, resource_id)

        result.resource_id = resource_id
        result.bytes_uploaded = job.total_bytes
        result.duration_s = time.monotonic() - started
        log.info(
            "upload_finished",
            job_id=job.job_id,
            resource_id=resource_id,
            chunk_calls=result.chunk_calls,
            chunk_attempts=result.chunk_attempts,
            resumed_from=result.resumed_from,
            duration_s=round(result.duration_s, 3),
        )
        return result

    # -- Initiating / Uploading ---------------------------------------------

    def _upload(self, job: UploadJob, result: UploadResult) -> str:
        self.credentials.get_token(job.account_id)
        total = self._check_source(job)

        session, resource_id = self._open_session(job, total)
        if resource_id is not None:
            self._record_resource(job, resource_id)
            return resource_id

        offset = session.next_offset
        result.resumed_from = offset
        if offset:
            self._report_progress(job, offset)

        self._set_phase(job, UploadPhase.UPLOADING)
        resyncs = 0

        with open(job.source_path, "rb") as source:
            while True:
                if offset >= total:
                    # Server holds every byte; ask for the final response
                    outcome = self._with_retry(
                        job,
                        lambda token: self.transport.query_offset(session, token),
                        resume_phase=UploadPhase.UPLOADING,
                    )
                    if outcome.kind == OutcomeKind.ACCEPTED and outcome.next_offset >= total:
                        raise TransientTransportError(
                            "Platform received the whole file but did not confirm the upload"
                        )
                else:
                    outcome = self._send_chunk(job, session, source, offset, total, result)

                if outcome.kind == OutcomeKind.COMPLETED:
                    self._record_resource(job, outcome.resource_id)
                    self._report_progress(job, total, check_cancel=False)
                    return outcome.resource_id

                if outcome.kind == OutcomeKind.ACCEPTED:
                    offset = self._advance(job, session, outcome.next_offset, total)
                    continue

                if outcome.kind == OutcomeKind.RANGE_MISMATCH:
                    resyncs += 1
                    if resyncs > self.upload_config.max_resyncs:
                        raise RangeMismatchError(
                            f"Upload offset kept diverging from the platform ({resyncs} resyncs)"
                        )
                    log.warning(
                        "range_mismatch",
                        job_id=job.job_id,
                        sent_offset=offset,
                        server_offset=outcome.next_offset,
                        resyncs=resyncs,
                    )
                    offset = self._advance(job, session, outcome.next_offset, total)
                    continue

                if outcome.kind == OutcomeKind.EXPIRED:
                    resyncs += 1
                    if resyncs > self.upload_config.max_resyncs:
                        raise RangeMismatchError("Upload session kept expiring")
                    log.warning("session_expired", job_id=job.job_id, offset=offset)
                    self.queue.clear_session(job.job_id)
                    session = self._initiate(job, total)
                    offset = 0
                    continue

                raise PermanentTransportError(
                    f"Unexpected platform response during upload ({outcome.kind.value})"
                )

    def _send_chunk(
        self,
        job: UploadJob,
        session: UploadSession,
        source,
        offset: int,
        total: int,
        result: UploadResult,
    ) -> TransferOutcome:
        length = min(job.chunk_size, total - offset)
        source.seek(offset)
        data = source.read(length)
        if len(data) != length:
            raise SourceFileError("Source file changed while uploading")
        is_final = offset + length >= total

        def call(token: str) -> TransferOutcome:
            result.chunk_calls += 1
            result.chunk_attempts[offset] = result.chunk_attempts.get(offset, 0) + 1
            return self.transport.send_chunk(session, offset, data, is_final, token)

        log.debug("chunk_sending", job_id=job.job_id, offset=offset, length=length)
        return self._with_retry(job, call, resume_phase=UploadPhase.UPLOADING)

    def _advance(self, job: UploadJob, session: UploadSession, next_offset: int, total: int) -> int:
        if next_offset > total:
            raise PermanentTransportError(
                f"Platform reported offset {next_offset} beyond file size {total}"
            )
        session.next_offset = next_offset
        self._report_progress(job, next_offset)
        return next_offset

    def _open_session(self, job: UploadJob, total: int) -> Tuple[UploadSession, Optional[str]]:
        """Resume the stored session, or start a new one."""
        if job.session_uri:
            session = UploadSession(job.session_uri, total)
            outcome = self._with_retry(
                job,
                lambda token: self.transport.query_offset(session, token),
                resume_phase=UploadPhase.INITIATING,
            )
            if outcome.kind == OutcomeKind.COMPLETED:
                log.info("upload_found_complete", job_id=job.job_id, resource_id=outcome.resource_id)
                return session, outcome.resource_id
            if outcome.kind == OutcomeKind.ACCEPTED:
                session.next_offset = min(outcome.next_offset, total)
                log.info("session_resumed", job_id=job.job_id, offset=session.next_offset)
                return session, None

            log.warning("session_expired", job_id=job.job_id, offset=job.uploaded_bytes)
            self.queue.clear_session(job.job_id)

        return self._initiate(job, total), None

    def _initiate(self, job: UploadJob, total: int) -> UploadSession:
        outcome = self._with_retry(
            job,
            lambda token: self.transport.initiate(token, total, job.metadata),
            resume_phase=UploadPhase.INITIATING,
        )
        if outcome.kind != OutcomeKind.CREATED:
            raise PermanentTransportError(
                f"Unexpected platform response to upload initiation ({outcome.kind.value})"
            )
        self.queue.save_session(job.job_id, outcome.session_uri)
        job.session_uri = outcome.session_uri
        log.info("session_created", job_id=job.job_id, total_bytes=total)
        return UploadSession(outcome.session_uri, total)

    def _check_source(self, job: UploadJob) -> int:
        path = Path(job.source_path)
        try:
            size = path.stat().st_size
        except OSError as e:
            raise SourceFileError(f"Source file is missing: {job.source_path}") from e

        if not os.access(path, os.R_OK):
            raise SourceFileError(f"Source file is not readable: {job.source_path}")

        if size != job.total_bytes:
            raise SourceFileError(
                f"Source file changed size since submission ({job.total_bytes} -> {size} bytes)"
            )
        return size

    # -- Finalizing ----------------------------------------------------------

    def _finalize(self, job: UploadJob, resource_id: str) -> None:
        self._set_phase(job, UploadPhase.FINALIZING)

        if job.thumbnail_path and not job.thumbnail_done:
            self._finalize_step(
                job,
                "thumbnail",
                lambda token: self.api.set_thumbnail(resource_id, token, job.thumbnail_path),
            )
            self.queue.mark_thumbnail_done(job.job_id)
            job.thumbnail_done = True

        metadata_hash = compute_metadata_hash(job.metadata)
        if job.metadata_hash != metadata_hash:
            self._finalize_step(
                job,
                "metadata",
                lambda token: self.api.update_metadata(resource_id, token, job.metadata),
            )
            self.queue.mark_metadata_applied(job.job_id, metadata_hash)
            job.metadata_hash = metadata_hash

    def _finalize_step(self, job: UploadJob, step: str, call: Call) -> None:
        try:
            self._with_retry(job, call, resume_phase=UploadPhase.FINALIZING)
        except TransientTransportError as e:
            raise FinalizationError(f"Could not apply {step}: {e.message}") from e
        except PermanentTransportError as e:
            raise FinalizationError(f"Platform rejected {step}: {e.message}", retryable=False) from e
        except OSError as e:
            raise FinalizationError(f"Could not read {step} file: {e}", retryable=False) from e

    # -- Shared --------------------------------------------------------------

    def _with_retry(self, job: UploadJob, call: Call, resume_phase: UploadPhase) -> TransferOutcome:
        """Run ``call`` until it yields a non-retryable outcome.

        transient → same request again after backoff, up to the job's max_attempts
        unauthorized → invalidate the credential and retry once
        permanent → PermanentTransportError
        anything else is returned to the caller
        """
        attempt = 0
        reauthorized = False

        while True:
            attempt += 1
            outcome = call(self.credentials.get_token(job.account_id))

            if outcome.kind == OutcomeKind.UNAUTHORIZED:
                if reauthorized:
                    raise AuthError(
                        f"Platform rejected refreshed authorization for account {job.account_id}"
                    )
                log.warning("credential_rejected", job_id=job.job_id, account_id=job.account_id)
                self.credentials.invalidate(job.account_id)
                reauthorized = True
                attempt -= 1
                continue

            if outcome.kind == OutcomeKind.PERMANENT:
                log.error("request_rejected", job_id=job.job_id, status=outcome.status_code, error=outcome.message)
                raise PermanentTransportError(outcome.message)

            if outcome.kind != OutcomeKind.TRANSIENT:
                if attempt > 1:
                    self._set_phase(job, resume_phase)
                return outcome

            if attempt >= job.max_attempts:
                raise TransientTransportError(
                    f"Gave up after {attempt} attempts: {outcome.message}"
                )

            delay = backoff_delay(
                attempt,
                self.retry_config.backoff_base_ms,
                self.retry_config.backoff_max_ms,
                outcome.retry_after_s,
            )
            log.warning(
                "request_retry",
                job_id=job.job_id,
                attempt=attempt,
                status=outcome.status_code,
                delay_s=delay,
                error=outcome.message,
            )
            if attempt == 1:
                self._set_phase(job, UploadPhase.RETRYING)
            self.sleep(delay)

    def _report_progress(self, job: UploadJob, uploaded_bytes: int, check_cancel: bool = True) -> None:
        ack = self.queue.report_progress(job.job_id, uploaded_bytes)
        job.uploaded_bytes = ack.uploaded_bytes
        if check_cancel and ack.cancel_requested:
            log.info("cancel_observed", job_id=job.job_id, uploaded_bytes=ack.uploaded_bytes)
            raise JobCancelled("Cancelled by request")

    def _record_resource(self, job: UploadJob, resource_id: str) -> None:
        self.queue.record_resource(job.job_id, resource_id)
        job.resource_id = resource_id
        log.info("upload_transferred", job_id=job.job_id, resource_id=resource_id)

    def _set_phase(self, job: UploadJob, phase: UploadPhase) -> None:
        self.queue.set_phase(job.job_id, phase.value)
        job.phase = phase.value
