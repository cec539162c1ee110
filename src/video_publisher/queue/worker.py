"""Worker loop and thread pool for upload jobs.

This module provides:
- UploadWorker: claim → execute → acknowledge loop for one thread
- Heartbeat threads for long-running uploads
- Error mapping (duplicate / cancelled / retryable / permanent)
- UploadWorkerPool: ThreadPoolExecutor running N workers, each with its own
  SQLite connection
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from ..errors import DuplicateSubmission, JobCancelled, PublisherError
from ..models import WorkerConfig
from .backends import IdempotencyGuard, JobQueue
from .models import JobState, UploadJob

if TYPE_CHECKING:
    from ..upload.executor import UploadExecutor, UploadResult

log = structlog.get_logger(__name__)


class UploadWorker:
    """Single worker: pulls jobs until stopped.

    Error handling:
    - DuplicateSubmission with a resource: job completes with that resource
    - DuplicateSubmission without one: requeued, no attempt consumed
    - JobCancelled: job cancelled, session kept unless configured otherwise
    - PublisherError: failed, redelivered only when the error is retryable
    - Anything else: treated as transient, redelivered with backoff
    On terminal failure the fingerprint is finalized when the video exists
    remotely, otherwise released so a resubmission can proceed.
    """

    def __init__(
        self,
        queue: JobQueue,
        executor: "UploadExecutor",
        guard: IdempotencyGuard,
        config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.queue = queue
        self.executor = executor
        self.guard = guard
        self.config = config or WorkerConfig()
        self.worker_id = worker_id or f"worker-{os.getpid()}-{threading.get_ident()}"
        self._on_close = on_close

    def run(
        self,
        max_jobs: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        exit_when_idle: bool = False,
    ) -> int:
        """Process jobs until stopped.

        Args:
            max_jobs: Stop after this many jobs (None = unlimited)
            stop_event: Set to stop after the current job
            exit_when_idle: Return as soon as no job is due

        Returns:
            Number of jobs processed
        """
        stop_event = stop_event or threading.Event()
        processed = 0
        log.info("worker_started", worker_id=self.worker_id)

        while not stop_event.is_set():
            if max_jobs is not None and processed >= max_jobs:
                break

            job = self.queue.dequeue(self.worker_id)
            if job is None:
                if exit_when_idle:
                    break
                stop_event.wait(self.config.poll_interval_s)
                continue

            self.process_job(job)
            processed += 1

        log.info("worker_stopped", worker_id=self.worker_id, processed=processed)
        return processed

    def process_job(self, job: UploadJob) -> Optional["UploadResult"]:
        """Execute one claimed job and record its outcome in the queue."""
        log.info("job_started", job_id=job.job_id, worker_id=self.worker_id, attempt=job.attempt_count + 1)
        heartbeat = _start_heartbeat(self.queue, job.job_id, self.config.heartbeat_interval_s)

        try:
            result = self.executor.execute(job)
            self.queue.complete(job.job_id, result.resource_id)
            return result

        except DuplicateSubmission as e:
            if e.resource_id:
                log.info("duplicate_completed", job_id=job.job_id, owner=e.job_id, resource_id=e.resource_id)
                self.queue.complete(job.job_id, e.resource_id)
            else:
                log.info("duplicate_in_progress", job_id=job.job_id, owner=e.job_id)
                self.queue.requeue(
                    job.job_id, self.config.duplicate_requeue_delay_s, e.message
                )

        except JobCancelled:
            self.queue.mark_cancelled(job.job_id, self.config.discard_session_on_cancel)
            self._settle_fingerprint(job)
            log.info("job_cancelled", job_id=job.job_id)

        except PublisherError as e:
            log.warning("job_error", job_id=job.job_id, code=e.code, error=e.message, retryable=e.retryable)
            state = self.queue.fail(job.job_id, e.message, retryable=e.retryable)
            if state == JobState.FAILED:
                self._settle_fingerprint(job)

        except Exception as e:
            # Unknown failure: might be transient
            log.exception("job_crashed", job_id=job.job_id)
            state = self.queue.fail(job.job_id, f"Unexpected error: {type(e).__name__}: {e}", retryable=True)
            if state == JobState.FAILED:
                self._settle_fingerprint(job)

        finally:
            _stop_heartbeat(heartbeat)

        return None

    def _settle_fingerprint(self, job: UploadJob) -> None:
        current = self.queue.get_job(job.job_id)
        resource_id = current.resource_id if current else job.resource_id
        if resource_id:
            self.guard.finalize(job.fingerprint, resource_id)
        else:
            self.guard.release(job.fingerprint, job.job_id)

    def close(self) -> None:
        if self._on_close:
            self._on_close()


class UploadWorkerPool:
    """Thread pool running N UploadWorkers.

    Each worker is built by ``worker_factory(worker_id)`` inside its own
    thread, so each gets its own database connection and HTTP client.

    Usage:
        with UploadWorkerPool(factory, n_workers=4) as pool:
            pool.run(stop_event=stop)
    """

    def __init__(self, worker_factory: Callable[[str], UploadWorker], n_workers: int = 1):
        self.worker_factory = worker_factory
        self.n_workers = n_workers
        self._executor = None

    def __enter__(self):
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="upload-worker"
        )
        return self

    def __exit__(self, *args):
        self.shutdown()

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        exit_when_idle: bool = False,
        max_jobs: Optional[int] = None,
    ) -> int:
        """Run all workers until stopped; returns total jobs processed."""
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")

        stop_event = stop_event or threading.Event()
        futures = [
            self._executor.submit(
                self._run_worker, f"worker-{os.getpid()}-{i}", stop_event, exit_when_idle, max_jobs
            )
            for i in range(self.n_workers)
        ]

        processed = 0
        for future in as_completed(futures):
            processed += future.result()
        return processed

    def _run_worker(
        self,
        worker_id: str,
        stop_event: threading.Event,
        exit_when_idle: bool,
        max_jobs: Optional[int],
    ) -> int:
        worker = self.worker_factory(worker_id)
        try:
            return worker.run(max_jobs=max_jobs, stop_event=stop_event, exit_when_idle=exit_when_idle)
        finally:
            worker.close()

    def shutdown(self, wait: bool = True):
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None


def _start_heartbeat(queue: JobQueue, job_id: str, interval_s: float):
    """Start background thread that refreshes the job heartbeat.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Heartbeat prevents long uploads from being reset as stale. The thread
    shares the worker's queue; queue calls are serialized by its lock.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                queue.update_heartbeat(job_id)
            except Exception as e:
                # Log but don't crash thread
                log.warning("heartbeat_failed", job_id=job_id, error=str(e))

    thread = threading.Thread(target=heartbeat_loop, daemon=True)
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data):
    """Signal the heartbeat thread to stop and wait briefly for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
