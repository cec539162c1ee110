"""Unit tests for queue system.

Tests cover:
- Job enqueue/dequeue operations
- Atomic state transitions and redelivery backoff
- Fingerprint computation
- Monotonic progress reporting
- Crash recovery logic
- Concurrent dequeue / reserve safety
"""

import threading
import uuid
from datetime import timedelta

import pytest

from video_publisher.models import RetryConfig
from video_publisher.queue import (
    JobState,
    SQLiteIdempotencyGuard,
    SQLiteJobQueue,
    SQLiteStore,
    UploadJob,
    VideoMetadata,
    compute_content_hash,
    compute_fingerprint,
    compute_metadata_hash,
)
from video_publisher.queue.models import ReservationOutcome, utcnow
from video_publisher.queue.sqlite_backend import to_timestamp


def make_job(source_path="/videos/a.mp4", total_bytes=1000, max_attempts=3, fingerprint=None) -> UploadJob:
    return UploadJob(
        job_id=str(uuid.uuid4()),
        account_id="channel-1",
        source_path=source_path,
        metadata=VideoMetadata(title="Clip"),
        fingerprint=fingerprint or uuid.uuid4().hex,
        total_bytes=total_bytes,
        chunk_size=262144,
        max_attempts=max_attempts,
    )


class TestHashComputation:
    """Test fingerprint functions."""

    def test_compute_content_hash(self, video):
        path = video(5000)
        digest = compute_content_hash(path)

        assert len(digest) == 128  # BLAKE2b hex length
        assert digest == compute_content_hash(path)

    def test_compute_content_hash_differs_by_content(self, video):
        assert compute_content_hash(video(5000, "a.mp4", seed=1)) != compute_content_hash(
            video(5000, "b.mp4", seed=2)
        )

    def test_compute_content_hash_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            compute_content_hash("/nonexistent/file.mp4")

    def test_compute_content_hash_empty_file(self, tmp_path):
        empty = tmp_path / "empty.mp4"
        empty.write_bytes(b"")
        with pytest.raises(ValueError):
            compute_content_hash(str(empty))

    def test_idempotency_key_takes_precedence(self):
        with_key = compute_fingerprint("channel-1", content_hash="abc", idempotency_key="k-1")
        other_content = compute_fingerprint("channel-1", content_hash="xyz", idempotency_key="k-1")

        assert with_key == other_content
        assert len(with_key) == 64  # SHA-256 hex length

    def test_fingerprint_includes_account(self):
        assert compute_fingerprint("channel-1", idempotency_key="k") != compute_fingerprint(
            "channel-2", idempotency_key="k"
        )

    def test_fingerprint_needs_key_or_content(self):
        with pytest.raises(ValueError):
            compute_fingerprint("channel-1")

    def test_metadata_hash_tracks_changes(self):
        base = VideoMetadata(title="A", tags=["x"])
        assert compute_metadata_hash(base) == compute_metadata_hash(VideoMetadata(title="A", tags=["x"]))
        assert compute_metadata_hash(base) != compute_metadata_hash(VideoMetadata(title="B", tags=["x"]))


class TestQueueOperations:
    """Test queue enqueue/dequeue operations."""

    def test_enqueue_dequeue(self, queue):
        job = make_job()
        queue.enqueue(job)

        dequeued = queue.dequeue(worker_id="test-worker")

        assert dequeued is not None
        assert dequeued.job_id == job.job_id
        assert dequeued.state == JobState.ACTIVE.value
        assert dequeued.worker_id == "test-worker"
        assert dequeued.metadata.title == "Clip"

    def test_dequeue_empty_queue(self, queue):
        assert queue.dequeue(worker_id="test-worker") is None

    def test_enqueue_idempotent(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.enqueue(job)

        assert queue.dequeue(worker_id="w1") is not None
        assert queue.dequeue(worker_id="w2") is None

    def test_dequeue_oldest_first(self, queue):
        first = make_job()
        second = make_job()
        second.created_at = first.created_at + timedelta(seconds=1)
        queue.enqueue(second)
        queue.enqueue(first)

        assert queue.dequeue("w").job_id == first.job_id

    def test_complete(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")
        queue.save_session(job.job_id, "https://upload.example/session")

        queue.complete(job.job_id, "vid-1")

        stored = queue.get_job(job.job_id)
        assert stored.state == JobState.COMPLETED.value
        assert stored.resource_id == "vid-1"
        assert stored.uploaded_bytes == stored.total_bytes
        assert stored.session_uri is None

    def test_fail_with_retry(self, queue):
        job = make_job(max_attempts=3)
        queue.enqueue(job)
        queue.dequeue("w")

        state = queue.fail(job.job_id, "Test error", retryable=True)

        status = queue.get_status(job.job_id)
        assert state == JobState.QUEUED
        assert status.state == JobState.QUEUED.value
        assert status.attempts == 1
        assert status.error == "Test error"

    def test_fail_no_retry(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")

        state = queue.fail(job.job_id, "Test error", retryable=False)

        assert state == JobState.FAILED
        assert queue.get_status(job.job_id).state == JobState.FAILED.value

    def test_fail_exhausts_attempts(self, queue):
        job = make_job(max_attempts=2)
        queue.enqueue(job)

        queue.dequeue("w")
        assert queue.fail(job.job_id, "boom", retryable=True) == JobState.QUEUED
        queue.dequeue("w")
        assert queue.fail(job.job_id, "boom", retryable=True) == JobState.FAILED

        assert queue.get_job(job.job_id).attempt_count == 2
        assert queue.dequeue("w") is None

    def test_retry_is_delayed_by_backoff(self, store):
        queue = SQLiteJobQueue(store, RetryConfig(backoff_base_ms=60000, backoff_max_ms=600000))
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")

        queue.fail(job.job_id, "flaky", retryable=True)

        stored = queue.get_job(job.job_id)
        assert stored.next_attempt_at > utcnow() + timedelta(seconds=50)
        assert queue.dequeue("w") is None

    def test_requeue_does_not_consume_attempt(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")

        queue.requeue(job.job_id, 0, "waiting for duplicate")

        stored = queue.get_job(job.job_id)
        assert stored.state == JobState.QUEUED.value
        assert stored.attempt_count == 0
        assert stored.phase is None
        assert stored.last_error is None
        assert queue.get_status(job.job_id).error is None

    def test_reset_stale_active(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")
        queue.save_session(job.job_id, "https://upload.example/session")

        queue.db.execute(
            "UPDATE upload_jobs SET started_at = '2020-01-01T00:00:00.000000+00:00', last_heartbeat = NULL WHERE job_id = ?",
            [job.job_id],
        )

        assert queue.reset_stale_active(timeout_s=60) == 1

        stored = queue.get_job(job.job_id)
        assert stored.state == JobState.QUEUED.value
        assert stored.attempt_count == 0
        assert stored.session_uri == "https://upload.example/session"

    def test_reset_stale_ignores_live_jobs(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")

        assert queue.reset_stale_active(timeout_s=60) == 0

    def test_update_heartbeat(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")
        old = to_timestamp(utcnow() - timedelta(hours=1))
        queue.db.execute("UPDATE upload_jobs SET last_heartbeat = ? WHERE job_id = ?", [old, job.job_id])

        queue.update_heartbeat(job.job_id)

        assert queue.get_job(job.job_id).last_heartbeat > utcnow() - timedelta(minutes=1)

    def test_transitions_logged(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")
        queue.complete(job.job_id, "vid-1")

        transitions = queue.get_transitions(job.job_id)

        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "queued"),
            ("queued", "active"),
            ("active", "completed"),
        ]

    def test_get_stats(self, queue):
        for _ in range(3):
            queue.enqueue(make_job())
        queue.dequeue("w")

        stats = queue.get_stats()

        assert stats.queued == 2
        assert stats.active == 1
        assert stats.total == 3

    def test_retry_failed(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")
        queue.fail(job.job_id, "nope", retryable=False)
        assert queue.get_job(job.job_id).last_error == "nope"

        assert queue.retry_failed() == 1

        stored = queue.get_job(job.job_id)
        assert stored.state == JobState.QUEUED.value
        assert stored.attempt_count == 0
        assert stored.phase is None
        assert stored.last_error is None
        assert queue.get_status(job.job_id).error is None


class TestProgress:
    """Progress is monotonic and bounded by the file size."""

    def test_progress_accepted(self, queue):
        job = make_job(total_bytes=1000)
        queue.enqueue(job)

        ack = queue.report_progress(job.job_id, 400)

        assert ack.accepted is True
        assert queue.get_status(job.job_id).progress.bytes_uploaded == 400
        assert queue.get_status(job.job_id).progress.percent == 40.0

    def test_lower_progress_rejected(self, queue):
        job = make_job(total_bytes=1000)
        queue.enqueue(job)
        queue.report_progress(job.job_id, 600)

        ack = queue.report_progress(job.job_id, 200)

        assert ack.accepted is False
        assert ack.uploaded_bytes == 600
        assert queue.get_job(job.job_id).uploaded_bytes == 600

    def test_progress_clamped_to_total(self, queue):
        job = make_job(total_bytes=1000)
        queue.enqueue(job)

        ack = queue.report_progress(job.job_id, 5000)

        assert ack.uploaded_bytes == 1000

    def test_progress_unknown_job(self, queue):
        with pytest.raises(ValueError):
            queue.report_progress("missing", 1)


class TestCancellation:
    def test_cancel_queued_job(self, queue):
        job = make_job()
        queue.enqueue(job)

        view = queue.request_cancel(job.job_id)

        assert view.state == JobState.CANCELLED.value
        assert queue.dequeue("w") is None

    def test_cancel_active_job_is_flagged(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")

        view = queue.request_cancel(job.job_id)

        assert view.state == JobState.ACTIVE.value
        assert queue.report_progress(job.job_id, 10).cancel_requested is True

    def test_mark_cancelled_keeps_session_by_default(self, queue):
        job = make_job()
        queue.enqueue(job)
        queue.dequeue("w")
        queue.save_session(job.job_id, "https://upload.example/session")

        queue.mark_cancelled(job.job_id, discard_session=False)

        stored = queue.get_job(job.job_id)
        assert stored.state == JobState.CANCELLED.value
        assert stored.session_uri == "https://upload.example/session"

    def test_cancel_unknown_job(self, queue):
        assert queue.request_cancel("missing") is None


class TestConcurrentDequeue:
    """A job is never claimed by two workers."""

    def test_threads_never_double_claim(self, temp_db):
        setup = SQLiteStore(temp_db)
        queue = SQLiteJobQueue(setup)
        job_ids = {queue.enqueue(make_job()) for _ in range(20)}

        claimed = []
        lock = threading.Lock()

        def worker(n):
            store = SQLiteStore(temp_db)
            own_queue = SQLiteJobQueue(store)
            try:
                while True:
                    job = own_queue.dequeue(f"w{n}")
                    if job is None:
                        return
                    with lock:
                        claimed.append(job.job_id)
            finally:
                store.close()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        setup.close()

        assert len(claimed) == 20
        assert set(claimed) == job_ids


class TestIdempotencyGuard:
    def test_first_reserve_proceeds(self, guard):
        reservation = guard.reserve("fp-1", "job-a")
        assert reservation.outcome == ReservationOutcome.PROCEED.value

    def test_same_owner_proceeds_again(self, guard):
        guard.reserve("fp-1", "job-a")
        assert guard.reserve("fp-1", "job-a").outcome == ReservationOutcome.PROCEED.value

    def test_other_job_sees_in_progress(self, guard):
        guard.reserve("fp-1", "job-a")

        reservation = guard.reserve("fp-1", "job-b")

        assert reservation.outcome == ReservationOutcome.IN_PROGRESS.value
        assert reservation.job_id == "job-a"

    def test_finalized_returns_resource(self, guard):
        guard.reserve("fp-1", "job-a")
        guard.finalize("fp-1", "vid-9")

        reservation = guard.reserve("fp-1", "job-b")

        assert reservation.outcome == ReservationOutcome.ALREADY_COMPLETED.value
        assert reservation.resource_id == "vid-9"

    def test_release_only_by_owner(self, guard):
        guard.reserve("fp-1", "job-a")

        assert guard.release("fp-1", "job-b") is False
        assert guard.release("fp-1", "job-a") is True
        assert guard.reserve("fp-1", "job-b").outcome == ReservationOutcome.PROCEED.value

    def test_completed_record_cannot_be_released(self, guard):
        guard.reserve("fp-1", "job-a")
        guard.finalize("fp-1", "vid-1")

        assert guard.release("fp-1", "job-a") is False

    def test_record_survives_restart(self, temp_db):
        with SQLiteStore(temp_db) as store:
            guard = SQLiteIdempotencyGuard(store)
            guard.reserve("fp-1", "job-a")
            guard.finalize("fp-1", "vid-1")

        with SQLiteStore(temp_db) as store:
            reservation = SQLiteIdempotencyGuard(store).reserve("fp-1", "job-b")

        assert reservation.outcome == ReservationOutcome.ALREADY_COMPLETED.value
        assert reservation.resource_id == "vid-1"

    def test_concurrent_reserve_single_winner(self, temp_db):
        SQLiteStore(temp_db).close()
        outcomes = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def contender(n):
            with SQLiteStore(temp_db) as store:
                barrier.wait()
                reservation = SQLiteIdempotencyGuard(store).reserve("fp-race", f"job-{n}")
            with lock:
                outcomes.append(reservation.outcome)

        threads = [threading.Thread(target=contender, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(ReservationOutcome.PROCEED.value) == 1
        assert outcomes.count(ReservationOutcome.IN_PROGRESS.value) == 7
