"""SQLite implementations of JobQueue and IdempotencyGuard.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance
- UPDATE...RETURNING for atomic claim of the next due job
- Exponential backoff retry for database lock handling
- INSERT...ON CONFLICT DO NOTHING for create-if-absent reservations
"""

import json
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from ..models import RetryConfig
from ..retry import backoff_delay
from .backends import IdempotencyGuard, JobQueue
from .models import (
    IdempotencyRecord,
    JobState,
    JobStatusView,
    ProgressAck,
    QueueStats,
    Reservation,
    ReservationOutcome,
    ReservationState,
    StateTransition,
    UploadJob,
    UploadPhase,
    utcnow,
)

log = structlog.get_logger(__name__)


SCHEMA_SQL = """
-- Upload jobs
CREATE TABLE IF NOT EXISTS upload_jobs (
    job_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    source_path TEXT NOT NULL,
    thumbnail_path TEXT,
    metadata TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    total_bytes INTEGER NOT NULL,
    uploaded_bytes INTEGER NOT NULL DEFAULT 0,
    chunk_size INTEGER NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    state TEXT NOT NULL,
    phase TEXT,
    session_uri TEXT,
    session_created_at TEXT,
    resource_id TEXT,
    thumbnail_done INTEGER NOT NULL DEFAULT 0,
    metadata_hash TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    next_attempt_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_due ON upload_jobs(state, next_attempt_at, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_fingerprint ON upload_jobs(fingerprint);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS job_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES upload_jobs(job_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id, timestamp);

-- Idempotency records (fingerprint -> remote resource)
CREATE TABLE IF NOT EXISTS idempotency_records (
    fingerprint TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    state TEXT NOT NULL,
    resource_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Per-account bearer credentials
CREATE TABLE IF NOT EXISTS credentials (
    account_id TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_type TEXT,
    scope TEXT,
    expires_at TEXT,
    updated_at TEXT NOT NULL
);
"""


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so stored timestamps compare lexicographically."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return to_timestamp(utcnow())


def _cursor_dicts(cursor) -> List[Dict[str, Any]]:
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _row_to_job(row: Dict[str, Any]) -> UploadJob:
    row = dict(row)
    row["metadata"] = json.loads(row["metadata"]) if row.get("metadata") else {}
    return UploadJob(**row)


class SQLiteStore:
    """Shared SQLite database for queue, idempotency records and credentials.

    Features:
    - WAL mode for concurrent readers alongside one writer
    - One connection per store; open one store per worker thread, or share
      a store between threads (calls are serialized through ``lock``)
    - Explicit close() for clean shutdown
    """

    def __init__(self, db_path: str):
        """Open (and create if needed) the database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        self.db = Database(conn)
        self.lock = threading.RLock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self.lock:
            self.db.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class SQLiteJobQueue(JobQueue):
    """SQLite-based queue with atomic dequeue operations.

    Features:
    - Atomic claim via UPDATE...RETURNING (one statement, one write lock)
    - Exponential backoff retry for database lock contention
    - Backoff-delayed redelivery of retryable failures (next_attempt_at)
    - Heartbeat support and crash recovery via reset_stale_active()
    - Automatic state transition logging
    """

    def __init__(self, store: SQLiteStore, retry: Optional[RetryConfig] = None):
        """Initialize queue backend.

        Args:
            store: SQLiteStore instance (shares same database)
            retry: Attempt budget and backoff for job redelivery
        """
        self.store = store
        self.db = store.db
        self.lock = store.lock
        self.retry = retry or RetryConfig()

    def enqueue(self, job: UploadJob) -> str:
        """Persist a new job (no-op if job_id already exists)."""
        state = {
            "job_id": job.job_id,
            "account_id": job.account_id,
            "source_path": job.source_path,
            "thumbnail_path": job.thumbnail_path,
            "metadata": json.dumps(job.metadata.model_dump(mode="json")),
            "fingerprint": job.fingerprint,
            "total_bytes": job.total_bytes,
            "uploaded_bytes": job.uploaded_bytes,
            "chunk_size": job.chunk_size,
            "attempt_count": job.attempt_count,
            "max_attempts": job.max_attempts,
            "state": JobState.QUEUED.value,
            "created_at": to_timestamp(job.created_at),
            "updated_at": _now(),
        }

        with self.lock:
            if self.get_job(job.job_id) is not None:
                return job.job_id

            with self.db.conn:
                columns = ", ".join(state)
                placeholders = ", ".join("?" for _ in state)
                self.db.conn.execute(
                    f"INSERT INTO upload_jobs ({columns}) VALUES ({placeholders})",
                    list(state.values()),
                )
                self._log_transition(job.job_id, None, JobState.QUEUED.value)

        log.info("job_enqueued", job_id=job.job_id, total_bytes=job.total_bytes)
        return job.job_id

    def dequeue(self, worker_id: str) -> Optional[UploadJob]:
        """Atomically claim the oldest due job.

        Retry logic: Exponential backoff on database lock
        """
        return self._dequeue_with_retry(worker_id, max_retries=3)

    def _dequeue_with_retry(self, worker_id: str, max_retries: int = 3) -> Optional[UploadJob]:
        """Dequeue with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - The claim is a single UPDATE whose WHERE picks the job, so two
          workers (threads or processes) can never claim the same row
        - Exponential backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(max_retries):
            try:
                with self.lock, self.db.conn:
                    now = _now()
                    cursor = self.db.conn.execute("""
                        UPDATE upload_jobs
                        SET state = ?,
                            worker_id = ?,
                            started_at = ?,
                            last_heartbeat = ?,
                            updated_at = ?
                        WHERE job_id = (
                            SELECT job_id FROM upload_jobs
                            WHERE state = ?
                              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                            ORDER BY created_at ASC
                            LIMIT 1
                        )
                        RETURNING *
                    """, (
                        JobState.ACTIVE.value,
                        worker_id,
                        now,
                        now,
                        now,
                        JobState.QUEUED.value,
                        now,
                    ))
                    rows = _cursor_dicts(cursor)

                    if not rows:
                        return None

                    self._log_transition(
                        rows[0]["job_id"],
                        JobState.QUEUED.value,
                        JobState.ACTIVE.value,
                        worker_id=worker_id,
                    )
                    return _row_to_job(rows[0])

            except sqlite3.OperationalError as e:
                error_msg = str(e).lower()
                if "database is locked" in error_msg and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        return None

    def get_job(self, job_id: str) -> Optional[UploadJob]:
        with self.lock:
            rows = list(self.db["upload_jobs"].rows_where("job_id = ?", [job_id]))
        if not rows:
            return None
        return _row_to_job(rows[0])

    def get_status(self, job_id: str) -> Optional[JobStatusView]:
        job = self.get_job(job_id)
        if job is None:
            return None
        return JobStatusView.from_job(job)

    def report_progress(self, job_id: str, uploaded_bytes: int) -> ProgressAck:
        """Record upload progress.

        Lower values than recorded are rejected, values above the file size
        are clamped. The ack tells the worker whether cancellation is pending.
        """
        with self.lock, self.db.conn:
            rows = _cursor_dicts(self.db.conn.execute(
                "SELECT uploaded_bytes, total_bytes, cancel_requested FROM upload_jobs WHERE job_id = ?",
                [job_id],
            ))
            if not rows:
                raise ValueError(f"Unknown job: {job_id}")

            row = rows[0]
            value = min(max(uploaded_bytes, 0), row["total_bytes"])
            accepted = value >= row["uploaded_bytes"]

            if accepted:
                now = _now()
                self.db.conn.execute("""
                    UPDATE upload_jobs
                    SET uploaded_bytes = ?, updated_at = ?, last_heartbeat = ?
                    WHERE job_id = ?
                """, (value, now, now, job_id))
            else:
                value = row["uploaded_bytes"]

        if not accepted:
            log.warning(
                "progress_rejected",
                job_id=job_id,
                reported=uploaded_bytes,
                recorded=value,
            )

        return ProgressAck(
            job_id=job_id,
            accepted=accepted,
            uploaded_bytes=value,
            cancel_requested=bool(row["cancel_requested"]),
        )

    def complete(self, job_id: str, resource_id: str) -> None:
        """Mark job as completed. The upload session is discarded."""
        with self.lock, self.db.conn:
            now = _now()
            self.db.conn.execute("""
                UPDATE upload_jobs
                SET state = ?,
                    phase = ?,
                    resource_id = ?,
                    uploaded_bytes = total_bytes,
                    session_uri = NULL,
                    last_error = NULL,
                    next_attempt_at = NULL,
                    worker_id = NULL,
                    completed_at = ?,
                    updated_at = ?
                WHERE job_id = ?
            """, (
                JobState.COMPLETED.value,
                UploadPhase.COMPLETED.value,
                resource_id,
                now,
                now,
                job_id,
            ))
            self._log_transition(job_id, JobState.ACTIVE.value, JobState.COMPLETED.value)

        log.info("job_completed", job_id=job_id, resource_id=resource_id)

    def fail(self, job_id: str, error: str, retryable: bool) -> JobState:
        """Mark job as failed with optional retry.

        Retry logic:
        - If retryable and attempts < max_attempts: back to 'queued', due
          after an exponential backoff delay
        - Otherwise: 'failed' (terminal); the session is discarded but the
          resource id, if any, is kept for manual cleanup
        """
        job = self.get_job(job_id)
        if job is None:
            raise ValueError(f"Unknown job: {job_id}")

        new_attempt = job.attempt_count + 1
        error_snippet = error[:500] if error else None

        with self.lock, self.db.conn:
            if retryable and new_attempt < job.max_attempts:
                delay = backoff_delay(
                    new_attempt, self.retry.backoff_base_ms, self.retry.backoff_max_ms
                )
                self.db.conn.execute("""
                    UPDATE upload_jobs
                    SET state = ?,
                        attempt_count = ?,
                        last_error = ?,
                        worker_id = NULL,
                        next_attempt_at = ?,
                        updated_at = ?
                    WHERE job_id = ?
                """, (
                    JobState.QUEUED.value,
                    new_attempt,
                    error_snippet,
                    to_timestamp(utcnow() + timedelta(seconds=delay)),
                    _now(),
                    job_id,
                ))
                self._log_transition(
                    job_id, JobState.ACTIVE.value, JobState.QUEUED.value, error=error_snippet
                )
                log.warning("job_retry_scheduled", job_id=job_id, attempt=new_attempt, delay_s=delay)
                return JobState.QUEUED

            now = _now()
            self.db.conn.execute("""
                UPDATE upload_jobs
                SET state = ?,
                    phase = ?,
                    attempt_count = ?,
                    last_error = ?,
                    session_uri = NULL,
                    worker_id = NULL,
                    next_attempt_at = NULL,
                    completed_at = ?,
                    updated_at = ?
                WHERE job_id = ?
            """, (
                JobState.FAILED.value,
                UploadPhase.FAILED.value,
                new_attempt,
                error_snippet,
                now,
                now,
                job_id,
            ))
            self._log_transition(
                job_id, JobState.ACTIVE.value, JobState.FAILED.value, error=error_snippet
            )

        log.error("job_failed", job_id=job_id, attempt=new_attempt, error=error_snippet)
        return JobState.FAILED

    def requeue(self, job_id: str, delay_s: float, reason: str) -> None:
        with self.lock, self.db.conn:
            self.db.conn.execute("""
                UPDATE upload_jobs
                SET state = ?, worker_id = NULL, next_attempt_at = ?, updated_at = ?
                WHERE job_id = ?
            """, (
                JobState.QUEUED.value,
                to_timestamp(utcnow() + timedelta(seconds=delay_s)),
                _now(),
                job_id,
            ))
            self._log_transition(job_id, JobState.ACTIVE.value, JobState.QUEUED.value, error=reason)

    def save_session(self, job_id: str, session_uri: str) -> None:
        self._update(job_id, session_uri=session_uri, session_created_at=_now())

    def clear_session(self, job_id: str) -> None:
        self._update(job_id, session_uri=None, session_created_at=None)

    def record_resource(self, job_id: str, resource_id: str) -> None:
        self._update(job_id, resource_id=resource_id)

    def mark_thumbnail_done(self, job_id: str) -> None:
        self._update(job_id, thumbnail_done=1)

    def mark_metadata_applied(self, job_id: str, metadata_hash: str) -> None:
        self._update(job_id, metadata_hash=metadata_hash)

    def set_phase(self, job_id: str, phase: str) -> None:
        self._update(job_id, phase=phase.value if isinstance(phase, UploadPhase) else phase)

    def request_cancel(self, job_id: str) -> Optional[JobStatusView]:
        """Cancel a queued job now; flag an active job for the worker."""
        job = self.get_job(job_id)
        if job is None:
            return None

        if job.state == JobState.QUEUED.value:
            with self.lock, self.db.conn:
                now = _now()
                cursor = self.db.conn.execute("""
                    UPDATE upload_jobs
                    SET state = ?, last_error = ?, completed_at = ?, updated_at = ?
                    WHERE job_id = ? AND state = ?
                """, (
                    JobState.CANCELLED.value,
                    "Cancelled by request",
                    now,
                    now,
                    job_id,
                    JobState.QUEUED.value,
                ))
                if cursor.rowcount:
                    self._log_transition(job_id, JobState.QUEUED.value, JobState.CANCELLED.value)
                    return self.get_status(job_id)

        # Active (or claimed in the meantime): the worker checks between chunks
        with self.lock, self.db.conn:
            self.db.conn.execute(
                "UPDATE upload_jobs SET cancel_requested = 1, updated_at = ? WHERE job_id = ? AND state = ?",
                (_now(), job_id, JobState.ACTIVE.value),
            )
        return self.get_status(job_id)

    def mark_cancelled(self, job_id: str, discard_session: bool) -> None:
        with self.lock, self.db.conn:
            now = _now()
            self.db.conn.execute(f"""
                UPDATE upload_jobs
                SET state = ?,
                    cancel_requested = 0,
                    last_error = ?,
                    worker_id = NULL,
                    completed_at = ?,
                    updated_at = ?
                    {", session_uri = NULL, session_created_at = NULL" if discard_session else ""}
                WHERE job_id = ?
            """, (
                JobState.CANCELLED.value,
                "Cancelled by request",
                now,
                now,
                job_id,
            ))
            self._log_transition(job_id, JobState.ACTIVE.value, JobState.CANCELLED.value)

    def update_heartbeat(self, job_id: str) -> None:
        """Update heartbeat timestamp (only while the job is active)."""
        with self.lock, self.db.conn:
            self.db.conn.execute("""
                UPDATE upload_jobs
                SET last_heartbeat = ?
                WHERE job_id = ? AND state = ?
            """, (_now(), job_id, JobState.ACTIVE.value))

    def reset_stale_active(self, timeout_s: int = 600) -> int:
        """Crash recovery: Reset jobs stuck in 'active' state.

        A job is stale when its last heartbeat (or its start time, when it
        never sent one) is older than timeout_s. It goes back to 'queued'
        without consuming an attempt; session_uri is kept for resume.
        """
        cutoff = to_timestamp(utcnow() - timedelta(seconds=timeout_s))

        with self.lock, self.db.conn:
            cursor = self.db.conn.execute("""
                UPDATE upload_jobs
                SET state = ?, worker_id = NULL, updated_at = ?
                WHERE state = ?
                  AND (
                      last_heartbeat < ?
                      OR (last_heartbeat IS NULL AND started_at < ?)
                  )
                RETURNING job_id
            """, (
                JobState.QUEUED.value,
                _now(),
                JobState.ACTIVE.value,
                cutoff,
                cutoff,
            ))
            rows = cursor.fetchall()

            for row in rows:
                self._log_transition(
                    row[0],
                    JobState.ACTIVE.value,
                    JobState.QUEUED.value,
                    error="Reset stale job (crash recovery)",
                )

        if rows:
            log.warning("stale_jobs_reset", count=len(rows))
        return len(rows)

    def retry_failed(self) -> int:
        """Manual retry: failed jobs go back to the queue with a fresh budget."""
        with self.lock, self.db.conn:
            cursor = self.db.conn.execute("""
                UPDATE upload_jobs
                SET state = ?, phase = NULL, last_error = NULL, attempt_count = 0,
                    next_attempt_at = NULL, completed_at = NULL, updated_at = ?
                WHERE state = ?
                RETURNING job_id
            """, (JobState.QUEUED.value, _now(), JobState.FAILED.value))
            rows = cursor.fetchall()
            for row in rows:
                self._log_transition(row[0], JobState.FAILED.value, JobState.QUEUED.value)
        return len(rows)

    def get_all_jobs(self, state_filter: Optional[str] = None) -> List[UploadJob]:
        with self.lock:
            if state_filter:
                rows = list(self.db["upload_jobs"].rows_where(
                    "state = ?", [state_filter], order_by="created_at"
                ))
            else:
                rows = list(self.db["upload_jobs"].rows_where(order_by="created_at"))
        return [_row_to_job(row) for row in rows]

    def get_stats(self) -> QueueStats:
        with self.lock:
            cursor = self.db.conn.execute(
                "SELECT state, COUNT(*) FROM upload_jobs GROUP BY state"
            )
            counts = {state: count for state, count in cursor.fetchall()}
        return QueueStats.from_counts(counts)

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail of one job, oldest first."""
        with self.lock:
            rows = self.db["job_transitions"].rows_where(
                "job_id = ?", [job_id], order_by="id"
            )
            return [StateTransition(**row) for row in rows]

    def close(self) -> None:
        self.store.close()

    def _update(self, job_id: str, **fields: Any) -> None:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self.lock, self.db.conn:
            self.db.conn.execute(
                f"UPDATE upload_jobs SET {assignments}, updated_at = ? WHERE job_id = ?",
                [*fields.values(), _now(), job_id],
            )

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail (inside the caller's transaction)."""
        self.db.conn.execute("""
            INSERT INTO job_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            job_id,
            from_state,
            to_state,
            _now(),
            worker_id,
            error[:200] if error else None,
        ))


class SQLiteIdempotencyGuard(IdempotencyGuard):
    """Idempotency records persisted next to the queue.

    reserve() relies on the fingerprint primary key: the conditional insert
    succeeds for exactly one caller, every other caller reads back the
    winner's record.
    """

    def __init__(self, store: SQLiteStore):
        self.store = store
        self.db = store.db
        self.lock = store.lock

    def reserve(self, fingerprint: str, job_id: str) -> Reservation:
        now = _now()
        with self.lock, self.db.conn:
            self.db.conn.execute("""
                INSERT INTO idempotency_records (fingerprint, job_id, state, resource_id, created_at, updated_at)
                VALUES (?, ?, ?, NULL, ?, ?)
                ON CONFLICT(fingerprint) DO NOTHING
            """, (fingerprint, job_id, ReservationState.IN_PROGRESS.value, now, now))
            rows = _cursor_dicts(self.db.conn.execute(
                "SELECT * FROM idempotency_records WHERE fingerprint = ?", [fingerprint]
            ))

        record = IdempotencyRecord(**rows[0])

        if record.state == ReservationState.COMPLETED.value:
            outcome = ReservationOutcome.ALREADY_COMPLETED
        elif record.job_id == job_id:
            outcome = ReservationOutcome.PROCEED
        else:
            outcome = ReservationOutcome.IN_PROGRESS

        return Reservation(
            outcome=outcome,
            fingerprint=fingerprint,
            job_id=record.job_id,
            resource_id=record.resource_id,
        )

    def finalize(self, fingerprint: str, resource_id: str) -> None:
        with self.lock, self.db.conn:
            self.db.conn.execute("""
                UPDATE idempotency_records
                SET state = ?, resource_id = ?, updated_at = ?
                WHERE fingerprint = ?
            """, (ReservationState.COMPLETED.value, resource_id, _now(), fingerprint))

    def release(self, fingerprint: str, job_id: str) -> bool:
        with self.lock, self.db.conn:
            cursor = self.db.conn.execute("""
                DELETE FROM idempotency_records
                WHERE fingerprint = ? AND job_id = ? AND state = ?
            """, (fingerprint, job_id, ReservationState.IN_PROGRESS.value))
        return cursor.rowcount > 0

    def get_record(self, fingerprint: str) -> Optional[IdempotencyRecord]:
        with self.lock:
            rows = list(self.db["idempotency_records"].rows_where("fingerprint = ?", [fingerprint]))
        if not rows:
            return None
        return IdempotencyRecord(**rows[0])
