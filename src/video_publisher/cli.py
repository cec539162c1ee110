import argparse
import signal
import sys
import threading
import time
from datetime import timedelta

from tqdm import tqdm

from .config import resolve_config
from .credentials import Credential, SQLiteCredentialStore
from .errors import ValidationError
from .logs import configure_logging
from .publisher import Publisher, build_worker
from .queue.models import TERMINAL_STATES, UploadRequest, VideoMetadata, utcnow
from .queue.worker import UploadWorkerPool


def _cli_overrides(args) -> dict:
    keys = ("db", "workers")
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def _print_status(view) -> None:
    print(f"Job:       {view.id}")
    print(f"State:     {view.state}")
    if view.phase:
        print(f"Phase:     {view.phase}")
    print(
        f"Progress:  {view.progress.bytes_uploaded}/{view.progress.total_bytes} bytes "
        f"({view.progress.percent:.1f}%)"
    )
    print(f"Attempts:  {view.attempts}")
    if view.resource_id:
        print(f"Video id:  {view.resource_id}")
    if view.error:
        print(f"Error:     {view.error}")


def _watch(publisher: Publisher, job_id: str, interval_s: float) -> None:
    view = publisher.get_status(job_id)
    with tqdm(total=view.progress.total_bytes, unit="B", unit_scale=True, desc=job_id[:8]) as bar:
        while True:
            bar.update(view.progress.bytes_uploaded - bar.n)
            bar.set_postfix_str(view.phase or view.state)
            if view.state in TERMINAL_STATES:
                break
            time.sleep(interval_s)
            view = publisher.get_status(job_id)
    _print_status(view)


def cmd_submit(args, config) -> None:
    tags = [t.strip() for t in args.tags.split(",") if t.strip()] if args.tags else []
    try:
        request = UploadRequest(
            account_id=args.account,
            file_path=args.file,
            thumbnail_path=args.thumbnail,
            metadata=VideoMetadata(
                title=args.title,
                description=args.description or "",
                tags=tags,
                publish_at=args.publish_at,
                visibility=args.visibility,
            ),
            idempotency_key=args.key,
            chunk_size=args.chunk_size,
            max_attempts=args.max_attempts,
        )
    except ValueError as e:
        print(f"❌ Invalid request: {e}")
        sys.exit(1)

    with Publisher.open(config) as publisher:
        try:
            result = publisher.submit(request)
        except ValidationError as e:
            print(f"❌ {e.message}")
            sys.exit(1)

    if result.duplicate:
        print(f"Duplicate of job {result.job_id} ({result.state})")
        if result.resource_id:
            print(f"Video id:  {result.resource_id}")
    else:
        print(f"✅ Enqueued job {result.job_id}")


def cmd_status(args, config) -> None:
    with Publisher.open(config) as publisher:
        view = publisher.get_status(args.job_id)
        if view is None:
            print(f"❌ Unknown job: {args.job_id}")
            sys.exit(1)
        if args.watch:
            _watch(publisher, args.job_id, args.interval)
        else:
            _print_status(view)


def cmd_cancel(args, config) -> None:
    with Publisher.open(config) as publisher:
        view = publisher.cancel(args.job_id)
    if view is None:
        print(f"❌ Unknown job: {args.job_id}")
        sys.exit(1)
    _print_status(view)


def cmd_worker(args, config) -> None:
    with Publisher.open(config) as publisher:
        reset = publisher.queue.reset_stale_active(config.queue.stale_timeout_s)
    if reset:
        print(f"Reset {reset} stale job(s)")

    stop = threading.Event()

    def handle_signal(signum, frame):
        print("\nStopping after current job...")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    print(f"Starting {config.worker.workers} worker(s) on {config.queue.db_path}")
    with UploadWorkerPool(
        lambda worker_id: build_worker(config, worker_id), n_workers=config.worker.workers
    ) as pool:
        processed = pool.run(stop_event=stop, exit_when_idle=args.once, max_jobs=args.max_jobs)

    print("\n" + "=" * 60)
    print("WORKER SUMMARY")
    print("=" * 60)
    print(f"Jobs processed:       {processed}")
    print("=" * 60)


def cmd_queue(args, config, queue_parser) -> None:
    if args.queue_command is None:
        queue_parser.print_help()
        return

    with Publisher.open(config) as publisher:
        if args.queue_command == "stats":
            stats = publisher.queue.get_stats()
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            print(f"Queued:               {stats.queued}")
            print(f"Active:               {stats.active}")
            print(f"Completed:            {stats.completed}")
            print(f"Failed:               {stats.failed}")
            print(f"Cancelled:            {stats.cancelled}")
            print(f"Total:                {stats.total}")
            print("=" * 60)

        elif args.queue_command == "retry":
            count = publisher.queue.retry_failed()
            print(f"Re-queued {count} failed job(s)")

        elif args.queue_command == "reset-stale":
            timeout = args.timeout or config.queue.stale_timeout_s
            count = publisher.queue.reset_stale_active(timeout)
            print(f"Reset {count} stale job(s)")


def cmd_credentials(args, config, credentials_parser) -> None:
    if args.credentials_command != "add":
        credentials_parser.print_help()
        return

    expires_at = utcnow() + timedelta(seconds=args.expires_in) if args.expires_in else None
    credential = Credential(
        account_id=args.account,
        access_token=args.access_token,
        refresh_token=args.refresh_token,
        scope=args.scope,
        expires_at=expires_at,
    )
    with Publisher.open(config) as publisher:
        SQLiteCredentialStore(publisher.queue.store).save(credential)
    print(f"✅ Stored credentials for account {args.account}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="video-publisher", description="Resumable, idempotent video uploads"
    )
    parser.add_argument("--db", type=str, help="Queue database path")
    parser.add_argument("--log-level", type=str, default="INFO", help="Log level")
    parser.add_argument("--log-json", action="store_true", help="JSON log lines")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Enqueue a video upload")
    submit_parser.add_argument("--account", "-a", type=str, required=True, help="Account id")
    submit_parser.add_argument("--file", "-f", type=str, required=True, help="Video file")
    submit_parser.add_argument("--title", "-t", type=str, required=True, help="Video title")
    submit_parser.add_argument("--description", type=str, help="Video description")
    submit_parser.add_argument("--tags", type=str, help="Comma-separated tags")
    submit_parser.add_argument("--publish-at", type=str, help="Scheduled publish time (ISO 8601)")
    submit_parser.add_argument(
        "--visibility", choices=["public", "unlisted", "private"], default="private"
    )
    submit_parser.add_argument("--thumbnail", type=str, help="Thumbnail image (JPEG/PNG)")
    submit_parser.add_argument("--key", type=str, help="Idempotency key")
    submit_parser.add_argument("--chunk-size", type=int, help="Bytes per chunk (multiple of 256 KiB)")
    submit_parser.add_argument("--max-attempts", type=int, help="Attempt budget")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", type=str)
    status_parser.add_argument("--watch", "-w", action="store_true", help="Progress bar until done")
    status_parser.add_argument("--interval", type=float, default=1.0, help="Watch poll interval (s)")

    # CANCEL
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", type=str)

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run upload workers")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of worker threads")
    worker_parser.add_argument("--max-jobs", type=int, help="Stop after this many jobs per worker")
    worker_parser.add_argument("--once", action="store_true", help="Exit when no job is due")

    # QUEUE subcommands (stats, retry, reset-stale)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("stats", help="Show queue counts")
    queue_subparsers.add_parser("retry", help="Re-queue failed jobs")
    reset_parser = queue_subparsers.add_parser("reset-stale", help="Reset jobs of crashed workers")
    reset_parser.add_argument("--timeout", type=int, help="Seconds without heartbeat")

    # CREDENTIALS
    credentials_parser = subparsers.add_parser("credentials", help="Manage account credentials")
    credentials_subparsers = credentials_parser.add_subparsers(dest="credentials_command")
    add_parser = credentials_subparsers.add_parser("add", help="Store an access token")
    add_parser.add_argument("--account", "-a", type=str, required=True)
    add_parser.add_argument("--access-token", type=str, required=True)
    add_parser.add_argument("--refresh-token", type=str)
    add_parser.add_argument("--scope", type=str)
    add_parser.add_argument("--expires-in", type=int, help="Token lifetime in seconds")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    configure_logging(args.log_level, json_output=args.log_json)
    config = resolve_config(_cli_overrides(args))

    if args.command == "submit":
        cmd_submit(args, config)
    elif args.command == "status":
        cmd_status(args, config)
    elif args.command == "cancel":
        cmd_cancel(args, config)
    elif args.command == "worker":
        cmd_worker(args, config)
    elif args.command == "queue":
        cmd_queue(args, config, queue_parser)
    elif args.command == "credentials":
        cmd_credentials(args, config, credentials_parser)


if __name__ == "__main__":
    main()
