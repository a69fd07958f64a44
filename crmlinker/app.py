import argparse
import json
import signal
from pathlib import Path

from . import __version__
from .client import CrmClient
from .config import Settings
from .database import Database, init_database
from .env import load_env
from .errors import ConfigError, LinkerError
from .logger import StructuredLogger, get_logger, reset_logger
from .matcher import Matcher
from .producer import enqueue_from_file
from .reconciler import Reconciler
from .repositories import BusinessRepository, LinkRepository
from .reset import reset_state
from .work_queue import FAILED, WorkQueue
from .worker import WorkerPool


def build_reconciler(settings: Settings, database: Database, logger: StructuredLogger):
    client = CrmClient(settings.api_base_url, settings.api_token, logger=logger)
    matcher = Matcher(BusinessRepository(database), logger=logger)
    return client, Reconciler(client, LinkRepository(database), matcher, logger=logger)


def build_queue(settings: Settings, database: Database, logger: StructuredLogger) -> WorkQueue:
    return WorkQueue(
        database,
        max_attempts=settings.max_attempts,
        base_delay=settings.backoff_seconds,
        logger=logger,
    )


def cmd_init_db(args, settings: Settings, logger: StructuredLogger) -> None:
    database = init_database(settings.database_url)
    database.dispose()
    print(f"Database ready: {settings.database_url}")


def cmd_enqueue(args, settings: Settings, logger: StructuredLogger) -> None:
    input_path = Path(args.input) if args.input else settings.ids_file
    limit = args.limit if args.limit is not None else settings.producer_limit
    database = init_database(settings.database_url)
    try:
        count = enqueue_from_file(input_path, build_queue(settings, database, logger), limit=limit)
    except FileNotFoundError as e:
        raise SystemExit(str(e))
    finally:
        database.dispose()
    print(f"Enqueued: {count}")


def cmd_reconcile(args, settings: Settings, logger: StructuredLogger) -> None:
    settings.require_api()
    database = init_database(settings.database_url)
    client, reconciler = build_reconciler(settings, database, logger)
    try:
        outcome = reconciler.reconcile(args.id)
    except LinkerError as e:
        raise SystemExit(f"Reconciliation failed: {e}")
    finally:
        client.close()
        database.dispose()
    print(json.dumps(outcome.to_dict(), indent=2))


def cmd_work(args, settings: Settings, logger: StructuredLogger) -> None:
    concurrency = args.concurrency if args.concurrency is not None else settings.concurrency
    if concurrency < 1:
        raise ConfigError(f"--concurrency must be at least 1, got {concurrency}")
    settings.require_api()
    database = init_database(settings.database_url)
    client, reconciler = build_reconciler(settings, database, logger)
    pool = WorkerPool(
        build_queue(settings, database, logger),
        reconciler,
        concurrency=concurrency,
        poll_interval=args.poll_interval,
        stale_after=settings.stale_after_seconds,
        logger=logger,
    )

    def _shutdown(signum, frame):
        pool.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        pool.run(drain=args.drain)
    finally:
        client.close()
        database.dispose()
        logger.log_session_report()


def cmd_failures(args, settings: Settings, logger: StructuredLogger) -> None:
    database = init_database(settings.database_url)
    queue = build_queue(settings, database, logger)
    try:
        if args.requeue:
            print(f"Requeued: {queue.requeue_failed()}")
            return
        failed = queue.failures()
        if not failed:
            print("No failed jobs.")
            return
        print(f"{len(failed)} failed job(s):\n")
        for job in failed:
            print(f"Job {job.id}: {job.record_id}")
            print(f"  Attempts: {job.attempts}/{job.max_attempts}")
            print(f"  Last error: {job.last_error}")
            print()
    finally:
        database.dispose()


def cmd_status(args, settings: Settings, logger: StructuredLogger) -> None:
    database = init_database(settings.database_url)
    queue = build_queue(settings, database, logger)
    try:
        print(f"Link records: {LinkRepository(database).count()}")
        for status in ("pending", "running", "done", FAILED):
            print(f"Jobs {status}: {queue.count(status)}")
    finally:
        database.dispose()


def cmd_reset(args, settings: Settings, logger: StructuredLogger) -> None:
    if not args.yes:
        raise SystemExit("Refusing to reset without --yes (deletes all link records and queued jobs).")
    database = init_database(settings.database_url)
    try:
        links, jobs = reset_state(database)
    finally:
        database.dispose()
    print(f"Removed {links} link record(s) and {jobs} job(s).")


def main(argv=None):
    # Load .env if present (CRM_API_BASE_URL, CRM_API_TOKEN, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="crmlinker", description="Link CRM records to authoritative business entries")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--database-url", help="SQLAlchemy database URL (or set CRMLINKER_DATABASE_URL)")
    parser.add_argument("--log-level", help="Log level (or set CRMLINKER_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command")
    ini = subparsers.add_parser("init-db", help="Create database tables")
    ini.set_defaults(func=cmd_init_db)

    enq = subparsers.add_parser("enqueue", help="Enqueue record ids from a CSV file")
    enq.add_argument("--input", help="CSV file, id in first column (or set CRMLINKER_IDS_FILE)")
    enq.add_argument("--limit", type=int, help="Enqueue at most this many ids")
    enq.set_defaults(func=cmd_enqueue)

    rec = subparsers.add_parser("reconcile", help="Reconcile a single record id now, bypassing the queue")
    rec.add_argument("--id", required=True, help="CRM record id")
    rec.set_defaults(func=cmd_reconcile)

    wrk = subparsers.add_parser("work", help="Run the worker pool against the queue")
    wrk.add_argument("--concurrency", type=int, help="Number of workers (default 5, or CRMLINKER_CONCURRENCY)")
    wrk.add_argument("--drain", action="store_true", help="Exit once the queue is empty")
    wrk.add_argument("--poll-interval", type=float, default=1.0, help="Seconds to wait when no job is due")
    wrk.set_defaults(func=cmd_work)

    fail = subparsers.add_parser("failures", help="List jobs that exhausted their attempts")
    fail.add_argument("--requeue", action="store_true", help="Put failed jobs back in the queue")
    fail.set_defaults(func=cmd_failures)

    sts = subparsers.add_parser("status", help="Show link and queue counts")
    sts.set_defaults(func=cmd_status)

    rst = subparsers.add_parser("reset", help="Delete all link records and queued jobs")
    rst.add_argument("--yes", action="store_true", help="Confirm the reset")
    rst.set_defaults(func=cmd_reset)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        raise SystemExit(str(e))
    if args.database_url:
        settings.database_url = args.database_url
    if args.log_level:
        settings.log_level = args.log_level

    reset_logger()
    logger = get_logger(level=settings.log_level, log_dir=settings.log_dir)

    if hasattr(args, "func"):
        try:
            args.func(args, settings, logger)
        except ConfigError as e:
            raise SystemExit(str(e))
        return

    parser.print_help()


if __name__ == "__main__":
    main()
