"""Command-line interface for the images workflow engine."""

import argparse
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .core.config import EngineConfig
from .core.exceptions import ConfigurationError, DatabaseLockedError
from .core.factories import Engine, EngineFactory
from .core.logging_config import configure_logging, get_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="images-workflow",
        description="Images Workflow - background processing and share workflow for an image host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the processing pool, notification dispatcher and periodic sweeps
  images-workflow worker --bucket my-images --database /var/lib/images/workflow.duckdb

  # One-off sweeps, when no worker holds the database
  # Expire share requests older than the TTL
  images-workflow expire-stale --database /var/lib/images/workflow.duckdb

  # Re-publish uploads that stopped making progress
  images-workflow reconcile --database /var/lib/images/workflow.duckdb

Settings not given on the command line come from IMAGES_WORKFLOW_* variables.
        """,
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--bucket", default=None, help="S3 bucket holding originals and derived assets")
    common.add_argument("--database", default=None, help="DuckDB database path")
    common.add_argument("--queue-prefix", default=None, help="Prefix for SQS queue names")
    common.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    worker_parser = subparsers.add_parser(
        "worker", parents=[common], help="Run the worker pool and notification dispatcher"
    )
    worker_parser.add_argument(
        "--workers", type=int, default=None, help="Concurrent processing consumers"
    )
    worker_parser.add_argument(
        "--expire-interval",
        type=float,
        default=None,
        help="Seconds between share-request expiry sweeps (0 disables)",
    )
    worker_parser.add_argument(
        "--reconcile-interval",
        type=float,
        default=None,
        help="Seconds between stuck-upload reconciliation sweeps (0 disables)",
    )
    subparsers.add_parser("expire-stale", parents=[common], help="Expire stale share requests once")
    subparsers.add_parser("reconcile", parents=[common], help="Re-publish stuck uploads once")
    subparsers.add_parser("version", help="Show version information")
    return parser


def load_config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_env(
        bucket=args.bucket,
        database_path=args.database,
        queue_prefix=args.queue_prefix,
        worker_count=getattr(args, "workers", None),
        expire_interval_seconds=getattr(args, "expire_interval", None),
        reconcile_interval_seconds=getattr(args, "reconcile_interval", None),
        debug=args.debug or None,
    )


def wait_for_shutdown(stop_event: threading.Event) -> None:
    """Block until SIGINT or SIGTERM."""

    def _request_stop(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        stop_event.set()


def run_worker(engine: Engine) -> int:
    logger = get_logger("worker")
    engine.start()
    engine.start_maintenance()
    logger.info(
        f"Worker running with {engine.config.worker_count} processing consumer(s); Ctrl+C to stop"
    )
    try:
        wait_for_shutdown(threading.Event())
    finally:
        logger.info("Shutting down")
        engine.close()
    return 0


def run_expire_stale(engine: Engine) -> int:
    try:
        expired = engine.sharing.expire_stale()
    finally:
        engine.close()
    print(f"Expired {expired} share request(s)")
    return 0


def run_reconcile(engine: Engine) -> int:
    try:
        republished = engine.ingestion.reconcile_stuck()
    finally:
        engine.close()
    print(f"Re-published {republished} upload event(s)")
    return 0


COMMANDS = {
    "worker": run_worker,
    "expire-stale": run_expire_stale,
    "reconcile": run_reconcile,
}


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the images-workflow command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        print("Images Workflow CLI")
        print(f"Version {__version__}")
        sys.exit(0)

    if args.command not in COMMANDS:
        parser.print_help()
        sys.exit(1)

    configure_logging(debug=args.debug)
    try:
        config = load_config(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        engine = EngineFactory.create_engine(config)
    except DatabaseLockedError as e:
        print(f"Database unavailable: {e}", file=sys.stderr)
        if args.command != "worker":
            print(
                "The worker runs this sweep on a timer; stop it or wait for its next run.",
                file=sys.stderr,
            )
        sys.exit(3)

    sys.exit(COMMANDS[args.command](engine))


if __name__ == "__main__":
    main()
