"""CLI command for draining and running the Alist ingest upload queue.

Usage:
    python -m alcms_ingest.cli [process|worker] [OPTIONS]

Examples:
    # Drain the queue once (suitable for cron)
    python -m alcms_ingest.cli process

    # Smaller batches with more parallel transfers
    python -m alcms_ingest.cli process --batch-size 10 --concurrency 8

    # Run the polling worker until interrupted
    python -m alcms_ingest.cli worker

    # Verbose logging
    python -m alcms_ingest.cli process -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from alcms_ingest.core import timezone  # noqa: F401
from alcms_ingest.core.config import Settings, configure_logging
from alcms_ingest.core.database import setup_db_session
from alcms_ingest.services.alist.client import AlistClient
from alcms_ingest.services.exceptions import StoreUnavailableError
from alcms_ingest.services.storage.minio_client import ObjectStorageClient
from alcms_ingest.workers.ingest_upload_worker import process_pending, run_ingest_upload_worker

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        prog="alcms-ingest",
        description="Mirror files discovered on Alist into object storage",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process", help="Drain pending/failed upload tasks once and exit"
    )
    process_parser.add_argument(
        "--batch-size",
        type=int,
        help="Tasks fetched per poll (default: ALIST_UPLOAD_BATCH_SIZE)",
    )
    process_parser.add_argument(
        "--concurrency",
        type=int,
        help="Simultaneous transfers (default: ALIST_UPLOAD_CONCURRENCY)",
    )

    subparsers.add_parser("worker", help="Poll and process upload tasks until interrupted")

    for sub in subparsers.choices.values():
        sub.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Enable verbose logging (DEBUG level)",
        )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command=args.command)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    storage = ObjectStorageClient.from_settings(settings)

    try:
        async with AlistClient.from_settings(settings) as source:
            if args.command == "worker":
                await run_ingest_upload_worker(session_factory, source, storage, settings)
                return 0

            summary = await process_pending(
                session_factory,
                source,
                storage,
                settings,
                batch_size=args.batch_size,
                concurrency=args.concurrency,
            )

        print("\n" + "=" * 60)
        print("Ingest Upload Summary")
        print("=" * 60)
        print(f"Polls: {summary.polls}")
        print(f"Completed: {summary.completed}")
        print(f"Failed: {summary.failed}")
        print(f"Skipped (claimed elsewhere): {summary.skipped}")
        print("=" * 60 + "\n")

        logger.info("cli.finished", completed=summary.completed, failed=summary.failed)
        return 0

    except StoreUnavailableError as e:
        logger.error("cli.store_unavailable", error=str(e))
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
