"""
Queue Worker: run the email queue processor outside the API process.

Use this when ``QUEUE_PROCESSOR_ENABLED`` is false for the web workers, so
that exactly one process drains the queue.
"""

import asyncio
import logging
import signal

from ..core.config import get_settings
from ..core.database import create_engine_from_url, create_session_factory
from ..core.logging import configure_logging
from ..services.channels import build_channel_providers
from ..services.priority_index import build_priority_index
from ..services.queue_processor import QueueProcessor


logger = logging.getLogger(__name__)


async def run_worker(
    database_url: str,
    once: bool = False,
    interval_seconds: float | None = None,
) -> None:
    """Drain the queue once, or keep cycling until SIGINT/SIGTERM."""
    settings = get_settings()
    engine = create_engine_from_url(database_url)
    providers = build_channel_providers(settings)
    index = build_priority_index(
        settings.redis_url,
        prefix=settings.priority_index_prefix,
        max_connections=settings.redis_max_connections,
    )
    processor = QueueProcessor(
        create_session_factory(engine),
        index,
        providers.email,
        batch_size=settings.queue_batch_size,
        interval_seconds=interval_seconds or settings.queue_interval_seconds,
    )

    try:
        if once:
            recovered = await processor.recover()
            report = await processor.process_cycle()
            logger.info(
                f"Single cycle done: {recovered} indexed, {report.attempted} attempted, "
                f"{report.sent} sent, {report.failed} failed"
            )
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await processor.start()
        await stop.wait()
    finally:
        await processor.stop()
        await index.close()
        await providers.close()
        await engine.dispose()


def main():
    """CLI entry point for the queue worker."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run the email queue processor")
    parser.add_argument(
        "--database-url",
        default=settings.database_url_async,
        help="Database connection string",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single processing cycle and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between cycles (defaults to QUEUE_INTERVAL_SECONDS)",
    )

    args = parser.parse_args()

    configure_logging(settings.log_level)

    try:
        asyncio.run(run_worker(args.database_url, once=args.once, interval_seconds=args.interval))
    except Exception as e:
        print(f"Worker failed: {e}")
        exit(1)


if __name__ == "__main__":
    main()
