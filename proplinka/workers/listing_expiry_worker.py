"""
Featured listing expiry worker.

Unfeatures listings whose featured period has ended, on a fixed interval.
"""
import asyncio
import signal
from typing import Any

import structlog

from proplinka.config import get_settings
from proplinka.core.listings import expire_featured_listings
from proplinka.database.connection import close_db, get_session_factory
from proplinka.integrations.email_client import EmailClient
from proplinka.monitoring.logging import setup_logging
from proplinka.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_listing_expiry(email_client: EmailClient) -> int:
    """Run one expiry pass in its own session. Returns the number unfeatured."""
    async with get_session_factory()() as db:
        try:
            count = await expire_featured_listings(db, email_client=email_client)
            await db.commit()
        except Exception:
            await db.rollback()
            metrics.record_job_run("expire_featured_listings", "failed")
            raise

    metrics.record_job_run("expire_featured_listings", "success", count)
    return count


async def start_listing_expiry_worker(interval_minutes: int | None = None) -> None:
    """
    Start the listing expiry worker.

    Args:
        interval_minutes: Minutes between passes (defaults to settings)
    """
    setup_logging()
    interval = (interval_minutes or get_settings().listing_expiry_interval_minutes) * 60

    logger.info("listing_expiry_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("listing_expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    email_client = EmailClient()
    try:
        while running:
            try:
                count = await run_listing_expiry(email_client)
                logger.info("listing_expiry_pass_completed", unfeatured=count)
            except Exception as e:
                logger.error("listing_expiry_pass_error", error=str(e))

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await email_client.close()
        await close_db()
        logger.info("listing_expiry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Featured listing expiry worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Minutes between expiry passes"
    )
    args = parser.parse_args()

    asyncio.run(start_listing_expiry_worker(interval_minutes=args.interval))


if __name__ == "__main__":
    main()
