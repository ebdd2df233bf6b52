"""
Reconciliation background worker.

Runs daily at a scheduled hour (UTC): settles stale pending checkout
payments against Stripe, then escalates overdue lawyer remittances.
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Dict

import structlog

from proplinka.config import get_settings
from proplinka.core.reconciliation import PaymentReconciler
from proplinka.core.remittances import check_overdue_remittances
from proplinka.database.connection import close_db, get_session_factory
from proplinka.integrations.email_client import EmailClient
from proplinka.monitoring.logging import setup_logging
from proplinka.monitoring.metrics import metrics
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(email_client: EmailClient) -> Dict[str, Any]:
    """
    Run the nightly jobs.

    Returns:
        Dict[str, Any]: reconciliation and remittances summaries
    """
    logger.info("daily_reconciliation_started")

    reconciler = PaymentReconciler()
    reconciliation = await reconciler.reconcile_pending(
        older_than_hours=get_settings().pending_payment_max_age_hours
    )
    if reconciliation["errors"]:
        logger.warning(
            "reconciliation_errors_detected",
            run_id=reconciliation["run_id"],
            errors=reconciliation["errors"],
        )

    async with get_session_factory()() as db:
        try:
            remittance_summary = await check_overdue_remittances(db, email_client=email_client)
            await db.commit()
        except Exception:
            await db.rollback()
            metrics.record_job_run("check_overdue_remittances", "failed")
            raise
    metrics.record_job_run("check_overdue_remittances", "success", remittance_summary["checked"])

    logger.info(
        "daily_reconciliation_completed",
        completed=reconciliation["completed"],
        expired=reconciliation["expired"],
        lawyers_suspended=remittance_summary["suspended"],
    )
    return {"reconciliation": reconciliation, "remittances": remittance_summary}


def seconds_until_next_run(target_hour: int = 2, now: datetime | None = None) -> float:
    """
    Calculate seconds until the next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Optional clock override
    """
    now = now or utc_now()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()
    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )
    return seconds_until


async def start_reconciliation_worker(target_hour: int = 2) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run (default: 2 AM UTC)
    """
    setup_logging()

    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    email_client = EmailClient()
    try:
        while running:
            seconds_until = seconds_until_next_run(target_hour)

            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(email_client)
            except Exception as e:
                # Keep running; tomorrow's run retries what failed
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        await email_client.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=2, help="Hour of day to run reconciliation (0-23, UTC)"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
