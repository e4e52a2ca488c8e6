"""
APScheduler jobs for background maintenance.

Nightly reconciliation catches orphans and duplicates left behind by
interrupted or out-of-order syncs. Rate-limit pruning drops attempt rows
whose window and block have both expired.

The scheduler runs inside the worker process started by `python -m yardsync`.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from yardsync.config import get_settings
from yardsync.sync.reconciliation import Resolution

logger = logging.getLogger(__name__)


def build_scheduler(coordinator) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        coordinator: SyncCoordinator the jobs run against.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_reconciliation,
        trigger="cron",
        hour=settings.reconciliation_hour,
        minute=0,
        id="nightly_reconciliation",
        replace_existing=True,
        kwargs={"coordinator": coordinator},
    )
    scheduler.add_job(
        _prune_rate_limits,
        trigger="interval",
        minutes=settings.rate_limit_prune_minutes,
        id="prune_rate_limits",
        replace_existing=True,
        kwargs={"coordinator": coordinator},
    )

    return scheduler


async def _nightly_reconciliation(coordinator) -> None:
    """
    Nightly job: audit and repair local records.

    Idempotent: a second run right after a successful repair finds nothing.
    """
    logger.info("Nightly reconciliation starting at %s", datetime.utcnow().isoformat())
    try:
        report = coordinator.run_reconciliation()
        if report.errors:
            logger.error("Reconciliation checks failed: %s", "; ".join(report.errors))
        flagged = [i for i in report.issues if i.resolution == Resolution.FLAGGED]
        if flagged:
            logger.warning("%d identity issue(s) need a manual decision", len(flagged))
    except Exception as exc:
        logger.error("Nightly reconciliation failed: %s", exc)


async def _prune_rate_limits(coordinator) -> None:
    try:
        removed = coordinator.rate_limiter.prune()
        if removed:
            logger.info("Pruned %d expired rate-limit attempts", removed)
    except Exception as exc:
        logger.error("Rate-limit pruning failed: %s", exc)
