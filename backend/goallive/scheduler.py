"""Background jobs using APScheduler."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from goallive.services import LedgerServices

logger = logging.getLogger(__name__)


async def custody_flush_job(services: LedgerServices) -> None:
    """Deliver pending custody instructions; failures stay queued for the next run."""
    try:
        report = await services.notifier.flush()
    except Exception as e:
        logger.error(f"Custody flush failed: {e}")
        return

    if report.attempted:
        logger.info(
            f"Custody flush: {len(report.delivered)} delivered, {len(report.failed)} failed, "
            f"{len(report.abandoned)} abandoned"
        )


def create_scheduler(services: LedgerServices) -> AsyncIOScheduler:
    """Build the scheduler for the API process; start it inside a running event loop."""
    scheduler = AsyncIOScheduler()
    interval = services.settings.custody.flush_interval_seconds

    scheduler.add_job(
        custody_flush_job,
        IntervalTrigger(seconds=interval),
        args=[services],
        id="custody-flush",
        name="Custody: Outbox Flush",
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Registered job: Custody Outbox Flush (every {interval}s)")

    return scheduler
