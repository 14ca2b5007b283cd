"""
APScheduler jobs for background sync.

The auto-sync job fires every few minutes and lets the scheduler gate decide
which targets are actually due (auto-sync enabled and not synced within the
threshold), so the job itself is cheap and idempotent.

The scheduler runs inside the `python -m sourcesync` process.
"""
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from sourcesync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync controller.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _auto_sync,
        trigger="interval",
        minutes=settings.auto_sync_interval_minutes,
        id="auto_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
        kwargs={"engine": engine},
    )

    return scheduler


async def _auto_sync(engine) -> None:
    """
    Periodic job: sync every due target.

    Never raises, so one bad tick can't kill the scheduler.
    """
    from sourcesync.sync.runtime import auto_sync

    logger.info("Auto-sync starting at %s", datetime.now(timezone.utc).isoformat())
    try:
        summary = await auto_sync(engine)
        logger.info(
            "Auto-sync finished: %d due, %d failed", summary.due, summary.failed
        )
    except Exception as exc:
        logger.error("Auto-sync failed: %s", exc)
