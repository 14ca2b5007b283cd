"""
Scheduler gate: picks the targets that are due for an automatic sync and
runs them.

A target is due when auto-sync is enabled and it has either never been
synced or was last synced more than `threshold` ago. One target failing
(or already running) never stops the rest of the batch.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlmodel import Session, select

from sourcesync.errors import RunAlreadyActiveError
from sourcesync.models.target import SyncTarget
from sourcesync.models.utils import utcnow
from sourcesync.sync.change_detector import normalize_timestamp
from sourcesync.sync.models import AutoSyncResult, AutoSyncSummary

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = timedelta(hours=1)


def due_targets(
    targets: Iterable[SyncTarget],
    now: datetime,
    threshold: timedelta = DEFAULT_THRESHOLD,
) -> List[SyncTarget]:
    """Filter targets down to the ones an auto-sync should run now."""
    now = normalize_timestamp(now)
    due = []
    for target in targets:
        if not target.auto_sync_enabled:
            continue
        if target.last_synced_at is None or now - target.last_synced_at > threshold:
            due.append(target)
    return due


def list_due_targets(
    session: Session,
    now: Optional[datetime] = None,
    threshold: timedelta = DEFAULT_THRESHOLD,
) -> List[SyncTarget]:
    """Load auto-sync targets, least recently synced first, and filter the due ones."""
    targets = session.exec(
        select(SyncTarget)
        .where(SyncTarget.auto_sync_enabled == True)  # noqa: E712
        .order_by(SyncTarget.last_synced_at.is_not(None), SyncTarget.last_synced_at)
    ).all()
    return due_targets(targets, now or utcnow(), threshold)


def get_due_targets(
    engine,
    now: Optional[datetime] = None,
    threshold: timedelta = DEFAULT_THRESHOLD,
) -> List[SyncTarget]:
    with Session(engine) as s:
        return list_due_targets(s, now, threshold)


async def run_auto_sync(
    engine,
    controller,
    *,
    now: Optional[datetime] = None,
    threshold: timedelta = DEFAULT_THRESHOLD,
    concurrency: int = 1,
) -> AutoSyncSummary:
    """
    Sync every due target.

    Idempotent: a second call right after the first finds nothing due.
    Up to `concurrency` targets run at once; they still share the
    controller's rate-limited client.
    """
    targets = get_due_targets(engine, now, threshold)
    summary = AutoSyncSummary(due=len(targets))
    if not targets:
        logger.info("Auto-sync: no targets due")
        return summary

    logger.info("Auto-sync: %d target(s) due", len(targets))
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _sync_one(target: SyncTarget) -> AutoSyncResult:
        result = AutoSyncResult(target_id=target.id, target_name=target.name)
        async with semaphore:
            try:
                result.report = await controller.start_sync(target.id)
                if not result.report.succeeded:
                    logger.error(
                        "Auto-sync of %s ended in error: %s",
                        target.name, result.report.error_message,
                    )
            except RunAlreadyActiveError as exc:
                logger.info("Auto-sync of %s skipped: %s", target.name, exc)
                result.error = str(exc)
            except Exception as exc:
                logger.error("Failed to sync target %s: %s", target.name, exc)
                result.error = str(exc) or exc.__class__.__name__
        return result

    summary.results = list(await asyncio.gather(*(_sync_one(t) for t in targets)))
    return summary
