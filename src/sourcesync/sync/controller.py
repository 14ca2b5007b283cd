"""
SyncRunController: orchestrates one end-to-end sync pass for one target.

Flow for a single run:
  1. Reap this target's stale "processing" runs (no progress heartbeat for
     longer than stale_after, i.e. left behind by a crash)
  2. Open a SyncRun (status="processing"); the partial unique index rejects
     a second processing row for the same target
  3. Build the RemoteSource (missing credentials fail here, before any item)
  4. Page through the source; for each item run change detection, and for
     new/changed items the reconciler. Progress and the heartbeat are
     written after every page.
  5. Close the SyncRun (status="completed") and stamp the target's
     last_synced_at / total_item_count

If step 3 or 4 raises, the run is closed with status="error" and the target
is left untouched. Item and attachment failures never reach this level as
exceptions: they are collected as SyncError entries and the run still
completes.

Progress writes and the close only apply while the row is still
"processing". A run that was reaped (or whose row was deleted) underneath
it stops paginating and reports the outcome already recorded for it.
"""
import logging
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from sourcesync.errors import RunAlreadyActiveError, TargetNotFoundError
from sourcesync.models.sync import RUN_COMPLETED, RUN_ERROR, RUN_PROCESSING, SyncRun
from sourcesync.models.target import SyncTarget
from sourcesync.models.utils import utcnow
from sourcesync.sources.base import RemoteItem, RemoteSource
from sourcesync.sync.change_detector import ChangeKind, decide
from sourcesync.sync.models import SCOPE_ITEM, SyncError, SyncReport, errors_to_json
from sourcesync.sync.reconciler import ItemReconciler

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=2)

RUN_REMOVED_MESSAGE = "Run record was removed while processing"


class SyncRunController:
    """Runs syncs for targets and exposes their run history."""

    def __init__(
        self,
        engine,
        source_factory: Callable[[SyncTarget], RemoteSource],
        reconciler: Optional[ItemReconciler] = None,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            source_factory: Builds the RemoteSource for a target. May raise
                ConfigurationError (e.g. no credentials).
            reconciler: ItemReconciler; defaults to one on the same engine.
            stale_after: Time without a progress heartbeat after which a
                "processing" run is considered abandoned and closed as an error.
        """
        self.engine = engine
        self.source_factory = source_factory
        self.reconciler = reconciler or ItemReconciler(engine)
        self.stale_after = stale_after

    async def start_sync(self, target_id: int) -> SyncReport:
        """
        Run one sync pass for a target.

        Returns:
            SyncReport with status "completed" or "error".

        Raises:
            TargetNotFoundError: if the target does not exist.
            RunAlreadyActiveError: if a run for the target is processing.
        """
        target = self._load_target(target_id)
        self._reap_stale_runs(target_id)
        run = self._open_run(target_id)
        logger.info("Sync run %s started for target %s (%s)", run.id, target.id, target.name)

        errors: List[SyncError] = []
        processed = 0
        updated = 0
        try:
            source = self.source_factory(target)
            async for page in source.iter_pages():
                for rejected in page.rejected:
                    processed += 1
                    errors.append(SyncError(
                        SCOPE_ITEM, rejected.label, rejected.message, rejected.remote_id
                    ))

                for item in page.items:
                    processed += 1
                    written, item_errors = self._process_item(target, item)
                    if written:
                        updated += 1
                    errors.extend(item_errors)

                if not self._record_progress(run.id, processed, updated):
                    logger.warning(
                        "Sync run %s for target %s is no longer processing; stopping",
                        run.id, target.id,
                    )
                    break

        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error(
                "Sync run %s for target %s failed after %d items: %s",
                run.id, target.id, processed, message,
            )
            closed = self._close_run(
                run.id,
                status=RUN_ERROR,
                processed=processed,
                updated=updated,
                errors=errors,
                error_message=message,
            )
            if closed is None:
                return self._superseded_report(run, processed, updated, errors)
            return SyncReport.from_run(closed, errors)

        closed = self._close_run(
            run.id,
            status=RUN_COMPLETED,
            processed=processed,
            updated=updated,
            errors=errors,
        )
        if closed is None:
            return self._superseded_report(run, processed, updated, errors)
        logger.info(
            "Sync run %s completed: %d processed, %d updated, %d errors",
            closed.id, processed, updated, len(errors),
        )
        return SyncReport.from_run(closed, errors)

    def get_run_history(self, target_id: int, limit: int = 20) -> List[SyncRun]:
        """Runs for a target, newest first."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncRun)
                .where(SyncRun.target_id == target_id)
                .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                .limit(limit)
            ).all())

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _process_item(self, target: SyncTarget, item: RemoteItem) -> Tuple[bool, List[SyncError]]:
        """Change-detect and reconcile one item. Never raises."""
        try:
            local = self.reconciler.find(target.id, item.remote_id)
            if decide(item.remote_id, item.remote_updated_at, local) is ChangeKind.UNCHANGED:
                return False, []
            outcome = self.reconciler.reconcile(target, item)
            return outcome.written, outcome.errors
        except Exception as exc:
            logger.warning("Failed to process item %s: %s", item.remote_id, exc)
            return False, [SyncError(
                SCOPE_ITEM, item.title or item.remote_id, str(exc), item.remote_id
            )]

    def _load_target(self, target_id: int) -> SyncTarget:
        with Session(self.engine) as s:
            target = s.get(SyncTarget, target_id)
        if target is None:
            raise TargetNotFoundError(f"Sync target {target_id} not found")
        return target

    def _reap_stale_runs(self, target_id: int) -> None:
        cutoff = utcnow() - self.stale_after
        with Session(self.engine) as s:
            stale = s.exec(
                select(SyncRun).where(
                    SyncRun.target_id == target_id,
                    SyncRun.status == RUN_PROCESSING,
                    SyncRun.updated_at < cutoff,
                )
            ).all()
            for run in stale:
                logger.warning(
                    "Closing stale run %s for target %s (last progress %s)",
                    run.id, target_id, run.updated_at.isoformat(),
                )
                now = utcnow()
                run.status = RUN_ERROR
                run.completed_at = now
                run.updated_at = now
                run.error_message = (
                    f"Run abandoned: no progress for {self.stale_after}"
                )
                s.add(run)
            s.commit()

    def _open_run(self, target_id: int) -> SyncRun:
        now = utcnow()
        run = SyncRun(
            target_id=target_id, status=RUN_PROCESSING, started_at=now, updated_at=now
        )
        with Session(self.engine) as s:
            s.add(run)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                active_id = s.exec(
                    select(SyncRun.id).where(
                        SyncRun.target_id == target_id,
                        SyncRun.status == RUN_PROCESSING,
                    )
                ).first()
                logger.info("Target %s already has run %s in progress", target_id, active_id)
                raise RunAlreadyActiveError(target_id, active_id)
            s.refresh(run)
        return run

    def _record_progress(self, run_id: int, processed: int, updated: int) -> bool:
        """Write progress and the heartbeat. False if the run is no longer processing."""
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == RUN_PROCESSING)
                .values(items_processed=processed, items_updated=updated, updated_at=utcnow())
            )
            s.commit()
        return result.rowcount == 1

    def _close_run(
        self,
        run_id: int,
        *,
        status: str,
        processed: int,
        updated: int,
        errors: List[SyncError],
        error_message: Optional[str] = None,
    ) -> Optional[SyncRun]:
        """Move the run to its final status. None if it was already closed or removed."""
        now = utcnow()
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == RUN_PROCESSING)
                .values(
                    status=status,
                    completed_at=now,
                    updated_at=now,
                    items_processed=processed,
                    items_updated=updated,
                    error_count=len(errors),
                    errors_json=errors_to_json(errors),
                    error_message=error_message,
                )
            )
            if result.rowcount != 1:
                s.rollback()
                return None

            run = s.get(SyncRun, run_id)
            if status == RUN_COMPLETED:
                target = s.get(SyncTarget, run.target_id)
                if target is not None:
                    target.last_synced_at = now
                    target.total_item_count = processed
                    target.updated_at = now
                    s.add(target)

            s.commit()
            s.refresh(run)
        return run

    def _superseded_report(
        self,
        run: SyncRun,
        processed: int,
        updated: int,
        errors: List[SyncError],
    ) -> SyncReport:
        """Report for a run that was closed or deleted by someone else meanwhile."""
        with Session(self.engine) as s:
            current = s.get(SyncRun, run.id)
        if current is not None:
            logger.warning(
                "Sync run %s was already closed as %s: %s",
                run.id, current.status, current.error_message,
            )
            return SyncReport.from_run(current, errors)

        logger.warning("Sync run %s was removed while processing", run.id)
        return SyncReport(
            run_id=run.id,
            target_id=run.target_id,
            status=RUN_ERROR,
            started_at=run.started_at,
            completed_at=utcnow(),
            items_processed=processed,
            items_updated=updated,
            error_message=RUN_REMOVED_MESSAGE,
            errors=list(errors),
        )
