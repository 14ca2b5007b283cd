"""Sync log, due-target and auto-sync routes."""
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from sourcesync.api.deps import get_controller
from sourcesync.api.schemas import AutoSyncResponse, SyncLogResponse, TargetResponse
from sourcesync.config import get_settings
from sourcesync.db.engine import get_session
from sourcesync.sync import targets as target_service
from sourcesync.sync.controller import SyncRunController
from sourcesync.sync.scheduler_gate import list_due_targets, run_auto_sync

router = APIRouter()


def _threshold():
    return timedelta(minutes=get_settings().auto_sync_threshold_minutes)


@router.get("/logs", response_model=List[SyncLogResponse])
def sync_logs(
    limit: int = Query(default=20, ge=1, le=200),
    session: Session = Depends(get_session),
):
    """Most recent runs across all targets."""
    return [
        SyncLogResponse.from_row(run, name)
        for run, name in target_service.get_recent_runs(session, limit)
    ]


@router.get("/due", response_model=List[TargetResponse])
def due_targets(session: Session = Depends(get_session)):
    """Targets an auto-sync would pick up right now."""
    targets = list_due_targets(session, threshold=_threshold())
    return [TargetResponse.from_target(t) for t in targets]


@router.post("/auto", response_model=AutoSyncResponse)
async def auto_sync(controller: SyncRunController = Depends(get_controller)):
    """Sync every due target (the same entry point the scheduler uses)."""
    summary = await run_auto_sync(
        controller.engine,
        controller,
        threshold=_threshold(),
        concurrency=get_settings().auto_sync_concurrency,
    )
    return AutoSyncResponse.from_summary(summary)
