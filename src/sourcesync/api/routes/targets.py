"""Sync target administration and on-demand sync routes."""
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlmodel import Session

from sourcesync.api.deps import get_controller, get_source_factory
from sourcesync.api.schemas import (
    SourceCheckRequest,
    SourceCheckResponse,
    SyncReportResponse,
    SyncRunResponse,
    TargetCreateRequest,
    TargetResponse,
    TargetSettingsRequest,
)
from sourcesync.config import get_settings
from sourcesync.db.engine import get_session
from sourcesync.errors import (
    ConfigurationError,
    DuplicateTargetError,
    RunAlreadyActiveError,
    TargetNotFoundError,
)
from sourcesync.sync import targets as target_service
from sourcesync.sync.controller import SyncRunController

router = APIRouter()


@router.get("", response_model=List[TargetResponse])
def list_targets(session: Session = Depends(get_session)):
    return [TargetResponse.from_target(t) for t in target_service.list_targets(session)]


@router.post("", response_model=TargetResponse, status_code=201)
def register_target(request: TargetCreateRequest, session: Session = Depends(get_session)):
    """Register a wiki project or mailbox for syncing."""
    try:
        target = target_service.register_target(session, **request.model_dump())
    except DuplicateTargetError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return TargetResponse.from_target(target)


@router.post("/check", response_model=SourceCheckResponse)
async def check_source(request: SourceCheckRequest, factory=Depends(get_source_factory)):
    """Check an upstream source (exists? how many items?) before registering it."""
    result = await target_service.check_source(
        factory,
        kind=request.kind,
        source_id=request.source_id,
        credential=request.credential,
    )
    return SourceCheckResponse(**vars(result))


@router.get("/{target_id}", response_model=TargetResponse)
def get_target(target_id: int, session: Session = Depends(get_session)):
    try:
        return TargetResponse.from_target(target_service.get_target(session, target_id))
    except TargetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.patch("/{target_id}/settings", response_model=TargetResponse)
def update_settings(
    target_id: int,
    request: TargetSettingsRequest,
    session: Session = Depends(get_session),
):
    try:
        target = target_service.update_target_settings(
            session, target_id, **request.model_dump()
        )
    except TargetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return TargetResponse.from_target(target)


@router.delete("/{target_id}", status_code=204)
def delete_target(target_id: int, session: Session = Depends(get_session)):
    """Delete a target and everything synced for it. Refused (409) while a run is in progress."""
    stale_after = timedelta(minutes=get_settings().stale_run_minutes)
    try:
        target_service.delete_target(session, target_id, stale_after=stale_after)
    except TargetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RunAlreadyActiveError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return Response(status_code=204)


@router.post("/{target_id}/sync", response_model=SyncReportResponse)
async def start_sync(
    target_id: int,
    controller: SyncRunController = Depends(get_controller),
):
    """
    Run a sync for one target and return its outcome.
    Fetch failures come back as a report with status "error", not as an HTTP error.
    """
    try:
        report = await controller.start_sync(target_id)
    except TargetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RunAlreadyActiveError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SyncReportResponse.from_report(report)


@router.get("/{target_id}/runs", response_model=List[SyncRunResponse])
def run_history(
    target_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    session: Session = Depends(get_session),
    controller: SyncRunController = Depends(get_controller),
):
    try:
        target_service.get_target(session, target_id)
    except TargetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return [SyncRunResponse.model_validate(r) for r in controller.get_run_history(target_id, limit)]
