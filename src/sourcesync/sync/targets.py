"""Administrative operations on sync targets."""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete
from sqlmodel import Session, select

from sourcesync.errors import (
    ConfigurationError,
    DuplicateTargetError,
    PermanentUpstreamError,
    RunAlreadyActiveError,
    TargetNotFoundError,
    UpstreamError,
)
from sourcesync.models.item import SubEntity, SyncableItem
from sourcesync.models.sync import RUN_PROCESSING, SyncRun
from sourcesync.models.target import SyncTarget
from sourcesync.models.utils import utcnow
from sourcesync.sources.registry import SUPPORTED_KINDS
from sourcesync.sync.controller import DEFAULT_STALE_AFTER

logger = logging.getLogger(__name__)


@dataclass
class SourceCheck:
    exists: bool
    estimated_total: Optional[int] = None
    error: Optional[str] = None


def list_targets(session: Session) -> List[SyncTarget]:
    return list(session.exec(select(SyncTarget).order_by(SyncTarget.name)).all())


def get_target(session: Session, target_id: int) -> SyncTarget:
    target = session.get(SyncTarget, target_id)
    if target is None:
        raise TargetNotFoundError(f"Sync target {target_id} not found")
    return target


def register_target(
    session: Session,
    *,
    name: str,
    kind: str,
    source_id: str,
    auto_sync_enabled: bool = False,
    is_private: bool = False,
    credential: Optional[str] = None,
) -> SyncTarget:
    """Create a new target. It has never been synced, so it is due at once."""
    if kind not in SUPPORTED_KINDS:
        raise ConfigurationError(
            f"Unsupported source kind '{kind}'. Supported: {', '.join(SUPPORTED_KINDS)}"
        )
    existing = session.exec(select(SyncTarget.id).where(SyncTarget.name == name)).first()
    if existing is not None:
        raise DuplicateTargetError(f"A target named '{name}' is already registered")

    target = SyncTarget(
        name=name,
        kind=kind,
        source_id=source_id,
        auto_sync_enabled=auto_sync_enabled,
        is_private=is_private,
        credential=credential,
    )
    session.add(target)
    session.commit()
    session.refresh(target)
    logger.info("Registered %s target %s (%s)", kind, target.id, name)
    return target


def update_target_settings(
    session: Session,
    target_id: int,
    *,
    auto_sync_enabled: Optional[bool] = None,
    is_private: Optional[bool] = None,
    credential: Optional[str] = None,
) -> SyncTarget:
    """Update sync settings. Arguments left as None are not changed."""
    target = get_target(session, target_id)
    if auto_sync_enabled is not None:
        target.auto_sync_enabled = auto_sync_enabled
    if is_private is not None:
        target.is_private = is_private
    if credential is not None:
        target.credential = credential or None
    target.updated_at = utcnow()
    session.add(target)
    session.commit()
    session.refresh(target)
    return target


def delete_target(
    session: Session,
    target_id: int,
    *,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> None:
    """
    Delete a target together with its runs, items and attachments.

    Raises:
        RunAlreadyActiveError: while a run for the target is still making
            progress. A processing run with no heartbeat for `stale_after`
            is abandoned and does not block the delete.
    """
    target = get_target(session, target_id)
    active_id = session.exec(
        select(SyncRun.id).where(
            SyncRun.target_id == target_id,
            SyncRun.status == RUN_PROCESSING,
            SyncRun.updated_at >= utcnow() - stale_after,
        )
    ).first()
    if active_id is not None:
        raise RunAlreadyActiveError(target_id, active_id)
    item_ids = select(SyncableItem.id).where(SyncableItem.target_id == target_id)
    session.exec(delete(SubEntity).where(SubEntity.item_id.in_(item_ids)))
    session.exec(delete(SyncableItem).where(SyncableItem.target_id == target_id))
    session.exec(delete(SyncRun).where(SyncRun.target_id == target_id))
    session.delete(target)
    session.commit()
    logger.info("Deleted target %s and its sync data", target_id)


def get_recent_runs(session: Session, limit: int = 20) -> List[Tuple[SyncRun, str]]:
    """Latest runs across all targets, with the target name."""
    rows = session.exec(
        select(SyncRun, SyncTarget.name)
        .join(SyncTarget, SyncTarget.id == SyncRun.target_id)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(limit)
    ).all()
    return [(run, name) for run, name in rows]


async def check_source(
    source_factory,
    *,
    kind: str,
    source_id: str,
    credential: Optional[str] = None,
) -> SourceCheck:
    """
    Check an upstream source before registering it.

    Makes the cheapest request the source supports (RemoteSource.check_reachable).
    Missing credentials, auth failures and unknown projects come back as
    exists=False; other failures propagate.
    """
    candidate = SyncTarget(
        name=source_id,
        kind=kind,
        source_id=source_id,
        is_private=credential is not None,
        credential=credential,
    )
    try:
        source = source_factory(candidate)
        page = await source.check_reachable()
    except ConfigurationError as exc:
        return SourceCheck(exists=False, error=str(exc))
    except PermanentUpstreamError as exc:
        cause = exc.__cause__
        if isinstance(cause, UpstreamError) and cause.status_code in (401, 403, 404):
            return SourceCheck(exists=False, error=str(cause))
        raise
    return SourceCheck(
        exists=True,
        estimated_total=page.estimated_total or len(page.items) + len(page.rejected),
    )
