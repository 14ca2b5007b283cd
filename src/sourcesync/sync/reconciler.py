"""
ItemReconciler: writes one remote item and its attachments to the DB.

Flow for a single item:
  1. map_item(): pure mapping into SyncableItem columns, with defaults for
     every optional upstream field
  2. Upsert SyncableItem keyed by (target_id, remote_id)
  3. For each sub-entity: insert if (item_id, natural_key) is absent,
     otherwise leave the stored row alone

Idempotency: both writes are keyed by unique constraints. A unique
violation on insert (another writer got there first) turns into an update
for the item and into a skip for a sub-entity.

Failure isolation: an attachment failure is recorded and the next
attachment is attempted; the item still counts as written. Only a failure
of the item upsert itself marks the item as not written.
"""
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from sourcesync.errors import SyncEngineError
from sourcesync.models.item import SubEntity, SyncableItem
from sourcesync.models.target import SyncTarget
from sourcesync.models.utils import utcnow
from sourcesync.sources.base import RemoteItem, RemoteSubEntity
from sourcesync.sources.registry import KIND_GMAIL, KIND_SCRAPBOX
from sourcesync.sync.models import (
    SCOPE_ITEM,
    SCOPE_SUB_ENTITY,
    ReconcileOutcome,
    SyncError,
)

logger = logging.getLogger(__name__)


def _int_or_zero(value: Any) -> int:
    try:
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def _map_scrapbox_payload(item: RemoteItem) -> Dict[str, Any]:
    p = item.payload
    return {
        "views": _int_or_zero(p.get("views")),
        "linked_count": _int_or_zero(p.get("linked")),
        "pin_status": 1 if p.get("pin") else 0,
        "image": p.get("image"),
        "descriptions": list(p.get("descriptions") or []),
    }


def _map_gmail_payload(item: RemoteItem) -> Dict[str, Any]:
    p = item.payload
    return {
        "thread_id": p.get("thread_id"),
        "from_email": p.get("from_email") or "",
        "from_name": p.get("from_name") or "",
        "to": list(p.get("to") or []),
        "cc": list(p.get("cc") or []),
        "body_text": p.get("body_text"),
        "body_html": p.get("body_html"),
        "labels": list(p.get("labels") or []),
        "snippet": p.get("snippet") or "",
        "has_attachments": bool(item.sub_entities),
    }


def map_item(target: SyncTarget, item: RemoteItem) -> Dict[str, Any]:
    """Map a RemoteItem onto SyncableItem column values. No DB access."""
    if target.kind == KIND_SCRAPBOX:
        payload = _map_scrapbox_payload(item)
    elif target.kind == KIND_GMAIL:
        payload = _map_gmail_payload(item)
    else:
        payload = dict(item.payload)
    return {
        "target_id": target.id,
        "remote_id": item.remote_id,
        "title": item.title or "",
        "payload_json": json.dumps(payload, sort_keys=True, default=str),
        "remote_updated_at": item.remote_updated_at,
    }


def storage_path_for(item_id: int, natural_key: str) -> str:
    return f"items/{item_id}/attachments/{natural_key}"


class ItemReconciler:
    """Upserts remote items and inserts their missing sub-entities."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    def find(self, target_id: int, remote_id: str) -> Optional[SyncableItem]:
        """Return the stored projection of a remote item, if any."""
        with Session(self.engine) as s:
            return s.exec(
                select(SyncableItem).where(
                    SyncableItem.target_id == target_id,
                    SyncableItem.remote_id == remote_id,
                )
            ).first()

    def reconcile(self, target: SyncTarget, item: RemoteItem) -> ReconcileOutcome:
        label = item.title or item.remote_id
        try:
            fields = map_item(target, item)
            item_id = self._upsert_item(fields)
        except Exception as exc:
            logger.warning("Failed to save item %s (%s): %s", item.remote_id, label, exc)
            return ReconcileOutcome(
                written=False,
                errors=[SyncError(SCOPE_ITEM, label, str(exc), item.remote_id)],
            )

        outcome = ReconcileOutcome(written=True, item_id=item_id)
        seen = set()
        for sub in item.sub_entities:
            if sub.natural_key in seen:
                continue
            seen.add(sub.natural_key)
            try:
                if self._insert_sub_entity_if_absent(item_id, sub):
                    outcome.sub_entities_inserted += 1
                else:
                    logger.debug(
                        "Skipping existing attachment %s on item %s", sub.natural_key, item_id
                    )
                    outcome.sub_entities_skipped += 1
            except Exception as exc:
                logger.warning(
                    "Failed to save attachment %s for item %s (%s): %s",
                    sub.natural_key, item.remote_id, label, exc,
                )
                outcome.errors.append(SyncError(
                    SCOPE_SUB_ENTITY,
                    f"{label} / {sub.name}",
                    str(exc),
                    item.remote_id,
                ))
        return outcome

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _upsert_item(self, fields: Dict[str, Any]) -> int:
        """Insert or update the item row. Returns its id."""
        item_id = self._try_upsert(fields)
        if item_id is None:
            # Inserted concurrently by another writer; second pass updates it
            item_id = self._try_upsert(fields)
        if item_id is None:
            raise SyncEngineError(f"Could not upsert item {fields['remote_id']}")
        return item_id

    def _try_upsert(self, fields: Dict[str, Any]) -> Optional[int]:
        """One upsert attempt. Returns None if the insert lost a race."""
        with Session(self.engine) as s:
            existing = s.exec(
                select(SyncableItem).where(
                    SyncableItem.target_id == fields["target_id"],
                    SyncableItem.remote_id == fields["remote_id"],
                )
            ).first()

            if existing:
                # Update scalar fields in-place (keeps same id)
                for k, v in fields.items():
                    setattr(existing, k, v)
                existing.local_updated_at = utcnow()
                s.add(existing)
                s.commit()
                return existing.id

            row = SyncableItem(**fields, local_updated_at=utcnow())
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return None
            s.refresh(row)
            return row.id

    def _insert_sub_entity_if_absent(self, item_id: int, sub: RemoteSubEntity) -> bool:
        """Insert a sub-entity unless its natural key exists. Returns True if inserted."""
        with Session(self.engine) as s:
            existing = s.exec(
                select(SubEntity.id).where(
                    SubEntity.item_id == item_id,
                    SubEntity.natural_key == sub.natural_key,
                )
            ).first()
            if existing is not None:
                return False

            s.add(SubEntity(
                item_id=item_id,
                natural_key=sub.natural_key,
                name=sub.name,
                content_type=sub.content_type,
                size_bytes=sub.size_bytes,
                external_ref=sub.external_ref,
                storage_path=storage_path_for(item_id, sub.natural_key),
            ))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return False
            return True
