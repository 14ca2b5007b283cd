"""Integration tests for ItemReconciler against in-memory SQLite."""
import json
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from fakes import BASE_TIME, make_items
from sourcesync.models.item import SubEntity, SyncableItem
from sourcesync.models.target import SyncTarget
from sourcesync.sources.base import RemoteItem, RemoteSubEntity
from sourcesync.sync.models import SCOPE_ITEM, SCOPE_SUB_ENTITY
from sourcesync.sync.reconciler import ItemReconciler, map_item, storage_path_for


def _items(engine):
    with Session(engine) as s:
        return s.exec(select(SyncableItem).order_by(SyncableItem.remote_id)).all()


def _sub_entities(engine):
    with Session(engine) as s:
        return s.exec(select(SubEntity).order_by(SubEntity.natural_key)).all()


class _FailingAttachment(ItemReconciler):
    """Fails to store one named attachment."""

    def __init__(self, engine, bad_key):
        super().__init__(engine)
        self.bad_key = bad_key

    def _insert_sub_entity_if_absent(self, item_id, sub):
        if sub.natural_key == self.bad_key:
            raise OSError("No space left on device")
        return super()._insert_sub_entity_if_absent(item_id, sub)


class _FailingUpsert(ItemReconciler):
    def _upsert_item(self, fields):
        raise RuntimeError("database is locked")


class TestMapItem:
    def test_scrapbox_defaults(self, target):
        item = RemoteItem(remote_id="p1", remote_updated_at=BASE_TIME, payload={"views": None})
        fields = map_item(target, item)
        payload = json.loads(fields["payload_json"])

        assert fields["title"] == ""
        assert payload == {
            "views": 0, "linked_count": 0, "pin_status": 0,
            "image": None, "descriptions": [],
        }

    def test_gmail_defaults(self):
        target = SyncTarget(id=2, name="inbox", kind="gmail", source_id="me")
        item = RemoteItem(
            remote_id="m1", remote_updated_at=BASE_TIME, title="Hi",
            sub_entities=[RemoteSubEntity(natural_key="a.pdf", name="a.pdf")],
        )
        payload = json.loads(map_item(target, item)["payload_json"])

        assert payload["from_email"] == ""
        assert payload["to"] == []
        assert payload["cc"] == []
        assert payload["labels"] == []
        assert payload["has_attachments"] is True

    def test_does_not_touch_db(self, target):
        """Pure mapping: works on a target that was never persisted."""
        detached = SyncTarget(id=99, name="x", kind="scrapbox", source_id="x")
        (item,) = make_items(1)
        assert map_item(detached, item)["target_id"] == 99


class TestReconcile:
    def test_inserts_item_and_attachments(self, engine, target):
        (item,) = make_items(1, attachments=2)
        outcome = ItemReconciler(engine).reconcile(target, item)

        assert outcome.written
        assert outcome.sub_entities_inserted == 2
        assert outcome.errors == []
        (row,) = _items(engine)
        assert row.remote_id == "page-0"
        assert row.remote_updated_at == BASE_TIME
        subs = _sub_entities(engine)
        assert [s.natural_key for s in subs] == ["file-0.pdf", "file-1.pdf"]
        assert subs[0].storage_path == storage_path_for(row.id, "file-0.pdf")
        assert subs[0].is_downloaded is False

    def test_idempotent(self, engine, target):
        """Reconciling the same item twice leaves the store as after once."""
        reconciler = ItemReconciler(engine)
        (item,) = make_items(1, attachments=2)

        first = reconciler.reconcile(target, item)
        before = [(r.id, r.title, r.payload_json, r.remote_updated_at) for r in _items(engine)]
        second = reconciler.reconcile(target, item)
        after = [(r.id, r.title, r.payload_json, r.remote_updated_at) for r in _items(engine)]

        assert before == after
        assert second.item_id == first.item_id
        assert second.sub_entities_inserted == 0
        assert second.sub_entities_skipped == 2
        assert len(_sub_entities(engine)) == 2

    def test_update_keeps_id_and_overwrites_fields(self, engine, target):
        reconciler = ItemReconciler(engine)
        (item,) = make_items(1)
        first = reconciler.reconcile(target, item)

        changed = item.model_copy(update={
            "title": "Renamed",
            "remote_updated_at": BASE_TIME + timedelta(hours=1),
        })
        second = reconciler.reconcile(target, changed)

        (row,) = _items(engine)
        assert second.item_id == first.item_id
        assert row.title == "Renamed"
        assert row.remote_updated_at == BASE_TIME + timedelta(hours=1)

    def test_existing_attachment_not_overwritten(self, engine, target):
        reconciler = ItemReconciler(engine)
        (item,) = make_items(1, attachments=1)
        reconciler.reconcile(target, item)

        resized = item.model_copy(update={"sub_entities": [
            item.sub_entities[0].model_copy(update={"size_bytes": 999999}),
        ]})
        reconciler.reconcile(target, resized)

        (sub,) = _sub_entities(engine)
        assert sub.size_bytes == 100

    def test_new_attachment_added_on_resync(self, engine, target):
        reconciler = ItemReconciler(engine)
        (item,) = make_items(1, attachments=1)
        reconciler.reconcile(target, item)
        (item_two,) = make_items(1, attachments=2)

        outcome = reconciler.reconcile(target, item_two)

        assert outcome.sub_entities_inserted == 1
        assert outcome.sub_entities_skipped == 1
        assert len(_sub_entities(engine)) == 2

    def test_duplicate_keys_in_one_item(self, engine, target):
        (item,) = make_items(1, attachments=1)
        item = item.model_copy(update={"sub_entities": item.sub_entities * 2})

        outcome = ItemReconciler(engine).reconcile(target, item)

        assert outcome.sub_entities_inserted == 1
        assert outcome.errors == []
        assert len(_sub_entities(engine)) == 1

    def test_attachment_failure_is_isolated(self, engine, target):
        (item,) = make_items(1, attachments=3)

        outcome = _FailingAttachment(engine, "file-1.pdf").reconcile(target, item)

        assert outcome.written
        assert outcome.sub_entities_inserted == 2
        (error,) = outcome.errors
        assert error.scope == SCOPE_SUB_ENTITY
        assert error.label == "Page 0 / file-1.pdf"
        assert error.remote_id == "page-0"
        assert "No space left" in error.message
        assert [s.natural_key for s in _sub_entities(engine)] == ["file-0.pdf", "file-2.pdf"]

    def test_item_failure_not_written(self, engine, target):
        (item,) = make_items(1, attachments=1)

        outcome = _FailingUpsert(engine).reconcile(target, item)

        assert not outcome.written
        (error,) = outcome.errors
        assert error.scope == SCOPE_ITEM
        assert error.message == "database is locked"
        assert _items(engine) == []
        assert _sub_entities(engine) == []

    def test_find(self, engine, target):
        reconciler = ItemReconciler(engine)
        assert reconciler.find(target.id, "page-0") is None
        reconciler.reconcile(target, make_items(1)[0])
        assert reconciler.find(target.id, "page-0").title == "Page 0"
        assert reconciler.find(target.id + 1, "page-0") is None
