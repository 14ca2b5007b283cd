"""Local projections of remote entities and their attachments."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

from sourcesync.models.utils import utcnow


class SyncableItem(SQLModel, table=True):
    """One row per remote entity (a knowledge page, an email) per target."""

    __table_args__ = (UniqueConstraint("target_id", "remote_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    target_id: int = Field(foreign_key="synctarget.id", index=True)
    remote_id: str = Field(index=True)
    title: str = ""

    # Mapped, source-specific fields as JSON
    payload_json: Optional[str] = None

    # Upstream last-modified time; the only input to change detection
    remote_updated_at: datetime
    local_updated_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    sub_entities: List["SubEntity"] = Relationship(back_populates="item")


class SubEntity(SQLModel, table=True):
    """
    A child of a SyncableItem keyed by a natural key (attachment file name).
    Content is treated as immutable once captured: rows are inserted once and
    never overwritten by the engine.
    """

    __table_args__ = (UniqueConstraint("item_id", "natural_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: int = Field(foreign_key="syncableitem.id", index=True)
    natural_key: str

    name: str
    content_type: Optional[str] = None
    size_bytes: int = 0
    external_ref: Optional[str] = None  # upstream attachment id
    storage_path: Optional[str] = None
    is_downloaded: bool = False

    created_at: datetime = Field(default_factory=utcnow)

    item: Optional[SyncableItem] = Relationship(back_populates="sub_entities")
