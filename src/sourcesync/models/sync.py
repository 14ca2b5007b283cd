"""Sync run audit log model."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from sourcesync.models.utils import utcnow

RUN_PROCESSING = "processing"
RUN_COMPLETED = "completed"
RUN_ERROR = "error"

PROCESSING_INDEX_NAME = "uq_syncrun_one_processing_per_target"


class SyncRun(SQLModel, table=True):
    """Records each sync attempt for one target.

    Created as "processing", then closed exactly once as "completed" or
    "error". The partial unique index allows a single processing row per
    target, which makes opening a run an atomic check-and-insert.
    """

    __table_args__ = (
        Index(
            PROCESSING_INDEX_NAME,
            "target_id",
            unique=True,
            sqlite_where=text("status = 'processing'"),
            postgresql_where=text("status = 'processing'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    target_id: int = Field(foreign_key="synctarget.id", index=True)
    started_at: datetime = Field(default_factory=utcnow)
    # Last heartbeat: stamped on open, after every page and on close
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: str = RUN_PROCESSING
    items_processed: int = 0
    items_updated: int = 0
    error_message: Optional[str] = None

    # Item / attachment failures recorded during the run
    error_count: int = 0
    errors_json: Optional[str] = None
