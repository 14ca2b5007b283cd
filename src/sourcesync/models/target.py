"""Sync target model: one configured external source."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from sourcesync.models.utils import utcnow


class SyncTarget(SQLModel, table=True):
    """A wiki project or mailbox that is imported periodically."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    kind: str  # "scrapbox" | "gmail"
    source_id: str  # project name, or mailbox user id ("me")

    auto_sync_enabled: bool = False
    # When True the target's own credential is preferred over the
    # process-wide one from settings
    is_private: bool = False
    credential: Optional[str] = None

    # Written only by the run controller on successful completion
    last_synced_at: Optional[datetime] = None
    total_item_count: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
