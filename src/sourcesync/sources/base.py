"""
Boundary types for remote sources.

Upstream responses are loosely-typed JSON. Each source parses and validates
them once into RemoteItem objects; anything that fails validation is reported
as a RejectedItem so the run can count and record it without aborting.
"""
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from sourcesync.sync.change_detector import normalize_timestamp


class RemoteSubEntity(BaseModel):
    """A child of a remote item, e.g. an email attachment."""

    natural_key: str = Field(min_length=1)
    name: str
    content_type: Optional[str] = None
    size_bytes: int = 0
    external_ref: Optional[str] = None


class RemoteItem(BaseModel):
    """One validated upstream entity."""

    remote_id: str = Field(min_length=1)
    remote_updated_at: datetime
    title: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    sub_entities: List[RemoteSubEntity] = Field(default_factory=list)

    @field_validator("remote_updated_at")
    @classmethod
    def _normalize(cls, v: datetime) -> datetime:
        return normalize_timestamp(v)


class RejectedItem(BaseModel):
    """An upstream entry that could not be parsed into a RemoteItem."""

    label: str
    message: str
    remote_id: Optional[str] = None


class RemotePage(BaseModel):
    items: List[RemoteItem] = Field(default_factory=list)
    rejected: List[RejectedItem] = Field(default_factory=list)
    next_token: Optional[str] = None
    estimated_total: int = 0


class RemoteSource:
    """
    A paginated upstream listing for one sync target.

    Subclasses implement list_items(); iter_pages() walks the continuation
    tokens sequentially, since each token comes from the previous response.
    """

    kind: str = ""

    async def list_items(self, continuation_token: Optional[str] = None) -> RemotePage:
        raise NotImplementedError

    async def check_reachable(self) -> RemotePage:
        """Cheapest request that shows the source is reachable. Defaults to the first page."""
        return await self.list_items(None)

    async def iter_pages(self) -> AsyncIterator[RemotePage]:
        token: Optional[str] = None
        seen_tokens = set()
        while True:
            page = await self.list_items(token)
            yield page
            token = page.next_token
            if not token or token in seen_tokens:
                return
            seen_tokens.add(token)
