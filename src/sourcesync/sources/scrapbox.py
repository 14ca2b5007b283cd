"""
Scrapbox project page listing.

GET {base_url}/pages/{project}?skip=N&limit=M returns:

    {
        "projectName": "...",
        "skip": 0, "limit": 100, "count": 1234,
        "pages": [
            {"id": "...", "title": "...", "views": 12, "linked": 3,
             "pin": 0, "updated": 1700000000, ...},
            ...
        ]
    }

`updated` is epoch seconds. The continuation token is the next `skip`
offset as a string. Private projects need the `connect.sid` session cookie.
"""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from sourcesync.errors import UpstreamError
from sourcesync.sources.base import RejectedItem, RemoteItem, RemotePage, RemoteSource
from sourcesync.sync.change_detector import from_epoch_seconds
from sourcesync.sync.retrying_client import RetryingClient

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://scrapbox.io/api"


def parse_page(raw: Dict[str, Any]) -> RemoteItem:
    """Validate one entry of the `pages` array into a RemoteItem.

    Raises:
        ValueError / KeyError / pydantic.ValidationError on malformed input.
    """
    if raw.get("updated") is None:
        raise ValueError("page has no 'updated' timestamp")
    return RemoteItem(
        remote_id=str(raw["id"]),
        remote_updated_at=from_epoch_seconds(raw["updated"]),
        title=raw.get("title") or "",
        payload={
            "views": raw.get("views"),
            "linked": raw.get("linked"),
            "pin": raw.get("pin"),
            "image": raw.get("image"),
            "descriptions": raw.get("descriptions"),
        },
    )


class ScrapboxSource(RemoteSource):
    kind = "scrapbox"

    def __init__(
        self,
        project: str,
        *,
        http: httpx.AsyncClient,
        client: RetryingClient,
        cookie: Optional[str] = None,
        page_size: int = 100,
        base_url: str = DEFAULT_BASE_URL,
    ):
        self.project = project
        self._http = http
        self._client = client
        self._cookie = cookie
        self._page_size = page_size
        self._base_url = base_url.rstrip("/")

    async def list_items(self, continuation_token: Optional[str] = None) -> RemotePage:
        skip = int(continuation_token or 0)
        data = await self._client.call(
            lambda: self._get_pages(skip),
            label=f"scrapbox pages {self.project} skip={skip}",
        )

        page = RemotePage(estimated_total=int(data.get("count") or 0))
        raw_pages = data.get("pages") or []
        for raw in raw_pages:
            if not isinstance(raw, dict):
                page.rejected.append(RejectedItem(
                    label="<malformed page>",
                    message=f"Malformed page: expected an object, got {type(raw).__name__}",
                ))
                continue
            try:
                page.items.append(parse_page(raw))
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                page.rejected.append(RejectedItem(
                    label=str(raw.get("title") or raw.get("id") or "<untitled page>"),
                    message=f"Malformed page: {exc}",
                    remote_id=str(raw["id"]) if raw.get("id") is not None else None,
                ))

        next_skip = skip + len(raw_pages)
        if raw_pages and next_skip < page.estimated_total:
            page.next_token = str(next_skip)

        logger.debug(
            "Scrapbox %s: fetched %d pages (skip=%d, count=%d)",
            self.project, len(raw_pages), skip, page.estimated_total,
        )
        return page

    async def _get_pages(self, skip: int) -> Dict[str, Any]:
        headers = {"Cookie": self._cookie} if self._cookie else {}
        response = await self._http.get(
            f"{self._base_url}/pages/{self.project}",
            params={"skip": skip, "limit": self._page_size},
            headers=headers,
        )
        if response.status_code == 401:
            raise UpstreamError(
                "Scrapbox authentication failed. Check the session cookie.", 401
            )
        if response.status_code == 404:
            raise UpstreamError(f"Scrapbox project '{self.project}' not found.", 404)
        if response.is_error:
            raise UpstreamError(
                f"Scrapbox API error: {response.status_code} {response.reason_phrase}",
                response.status_code,
            )
        return response.json()
