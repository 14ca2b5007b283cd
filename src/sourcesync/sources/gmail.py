"""
Gmail mailbox listing over the Gmail REST API.

Listing is two-step: users.messages.list returns ids plus a nextPageToken,
then each message is fetched with format=full. Every request goes through
the retrying client, so a 50-message page costs 51 rate-limited calls.

A message whose detail fetch or parse fails is reported as rejected; only a
failure of the list call itself aborts the page.

Attachment metadata is captured (file name, type, size, attachment id);
attachment content is not downloaded.
"""
import base64
import binascii
import logging
from email.utils import getaddresses, parseaddr
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from sourcesync.errors import SyncEngineError, UpstreamError
from sourcesync.sources.base import (
    RejectedItem,
    RemoteItem,
    RemotePage,
    RemoteSource,
    RemoteSubEntity,
)
from sourcesync.sync.change_detector import from_epoch_millis
from sourcesync.sync.retrying_client import RetryingClient

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gmail.googleapis.com/gmail/v1"


# ─── MIME helpers ─────────────────────────────────────────────────────────────

def find_part_by_mime_type(part: Dict[str, Any], mime_type: str) -> Optional[Dict[str, Any]]:
    """Depth-first search for the first part with the given MIME type."""
    if part.get("mimeType") == mime_type:
        return part
    for child in part.get("parts") or []:
        found = find_part_by_mime_type(child, mime_type)
        if found is not None:
            return found
    return None


def find_attachments(part: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Collect all leaf parts that reference an attachment id."""
    if (part.get("mimeType") or "").startswith("multipart/"):
        found: List[Dict[str, Any]] = []
        for child in part.get("parts") or []:
            found.extend(find_attachments(child))
        return found
    if (part.get("body") or {}).get("attachmentId"):
        return [part]
    return []


def decode_body(data: Optional[str]) -> Optional[str]:
    """Decode a base64url message body. Returns None if absent or undecodable."""
    if not data:
        return None
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def parse_email_address(value: str) -> str:
    return parseaddr(value)[1] or value.strip()


def parse_email_name(value: str) -> str:
    return parseaddr(value)[0].strip()


def parse_email_addresses(value: str) -> List[str]:
    return [addr for _, addr in getaddresses([value]) if addr]


def _header(headers: List[Dict[str, str]], name: str) -> Optional[str]:
    lowered = name.lower()
    for h in headers:
        if (h.get("name") or "").lower() == lowered:
            return h.get("value")
    return None


def parse_message(raw: Dict[str, Any]) -> RemoteItem:
    """Validate a users.messages.get(format=full) response into a RemoteItem."""
    payload = raw.get("payload") or {}
    headers = payload.get("headers") or []
    sender = _header(headers, "From") or ""
    to = _header(headers, "To") or ""
    cc = _header(headers, "Cc")
    subject = _header(headers, "Subject") or ""

    text_part = find_part_by_mime_type(payload, "text/plain")
    html_part = find_part_by_mime_type(payload, "text/html")

    attachments = []
    for part in find_attachments(payload):
        body = part.get("body") or {}
        filename = part.get("filename") or body["attachmentId"]
        attachments.append(RemoteSubEntity(
            natural_key=filename,
            name=filename,
            content_type=part.get("mimeType"),
            size_bytes=int(body.get("size") or 0),
            external_ref=body.get("attachmentId"),
        ))

    return RemoteItem(
        remote_id=str(raw["id"]),
        remote_updated_at=from_epoch_millis(raw["internalDate"]),
        title=subject,
        payload={
            "thread_id": raw.get("threadId"),
            "from_email": parse_email_address(sender),
            "from_name": parse_email_name(sender),
            "to": parse_email_addresses(to),
            "cc": parse_email_addresses(cc) if cc else None,
            "body_text": decode_body((text_part or {}).get("body", {}).get("data")),
            "body_html": decode_body((html_part or {}).get("body", {}).get("data")),
            "labels": raw.get("labelIds"),
            "snippet": raw.get("snippet"),
        },
        sub_entities=attachments,
    )


# ─── Source ───────────────────────────────────────────────────────────────────

class GmailSource(RemoteSource):
    kind = "gmail"

    def __init__(
        self,
        user_id: str,
        *,
        http: httpx.AsyncClient,
        client: RetryingClient,
        access_token: str,
        page_size: int = 50,
        query: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
    ):
        self.user_id = user_id or "me"
        self._http = http
        self._client = client
        self._access_token = access_token
        self._page_size = page_size
        self._query = query
        self._base_url = base_url.rstrip("/")

    async def list_items(self, continuation_token: Optional[str] = None) -> RemotePage:
        params: Dict[str, Any] = {"maxResults": self._page_size}
        if continuation_token:
            params["pageToken"] = continuation_token
        if self._query:
            params["q"] = self._query

        listing = await self._client.call(
            lambda: self._get("messages", params),
            label=f"gmail list {self.user_id}",
        )

        page = RemotePage(
            next_token=listing.get("nextPageToken"),
            estimated_total=int(listing.get("resultSizeEstimate") or 0),
        )
        for ref in listing.get("messages") or []:
            message_id = ref.get("id")
            if not message_id:
                continue
            try:
                raw = await self._client.call(
                    lambda: self._get(f"messages/{message_id}", {"format": "full"}),
                    label=f"gmail get {message_id}",
                )
                page.items.append(parse_message(raw))
            except (SyncEngineError, KeyError, TypeError, ValueError, ValidationError) as exc:
                logger.warning("Skipping Gmail message %s: %s", message_id, exc)
                page.rejected.append(RejectedItem(
                    label=f"message {message_id}",
                    message=str(exc),
                    remote_id=message_id,
                ))
        return page

    async def check_reachable(self) -> RemotePage:
        """One list call with maxResults=1; message details are not fetched."""
        params: Dict[str, Any] = {"maxResults": 1}
        if self._query:
            params["q"] = self._query
        listing = await self._client.call(
            lambda: self._get("messages", params),
            label=f"gmail check {self.user_id}",
        )
        return RemotePage(
            next_token=listing.get("nextPageToken"),
            estimated_total=int(listing.get("resultSizeEstimate") or 0),
        )

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._http.get(
            f"{self._base_url}/users/{self.user_id}/{path}",
            params=params,
            headers={"Authorization": f"Bearer {self._access_token}"},
        )
        if response.status_code == 403 and "rateLimitExceeded" in response.text:
            # Gmail reports per-user quota exhaustion as 403
            raise UpstreamError("Gmail rate limit exceeded", 429)
        if response.status_code in (401, 403):
            raise UpstreamError(
                f"Gmail authorization failed ({response.status_code}). "
                "Refresh the access token.",
                response.status_code,
            )
        if response.is_error:
            raise UpstreamError(
                f"Gmail API error: {response.status_code} {response.reason_phrase}",
                response.status_code,
            )
        return response.json()
