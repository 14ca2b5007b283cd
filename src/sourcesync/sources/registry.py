"""Builds the RemoteSource for a sync target and resolves its credential."""
import logging
from typing import Optional

import httpx

from sourcesync.errors import ConfigurationError
from sourcesync.models.target import SyncTarget
from sourcesync.sources.base import RemoteSource
from sourcesync.sources.gmail import GmailSource
from sourcesync.sources.scrapbox import ScrapboxSource
from sourcesync.sync.retrying_client import RetryingClient

logger = logging.getLogger(__name__)

KIND_SCRAPBOX = "scrapbox"
KIND_GMAIL = "gmail"
SUPPORTED_KINDS = (KIND_SCRAPBOX, KIND_GMAIL)


def resolve_credential(target: SyncTarget, settings) -> Optional[str]:
    """
    Private targets use their own credential, falling back to the
    process-wide one; public targets always use the process-wide one.
    """
    if target.kind == KIND_SCRAPBOX:
        fallback = settings.scrapbox_cookie
    else:
        fallback = settings.gmail_access_token
    if target.is_private:
        return target.credential or fallback or None
    return fallback or None


class SourceFactory:
    """
    Callable that maps a SyncTarget to a ready-to-use RemoteSource.

    All sources built by one factory share the same RetryingClient (and so
    the same rate limiter) and the same HTTP connection pool.
    """

    def __init__(self, settings, client: RetryingClient, http: httpx.AsyncClient):
        self.settings = settings
        self.client = client
        self.http = http

    def __call__(self, target: SyncTarget) -> RemoteSource:
        if target.kind not in SUPPORTED_KINDS:
            raise ConfigurationError(f"Unsupported source kind '{target.kind}'")

        credential = resolve_credential(target, self.settings)
        if not credential:
            raise ConfigurationError(
                f"No credentials configured for {target.kind} target '{target.name}'"
            )

        if target.kind == KIND_SCRAPBOX:
            return ScrapboxSource(
                target.source_id,
                http=self.http,
                client=self.client,
                cookie=credential,
                page_size=self.settings.scrapbox_page_size,
                base_url=self.settings.scrapbox_base_url,
            )
        return GmailSource(
            target.source_id,
            http=self.http,
            client=self.client,
            access_token=credential,
            page_size=self.settings.gmail_page_size,
            query=self.settings.gmail_query,
            base_url=self.settings.gmail_base_url,
        )
