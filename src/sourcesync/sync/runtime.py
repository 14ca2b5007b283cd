"""
Process-wide wiring for the sync engine.

One RetryingClient (and therefore one rate limiter) exists per process and
is injected into every source built here, whether the run was started by
the API, the scheduler or the CLI.
"""
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

import httpx

from sourcesync.config import get_settings
from sourcesync.sources.registry import SourceFactory
from sourcesync.sync.controller import SyncRunController
from sourcesync.sync.models import AutoSyncSummary
from sourcesync.sync.retrying_client import RetryingClient
from sourcesync.sync.scheduler_gate import run_auto_sync

_client: Optional[RetryingClient] = None


def get_retrying_client() -> RetryingClient:
    """Return the shared RetryingClient, creating it on first call."""
    global _client
    if _client is None:
        _client = RetryingClient.from_settings(get_settings())
    return _client


@asynccontextmanager
async def open_source_factory() -> AsyncIterator[SourceFactory]:
    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as http:
        yield SourceFactory(settings, get_retrying_client(), http)


@asynccontextmanager
async def open_controller(engine) -> AsyncIterator[SyncRunController]:
    """Yield a controller whose HTTP pool is closed on exit."""
    settings = get_settings()
    async with open_source_factory() as factory:
        yield SyncRunController(
            engine,
            factory,
            stale_after=timedelta(minutes=settings.stale_run_minutes),
        )


async def auto_sync(engine) -> AutoSyncSummary:
    """Run the scheduler gate with thresholds from settings."""
    settings = get_settings()
    async with open_controller(engine) as controller:
        return await run_auto_sync(
            engine,
            controller,
            threshold=timedelta(minutes=settings.auto_sync_threshold_minutes),
            concurrency=settings.auto_sync_concurrency,
        )
