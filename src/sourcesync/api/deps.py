"""Shared FastAPI dependencies."""
from typing import AsyncIterator

from sourcesync.db.engine import get_engine
from sourcesync.sources.registry import SourceFactory
from sourcesync.sync.controller import SyncRunController
from sourcesync.sync.runtime import open_controller, open_source_factory


async def get_controller() -> AsyncIterator[SyncRunController]:
    async with open_controller(get_engine()) as controller:
        yield controller


async def get_source_factory() -> AsyncIterator[SourceFactory]:
    async with open_source_factory() as factory:
        yield factory
