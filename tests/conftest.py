"""Shared test fixtures."""
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from sourcesync.models.item import SubEntity, SyncableItem  # noqa: F401
from sourcesync.models.sync import SyncRun  # noqa: F401
from sourcesync.models.target import SyncTarget


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="target")
def target_fixture(test_session: Session) -> SyncTarget:
    """A persisted, never-synced Scrapbox target with auto-sync on."""
    target = SyncTarget(
        name="my-wiki",
        kind="scrapbox",
        source_id="my-wiki",
        auto_sync_enabled=True,
    )
    test_session.add(target)
    test_session.commit()
    test_session.refresh(target)
    return target
