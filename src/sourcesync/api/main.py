"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from sourcesync.api.routes import sync as sync_routes
from sourcesync.api.routes import targets as target_routes
from sourcesync.db.engine import get_engine


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(get_engine())
        yield

    app = FastAPI(
        title="Source Sync API",
        description="Knowledge-base and mailbox import",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(target_routes.router, prefix="/targets", tags=["targets"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
