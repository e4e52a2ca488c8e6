"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from yardsync.api.routes import maintenance, packages, settings, sync as sync_routes
from yardsync.sync.coordinator import shutdown_coordinator


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let scheduled auto-syncs finish before the loop goes away
        await shutdown_coordinator()

    app = FastAPI(
        title="yardsync",
        description="Warehouse shipment synchronization and reconciliation engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(settings.router, prefix="/settings", tags=["settings"])
    app.include_router(packages.router, prefix="/packages", tags=["packages"])
    app.include_router(maintenance.router, tags=["maintenance"])

    return app


# Module-level app instance for uvicorn
app = create_app()
