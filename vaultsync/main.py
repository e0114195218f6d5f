"""
vaultsync - Ledger / Off-chain Reconciliation Engine

HTTP entry point. Mounts the sync router on a FastAPI app whose lifespan
owns one SyncService.

Run with:
    uvicorn vaultsync.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .api.routes import router
from .core.service import SyncService, build_service_from_env
from .observability import (
    RequestContextMiddleware,
    get_logger,
    get_metrics,
    setup_logging,
)

logger = get_logger(__name__)


def create_app(service: Optional[SyncService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        service: Pre-built SyncService (tests). If None, one is built from
                 the environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = service is None
        sync_service = service or build_service_from_env()
        app.state.sync_service = sync_service

        try:
            sync_service.ensure_indexes()
        except Exception as e:
            # The service still runs; Document Sync retries on every submission
            logger.warning("Index creation failed at startup", error=str(e))

        logger.info(
            "Application startup complete",
            store_type=type(sync_service.store).__name__,
            ledger_type=type(sync_service.ledger).__name__,
        )

        yield

        if owned:
            sync_service.close()
            logger.info("Store and ledger connections closed")
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="vaultsync",
        description="""
## Ledger / Off-chain Reconciliation

Keeps an off-chain document store consistent with an EVM ledger.

- **Property sync**: mirror a mined asset transaction into its off-chain record
- **Document sync**: mint an identity for a document verification request
- **Restore**: re-register every stored entity after a ledger reset

Off-chain records are append-only: nothing is ever deleted.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if service is not None:
        app.state.sync_service = service

    app.add_middleware(RequestContextMiddleware)
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness only. For store and ledger checks use /api/sync/health."""
        return {"status": "healthy", "service": "vaultsync"}

    @app.get("/metrics", tags=["System"])
    async def metrics():
        return get_metrics().get_summary()

    return app


setup_logging()
app = create_app()
