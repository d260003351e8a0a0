"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from entitlement_engine import __version__
from entitlement_engine.config import Config, get_config
from entitlement_engine.logging_config import configure_logging, get_logger
from entitlement_engine.middleware import ContextMiddleware, RequestLoggingMiddleware
from entitlement_engine.repositories.product_catalog import ProductCatalog
from entitlement_engine.repositories.receipt_store import ReceiptStore, create_receipt_store
from entitlement_engine.services.billing_events import BillingEventHandler
from entitlement_engine.services.clock import Clock, VirtualClock
from entitlement_engine.services.entitlement_watcher import EntitlementWatcher

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Starts the entitlement watcher on startup and detaches it on shutdown.
    """
    logger.info("engine_starting", version=__version__)

    watcher: EntitlementWatcher = app.state.watcher
    try:
        if app.state.config.watcher_settings.auto_refresh:
            entitlement = watcher.start()
        else:
            entitlement = watcher.refresh()
        logger.info("engine_started", status="ready", is_pro=entitlement.is_pro)
        yield
    finally:
        logger.info("engine_shutting_down")
        watcher.close()
        logger.info("engine_stopped")


def create_app(
    config: Optional[Config] = None,
    store: Optional[ReceiptStore] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        config: Engine configuration (the shared get_config() instance if omitted)
        store: Receipt store (built from the store settings if omitted)
        clock: Clock driving the watcher (built from the watcher settings if omitted)

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    config = config or get_config()
    if store is None:
        store = create_receipt_store(config.store_settings)
    if clock is None:
        clock = VirtualClock() if config.watcher_settings.clock == "virtual" else Clock()

    catalog = ProductCatalog.from_config(config)
    watcher = EntitlementWatcher(store, clock=clock, catalog=catalog)
    event_handler = BillingEventHandler(
        store, watcher=watcher, default_grace_period=config.default_grace_period
    )

    app = FastAPI(
        title="Entitlement Engine",
        description="Resolves Pro access from billing receipts",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.receipt_store = store
    app.state.catalog = catalog
    app.state.watcher = watcher
    app.state.event_handler = event_handler

    # Allow all origins for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    from entitlement_engine.api.entitlements import router as entitlements_router

    app.include_router(entitlements_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        logger.debug("root_endpoint_called")
        return {
            "service": "entitlement-engine",
            "status": "running",
            "version": __version__,
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Detailed health check."""
        catalog_status = (
            f"{len(catalog)} pro products" if catalog.is_restricted() else "all products count"
        )
        return {
            "status": "healthy",
            "store": f"{type(store).__name__} ({store.count()} receipts)",
            "catalog": catalog_status,
            "clock": "virtual" if isinstance(clock, VirtualClock) else "system",
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
