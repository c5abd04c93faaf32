"""
WorkFlu - FastAPI Application Entry Point

This is the main entry point for the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workflu import __version__
from workflu.config import settings
from workflu.container import build_container
from workflu.database import close_db, init_db
from workflu.routers import approvals, capital, health, notifications, periods, purchases, warehouse
from workflu.routers import settings as system_settings
from workflu.utils.error_handling import ErrorTrackingMiddleware, setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Environment: {settings.app_env}")

    # Initialize database (dev only - use migrations in production)
    if settings.is_development:
        await init_db()
        logger.info("Database tables initialized")

    services = build_container(settings)
    app.state.services = services

    if settings.scheduler_enabled:
        try:
            await services.scheduler.initialize(start=True)
        except Exception as e:
            logger.error(f"Notification scheduler failed to start: {e}", exc_info=True)

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    await services.scheduler.shutdown()
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Period-guarded, approval-gated financial operations and notification delivery",
    version=__version__,
    docs_url="/api/docs" if settings.is_development else None,
    redoc_url="/api/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ErrorTrackingMiddleware)

setup_exception_handlers(app)


# ===========================================
# ROUTERS
# ===========================================

API_PREFIX = "/api/v1"

app.include_router(health.router)
app.include_router(health.router, prefix=API_PREFIX)
app.include_router(periods.router, prefix=API_PREFIX)
app.include_router(purchases.router, prefix=API_PREFIX)
app.include_router(capital.router, prefix=API_PREFIX)
app.include_router(warehouse.router, prefix=API_PREFIX)
app.include_router(approvals.router, prefix=API_PREFIX)
app.include_router(system_settings.router, prefix=API_PREFIX)
app.include_router(notifications.router, prefix=API_PREFIX)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
