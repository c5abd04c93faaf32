"""
WorkFlu - Health Router
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from workflu import __version__
from workflu.config import settings
from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_services


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", summary="Service health")
async def health_check(
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        database = f"error: {type(e).__name__}"

    scheduler = services.scheduler
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "app": settings.app_name,
        "version": __version__,
        "database": database,
        "scheduler": {
            "initialized": scheduler.is_initialized,
            "started": scheduler.is_started,
            "jobs": len(scheduler.jobs),
        },
    }
