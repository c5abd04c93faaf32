"""
WorkFlu - Celery Tasks

Celery entry point for the scheduled job table. Every beat entry calls
run_scheduled_job_task with the job name.
"""

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@shared_task(name='workflu.tasks.celery_tasks.run_scheduled_job_task')
def run_scheduled_job_task(job_name: str) -> Dict[str, Any]:
    """Run one scheduled job by name."""
    return run_async(_run_scheduled_job(job_name))


async def _run_scheduled_job(job_name: str) -> Dict[str, Any]:
    from workflu.container import build_container
    from workflu.database import engine

    services = build_container()
    services.scheduler.register_default_jobs()
    try:
        outcome = await services.scheduler.run_job(job_name)
    finally:
        # Pooled connections belong to this task's event loop
        await engine.dispose()

    logger.info(f"Celery job {job_name}: {outcome['status']}")
    return outcome
