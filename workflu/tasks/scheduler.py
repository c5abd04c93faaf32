"""
WorkFlu - Notification Scheduler

In-process cron scheduler for the notification and monitoring jobs.

Jobs are data: each ScheduledJob record carries its cron expression,
enabled flag and run bookkeeping, and runs in its own asyncio loop.
A job never overlaps itself; a failing job is logged and audited and never
affects the other jobs.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from celery.schedules import crontab

from workflu.celery_app import parse_cron
from workflu.models.audit import AuditSeverity
from workflu.models.base import utcnow
from workflu.services.audit_service import AuditContext, AuditService
from workflu.tasks.jobs import DEFAULT_JOBS, JobHandler
from workflu.utils.error_handling import NotFoundException

if TYPE_CHECKING:
    from workflu.container import ServiceContainer

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """A registered job and its run bookkeeping."""
    name: str
    schedule: str
    description: str
    handler: JobHandler
    cron: crontab
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    is_running: bool = False
    last_error: Optional[str] = None
    run_count: int = 0
    failure_count: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def seconds_until_next_run(self) -> float:
        remaining = self.cron.remaining_estimate(datetime.now(timezone.utc))
        return max(remaining.total_seconds(), 0.0)

    def refresh_next_run(self) -> None:
        self.next_run = utcnow() + timedelta(seconds=self.seconds_until_next_run()) if self.enabled else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "description": self.description,
            "enabled": self.enabled,
            "is_running": self.is_running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }


class NotificationScheduler:
    """Registry of scheduled jobs with one asyncio loop per enabled job."""

    def __init__(self, services: "ServiceContainer"):
        self.services = services
        self.jobs: Dict[str, ScheduledJob] = {}
        self.is_initialized = False
        self.is_started = False

    # ===========================================
    # LIFECYCLE
    # ===========================================

    async def initialize(self, start: bool = True) -> None:
        """
        Seed default templates, register the default jobs and start their loops.

        Calling it again is a no-op.
        """
        if self.is_initialized:
            logger.debug("Notification scheduler already initialized")
            return

        async with self.services.session_factory() as db:
            created = await self.services.template_registry(db).initialize_default_templates()
        logger.info(f"Default notification templates seeded ({created} created)")

        self.register_default_jobs()
        self.is_initialized = True

        if start:
            self.start()
        logger.info(f"Notification scheduler initialized with {len(self.jobs)} jobs")

    def register_default_jobs(self) -> None:
        disabled = set(self.services.settings.scheduler_disabled_jobs_list)
        for definition in DEFAULT_JOBS:
            if definition.name in self.jobs:
                continue
            self.register_job(
                definition.name,
                definition.schedule,
                definition.handler,
                description=definition.description,
                enabled=definition.name not in disabled,
            )

    def register_job(
        self,
        name: str,
        schedule: str,
        handler: JobHandler,
        description: str = "",
        enabled: bool = True,
    ) -> ScheduledJob:
        """
        Raises:
            ValueError: If the name is taken or the cron expression is invalid
        """
        if name in self.jobs:
            raise ValueError(f"Job already registered: {name}")
        job = ScheduledJob(
            name=name,
            schedule=schedule,
            description=description,
            handler=handler,
            cron=parse_cron(schedule),
            enabled=enabled,
        )
        job.refresh_next_run()
        self.jobs[name] = job
        if self.is_started and enabled:
            self._start_loop(job)
        return job

    def start(self) -> None:
        self.is_started = True
        for job in self.jobs.values():
            if job.enabled:
                self._start_loop(job)

    def _start_loop(self, job: ScheduledJob) -> None:
        if job.task is None or job.task.done():
            job.task = asyncio.create_task(self._job_loop(job), name=f"scheduler:{job.name}")

    async def _job_loop(self, job: ScheduledJob) -> None:
        while True:
            job.refresh_next_run()
            await asyncio.sleep(job.seconds_until_next_run())
            if job.enabled:
                await self.run_job(job.name)

    async def shutdown(self) -> None:
        """Cancel every job loop and clear the registry."""
        tasks = [job.task for job in self.jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.jobs.clear()
        self.is_initialized = False
        self.is_started = False
        logger.info("Notification scheduler shut down")

    # ===========================================
    # CONTROL
    # ===========================================

    def get_job(self, name: str) -> ScheduledJob:
        job = self.jobs.get(name)
        if job is None:
            raise NotFoundException("ScheduledJob", name)
        return job

    def toggle_task(self, name: str, enabled: bool) -> ScheduledJob:
        """Enable or disable future runs; a run in progress is not interrupted."""
        job = self.get_job(name)
        job.enabled = enabled
        if enabled and self.is_started:
            self._start_loop(job)
        job.refresh_next_run()
        logger.info(f"Scheduled job {name} {'enabled' if enabled else 'disabled'}")
        return job

    async def run_job(self, name: str) -> Dict[str, Any]:
        """
        Run a job now in a fresh session.

        Returns:
            {"job", "status": success|failed|skipped, "result"|"error"}
        """
        job = self.get_job(name)
        if job.is_running:
            logger.warning(f"Scheduled job {name} is still running; skipping this run")
            return {"job": name, "status": "skipped"}

        job.is_running = True
        started = utcnow()
        try:
            async with self.services.session_factory() as db:
                result = await job.handler(self.services, db)
        except Exception as e:
            job.failure_count += 1
            job.last_error = str(e)
            logger.error(f"Scheduled job {name} failed: {e}", exc_info=True)
            await self._audit_failure(job, e)
            return {"job": name, "status": "failed", "error": str(e)}
        else:
            job.run_count += 1
            job.last_error = None
            logger.info(f"Scheduled job {name} completed: {result}")
            return {"job": name, "status": "success", "result": result}
        finally:
            job.is_running = False
            job.last_run = started
            job.refresh_next_run()

    async def _audit_failure(self, job: ScheduledJob, error: Exception) -> None:
        try:
            async with self.services.session_factory() as db:
                await AuditService(db).log_operation(
                    AuditContext.system("notification_scheduler"),
                    entity_type="scheduled_job",
                    entity_id=job.name,
                    action="task_execution_failed",
                    operation_type="scheduled_job",
                    description=f"Scheduled job {job.name} failed: {error}",
                    severity=AuditSeverity.ERROR,
                    new_values={"failure_count": job.failure_count},
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Could not audit failure of job {job.name}: {e}")

    def get_scheduler_stats(self) -> Dict[str, Any]:
        jobs: List[ScheduledJob] = list(self.jobs.values())
        return {
            "is_initialized": self.is_initialized,
            "is_started": self.is_started,
            "total_jobs": len(jobs),
            "enabled_jobs": sum(1 for j in jobs if j.enabled),
            "running_jobs": sum(1 for j in jobs if j.is_running),
            "total_runs": sum(j.run_count for j in jobs),
            "total_failures": sum(j.failure_count for j in jobs),
            "jobs": [j.to_dict() for j in jobs],
        }
