"""
WorkFlu - Celery Configuration

Runs the scheduled job table out of process. The beat schedule is generated
from the same job definitions the in-process scheduler uses, so both agree on
names and cron expressions.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import ParseException, crontab

from workflu.config import settings


# Create Celery app
celery_app = Celery(
    'workflu',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['workflu.tasks.celery_tasks'],
)


def parse_cron(expression: str) -> crontab:
    """
    Parse a 5-field cron expression (minute hour day month weekday).

    Raises:
        ValueError: If the expression is malformed
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            app=celery_app,
        )
    except (ParseException, ValueError) as e:
        raise ValueError(f"Invalid cron expression {expression!r}: {e}") from e


def build_beat_schedule() -> dict:
    """One beat entry per enabled job."""
    from workflu.tasks.jobs import DEFAULT_JOBS

    disabled = set(settings.scheduler_disabled_jobs_list)
    return {
        job.name: {
            'task': 'workflu.tasks.celery_tasks.run_scheduled_job_task',
            'schedule': parse_cron(job.schedule),
            'args': (job.name,),
        }
        for job in DEFAULT_JOBS
        if job.name not in disabled
    }


# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone=settings.celery_timezone,
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes (warning before hard limit)

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # 24 hours
)

celery_app.conf.beat_schedule = build_beat_schedule()
