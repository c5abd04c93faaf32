"""
WorkFlu - Scheduled Jobs

Job bodies run by the notification scheduler (in process) or by Celery beat.
Each job receives the service container and a fresh database session and
returns a JSON-friendly summary.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from workflu.models.base import utcnow
from workflu.models.notification import NotificationFrequency
from workflu.services.audit_service import AuditContext

if TYPE_CHECKING:
    from workflu.container import ServiceContainer

logger = logging.getLogger(__name__)


JobHandler = Callable[["ServiceContainer", AsyncSession], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class JobDefinition:
    """A default job: name, cron expression and body."""
    name: str
    schedule: str
    description: str
    handler: JobHandler


async def _audit_stats(services: "ServiceContainer", db: AsyncSession, action: str, stats: Dict[str, Any]) -> None:
    await services.audit_service(db).log_operation(
        AuditContext.system("notification_scheduler"),
        entity_type="notification_stats",
        action=action,
        operation_type="scheduled_job",
        description=f"Notification statistics ({action})",
        new_values=stats,
    )
    await db.commit()


# ===========================================
# MONITORING
# ===========================================

async def critical_monitoring(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Business rule checks every 15 minutes."""
    return await services.alert_monitoring_service(db).run_monitoring_check()


async def hourly_monitoring(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Rule checks, approval escalation and hourly delivery statistics."""
    checks = await services.alert_monitoring_service(db).run_monitoring_check()
    escalated = await services.approval_service(db).escalate_overdue()
    stats = await services.notification_service(db).get_delivery_stats(utcnow() - timedelta(hours=1))
    await _audit_stats(services, db, "hourly_stats", stats)
    return {"checks": checks, "escalated_approvals": escalated, "stats": stats}


async def daily_monitoring(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Rule checks, daily counter reset and daily delivery statistics."""
    monitoring = services.alert_monitoring_service(db)
    checks = await monitoring.run_monitoring_check()
    counters = monitoring.stats.to_dict()
    monitoring.stats.reset()
    stats = await services.notification_service(db).get_delivery_stats(utcnow() - timedelta(days=1))
    await _audit_stats(services, db, "daily_stats", {"delivery": stats, "monitoring": counters})
    return {"checks": checks, "stats": stats}


async def weekly_monitoring(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Rule checks and weekly summaries."""
    checks = await services.alert_monitoring_service(db).run_monitoring_check()
    digests = await services.notification_service(db).send_digest_notifications(
        NotificationFrequency.WEEKLY_SUMMARY
    )
    return {"checks": checks, "digests": digests}


async def monthly_monitoring(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Rule checks and monthly reports."""
    checks = await services.alert_monitoring_service(db).run_monitoring_check()
    digests = await services.notification_service(db).send_digest_notifications(
        NotificationFrequency.MONTHLY_REPORT
    )
    return {"checks": checks, "digests": digests}


# ===========================================
# QUEUE
# ===========================================

async def queue_processing(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    return await services.notification_service(db).process_notification_queue()


async def daily_digest(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    return await services.notification_service(db).send_digest_notifications(
        NotificationFrequency.DAILY_DIGEST
    )


async def failed_notification_retry(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    return await services.notification_service(db).retry_failed_notifications()


async def notification_cleanup(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Archive old notifications, then purge old archived history."""
    notifications = services.notification_service(db)
    archived = await notifications.cleanup_old_notifications()
    purged = await notifications.archive_notification_history()
    return {"archived": archived, "purged": purged}


# ===========================================
# HEALTH
# ===========================================

async def health_check(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    return await services.alert_monitoring_service(db).run_health_check()


async def performance_monitoring(services: "ServiceContainer", db: AsyncSession) -> Dict[str, Any]:
    """Daily delivery performance snapshot."""
    stats = await services.notification_service(db).get_delivery_stats(utcnow() - timedelta(days=1))
    logger.info(
        f"Notification performance: success rate {stats['success_rate']}%, "
        f"avg delivery {stats['average_delivery_seconds']}s, engagement {stats['engagement_rate']}%"
    )
    await _audit_stats(services, db, "performance_stats", stats)
    return stats


DEFAULT_JOBS: List[JobDefinition] = [
    JobDefinition("critical-monitoring", "*/15 * * * *", "Critical business rule checks", critical_monitoring),
    JobDefinition("hourly-monitoring", "0 * * * *", "Rule checks, approval escalation, hourly stats", hourly_monitoring),
    JobDefinition("daily-monitoring", "0 6 * * *", "Rule checks, daily stat reset, daily stats", daily_monitoring),
    JobDefinition("weekly-monitoring", "0 7 * * 1", "Rule checks and weekly summaries", weekly_monitoring),
    JobDefinition("monthly-monitoring", "0 8 1 * *", "Rule checks and monthly reports", monthly_monitoring),
    JobDefinition("queue-processing", "*/5 * * * *", "Deliver pending and retryable notifications", queue_processing),
    JobDefinition("daily-digest", "0 8 * * *", "Daily digest notifications", daily_digest),
    JobDefinition("failed-notification-retry", "30 * * * *", "Retry failed notifications with backoff", failed_notification_retry),
    JobDefinition("notification-cleanup", "0 2 * * *", "Archive and purge old notifications", notification_cleanup),
    JobDefinition("health-check", "0 */6 * * *", "Critical alert volume check", health_check),
    JobDefinition("performance-monitoring", "0 0 * * *", "Delivery performance statistics", performance_monitoring),
]
