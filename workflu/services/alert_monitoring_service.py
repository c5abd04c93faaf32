"""
WorkFlu - Alert Monitoring Service

Business rule checks run by the scheduler. Each check that crosses a
threshold raises a business alert to the responsible roles.

Checks:
- Capital balance against the low-balance threshold (critical < 10k,
  high < 25k, medium below the configured threshold, USD)
- Critical notification volume (system health)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.config import Settings
from workflu.models.audit import AuditSeverity
from workflu.models.base import utcnow
from workflu.models.business import CapitalEntry, CapitalEntryType
from workflu.models.notification import (
    AlertCategory,
    AlertType,
    NotificationPriority,
    NotificationQueue,
    NotificationStatus,
)
from workflu.models.user import UserRole
from workflu.services.audit_service import AuditContext, AuditService
from workflu.services.configuration_service import ConfigurationService
from workflu.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


CAPITAL_CRITICAL_BALANCE = Decimal("10000")
CAPITAL_HIGH_BALANCE = Decimal("25000")

# A threshold alert is not repeated within this window
ALERT_COOLDOWN = timedelta(hours=1)

CAPITAL_ALERT_ROLES = (UserRole.ADMIN, UserRole.FINANCE)


@dataclass
class MonitoringStats:
    """Process-wide monitoring counters; the daily job resets them."""
    checks_run: int = 0
    alerts_triggered: int = 0
    notifications_sent: int = 0
    errors: int = 0
    last_run: Optional[datetime] = None
    since: datetime = field(default_factory=utcnow)

    def reset(self) -> None:
        self.checks_run = 0
        self.alerts_triggered = 0
        self.notifications_sent = 0
        self.errors = 0
        self.since = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checks_run": self.checks_run,
            "alerts_triggered": self.alerts_triggered,
            "notifications_sent": self.notifications_sent,
            "errors": self.errors,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "since": self.since.isoformat(),
        }


def capital_alert_priority(balance: Decimal, threshold: Decimal) -> Optional[NotificationPriority]:
    """Severity of a low balance, or None when the balance is healthy."""
    if balance >= threshold:
        return None
    if balance < CAPITAL_CRITICAL_BALANCE:
        return NotificationPriority.CRITICAL
    if balance < CAPITAL_HIGH_BALANCE:
        return NotificationPriority.HIGH
    return NotificationPriority.MEDIUM


class AlertMonitoringService:
    """Scheduled business rule checks."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        notifications: NotificationService,
        stats: Optional[MonitoringStats] = None,
    ):
        self.db = db
        self.settings = settings
        self.notifications = notifications
        self.stats = stats or MonitoringStats()
        self.configuration = ConfigurationService(db, settings)
        self.audit = AuditService(db)

    async def get_capital_balance(self) -> Decimal:
        """CapitalIn minus CapitalOut, in USD."""
        result = await self.db.execute(select(CapitalEntry))
        balance = Decimal("0")
        for entry in result.scalars().all():
            if entry.type == CapitalEntryType.CAPITAL_IN:
                balance += entry.amount_usd
            else:
                balance -= entry.amount_usd
        return balance.quantize(Decimal("0.01"))

    async def _recently_alerted(self, category: str, now: datetime) -> bool:
        result = await self.db.execute(
            select(func.count(NotificationQueue.id)).where(and_(
                NotificationQueue.alert_category == category,
                NotificationQueue.created_at >= now - ALERT_COOLDOWN,
            ))
        )
        return result.scalar_one() > 0

    async def check_capital_balance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Alert admin and finance users when capital drops below the threshold."""
        now = now or utcnow()
        balance = await self.get_capital_balance()
        threshold = await self.configuration.get_capital_low_balance_threshold()
        priority = capital_alert_priority(balance, threshold)

        if priority is None:
            return {"alerts_triggered": 0, "notifications_sent": 0}
        if await self._recently_alerted(AlertCategory.CAPITAL_THRESHOLD.value, now):
            logger.debug("Capital threshold alert suppressed (cooldown)")
            return {"alerts_triggered": 0, "notifications_sent": 0}

        logger.warning(f"Capital balance {balance} USD below threshold {threshold} ({priority.value})")
        summary = await self.notifications.notify_roles(
            CAPITAL_ALERT_ROLES,
            AlertType.THRESHOLD_ALERT.value,
            AlertCategory.CAPITAL_THRESHOLD.value,
            "Low Capital Balance",
            f"Capital balance ({balance} USD) has dropped below the {priority.value} threshold",
            priority=priority,
            entity_type="capital",
            entity_id="system_balance",
            action_url=f"{self.settings.base_url}/finance/capital",
            template_data={
                "currency": "USD",
                "currentBalance": str(balance),
                "threshold": str(threshold),
                "deficit": str(threshold - balance),
            },
        )
        return {"alerts_triggered": 1, "notifications_sent": summary.sent}

    async def run_monitoring_check(self) -> Dict[str, int]:
        """Run every business rule check and audit the summary."""
        totals = {"checks_run": 0, "alerts_triggered": 0, "notifications_sent": 0, "errors": 0}

        checks = [self.check_capital_balance]
        for check in checks:
            totals["checks_run"] += 1
            try:
                outcome = await check()
            except Exception as e:
                logger.error(f"Monitoring check {check.__name__} failed: {e}", exc_info=True)
                await self.db.rollback()
                totals["errors"] += 1
                continue
            totals["alerts_triggered"] += outcome["alerts_triggered"]
            totals["notifications_sent"] += outcome["notifications_sent"]

        self.stats.checks_run += totals["checks_run"]
        self.stats.alerts_triggered += totals["alerts_triggered"]
        self.stats.notifications_sent += totals["notifications_sent"]
        self.stats.errors += totals["errors"]
        self.stats.last_run = utcnow()

        await self.audit.log_operation(
            AuditContext.system("alert_monitoring"),
            entity_type="alert_monitoring",
            action="monitoring_check",
            operation_type="monitoring_check",
            description=f"Monitoring check completed: {totals['alerts_triggered']} alerts triggered",
            severity=AuditSeverity.WARNING if totals["alerts_triggered"] else AuditSeverity.INFO,
            new_values=totals,
        )
        await self.db.commit()
        logger.info(f"Monitoring check complete: {totals}")
        return totals

    async def run_health_check(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Alert admins when critical notifications in the last 24h exceed the threshold."""
        now = now or utcnow()
        window_hours = 24
        critical = await self.notifications.get_critical_alert_count(now - timedelta(hours=window_hours))
        threshold = self.settings.health_check_critical_threshold

        outcome: Dict[str, Any] = {"critical_alerts": critical, "threshold": threshold, "alerted": False}
        if critical <= threshold:
            return outcome

        logger.warning(f"Health check: {critical} critical alerts in {window_hours}h (threshold {threshold})")
        await self.notifications.notify_roles(
            (UserRole.ADMIN,),
            AlertType.SYSTEM_ALERT.value,
            AlertCategory.SYSTEM_HEALTH.value,
            "System Health Warning",
            f"{critical} critical alerts were raised in the last {window_hours} hours.",
            priority=NotificationPriority.HIGH,
            entity_type="system",
            entity_id="notification_health",
            action_url=f"{self.settings.base_url}/notifications",
            template_data={"criticalAlertCount": critical, "windowHours": window_hours},
        )
        outcome["alerted"] = True
        return outcome

    async def get_monitoring_dashboard(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Recent alert volume plus process counters."""
        now = now or utcnow()
        since = now - timedelta(hours=24)
        total = await self.db.execute(
            select(func.count(NotificationQueue.id)).where(NotificationQueue.created_at >= since)
        )
        critical_active = await self.db.execute(
            select(func.count(NotificationQueue.id)).where(and_(
                NotificationQueue.priority == NotificationPriority.CRITICAL,
                NotificationQueue.status.in_((NotificationStatus.PENDING, NotificationStatus.FAILED)),
                NotificationQueue.is_archived.is_(False),
            ))
        )
        return {
            "total_alerts_last_24h": total.scalar_one(),
            "critical_alerts_active": critical_active.scalar_one(),
            "stats": self.stats.to_dict(),
        }
