"""
WorkFlu - Service Container

Composition root. Long-lived collaborators (transports, delivery channels,
the scheduler) are built once per process here and stored on
``app.state.services``; session-bound services are created per request or
per job through the factory methods.
"""

import logging
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workflu.config import Settings, get_settings
from workflu.models.notification import NotificationChannel
from workflu.services.alert_monitoring_service import AlertMonitoringService, MonitoringStats
from workflu.services.approval_service import ApprovalWorkflowService
from workflu.services.audit_service import AuditService
from workflu.services.configuration_service import ConfigurationService
from workflu.services.email_service import EmailService, create_email_service
from workflu.services.notification_channels import (
    DeliveryChannel,
    EmailChannel,
    InAppChannel,
    SmsChannel,
    WebhookChannel,
)
from workflu.services.notification_service import NotificationService
from workflu.services.period_service import PeriodService
from workflu.services.sms_service import SmsService
from workflu.services.template_registry import TemplateRegistry
from workflu.tasks.scheduler import NotificationScheduler

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Process-wide services and per-session service factories."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        email_service: Optional[EmailService] = None,
        sms_service: Optional[SmsService] = None,
        channels: Optional[Dict[str, DeliveryChannel]] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.email_service = email_service
        self.sms_service = sms_service or SmsService(settings)
        self.channels: Dict[str, DeliveryChannel] = channels or {
            NotificationChannel.IN_APP.value: InAppChannel(),
            NotificationChannel.EMAIL.value: EmailChannel(email_service),
            NotificationChannel.SMS.value: SmsChannel(self.sms_service),
            NotificationChannel.WEBHOOK.value: WebhookChannel(
                settings.webhook_secret,
                timeout=settings.webhook_timeout_seconds,
                user_agent=settings.webhook_user_agent,
            ),
        }
        self.monitoring_stats = MonitoringStats()
        self.scheduler = NotificationScheduler(self)

    # ===========================================
    # SESSION-BOUND FACTORIES
    # ===========================================

    def audit_service(self, db: AsyncSession) -> AuditService:
        return AuditService(db)

    def configuration_service(self, db: AsyncSession) -> ConfigurationService:
        return ConfigurationService(db, self.settings)

    def period_service(self, db: AsyncSession) -> PeriodService:
        return PeriodService(db)

    def template_registry(self, db: AsyncSession) -> TemplateRegistry:
        return TemplateRegistry(db, self.settings.notification_default_language)

    def notification_service(self, db: AsyncSession) -> NotificationService:
        return NotificationService(db, self.channels, self.settings)

    def approval_service(self, db: AsyncSession) -> ApprovalWorkflowService:
        return ApprovalWorkflowService(db, self.settings, self.notification_service(db))

    def alert_monitoring_service(self, db: AsyncSession) -> AlertMonitoringService:
        return AlertMonitoringService(
            db, self.settings, self.notification_service(db), self.monitoring_stats
        )


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> ServiceContainer:
    """Wire the production container from settings."""
    settings = settings or get_settings()
    if session_factory is None:
        from workflu.database import async_session_maker
        session_factory = async_session_maker

    container = ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        email_service=create_email_service(settings),
        sms_service=SmsService(settings),
    )
    logger.info(
        f"Service container ready (email: "
        f"{container.email_service.provider if container.email_service else 'disabled'}, "
        f"sms: {'simulated' if container.sms_service.simulated else 'gateway'})"
    )
    return container
