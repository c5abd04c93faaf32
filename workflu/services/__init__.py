"""
WorkFlu - Services Package

Business logic services.
"""

from workflu.services.audit_service import AuditContext, AuditService
from workflu.services.configuration_service import ConfigurationService
from workflu.services.period_service import PeriodService
from workflu.services.template_registry import TemplateRegistry
from workflu.services.email_service import EmailService
from workflu.services.sms_service import SmsService
from workflu.services.notification_service import NotificationService
from workflu.services.approval_service import ApprovalWorkflowService
from workflu.services.alert_monitoring_service import AlertMonitoringService

__all__ = [
    "AuditContext",
    "AuditService",
    "ConfigurationService",
    "PeriodService",
    "TemplateRegistry",
    "EmailService",
    "SmsService",
    "NotificationService",
    "ApprovalWorkflowService",
    "AlertMonitoringService",
]
