"""
WorkFlu - Database Models

All SQLAlchemy models for the application.
"""

from workflu.models.base import BaseModel, TimestampMixin
from workflu.models.user import User, UserRole
from workflu.models.accounting import AccountingPeriod, PeriodStatus, BLOCKING_PERIOD_STATUSES
from workflu.models.approval import (
    PendingApproval,
    ApprovalOperationType,
    ApprovalStatus,
    ApprovalPriority,
    OPEN_APPROVAL_STATUSES,
)
from workflu.models.business import Purchase, PurchaseStatus, CapitalEntry, CapitalEntryType
from workflu.models.notification import (
    AlertType,
    AlertCategory,
    NotificationChannel,
    NotificationFrequency,
    NotificationPriority,
    NotificationQueue,
    NotificationSetting,
    NotificationStatus,
    NotificationTemplate,
)
from workflu.models.audit import AuditLog, AuditSeverity
from workflu.models.system_setting import SystemSetting

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "User",
    "UserRole",
    "AccountingPeriod",
    "PeriodStatus",
    "BLOCKING_PERIOD_STATUSES",
    "PendingApproval",
    "ApprovalOperationType",
    "ApprovalStatus",
    "ApprovalPriority",
    "OPEN_APPROVAL_STATUSES",
    "Purchase",
    "PurchaseStatus",
    "CapitalEntry",
    "CapitalEntryType",
    "AlertType",
    "AlertCategory",
    "NotificationChannel",
    "NotificationFrequency",
    "NotificationPriority",
    "NotificationQueue",
    "NotificationSetting",
    "NotificationStatus",
    "NotificationTemplate",
    "AuditLog",
    "AuditSeverity",
    "SystemSetting",
]
