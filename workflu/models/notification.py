"""
WorkFlu - Notification Models

Tables owned by the notification domain:
- notification_templates: per (alert type, category, channel, language) templates
- notification_queue: every notification ever sent, with delivery bookkeeping
- notification_settings: per-user channel preferences (read-only to delivery)
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from workflu.models.base import BaseModel, JSONType, utcnow


class AlertType(str, Enum):
    """Broad alert families."""
    THRESHOLD_ALERT = "threshold_alert"
    WORKFLOW_ALERT = "workflow_alert"
    COMPLIANCE_ALERT = "compliance_alert"
    SYSTEM_ALERT = "system_alert"
    DIGEST = "digest"


class AlertCategory(str, Enum):
    """Specific alert categories."""
    CAPITAL_THRESHOLD = "capital_threshold"
    INVENTORY_LEVEL = "inventory_level"
    APPROVAL_WORKFLOW = "approval_workflow"
    DOCUMENT_EXPIRY = "document_expiry"
    SYSTEM_HEALTH = "system_health"
    DIGEST_SUMMARY = "digest_summary"


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    """Delivery channels for notifications."""
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"


class NotificationStatus(str, Enum):
    """Delivery state of a queued notification."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"
    DISMISSED = "dismissed"


class NotificationFrequency(str, Enum):
    """How often a user wants to hear about non-urgent alerts."""
    IMMEDIATE = "immediate"
    DAILY_DIGEST = "daily_digest"
    WEEKLY_SUMMARY = "weekly_summary"
    MONTHLY_REPORT = "monthly_report"


class NotificationTemplate(BaseModel):
    """Template with {{variable}} placeholders."""

    __tablename__ = "notification_templates"
    __table_args__ = (
        UniqueConstraint(
            "alert_type", "alert_category", "channel", "language",
            name="uq_notification_templates_key",
        ),
    )

    name: Mapped[str] = mapped_column(String(150), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    alert_category: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    body_template: Mapped[str] = mapped_column(Text, nullable=False)
    sms_template: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<NotificationTemplate({self.alert_type}/{self.alert_category}/"
            f"{self.channel}/{self.language})>"
        )


class NotificationQueue(BaseModel):
    """
    A single notification and its delivery state.

    Rows are never deleted directly: the cleanup job archives them after the
    retention window and purges archived history later.
    """

    __tablename__ = "notification_queue"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    alert_category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    priority: Mapped[NotificationPriority] = mapped_column(
        SQLEnum(NotificationPriority, native_enum=False, length=10),
        default=NotificationPriority.MEDIUM,
        nullable=False,
        index=True,
    )
    # Declared intent only; delivery recomputes channels from user settings
    channels: Mapped[List[str]] = mapped_column(
        JSONType,
        default=lambda: [NotificationChannel.IN_APP.value],
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[NotificationStatus] = mapped_column(
        SQLEnum(NotificationStatus, native_enum=False, length=20),
        default=NotificationStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_channel: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    action_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    template_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    def record_attempt(
        self,
        success: bool,
        channel: str,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Stamp the outcome of one channel attempt."""
        now = now or utcnow()
        self.last_attempt_at = now
        if success:
            self.status = NotificationStatus.SENT
            self.delivered_at = now
            self.delivered_channel = channel
            self.error_message = None
        else:
            self.status = NotificationStatus.FAILED
            self.error_message = error

    def mark_as_read(self) -> None:
        """Mark notification as read."""
        if self.status != NotificationStatus.READ:
            self.status = NotificationStatus.READ
            self.read_at = utcnow()

    def dismiss(self) -> None:
        self.status = NotificationStatus.DISMISSED
        if self.read_at is None:
            self.read_at = utcnow()

    def __repr__(self) -> str:
        return f"<NotificationQueue(id={self.id}, user={self.user_id}, status={self.status})>"


class NotificationSetting(BaseModel):
    """Per-user delivery preferences."""

    __tablename__ = "notification_settings"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)

    enable_in_app: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enable_email: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enable_sms: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enable_webhook: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    webhook_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    default_frequency: Mapped[NotificationFrequency] = mapped_column(
        SQLEnum(NotificationFrequency, native_enum=False, length=20),
        default=NotificationFrequency.IMMEDIATE,
        nullable=False,
        index=True,
    )
    digest_time: Mapped[str] = mapped_column(String(5), default="08:00", nullable=False)
    weekly_digest_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    monthly_digest_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    escalation_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalation_delay_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
