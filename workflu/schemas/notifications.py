"""
WorkFlu - Notification Schemas

Inbox entries, delivery preferences, templates and scheduler control.
"""

import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import EmailStr, Field

from workflu.models.notification import (
    NotificationFrequency,
    NotificationPriority,
    NotificationStatus,
)
from workflu.schemas.base import CamelModel


# ===========================================
# INBOX
# ===========================================

class NotificationResponse(CamelModel):
    """Schema for notification response."""
    id: UUID
    alert_type: str
    alert_category: str
    priority: NotificationPriority
    channels: List[str]
    title: str
    message: str
    status: NotificationStatus
    attempts: int
    delivered_at: Optional[datetime.datetime] = None
    delivered_channel: Optional[str] = None
    read_at: Optional[datetime.datetime] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    action_url: Optional[str] = None
    created_at: datetime.datetime


class NotificationListResponse(CamelModel):
    notifications: List[NotificationResponse]
    count: int
    unread_count: int


class UnreadCountResponse(CamelModel):
    unread_count: int
    critical_count: int


# ===========================================
# PREFERENCES
# ===========================================

class NotificationSettingsResponse(CamelModel):
    """A user's delivery preferences."""
    enable_in_app: bool = True
    enable_email: bool = False
    enable_sms: bool = False
    enable_webhook: bool = False
    email_address: Optional[str] = None
    phone_number: Optional[str] = None
    webhook_url: Optional[str] = None
    default_frequency: NotificationFrequency = NotificationFrequency.IMMEDIATE
    digest_time: str = "08:00"
    weekly_digest_day: int = 1
    monthly_digest_day: int = 1
    escalation_enabled: bool = False
    escalation_delay_minutes: int = 60


class NotificationSettingsUpdate(CamelModel):
    """Partial update; omitted fields keep their value."""
    enable_in_app: Optional[bool] = None
    enable_email: Optional[bool] = None
    enable_sms: Optional[bool] = None
    enable_webhook: Optional[bool] = None
    email_address: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(None, max_length=30)
    webhook_url: Optional[str] = Field(None, max_length=500, pattern="^https?://")
    default_frequency: Optional[NotificationFrequency] = None
    digest_time: Optional[str] = Field(None, pattern="^([01][0-9]|2[0-3]):[0-5][0-9]$")
    weekly_digest_day: Optional[int] = Field(None, ge=0, le=6)
    monthly_digest_day: Optional[int] = Field(None, ge=1, le=28)
    escalation_enabled: Optional[bool] = None
    escalation_delay_minutes: Optional[int] = Field(None, ge=1)


# ===========================================
# TEMPLATES
# ===========================================

class TemplateResponse(CamelModel):
    id: UUID
    name: str
    alert_type: str
    alert_category: str
    channel: str
    language: str
    subject: Optional[str] = None
    body_template: str
    sms_template: Optional[str] = None
    is_default: bool
    is_active: bool


class TemplateUpdate(CamelModel):
    subject: Optional[str] = Field(None, max_length=255)
    body_template: Optional[str] = Field(None, min_length=1)
    sms_template: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None


# ===========================================
# SCHEDULER
# ===========================================

class JobToggleRequest(CamelModel):
    enabled: bool


class JobRunResponse(CamelModel):
    job: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
