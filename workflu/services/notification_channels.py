"""
WorkFlu - Notification Delivery Channels

One class per delivery medium. The delivery engine dispatches to them through
the common DeliveryChannel interface; a channel reports failure through its
DeliveryResult and never raises.

Channels:
- InAppChannel: the persisted queue row itself, always succeeds
- EmailChannel: templated email through the mail transport
- SmsChannel: the template's SMS text (or the raw message) through the gateway
- WebhookChannel: signed JSON POST to the user's endpoint
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from workflu.models.base import utcnow
from workflu.models.notification import (
    NotificationChannel,
    NotificationQueue,
    NotificationSetting,
)
from workflu.services.email_service import EmailMessage, EmailService
from workflu.services.sms_service import SmsService
from workflu.services.template_registry import TemplateRegistry, render_template, strip_html
from workflu.utils.error_handling import AppException
from workflu.utils.security import sign_webhook_payload

logger = logging.getLogger(__name__)


SIGNATURE_HEADER = "X-WorkFlu-Signature"
TIMESTAMP_HEADER = "X-WorkFlu-Timestamp"


@dataclass
class DeliveryResult:
    """Outcome of delivering one notification."""
    success: bool
    channel: str
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "channel": self.channel,
            "deliveryId": self.delivery_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class DeliveryRequest:
    """Everything a channel needs to deliver one notification."""
    notification: NotificationQueue
    settings: Optional[NotificationSetting]
    templates: TemplateRegistry
    user_name: str = ""

    def template_variables(self) -> Dict[str, Any]:
        variables: Dict[str, Any] = {
            "userName": self.user_name,
            "title": self.notification.title,
            "message": self.notification.message,
            "actionUrl": self.notification.action_url or "",
        }
        variables.update(self.notification.template_data or {})
        return variables


class DeliveryChannel(ABC):
    """A delivery medium."""

    channel: NotificationChannel

    @abstractmethod
    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        ...

    def failure(self, error: str, **metadata: Any) -> DeliveryResult:
        return DeliveryResult(
            success=False,
            channel=self.channel.value,
            error=error,
            metadata=metadata or None,
        )


class InAppChannel(DeliveryChannel):
    channel = NotificationChannel.IN_APP

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        return DeliveryResult(
            success=True,
            channel=self.channel.value,
            delivery_id=str(request.notification.id),
        )


class EmailChannel(DeliveryChannel):
    channel = NotificationChannel.EMAIL

    def __init__(self, email_service: Optional[EmailService]):
        self.email_service = email_service

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        if self.email_service is None:
            return self.failure("Email transport not initialized")

        settings = request.settings
        if settings is None or not settings.email_address:
            return self.failure("No email address configured")

        notification = request.notification
        template = await request.templates.get_template_by_type_and_channel(
            notification.alert_type,
            notification.alert_category,
            NotificationChannel.EMAIL.value,
        )
        if template is None:
            return self.failure(
                f"No email template found for {notification.alert_type}/{notification.alert_category}"
            )

        variables = request.template_variables()
        subject = render_template(template.subject or notification.title, variables)
        body_html = render_template(template.body_template, variables, escape=True)

        try:
            message_id = await self.email_service.send_email(EmailMessage(
                to=[settings.email_address],
                subject=subject,
                body_text=strip_html(body_html),
                body_html=body_html,
            ))
        except AppException as e:
            return self.failure(e.message, provider=self.email_service.provider)

        return DeliveryResult(
            success=True,
            channel=self.channel.value,
            delivery_id=message_id,
            metadata={"to": settings.email_address, "subject": subject},
        )


class SmsChannel(DeliveryChannel):
    channel = NotificationChannel.SMS

    def __init__(self, sms_service: SmsService):
        self.sms_service = sms_service

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        settings = request.settings
        if settings is None or not settings.phone_number:
            return self.failure("No phone number configured")

        notification = request.notification
        template = await request.templates.get_template_by_type_and_channel(
            notification.alert_type,
            notification.alert_category,
            NotificationChannel.EMAIL.value,
        )
        if template is not None and template.sms_template:
            text = render_template(template.sms_template, request.template_variables())
        else:
            text = notification.message

        try:
            receipt = await self.sms_service.send_sms(settings.phone_number, text)
        except AppException as e:
            return self.failure(e.message, phoneNumber=settings.phone_number)

        return DeliveryResult(
            success=True,
            channel=self.channel.value,
            delivery_id=receipt.message_id,
            metadata={"simulated": receipt.simulated, **receipt.metadata},
        )


def build_webhook_payload(notification: NotificationQueue) -> Dict[str, Any]:
    """The notification record as sent to webhook receivers."""
    created = notification.created_at or utcnow()
    return {
        "id": str(notification.id),
        "userId": str(notification.user_id),
        "alertType": notification.alert_type,
        "alertCategory": notification.alert_category,
        "priority": notification.priority.value,
        "title": notification.title,
        "message": notification.message,
        "entityType": notification.entity_type,
        "entityId": notification.entity_id,
        "actionUrl": notification.action_url,
        "templateData": notification.template_data or {},
        "timestamp": created.isoformat(),
    }


def serialize_webhook_payload(payload: Dict[str, Any]) -> bytes:
    """Canonical JSON bytes: the exact bytes that are signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class WebhookChannel(DeliveryChannel):
    channel = NotificationChannel.WEBHOOK

    def __init__(self, secret: str, timeout: float = 10.0, user_agent: str = "WorkFlu-Notifications/1.0"):
        self.secret = secret
        self.timeout = timeout
        self.user_agent = user_agent

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        settings = request.settings
        if settings is None or not settings.webhook_url:
            return self.failure("No webhook URL configured")

        url = settings.webhook_url
        body = serialize_webhook_payload(build_webhook_payload(request.notification))
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            SIGNATURE_HEADER: sign_webhook_payload(body, self.secret),
            TIMESTAMP_HEADER: str(int(time.time() * 1000)),
        }

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning(f"Webhook delivery to {url} failed: {e}")
            return self.failure(f"Webhook request failed: {e}", url=url, responseTime=elapsed_ms)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        metadata = {"url": url, "statusCode": response.status_code, "responseTime": elapsed_ms}
        if not response.is_success:
            return self.failure(f"Webhook returned HTTP {response.status_code}", **metadata)

        return DeliveryResult(
            success=True,
            channel=self.channel.value,
            delivery_id=response.headers.get("X-Delivery-Id"),
            metadata=metadata,
        )
