"""
Tests for notification delivery

Channel selection from user settings, the first-success channel chain and
failure recording on the queue row.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from workflu.models.audit import AuditLog
from workflu.models.notification import (
    NotificationPriority,
    NotificationQueue,
    NotificationSetting,
    NotificationStatus,
)
from workflu.services.notification_channels import EmailChannel, InAppChannel, SmsChannel
from workflu.services.notification_service import (
    CreateNotification,
    NotificationService,
    determine_delivery_channels,
)
from workflu.services.sms_service import SmsService
from workflu.services.template_registry import TemplateRegistry
from workflu.utils.error_handling import ErrorCode, ExternalServiceException

from conftest import auth_headers, set_notification_settings


def broken_channel() -> MagicMock:
    channel = MagicMock()
    channel.deliver = AsyncMock(side_effect=RuntimeError("template store offline"))
    return channel


def approval_alert(user_id: uuid.UUID, priority: NotificationPriority = NotificationPriority.MEDIUM) -> CreateNotification:
    return CreateNotification(
        user_id=user_id,
        alert_type="workflow_alert",
        alert_category="approval_workflow",
        title="Approval required: APR-1",
        message="Dawit requested purchase for USD 15000.",
        priority=priority,
        channels=["in_app", "email"],
        template_data={
            "operationType": "purchase",
            "amount": "15000",
            "currency": "USD",
            "requesterName": "Dawit Tester",
        },
    )


# =============================================================================
# CHANNEL SELECTION
# =============================================================================

class TestDetermineDeliveryChannels:

    def _notification(self, priority: NotificationPriority) -> NotificationQueue:
        return NotificationQueue(priority=priority)

    def _settings(self, **fields) -> NotificationSetting:
        values = dict(
            enable_in_app=True,
            enable_email=False,
            enable_sms=False,
            enable_webhook=False,
            email_address=None,
            phone_number=None,
            webhook_url=None,
        )
        values.update(fields)
        return NotificationSetting(**values)

    def test_no_settings_means_in_app(self):
        assert determine_delivery_channels(self._notification(NotificationPriority.CRITICAL), None) == ["in_app"]

    def test_everything_enabled_for_critical(self):
        settings = self._settings(
            enable_email=True, email_address="a@b.test",
            enable_sms=True, phone_number="+251911000000",
            enable_webhook=True, webhook_url="https://hooks.test/x",
        )

        channels = determine_delivery_channels(self._notification(NotificationPriority.CRITICAL), settings)

        assert channels == ["in_app", "email", "sms", "webhook"]

    def test_sms_only_for_critical(self):
        settings = self._settings(enable_sms=True, phone_number="+251911000000")

        channels = determine_delivery_channels(self._notification(NotificationPriority.HIGH), settings)

        assert "sms" not in channels

    def test_low_priority_skips_email(self):
        settings = self._settings(enable_email=True, email_address="a@b.test")

        channels = determine_delivery_channels(self._notification(NotificationPriority.LOW), settings)

        assert channels == ["in_app"]

    def test_email_needs_an_address(self):
        settings = self._settings(enable_in_app=False, enable_email=True, email_address=None)

        channels = determine_delivery_channels(self._notification(NotificationPriority.HIGH), settings)

        assert channels == ["in_app"]

    def test_never_empty(self):
        settings = self._settings(enable_in_app=False)

        assert determine_delivery_channels(self._notification(NotificationPriority.LOW), settings) == ["in_app"]


# =============================================================================
# DELIVERY
# =============================================================================

class TestSendNotification:

    @pytest.mark.asyncio
    async def test_in_app_by_default(self, db_session, services, email_transport, worker_user):
        result = await services.notification_service(db_session).send_notification(approval_alert(worker_user.id))

        assert result.success is True
        assert result.channel == "in_app"
        entry = (await db_session.execute(select(NotificationQueue))).scalars().one()
        assert entry.status == NotificationStatus.SENT
        assert entry.delivered_channel == "in_app"
        assert entry.attempts == 1
        email_transport.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_success_short_circuits(self, db_session, services, email_transport, worker_user):
        await set_notification_settings(db_session, worker_user, enable_email=True, email_address="w@workflu.test")

        result = await services.notification_service(db_session).send_notification(approval_alert(worker_user.id))

        assert result.channel == "in_app"
        email_transport.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_email_rendered_from_template(self, db_session, services, email_transport, worker_user):
        await TemplateRegistry(db_session).initialize_default_templates()
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )

        result = await services.notification_service(db_session).send_notification(approval_alert(worker_user.id))

        assert result.success is True
        assert result.channel == "email"
        assert result.delivery_id == "mock-message-id"
        message = email_transport.send_email.call_args.args[0]
        assert message.to == ["w@workflu.test"]
        assert message.subject == "WorkFlu: Approval Required"
        assert "Dear Dawit Tester" in message.body_html
        assert "USD 15000" in message.body_text
        assert "<" not in message.body_text

    @pytest.mark.asyncio
    async def test_email_escapes_user_text(self, db_session, services, email_transport, worker_user):
        await TemplateRegistry(db_session).initialize_default_templates()
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )
        alert = approval_alert(worker_user.id)
        alert.template_data["requesterName"] = "<b>Eve</b>"
        alert.template_data["description"] = "<script>alert(1)</script>"

        await services.notification_service(db_session).send_notification(alert)

        message = email_transport.send_email.call_args.args[0]
        assert "<script>" not in message.body_html
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in message.body_html
        assert "&lt;b&gt;Eve&lt;/b&gt;" in message.body_html
        assert "<script>alert(1)</script>" in message.body_text
        assert message.subject == "WorkFlu: Approval Required"

    @pytest.mark.asyncio
    async def test_missing_template_fails(self, db_session, services, email_transport, worker_user):
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )

        result = await services.notification_service(db_session).send_notification(approval_alert(worker_user.id))

        assert result.success is False
        assert "No email template found" in result.error
        entry = (await db_session.execute(select(NotificationQueue))).scalars().one()
        assert entry.status == NotificationStatus.FAILED
        assert entry.error_message == result.error
        email_transport.send_email.assert_not_called()

        audit = await db_session.execute(select(AuditLog).where(AuditLog.action == "delivery_failed"))
        assert audit.scalars().one().entity_id == str(entry.id)

    @pytest.mark.asyncio
    async def test_transport_error_recorded(self, db_session, services, email_transport, worker_user):
        await TemplateRegistry(db_session).initialize_default_templates()
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )
        email_transport.send_email.side_effect = ExternalServiceException(
            service_name="mock", message="Email delivery failed: 550", code=ErrorCode.EMAIL_SERVICE_ERROR
        )

        result = await services.notification_service(db_session).send_notification(approval_alert(worker_user.id))

        assert result.success is False
        assert result.error == "Email delivery failed: 550"
        assert result.metadata == {"provider": "mock"}

    @pytest.mark.asyncio
    async def test_email_transport_not_initialized(self, db_session, services, worker_user):
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )
        service = NotificationService(db_session, {"email": EmailChannel(None)}, services.settings)

        result = await service.send_notification(approval_alert(worker_user.id))

        assert result.success is False
        assert result.error == "Email transport not initialized"

    @pytest.mark.asyncio
    async def test_unsupported_channel(self, db_session, services, worker_user):
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_webhook=True, webhook_url="https://hooks.test/x"
        )
        service = NotificationService(db_session, {"in_app": InAppChannel()}, services.settings)

        result = await service.send_notification(approval_alert(worker_user.id))

        assert result.success is False
        assert result.error == "Unsupported delivery channel: webhook"

    @pytest.mark.asyncio
    async def test_falls_through_to_next_channel(self, db_session, services, email_transport, worker_user):
        # Email fails for lack of a template, SMS (simulated) delivers
        await set_notification_settings(
            db_session, worker_user,
            enable_in_app=False,
            enable_email=True, email_address="w@workflu.test",
            enable_sms=True, phone_number="+251911000000",
        )

        result = await services.notification_service(db_session).send_notification(
            approval_alert(worker_user.id, NotificationPriority.CRITICAL)
        )

        assert result.success is True
        assert result.channel == "sms"
        assert result.metadata["simulated"] is True
        entry = (await db_session.execute(select(NotificationQueue))).scalars().one()
        # One attempt per delivery, however many channels were walked
        assert entry.attempts == 1
        assert entry.delivered_channel == "sms"
        assert entry.error_message is None

    @pytest.mark.asyncio
    async def test_raising_channel_does_not_stop_chain(self, db_session, services, worker_user):
        await set_notification_settings(
            db_session, worker_user,
            enable_in_app=False,
            enable_email=True, email_address="w@workflu.test",
            enable_sms=True, phone_number="+251911000000",
        )
        channels = {"email": broken_channel(), "sms": SmsChannel(SmsService(services.settings))}
        service = NotificationService(db_session, channels, services.settings)

        result = await service.send_notification(approval_alert(worker_user.id, NotificationPriority.CRITICAL))

        assert result.success is True
        assert result.channel == "sms"
        entry = (await db_session.execute(select(NotificationQueue))).scalars().one()
        assert entry.attempts == 1
        assert entry.status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_raising_channel_recorded_as_failed_attempt(self, db_session, services, worker_user):
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )
        service = NotificationService(db_session, {"email": broken_channel()}, services.settings)

        result = await service.send_notification(approval_alert(worker_user.id))

        assert result.success is False
        assert result.channel == "email"
        assert result.error == "template store offline"
        # The attempt is persisted, so the retry job applies its backoff
        entry = (await db_session.execute(select(NotificationQueue))).scalars().one()
        assert entry.status == NotificationStatus.FAILED
        assert entry.attempts == 1
        assert entry.last_attempt_at is not None
        assert entry.error_message == "template store offline"

    @pytest.mark.asyncio
    async def test_bulk_continues_after_failure(self, db_session, services, worker_user, finance_user):
        await set_notification_settings(
            db_session, worker_user, enable_in_app=False, enable_email=True, email_address="w@workflu.test"
        )

        summary = await services.notification_service(db_session).send_bulk_notifications([
            approval_alert(worker_user.id),
            approval_alert(finance_user.id),
        ])

        assert summary.sent == 1
        assert summary.failed == 1


# =============================================================================
# INBOX
# =============================================================================

class TestInbox:

    @pytest.mark.asyncio
    async def test_read_and_dismiss(self, client, db_session, services, worker_user):
        await services.notification_service(db_session).send_notification(approval_alert(worker_user.id))
        headers = auth_headers(worker_user)

        count = await client.get("/api/v1/notifications/unread-count", headers=headers)
        assert count.json() == {"unreadCount": 1, "criticalCount": 0}

        listing = await client.get("/api/v1/notifications", headers=headers)
        notification_id = listing.json()["notifications"][0]["id"]

        read = await client.post(f"/api/v1/notifications/{notification_id}/read", headers=headers)
        assert read.json()["status"] == "read"
        assert read.json()["readAt"] is not None

        dismissed = await client.post(f"/api/v1/notifications/{notification_id}/dismiss", headers=headers)
        assert dismissed.json()["status"] == "dismissed"

        count = await client.get("/api/v1/notifications/unread-count", headers=headers)
        assert count.json()["unreadCount"] == 0

    @pytest.mark.asyncio
    async def test_cannot_touch_other_users_notification(self, client, db_session, services, worker_user, finance_user):
        await services.notification_service(db_session).send_notification(approval_alert(finance_user.id))
        entry = (await db_session.execute(select(NotificationQueue))).scalars().one()

        response = await client.post(f"/api/v1/notifications/{entry.id}/read", headers=auth_headers(worker_user))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_settings_defaults_and_update(self, client, db_session, worker_user):
        headers = auth_headers(worker_user)
        defaults = await client.get("/api/v1/notifications/settings", headers=headers)
        assert defaults.json()["emailAddress"] == worker_user.email
        assert defaults.json()["enableInApp"] is True

        updated = await client.put(
            "/api/v1/notifications/settings",
            json={"enableSms": True, "phoneNumber": "+251911000000", "digestTime": "07:30"},
            headers=headers,
        )
        assert updated.status_code == 200
        assert updated.json()["enableSms"] is True
        assert updated.json()["digestTime"] == "07:30"

        invalid = await client.put(
            "/api/v1/notifications/settings", json={"webhookUrl": "ftp://x"}, headers=headers
        )
        assert invalid.status_code == 422
