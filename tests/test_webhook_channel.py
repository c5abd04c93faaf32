"""
Tests for signed webhook delivery

The HTTP endpoint is mocked with respx; the SMS gateway client is covered
here too since it shares the same transport.
"""

import json
import uuid

import httpx
import pytest
import respx

from workflu.config import get_settings
from workflu.models.base import utcnow
from workflu.models.notification import NotificationPriority, NotificationQueue, NotificationSetting
from workflu.services.notification_channels import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    DeliveryRequest,
    WebhookChannel,
    build_webhook_payload,
    serialize_webhook_payload,
)
from workflu.services.sms_service import SmsService
from workflu.services.template_registry import TemplateRegistry
from workflu.utils.error_handling import ExternalServiceException
from workflu.utils.security import sign_webhook_payload, verify_webhook_signature


HOOK_URL = "https://hooks.workflu.test/notify"
SECRET = "webhook-test-secret"


def make_request(db_session, url: str = HOOK_URL) -> DeliveryRequest:
    notification = NotificationQueue(
        id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        alert_type="threshold_alert",
        alert_category="capital_threshold",
        priority=NotificationPriority.HIGH,
        channels=["webhook"],
        title="Low capital",
        message="Capital balance below threshold",
        template_data={"currentBalance": "1200.00"},
        created_at=utcnow(),
    )
    settings = NotificationSetting(user_id=notification.user_id, enable_webhook=True, webhook_url=url)
    return DeliveryRequest(notification=notification, settings=settings, templates=TemplateRegistry(db_session))


class TestSigning:

    def test_signature_is_deterministic(self):
        body = serialize_webhook_payload({"b": 1, "a": "x"})

        assert sign_webhook_payload(body, SECRET) == sign_webhook_payload(body, SECRET)
        assert sign_webhook_payload(body, SECRET) != sign_webhook_payload(body, "other")
        assert verify_webhook_signature(body, sign_webhook_payload(body, SECRET), SECRET)

    def test_canonical_serialization(self):
        assert serialize_webhook_payload({"b": 1, "a": "x"}) == b'{"a":"x","b":1}'


class TestWebhookChannel:

    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_signed_payload(self, db_session):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200, headers={"X-Delivery-Id": "d-1"}))
        request = make_request(db_session)

        result = await WebhookChannel(SECRET).deliver(request)

        assert result.success is True
        assert result.delivery_id == "d-1"
        assert result.metadata["statusCode"] == 200

        sent = route.calls.last.request
        assert sent.headers["Content-Type"] == "application/json"
        assert sent.headers["User-Agent"] == "WorkFlu-Notifications/1.0"
        assert sent.headers[SIGNATURE_HEADER] == sign_webhook_payload(sent.content, SECRET)
        assert int(sent.headers[TIMESTAMP_HEADER]) > 0

        payload = json.loads(sent.content)
        assert payload == json.loads(serialize_webhook_payload(build_webhook_payload(request.notification)))
        assert payload["alertType"] == "threshold_alert"
        assert payload["priority"] == "high"
        assert payload["templateData"] == {"currentBalance": "1200.00"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_2xx_is_failure(self, db_session):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(503))

        result = await WebhookChannel(SECRET).deliver(make_request(db_session))

        assert result.success is False
        assert result.channel == "webhook"
        assert result.error == "Webhook returned HTTP 503"
        assert result.metadata["url"] == HOOK_URL
        assert result.metadata["statusCode"] == 503
        assert "responseTime" in result.metadata

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error_is_failure(self, db_session):
        respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("refused"))

        result = await WebhookChannel(SECRET).deliver(make_request(db_session))

        assert result.success is False
        assert "refused" in result.error
        assert result.metadata["url"] == HOOK_URL

    @pytest.mark.asyncio
    async def test_missing_url_is_failure(self, db_session):
        request = make_request(db_session)
        request.settings.webhook_url = None

        result = await WebhookChannel(SECRET).deliver(request)

        assert result.success is False
        assert result.error == "No webhook URL configured"


class TestSmsGateway:

    def _service(self, url: str) -> SmsService:
        settings = get_settings().model_copy(update={"sms_gateway_url": url, "sms_api_key": "k"})
        return SmsService(settings)

    @pytest.mark.asyncio
    async def test_simulated_without_gateway(self):
        receipt = await self._service("").send_sms("+251911000000", "hello")

        assert receipt.simulated is True
        assert receipt.message_id.startswith("sms-")

    @pytest.mark.asyncio
    @respx.mock
    async def test_gateway_success(self):
        route = respx.post("https://sms.workflu.test/send").mock(
            return_value=httpx.Response(200, json={"id": "gw-42"})
        )

        receipt = await self._service("https://sms.workflu.test/send").send_sms("+251911000000", "hello")

        assert receipt.message_id == "gw-42"
        assert receipt.simulated is False
        assert json.loads(route.calls.last.request.content)["to"] == "+251911000000"

    @pytest.mark.asyncio
    @respx.mock
    async def test_plain_text_acknowledgement(self):
        respx.post("https://sms.workflu.test/send").mock(return_value=httpx.Response(200, text="OK"))

        receipt = await self._service("https://sms.workflu.test/send").send_sms("+251911000000", "hello")

        assert receipt.simulated is False
        assert receipt.message_id
        assert receipt.metadata["statusCode"] == 200

    @pytest.mark.asyncio
    @respx.mock
    async def test_gateway_error_raises(self):
        respx.post("https://sms.workflu.test/send").mock(return_value=httpx.Response(500))

        with pytest.raises(ExternalServiceException):
            await self._service("https://sms.workflu.test/send").send_sms("+251911000000", "hello")
