"""
WorkFlu - SMS Service

Hands substitution-complete messages to an HTTP SMS gateway. Without a
configured gateway, messages are logged and reported as delivered
(simulated mode, used in development).

Truncation to carrier limits is the gateway's concern.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict

import httpx

from workflu.config import Settings
from workflu.utils.error_handling import ErrorCode, ExternalServiceException

logger = logging.getLogger(__name__)


@dataclass
class SmsReceipt:
    """Gateway acknowledgement."""
    message_id: str
    simulated: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class SmsService:
    """SMS gateway client."""

    def __init__(self, settings: Settings):
        self.gateway_url = settings.sms_gateway_url
        self.api_key = settings.sms_api_key
        self.sender_id = settings.sms_sender_id
        self.timeout = settings.sms_timeout_seconds

    @property
    def simulated(self) -> bool:
        return not self.gateway_url

    async def send_sms(self, phone_number: str, message: str) -> SmsReceipt:
        """
        Send one SMS.

        Raises:
            ExternalServiceException: If the gateway rejects or is unreachable
        """
        if self.simulated:
            logger.info(f"[SIMULATED SMS] To: {phone_number} | {message[:160]}")
            return SmsReceipt(
                message_id=f"sms-{uuid.uuid4()}",
                simulated=True,
                metadata={"phoneNumber": phone_number, "message": message[:160]},
            )

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.gateway_url,
                    json={"to": phone_number, "from": self.sender_id, "message": message},
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise ExternalServiceException(
                service_name="sms_gateway",
                message=f"SMS gateway unreachable: {e}",
                code=ErrorCode.SMS_SERVICE_ERROR,
                original_error=e,
            ) from e

        if not response.is_success:
            raise ExternalServiceException(
                service_name="sms_gateway",
                message=f"SMS gateway error: {response.status_code}",
                code=ErrorCode.SMS_SERVICE_ERROR,
                details={"status_code": response.status_code},
            )

        try:
            body = response.json() if response.content else {}
        except ValueError:
            # Some gateways acknowledge with plain text
            body = {}
        if not isinstance(body, dict):
            body = {}
        return SmsReceipt(
            message_id=str(body.get("id") or body.get("messageId") or uuid.uuid4()),
            metadata={"phoneNumber": phone_number, "statusCode": response.status_code},
        )
