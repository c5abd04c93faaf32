"""
WorkFlu - Email Service

Outbound mail transport for the email notification channel.
Supports SendGrid, Mailgun, SMTP or a logging mock.
"""

import asyncio
import logging
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import List, Optional

import httpx

from workflu.config import Settings
from workflu.utils.error_handling import ErrorCode, ExternalServiceException

logger = logging.getLogger(__name__)


class EmailProvider:
    """Email provider types."""
    SMTP = "smtp"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    MOCK = "mock"


@dataclass
class EmailMessage:
    """Email message data structure."""
    to: List[str]
    subject: str
    body_text: str
    body_html: Optional[str] = None
    reply_to: Optional[str] = None


class EmailService:
    """Service for sending transactional emails."""

    def __init__(self, settings: Settings, timeout: float = 15.0):
        self.from_email = settings.email_from
        self.from_name = settings.mail_from_name
        self.configured_provider = settings.email_provider

        # SMTP settings
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls

        # SendGrid settings
        self.sendgrid_api_key = settings.sendgrid_api_key

        # Mailgun settings
        self.mailgun_api_key = settings.mailgun_api_key
        self.mailgun_domain = settings.mailgun_domain

        self.timeout = timeout
        self.provider = self._determine_provider()

    def _determine_provider(self) -> str:
        """Determine which email provider to use based on configuration."""
        if self.configured_provider:
            return self.configured_provider
        if self.sendgrid_api_key:
            return EmailProvider.SENDGRID
        elif self.mailgun_api_key and self.mailgun_domain:
            return EmailProvider.MAILGUN
        elif self.smtp_host:
            return EmailProvider.SMTP
        else:
            return EmailProvider.MOCK

    async def send_email(self, message: EmailMessage) -> str:
        """
        Send an email using the configured provider.

        Returns:
            Provider message id

        Raises:
            ExternalServiceException: If the provider rejects or is unreachable
        """
        try:
            if self.provider == EmailProvider.SENDGRID:
                return await self._send_via_sendgrid(message)
            elif self.provider == EmailProvider.MAILGUN:
                return await self._send_via_mailgun(message)
            elif self.provider == EmailProvider.SMTP:
                return await asyncio.to_thread(self._send_via_smtp, message)
            else:
                return await self._send_mock(message)
        except ExternalServiceException:
            raise
        except (httpx.HTTPError, smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email via {self.provider}: {e}")
            raise ExternalServiceException(
                service_name=self.provider,
                message=f"Email delivery failed: {e}",
                code=ErrorCode.EMAIL_SERVICE_ERROR,
                original_error=e,
            ) from e

    async def _send_via_sendgrid(self, message: EmailMessage) -> str:
        """Send email via SendGrid API."""
        payload = {
            "personalizations": [
                {
                    "to": [{"email": email} for email in message.to],
                }
            ],
            "from": {
                "email": self.from_email,
                "name": self.from_name,
            },
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.body_text},
            ],
        }
        if message.body_html:
            payload["content"].append({
                "type": "text/html",
                "value": message.body_html,
            })
        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                "https://api.sendgrid.com/v3/mail/send",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.sendgrid_api_key}",
                    "Content-Type": "application/json",
                },
            )

        if response.status_code not in (200, 202):
            raise ExternalServiceException(
                service_name=EmailProvider.SENDGRID,
                message=f"SendGrid API error: {response.status_code}",
                code=ErrorCode.EMAIL_SERVICE_ERROR,
                details={"status_code": response.status_code},
            )
        logger.info(f"Email sent via SendGrid to {message.to}")
        return response.headers.get("X-Message-Id") or str(uuid.uuid4())

    async def _send_via_mailgun(self, message: EmailMessage) -> str:
        """Send email via Mailgun API."""
        data = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": message.to,
            "subject": message.subject,
            "text": message.body_text,
        }
        if message.body_html:
            data["html"] = message.body_html
        if message.reply_to:
            data["h:Reply-To"] = message.reply_to

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"https://api.mailgun.net/v3/{self.mailgun_domain}/messages",
                data=data,
                auth=("api", self.mailgun_api_key),
            )

        if response.status_code != 200:
            raise ExternalServiceException(
                service_name=EmailProvider.MAILGUN,
                message=f"Mailgun API error: {response.status_code}",
                code=ErrorCode.EMAIL_SERVICE_ERROR,
                details={"status_code": response.status_code},
            )
        logger.info(f"Email sent via Mailgun to {message.to}")
        return response.json().get("id") or str(uuid.uuid4())

    def _send_via_smtp(self, message: EmailMessage) -> str:
        """Send email via SMTP (blocking; run in a worker thread)."""
        message_id = make_msgid(domain=self.from_email.split("@")[-1])

        msg = MIMEMultipart('alternative')
        msg['Subject'] = message.subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = ', '.join(message.to)
        msg['Message-ID'] = message_id
        if message.reply_to:
            msg['Reply-To'] = message.reply_to

        msg.attach(MIMEText(message.body_text, 'plain'))
        if message.body_html:
            msg.attach(MIMEText(message.body_html, 'html'))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.smtp_use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.sendmail(self.from_email, message.to, msg.as_string())

        logger.info(f"Email sent via SMTP to {message.to}")
        return message_id

    async def _send_mock(self, message: EmailMessage) -> str:
        """Mock email sending for development."""
        logger.info(f"[MOCK EMAIL] To: {message.to} | Subject: {message.subject}")
        logger.debug(f"[MOCK EMAIL] Body: {message.body_text[:200]}...")
        return f"mock-{uuid.uuid4()}"


def create_email_service(settings: Settings) -> Optional[EmailService]:
    """Email transport, or None when email is disabled."""
    if not settings.email_enabled:
        logger.warning("Email transport disabled; email channel deliveries will fail")
        return None
    return EmailService(settings)
