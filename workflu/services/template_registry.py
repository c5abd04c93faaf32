"""
WorkFlu - Notification Template Registry

Stores per (alert type, category, channel, language) templates and renders
{{variable}} placeholders.

Rendering never fails on a missing variable: unresolved placeholders are left
verbatim so a cosmetic gap cannot block delivery.
"""

import html
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.models.notification import NotificationTemplate
from workflu.utils.error_handling import NotFoundException

logger = logging.getLogger(__name__)


PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")
_TAG_PATTERN = re.compile(r"<[^>]+>")
_BLOCK_END_PATTERN = re.compile(r"</(p|div|h[1-6]|li|tr)>|<br\s*/?>|<hr\s*/?>", re.IGNORECASE)
_BLANK_LINES = re.compile(r"\n\s*\n+")
_SPACES = re.compile(r"[ \t]+")


def render_template(template: Optional[str], variables: Mapping[str, Any], escape: bool = False) -> str:
    """
    Single-pass {{token}} substitution; unknown tokens stay as written.

    With escape=True substituted values are HTML-escaped (HTML email bodies).
    """
    if not template:
        return ""

    def substitute(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            value = str(variables[key])
            return html.escape(value) if escape else value
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


def strip_html(markup: str) -> str:
    """Plain-text fallback for an HTML body."""
    text = _BLOCK_END_PATTERN.sub("\n", markup)
    text = _TAG_PATTERN.sub("", text)
    text = html.unescape(text)
    lines = [_SPACES.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


_FOOTER = """
          <hr>
          <p><small>WorkFlu Business Management System</small></p>"""


DEFAULT_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Capital Low Balance Alert",
        "alert_type": "threshold_alert",
        "alert_category": "capital_threshold",
        "subject": "WorkFlu: Low Capital Balance Alert",
        "body_template": """
          <h2>Capital Balance Alert</h2>
          <p>Dear {{userName}},</p>
          <p>Your capital balance has dropped below the configured threshold.</p>
          <div>
            <strong>Current Balance:</strong> {{currency}} {{currentBalance}}<br>
            <strong>Threshold:</strong> {{currency}} {{threshold}}<br>
            <strong>Deficit:</strong> {{currency}} {{deficit}}
          </div>
          <p>Please take appropriate action to maintain adequate capital levels.</p>
          <p><a href="{{actionUrl}}">View Capital Dashboard</a></p>""" + _FOOTER,
        "sms_template": "WorkFlu Alert: Capital balance {{currentBalance}} below threshold {{threshold}}. Action required.",
    },
    {
        "name": "Inventory Low Stock Alert",
        "alert_type": "threshold_alert",
        "alert_category": "inventory_level",
        "subject": "WorkFlu: Low Inventory Alert",
        "body_template": """
          <h2>Low Inventory Alert</h2>
          <p>Dear {{userName}},</p>
          <p>The following products have fallen below minimum stock levels:</p>
          <div>
            <strong>Product:</strong> {{productName}}<br>
            <strong>Current Stock:</strong> {{currentStock}} {{unit}}<br>
            <strong>Minimum Level:</strong> {{minimumLevel}} {{unit}}<br>
            <strong>Recommended Order:</strong> {{recommendedOrder}} {{unit}}
          </div>
          <p>Consider placing a new order to maintain adequate inventory levels.</p>
          <p><a href="{{actionUrl}}">View Inventory</a></p>""" + _FOOTER,
        "sms_template": "WorkFlu Alert: {{productName}} low stock ({{currentStock}}/{{minimumLevel}}). Order {{recommendedOrder}} {{unit}}.",
    },
    {
        "name": "Approval Required Alert",
        "alert_type": "workflow_alert",
        "alert_category": "approval_workflow",
        "subject": "WorkFlu: Approval Required",
        "body_template": """
          <h2>Approval Request</h2>
          <p>Dear {{userName}},</p>
          <p>A new approval request requires your attention:</p>
          <div>
            <strong>Request Type:</strong> {{operationType}}<br>
            <strong>Amount:</strong> {{currency}} {{amount}}<br>
            <strong>Requested By:</strong> {{requesterName}}<br>
            <strong>Request Date:</strong> {{requestDate}}<br>
            <strong>Priority:</strong> {{priority}}
          </div>
          <p><strong>Description:</strong> {{description}}</p>
          <p><a href="{{actionUrl}}">Review Request</a></p>""" + _FOOTER,
        "sms_template": "WorkFlu: Approval required for {{operationType}} ({{currency}} {{amount}}) by {{requesterName}}.",
    },
    {
        "name": "Document Expiry Alert",
        "alert_type": "compliance_alert",
        "alert_category": "document_expiry",
        "subject": "WorkFlu: Document Expiry Notice",
        "body_template": """
          <h2>Document Expiry Notice</h2>
          <p>Dear {{userName}},</p>
          <p>The following document is approaching its expiry date:</p>
          <div>
            <strong>Document:</strong> {{documentName}}<br>
            <strong>Type:</strong> {{documentType}}<br>
            <strong>Expiry Date:</strong> {{expiryDate}}<br>
            <strong>Days Until Expiry:</strong> {{daysRemaining}}
          </div>
          <p>Please renew this document to maintain compliance.</p>
          <p><a href="{{actionUrl}}">View Document</a></p>""" + _FOOTER,
        "sms_template": "WorkFlu Alert: {{documentName}} expires in {{daysRemaining}} days ({{expiryDate}}). Renewal required.",
    },
    {
        "name": "System Health Alert",
        "alert_type": "system_alert",
        "alert_category": "system_health",
        "subject": "WorkFlu: System Health Warning",
        "body_template": """
          <h2>System Health Warning</h2>
          <p>Dear {{userName}},</p>
          <p>{{criticalAlertCount}} critical alerts were raised in the last {{windowHours}} hours.</p>
          <p><a href="{{actionUrl}}">Open Notification Center</a></p>""" + _FOOTER,
        "sms_template": "WorkFlu: {{criticalAlertCount}} critical alerts in {{windowHours}}h. Please review.",
    },
    {
        "name": "Notification Digest",
        "alert_type": "digest",
        "alert_category": "digest_summary",
        "subject": "WorkFlu: Your {{frequencyLabel}}",
        "body_template": """
          <h2>{{frequencyLabel}}</h2>
          <p>Dear {{userName}},</p>
          <p>You have {{unreadCount}} unread notifications, {{criticalCount}} of them critical.</p>
          <p><a href="{{actionUrl}}">Open Notification Center</a></p>""" + _FOOTER,
        "sms_template": "WorkFlu {{frequencyLabel}}: {{unreadCount}} unread notifications.",
    },
]


class TemplateRegistry:
    """Lookup, seeding and editing of notification templates."""

    def __init__(self, db: AsyncSession, default_language: str = "en"):
        self.db = db
        self.default_language = default_language

    async def get_template_by_type_and_channel(
        self,
        alert_type: str,
        alert_category: str,
        channel: str,
        language: Optional[str] = None,
        include_inactive: bool = False,
    ) -> Optional[NotificationTemplate]:
        """Unique template for the key, or None."""
        conditions = [
            NotificationTemplate.alert_type == alert_type,
            NotificationTemplate.alert_category == alert_category,
            NotificationTemplate.channel == channel,
            NotificationTemplate.language == (language or self.default_language),
        ]
        if not include_inactive:
            conditions.append(NotificationTemplate.is_active.is_(True))
        result = await self.db.execute(select(NotificationTemplate).where(and_(*conditions)))
        return result.scalar_one_or_none()

    async def list_templates(self) -> List[NotificationTemplate]:
        result = await self.db.execute(
            select(NotificationTemplate).order_by(
                NotificationTemplate.alert_type,
                NotificationTemplate.alert_category,
                NotificationTemplate.channel,
            )
        )
        return list(result.scalars().all())

    async def initialize_default_templates(self) -> int:
        """
        Insert every built-in template that is missing.

        Existing templates (including admin-edited and deactivated ones) are
        never touched. Safe to call on every process start.

        Returns:
            Number of templates created
        """
        created = 0
        for definition in DEFAULT_TEMPLATES:
            existing = await self.get_template_by_type_and_channel(
                definition["alert_type"],
                definition["alert_category"],
                "email",
                include_inactive=True,
            )
            if existing is not None:
                continue

            template = NotificationTemplate(
                channel="email",
                language=self.default_language,
                is_default=True,
                is_active=True,
                **definition,
            )
            self.db.add(template)
            try:
                await self.db.commit()
            except IntegrityError:
                # Another process seeded the same key between check and insert
                await self.db.rollback()
                logger.info(f"Default template already present: {definition['name']}")
                continue
            created += 1
            logger.info(f"Created default template: {definition['name']}")

        return created

    async def update_template(
        self,
        template_id,
        *,
        subject: Optional[str] = None,
        body_template: Optional[str] = None,
        sms_template: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> NotificationTemplate:
        """Admin edit. The caller commits."""
        template = await self.db.get(NotificationTemplate, template_id)
        if template is None:
            raise NotFoundException("NotificationTemplate", template_id)
        if subject is not None:
            template.subject = subject
        if body_template is not None:
            template.body_template = body_template
        if sms_template is not None:
            template.sms_template = sms_template
        if is_active is not None:
            template.is_active = is_active
        await self.db.flush()
        return template
