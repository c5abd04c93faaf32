"""
WorkFlu - Notification Delivery Engine

Persists every notification in the queue table, picks delivery channels from
the user's settings and the notification priority, and walks the channels in
order until one succeeds.

Delivery is best effort: a failure is recorded on the queue row and retried
later by the scheduler. Nothing in this service raises into the business
request that triggered the notification.

Delivery state machine:
    pending -> sent | failed
    failed  -> sent | failed      (scheduled retry, attempts^2 hours apart)
    sent    -> read -> dismissed  (user interaction)
"""

import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.config import Settings
from workflu.models.audit import AuditSeverity
from workflu.models.base import utcnow
from workflu.models.notification import (
    AlertCategory,
    AlertType,
    NotificationChannel,
    NotificationFrequency,
    NotificationPriority,
    NotificationQueue,
    NotificationSetting,
    NotificationStatus,
)
from workflu.models.user import User, UserRole
from workflu.services.audit_service import AuditContext, AuditService
from workflu.services.notification_channels import DeliveryChannel, DeliveryRequest, DeliveryResult
from workflu.services.template_registry import TemplateRegistry
from workflu.utils.error_handling import NotFoundException

logger = logging.getLogger(__name__)


EMAIL_PRIORITIES = (
    NotificationPriority.MEDIUM,
    NotificationPriority.HIGH,
    NotificationPriority.CRITICAL,
)

# Statuses the queue processor picks up
DELIVERABLE_STATUSES = (NotificationStatus.PENDING, NotificationStatus.FAILED)

UNREAD_STATUSES = (NotificationStatus.PENDING, NotificationStatus.SENT, NotificationStatus.FAILED)

DIGEST_LABELS = {
    NotificationFrequency.DAILY_DIGEST: "Daily Digest",
    NotificationFrequency.WEEKLY_SUMMARY: "Weekly Summary",
    NotificationFrequency.MONTHLY_REPORT: "Monthly Report",
}


@dataclass
class CreateNotification:
    """Input for send_notification."""
    user_id: uuid.UUID
    alert_type: str
    alert_category: str
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    channels: List[str] = field(default_factory=lambda: [NotificationChannel.IN_APP.value])
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    action_url: Optional[str] = None
    template_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkDeliveryResult:
    """Aggregate of a bulk send."""
    sent: int = 0
    failed: int = 0
    results: List[DeliveryResult] = field(default_factory=list)


def determine_delivery_channels(
    notification: NotificationQueue,
    settings: Optional[NotificationSetting],
) -> List[str]:
    """
    Ordered channel list for one notification.

    - in_app unless the user disabled it
    - email for medium/high/critical with email enabled and an address
    - sms only for critical with sms enabled and a phone number
    - webhook when enabled with a URL
    - never empty: falls back to in_app
    """
    if settings is None:
        return [NotificationChannel.IN_APP.value]

    channels: List[str] = []
    priority = NotificationPriority(notification.priority)

    if settings.enable_in_app is not False:
        channels.append(NotificationChannel.IN_APP.value)

    if settings.enable_email and settings.email_address and priority in EMAIL_PRIORITIES:
        channels.append(NotificationChannel.EMAIL.value)

    if settings.enable_sms and settings.phone_number and priority == NotificationPriority.CRITICAL:
        channels.append(NotificationChannel.SMS.value)

    if settings.enable_webhook and settings.webhook_url:
        channels.append(NotificationChannel.WEBHOOK.value)

    return channels or [NotificationChannel.IN_APP.value]


def is_retry_eligible(notification: NotificationQueue, now: Optional[datetime] = None) -> bool:
    """A failed notification may be retried attempts^2 hours after its last attempt."""
    if notification.last_attempt_at is None:
        return True
    now = now or utcnow()
    return now - notification.last_attempt_at >= timedelta(hours=notification.attempts ** 2)


def _enum_value(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class NotificationService:
    """Delivery engine bound to one database session."""

    def __init__(
        self,
        db: AsyncSession,
        channels: Mapping[str, DeliveryChannel],
        settings: Settings,
    ):
        self.db = db
        self.channels = channels
        self.settings = settings
        self.templates = TemplateRegistry(db, settings.notification_default_language)
        self.audit = AuditService(db)

    # ===========================================
    # SENDING
    # ===========================================

    async def send_notification(self, data: CreateNotification) -> DeliveryResult:
        """
        Persist a notification and attempt immediate delivery.

        The row is committed as pending before any channel is tried, so a
        crash mid-delivery leaves it for the queue processor.
        """
        try:
            entry = NotificationQueue(
                user_id=data.user_id,
                alert_type=_enum_value(data.alert_type),
                alert_category=_enum_value(data.alert_category),
                priority=NotificationPriority(data.priority),
                channels=list(data.channels),
                title=data.title,
                message=data.message,
                status=NotificationStatus.PENDING,
                attempts=0,
                entity_type=data.entity_type,
                entity_id=str(data.entity_id) if data.entity_id is not None else None,
                action_url=data.action_url,
                template_data=dict(data.template_data),
            )
            self.db.add(entry)
            await self.db.commit()
            logger.info(f"Notification queued for user {data.user_id}: {data.title}")

            return await self._deliver(entry)
        except Exception as e:
            logger.error(f"Failed to send notification to user {data.user_id}: {e}", exc_info=True)
            await self.db.rollback()
            return DeliveryResult(success=False, channel="error", error=str(e))

    async def deliver_queued(self, notification_id: uuid.UUID) -> DeliveryResult:
        """Re-run delivery for an existing queue row."""
        try:
            entry = await self.db.get(NotificationQueue, notification_id)
            if entry is None:
                return DeliveryResult(success=False, channel="error", error="Notification not found")
            return await self._deliver(entry)
        except Exception as e:
            logger.error(f"Failed to deliver queued notification {notification_id}: {e}", exc_info=True)
            await self.db.rollback()
            return DeliveryResult(success=False, channel="error", error=str(e))

    async def _deliver(self, entry: NotificationQueue) -> DeliveryResult:
        """Walk the channel chain; the first success wins."""
        user_settings = await self.get_user_settings(entry.user_id)
        user = await self.db.get(User, entry.user_id)
        channels = determine_delivery_channels(entry, user_settings)

        request = DeliveryRequest(
            notification=entry,
            settings=user_settings,
            templates=self.templates,
            user_name=user.full_name if user else "",
        )

        # One attempt per delivery invocation, however many channels it walks
        entry.attempts = (entry.attempts or 0) + 1
        result: Optional[DeliveryResult] = None

        for channel_name in channels:
            channel = self.channels.get(channel_name)
            if channel is None:
                result = DeliveryResult(
                    success=False,
                    channel=channel_name,
                    error=f"Unsupported delivery channel: {channel_name}",
                )
            else:
                try:
                    result = await channel.deliver(request)
                except Exception as e:
                    # A broken channel counts as a failed attempt; the chain moves on
                    logger.error(f"Channel {channel_name} raised for notification {entry.id}: {e}", exc_info=True)
                    result = DeliveryResult(success=False, channel=channel_name, error=str(e))

            entry.record_attempt(result.success, result.channel, result.error)
            await self.db.flush()

            if result.success:
                break
            logger.warning(
                f"Notification {entry.id} failed on {channel_name}: {result.error}"
            )

        await self.audit.log_operation(
            AuditContext.system("notification_engine"),
            entity_type="notification",
            entity_id=entry.id,
            action="delivered" if result.success else "delivery_failed",
            operation_type="notification_delivery",
            description=(
                f"{entry.alert_type}/{entry.alert_category} via {result.channel}"
                + ("" if result.success else f": {result.error}")
            ),
            severity=AuditSeverity.INFO if result.success else AuditSeverity.WARNING,
            new_values=result.to_dict(),
        )
        await self.db.commit()
        return result

    async def send_bulk_notifications(self, notifications: Sequence[CreateNotification]) -> BulkDeliveryResult:
        """Sequential sends; one failure never aborts the batch."""
        summary = BulkDeliveryResult()
        for data in notifications:
            result = await self.send_notification(data)
            summary.results.append(result)
            if result.success:
                summary.sent += 1
            else:
                summary.failed += 1
        logger.info(f"Bulk notifications: {summary.sent} sent, {summary.failed} failed")
        return summary

    async def create_business_alert(
        self,
        user_id: uuid.UUID,
        alert_type: str,
        alert_category: str,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        action_url: Optional[str] = None,
        template_data: Optional[Dict[str, Any]] = None,
    ) -> DeliveryResult:
        """Business alert declared for in-app and email; actual channels come from settings."""
        return await self.send_notification(CreateNotification(
            user_id=user_id,
            alert_type=alert_type,
            alert_category=alert_category,
            title=title,
            message=message,
            priority=priority,
            channels=[NotificationChannel.IN_APP.value, NotificationChannel.EMAIL.value],
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            action_url=action_url,
            template_data=template_data or {},
        ))

    async def notify_roles(
        self,
        roles: Iterable[UserRole],
        alert_type: str,
        alert_category: str,
        title: str,
        message: str,
        **kwargs: Any,
    ) -> BulkDeliveryResult:
        """Business alert for every active user holding one of the roles."""
        user_ids = [user.id for user in await self.get_users_by_roles(roles)]
        summary = BulkDeliveryResult()
        for user_id in user_ids:
            result = await self.create_business_alert(
                user_id, alert_type, alert_category, title, message, **kwargs
            )
            summary.results.append(result)
            if result.success:
                summary.sent += 1
            else:
                summary.failed += 1
        return summary

    async def get_users_by_roles(self, roles: Iterable[UserRole]) -> List[User]:
        result = await self.db.execute(
            select(User)
            .where(and_(User.role.in_(list(roles)), User.is_active.is_(True)))
            .order_by(User.email)
        )
        return list(result.scalars().all())

    # ===========================================
    # QUEUE PROCESSING
    # ===========================================

    async def process_notification_queue(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Deliver up to batch_size pending or retry-eligible failed notifications.

        Already sent rows are never picked up. Failed rows respect the
        attempts^2 backoff and the max-attempts cap.
        """
        batch_size = batch_size or self.settings.notification_queue_batch_size
        now = now or utcnow()

        pending = await self.db.execute(
            select(NotificationQueue.id)
            .where(and_(
                NotificationQueue.status == NotificationStatus.PENDING,
                NotificationQueue.is_archived.is_(False),
            ))
            .order_by(NotificationQueue.created_at)
            .limit(batch_size)
        )
        ids = list(pending.scalars().all())

        remaining = batch_size - len(ids)
        if remaining > 0:
            ids.extend(n.id for n in await self._eligible_failed(remaining, now))

        stats = {"processed": 0, "sent": 0, "failed": 0}
        for notification_id in ids:
            result = await self.deliver_queued(notification_id)
            stats["processed"] += 1
            stats["sent" if result.success else "failed"] += 1

        if stats["processed"]:
            logger.info(f"Queue processing: {stats}")
        return stats

    async def retry_failed_notifications(
        self,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Retry failed notifications whose backoff has elapsed."""
        limit = limit or self.settings.notification_retry_batch_size
        now = now or utcnow()

        stats = {"retried": 0, "sent": 0, "failed": 0}
        for entry in await self._eligible_failed(limit, now):
            result = await self.deliver_queued(entry.id)
            stats["retried"] += 1
            stats["sent" if result.success else "failed"] += 1

        if stats["retried"]:
            logger.info(f"Failed notification retry: {stats}")
        return stats

    async def _eligible_failed(self, limit: int, now: datetime) -> List[NotificationQueue]:
        result = await self.db.execute(
            select(NotificationQueue)
            .where(and_(
                NotificationQueue.status == NotificationStatus.FAILED,
                NotificationQueue.is_archived.is_(False),
                NotificationQueue.attempts < self.settings.notification_max_attempts,
            ))
            .order_by(NotificationQueue.last_attempt_at)
        )
        eligible = [n for n in result.scalars().all() if is_retry_eligible(n, now)]
        return eligible[:limit]

    # ===========================================
    # DIGESTS
    # ===========================================

    async def send_digest_notifications(self, frequency: NotificationFrequency) -> Dict[str, int]:
        """Summary notification for every user whose default frequency matches."""
        frequency = NotificationFrequency(frequency)
        label = DIGEST_LABELS.get(frequency)
        if label is None:
            raise ValueError(f"No digest for frequency {frequency.value}")

        result = await self.db.execute(
            select(NotificationSetting.user_id).where(
                NotificationSetting.default_frequency == frequency
            )
        )
        user_ids = list(result.scalars().all())

        stats = {"users": len(user_ids), "sent": 0, "skipped": 0, "failed": 0}
        for user_id in user_ids:
            unread = await self.get_unread_count(user_id)
            if unread == 0:
                stats["skipped"] += 1
                continue
            critical = await self.get_unread_count(user_id, priority=NotificationPriority.CRITICAL)

            delivery = await self.send_notification(CreateNotification(
                user_id=user_id,
                alert_type=AlertType.DIGEST.value,
                alert_category=AlertCategory.DIGEST_SUMMARY.value,
                title=f"Your {label}",
                message=f"You have {unread} unread notifications ({critical} critical).",
                priority=NotificationPriority.MEDIUM,
                channels=[NotificationChannel.IN_APP.value, NotificationChannel.EMAIL.value],
                action_url=f"{self.settings.base_url}/notifications",
                template_data={
                    "frequencyLabel": label,
                    "unreadCount": unread,
                    "criticalCount": critical,
                },
            ))
            stats["sent" if delivery.success else "failed"] += 1

        logger.info(f"{label} digests: {stats}")
        return stats

    # ===========================================
    # RETENTION
    # ===========================================

    async def cleanup_old_notifications(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Archive delivered or failed notifications older than the retention window."""
        days = days or self.settings.notification_retention_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        result = await self.db.execute(
            update(NotificationQueue)
            .where(and_(
                NotificationQueue.created_at < cutoff,
                NotificationQueue.status != NotificationStatus.PENDING,
                NotificationQueue.is_archived.is_(False),
            ))
            .values(is_archived=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        archived = result.rowcount or 0
        logger.info(f"Archived {archived} notifications older than {days} days")
        return archived

    async def archive_notification_history(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Purge archived notifications older than the history window."""
        days = days or self.settings.notification_history_retention_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        result = await self.db.execute(
            delete(NotificationQueue)
            .where(and_(
                NotificationQueue.is_archived.is_(True),
                NotificationQueue.created_at < cutoff,
            ))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        purged = result.rowcount or 0
        logger.info(f"Purged {purged} archived notifications older than {days} days")
        return purged

    # ===========================================
    # ANALYTICS
    # ===========================================

    async def get_critical_alert_count(self, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(NotificationQueue.id)).where(and_(
                NotificationQueue.priority == NotificationPriority.CRITICAL,
                NotificationQueue.created_at >= since,
            ))
        )
        return result.scalar_one()

    async def get_delivery_stats(self, since: datetime) -> Dict[str, Any]:
        """Success rate, average delivery latency and engagement since a point in time."""
        result = await self.db.execute(
            select(NotificationQueue).where(NotificationQueue.created_at >= since)
        )
        rows = list(result.scalars().all())

        delivered = [n for n in rows if n.delivered_at is not None]
        failed = [n for n in rows if n.status == NotificationStatus.FAILED]
        pending = [n for n in rows if n.status == NotificationStatus.PENDING]
        engaged = [n for n in delivered if n.read_at is not None]
        attempted = len(delivered) + len(failed)

        latencies = [(n.delivered_at - n.created_at).total_seconds() for n in delivered]
        by_channel: Dict[str, int] = {}
        for n in delivered:
            by_channel[n.delivered_channel or "unknown"] = by_channel.get(n.delivered_channel or "unknown", 0) + 1

        return {
            "since": since.isoformat(),
            "total": len(rows),
            "delivered": len(delivered),
            "failed": len(failed),
            "pending": len(pending),
            "success_rate": round(len(delivered) / attempted * 100, 2) if attempted else 0.0,
            "average_delivery_seconds": round(sum(latencies) / len(latencies), 3) if latencies else 0.0,
            "engagement_rate": round(len(engaged) / len(delivered) * 100, 2) if delivered else 0.0,
            "by_channel": by_channel,
        }

    # ===========================================
    # USER-FACING OPERATIONS
    # ===========================================

    async def get_user_settings(self, user_id: uuid.UUID) -> Optional[NotificationSetting]:
        result = await self.db.execute(
            select(NotificationSetting).where(NotificationSetting.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def update_user_settings(self, user_id: uuid.UUID, **fields: Any) -> NotificationSetting:
        """Create or update a user's delivery preferences."""
        setting = await self.get_user_settings(user_id)
        if setting is None:
            setting = NotificationSetting(user_id=user_id)
            self.db.add(setting)
        for key, value in fields.items():
            setattr(setting, key, value)
        await self.db.commit()
        return setting

    async def get_user_notifications(
        self,
        user_id: uuid.UUID,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[NotificationQueue]:
        query = (
            select(NotificationQueue)
            .where(and_(
                NotificationQueue.user_id == user_id,
                NotificationQueue.is_archived.is_(False),
            ))
            .order_by(NotificationQueue.created_at.desc())
        )
        if status is not None:
            query = query.where(NotificationQueue.status == status)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def get_unread_count(
        self,
        user_id: uuid.UUID,
        priority: Optional[NotificationPriority] = None,
    ) -> int:
        conditions = [
            NotificationQueue.user_id == user_id,
            NotificationQueue.status.in_(UNREAD_STATUSES),
            NotificationQueue.is_archived.is_(False),
        ]
        if priority is not None:
            conditions.append(NotificationQueue.priority == priority)
        result = await self.db.execute(
            select(func.count(NotificationQueue.id)).where(and_(*conditions))
        )
        return result.scalar_one()

    async def _get_owned(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> NotificationQueue:
        entry = await self.db.get(NotificationQueue, notification_id)
        if entry is None or entry.user_id != user_id:
            raise NotFoundException("Notification", notification_id)
        return entry

    async def mark_as_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> NotificationQueue:
        entry = await self._get_owned(notification_id, user_id)
        entry.mark_as_read()
        await self.db.commit()
        return entry

    async def dismiss(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> NotificationQueue:
        entry = await self._get_owned(notification_id, user_id)
        entry.dismiss()
        await self.db.commit()
        return entry
