"""
WorkFlu - Approval Workflow Service

Decides whether a gated operation needs human approval, records pending
approvals, applies decisions and replays approved operations through the
operation registry.

Security properties:
- No configured threshold means approval is required (fail closed)
- The exchange rate is read from central configuration at decision time and
  frozen on the approval; the replay uses that rate
- A replay reuses the approval's idempotency key, so it can be retried
  without creating a second entity
- A replay passes the period check again; a period closed while the
  request waited blocks it
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.config import Settings
from workflu.models.approval import (
    ApprovalOperationType,
    ApprovalPriority,
    ApprovalStatus,
    OPEN_APPROVAL_STATUSES,
    PendingApproval,
)
from workflu.models.audit import AuditSeverity
from workflu.models.base import utcnow
from workflu.models.business import CapitalEntryType, Purchase
from workflu.models.notification import AlertCategory, AlertType, NotificationPriority
from workflu.models.user import User, UserRole
from workflu.schemas.operations import OperationResult
from workflu.services.audit_service import AuditContext, AuditService
from workflu.services.configuration_service import EXCHANGE_RATE_KEY, ConfigurationService
from workflu.services.notification_service import NotificationService
from workflu.services.operations import (
    canonical_json,
    dump_payload,
    execute_operation,
    get_operation,
    immediate_idempotency_key,
)
from workflu.services.period_service import PeriodService, serialize_closed_period
from workflu.utils.error_handling import (
    AppException,
    ApprovalAlreadyDecidedException,
    AuthorizationException,
    ConflictException,
    ErrorCode,
    NotFoundException,
    PeriodClosedException,
    ValidationException,
)

logger = logging.getLogger(__name__)


DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"
DECISION_CANCEL = "cancel"

DECISION_STATUS = {
    DECISION_APPROVE: ApprovalStatus.APPROVED,
    DECISION_REJECT: ApprovalStatus.REJECTED,
    DECISION_CANCEL: ApprovalStatus.CANCELLED,
}

APPROVER_ROLES = (UserRole.ADMIN, UserRole.FINANCE)

# Expected turnaround per priority, in hours
APPROVAL_HOURS = {
    ApprovalPriority.URGENT: 2,
    ApprovalPriority.HIGH: 6,
    ApprovalPriority.NORMAL: 24,
    ApprovalPriority.LOW: 48,
}


@dataclass
class OperationContext:
    """What the approval gate knows about an intercepted operation."""
    operation_type: ApprovalOperationType
    payload: BaseModel
    payload_data: Dict[str, Any]
    amount: Optional[Decimal]
    currency: str = "USD"
    business_context: Optional[str] = None
    priority: ApprovalPriority = ApprovalPriority.NORMAL


# ===========================================
# PURE HELPERS
# ===========================================

def payload_fingerprint(operation_type: str, requested_by: uuid.UUID, payload: Dict[str, Any]) -> str:
    """Identity of a submission; duplicate open approvals share it."""
    raw = f"{operation_type}|{requested_by}|{canonical_json(payload)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def approval_idempotency_key(
    operation_type: str,
    requested_by: uuid.UUID,
    payload: Dict[str, Any],
    created_at: datetime,
) -> str:
    raw = f"{operation_type}|{requested_by}|{canonical_json(payload)}|{created_at.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def estimate_approval_time(priority: ApprovalPriority) -> str:
    """Human readable turnaround estimate."""
    hours = APPROVAL_HOURS.get(ApprovalPriority(priority), 24)
    if hours < 24:
        return f"{hours} hours"
    if hours < 168:
        days = -(-hours // 24)
        return f"{days} business day{'s' if days > 1 else ''}"
    weeks = -(-hours // 168)
    return f"{weeks} week{'s' if weeks > 1 else ''}"


def _amount_phrase(approval: PendingApproval) -> str:
    if approval.amount is None:
        return ""
    return f" for {approval.currency} {approval.amount}"


def build_approval_summary(approval: PendingApproval) -> Dict[str, Any]:
    """Body fields of the 202 response returned when an operation is deferred."""
    return {
        "approvalRequestId": str(approval.id),
        "approvalRequestNumber": approval.request_number,
        "operationType": approval.operation_type.value,
        "amount": float(approval.amount) if approval.amount is not None else None,
        "currency": approval.currency,
        "businessContext": approval.business_context,
        "status": approval.status.value,
        "priority": approval.priority.value,
        "submittedAt": approval.created_at.isoformat() if approval.created_at else None,
        "estimatedApprovalTime": estimate_approval_time(approval.priority),
    }


async def extract_operation_context(
    db: AsyncSession,
    operation_type: ApprovalOperationType,
    payload: BaseModel,
) -> OperationContext:
    """Amount, currency, context line and priority of a validated payload."""
    operation_type = ApprovalOperationType(operation_type)
    context = OperationContext(
        operation_type=operation_type,
        payload=payload,
        payload_data=dump_payload(payload),
        amount=None,
    )

    if operation_type == ApprovalOperationType.PURCHASE:
        amount = payload.total_amount
        context.amount = amount
        context.currency = payload.currency
        context.business_context = f"Purchase: {payload.weight_kg}kg at {payload.price_per_kg} per kg"
        if amount > 50000:
            context.priority = ApprovalPriority.HIGH
        elif amount > 20000:
            context.priority = ApprovalPriority.NORMAL
        else:
            context.priority = ApprovalPriority.LOW

    elif operation_type == ApprovalOperationType.CAPITAL_ENTRY:
        context.amount = payload.amount
        context.currency = payload.currency
        context.business_context = f"Capital {payload.type.value}: {payload.description or ''}".strip()
        if payload.type == CapitalEntryType.CAPITAL_OUT and payload.amount > 10000:
            context.priority = ApprovalPriority.HIGH

    elif operation_type == ApprovalOperationType.SUPPLIER_ADVANCE:
        context.amount = payload.amount
        context.currency = payload.currency
        context.business_context = f"Supplier advance to {payload.supplier_id}"
        if payload.amount > 10000:
            context.priority = ApprovalPriority.HIGH

    elif operation_type == ApprovalOperationType.PURCHASE_RETURN:
        purchase = await db.get(Purchase, payload.purchase_id)
        if payload.amount is not None:
            context.amount = payload.amount
        elif purchase is not None:
            context.amount = purchase.total
        if purchase is not None:
            context.currency = purchase.currency
            context.business_context = f"Return of purchase {purchase.purchase_number}"
        else:
            context.business_context = f"Return of purchase {payload.purchase_id}"

    elif operation_type == ApprovalOperationType.SYSTEM_SETTING_CHANGE:
        context.business_context = f"Change {payload.key} to {payload.value}"
        if payload.key == EXCHANGE_RATE_KEY or payload.key.startswith("APPROVAL_THRESHOLD_"):
            context.priority = ApprovalPriority.HIGH

    return context


class ApprovalWorkflowService:
    """Approval lifecycle bound to one database session."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        notifications: Optional[NotificationService] = None,
    ):
        self.db = db
        self.settings = settings
        self.notifications = notifications
        self.configuration = ConfigurationService(db, settings)
        self.audit = AuditService(db)

    # ===========================================
    # GATE
    # ===========================================

    async def requires_approval(self, context: OperationContext, allow_exemption: bool = True) -> bool:
        """
        True unless the amount is strictly below the operation's threshold.

        Thresholds are USD; other currencies are converted with the central
        rate. A missing threshold or amount requires approval.
        """
        if not allow_exemption:
            return True

        threshold = await self.configuration.get_approval_threshold(context.operation_type.value)
        if threshold is None or context.amount is None:
            return True

        amount = Decimal(context.amount)
        if context.currency != "USD":
            amount = amount / await self.configuration.get_central_exchange_rate()
        return amount >= threshold

    async def submit(self, context: OperationContext, requester: User) -> Tuple[PendingApproval, bool]:
        """
        Record a pending approval, or return the open one for the same payload.

        Returns:
            (approval, created)
        """
        fingerprint = payload_fingerprint(
            context.operation_type.value, requester.id, context.payload_data
        )
        existing = await self._find_open(fingerprint)
        if existing is not None:
            logger.info(f"Duplicate submission matched open approval {existing.request_number}")
            return existing, False

        created_at = utcnow()
        approval = PendingApproval(
            request_number=f"APR-{created_at:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6].upper()}",
            operation_type=context.operation_type,
            requested_by=requester.id,
            request_payload=context.payload_data,
            amount=context.amount,
            currency=context.currency,
            business_context=context.business_context,
            priority=context.priority,
            status=ApprovalStatus.PENDING,
            idempotency_key=approval_idempotency_key(
                context.operation_type.value, requester.id, context.payload_data, created_at
            ),
            payload_fingerprint=fingerprint,
            created_at=created_at,
            updated_at=created_at,
        )
        self.db.add(approval)
        try:
            await self.db.flush()
        except IntegrityError:
            # A concurrent identical submission inserted first
            await self.db.rollback()
            existing = await self._find_open(fingerprint)
            if existing is None:
                raise
            logger.info(f"Concurrent submission matched open approval {existing.request_number}")
            return existing, False

        await self.audit.log_operation(
            AuditContext.for_user(requester, "approval_gate"),
            entity_type="approval_request",
            entity_id=approval.id,
            action="create",
            operation_type=context.operation_type.value,
            description=f"Created approval request {approval.request_number} for {context.operation_type.value}",
            new_values={"amount": context.amount, "currency": context.currency, "priority": context.priority.value},
        )
        logger.info(f"Approval request {approval.request_number} created by {requester.email}")
        return approval, True

    async def _find_open(self, fingerprint: str) -> Optional[PendingApproval]:
        result = await self.db.execute(
            select(PendingApproval).where(and_(
                PendingApproval.payload_fingerprint == fingerprint,
                PendingApproval.status.in_(OPEN_APPROVAL_STATUSES),
            ))
        )
        return result.scalars().first()

    async def execute_immediately(self, context: OperationContext, actor: User) -> OperationResult:
        """Run an operation that was exempt from approval, stamped with the current central rate."""
        key = immediate_idempotency_key(context.operation_type.value, actor.id, context.payload_data)
        rate = await self.configuration.get_rate_for_currency(context.currency)
        result = await execute_operation(
            self.db,
            context.operation_type,
            context.payload,
            actor_id=actor.id,
            idempotency_key=key,
            exchange_rate=rate,
        )
        await self.audit.log_operation(
            AuditContext.for_user(actor),
            entity_type=result.entity_type,
            entity_id=result.entity_id,
            action="create",
            operation_type=context.operation_type.value,
            description=f"Created {result.entity_type} {result.entity_number}",
            new_values=result.data,
        )
        await self.db.commit()
        logger.info(f"{context.operation_type.value} {result.entity_number} executed by {actor.email}")
        return result

    async def notify_approvers(self, approval: PendingApproval, requester: User) -> None:
        """Tell admins and finance users a request is waiting. Best effort."""
        if self.notifications is None:
            return
        await self.notifications.notify_roles(
            APPROVER_ROLES,
            AlertType.WORKFLOW_ALERT.value,
            AlertCategory.APPROVAL_WORKFLOW.value,
            f"Approval required: {approval.request_number}",
            f"{requester.full_name} requested {approval.operation_type.value}{_amount_phrase(approval)}.",
            priority=(
                NotificationPriority.HIGH
                if approval.priority in (ApprovalPriority.HIGH, ApprovalPriority.URGENT)
                else NotificationPriority.MEDIUM
            ),
            entity_type="approval",
            entity_id=approval.id,
            action_url=f"{self.settings.base_url}/approvals/{approval.id}",
            template_data=self._template_data(approval, requester),
        )

    def _template_data(self, approval: PendingApproval, requester: Optional[User]) -> Dict[str, Any]:
        return {
            "operationType": approval.operation_type.value,
            "amount": str(approval.amount) if approval.amount is not None else "",
            "currency": approval.currency,
            "requesterName": requester.full_name if requester else str(approval.requested_by),
            "requestDate": approval.created_at.strftime("%Y-%m-%d %H:%M"),
            "priority": approval.priority.value,
            "description": approval.business_context or "",
        }

    # ===========================================
    # DECISIONS
    # ===========================================

    async def get_approval(self, approval_id: uuid.UUID) -> PendingApproval:
        approval = await self.db.get(PendingApproval, approval_id)
        if approval is None:
            raise NotFoundException("PendingApproval", approval_id)
        return approval

    async def list_approvals(
        self,
        status: Optional[ApprovalStatus] = None,
        operation_type: Optional[ApprovalOperationType] = None,
        requested_by: Optional[uuid.UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PendingApproval]:
        query = select(PendingApproval).order_by(PendingApproval.created_at.desc())
        if status is not None:
            query = query.where(PendingApproval.status == status)
        if operation_type is not None:
            query = query.where(PendingApproval.operation_type == operation_type)
        if requested_by is not None:
            query = query.where(PendingApproval.requested_by == requested_by)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def decide(
        self,
        approval_id: uuid.UUID,
        actor: User,
        decision: str,
        comments: Optional[str] = None,
    ) -> PendingApproval:
        """
        Approve, reject or cancel an open approval.

        Approval freezes the central exchange rate and replays the operation.
        Only admin and finance users approve or reject; only the requester or
        an admin may cancel.

        Raises:
            ApprovalAlreadyDecidedException: If the approval is no longer open
            AuthorizationException: If the actor may not make this decision
            ConfigurationException: If approving a non-USD operation without a rate
        """
        if decision not in DECISION_STATUS:
            raise ValidationException(f"Unknown decision: {decision}", field="decision")

        approval = await self.get_approval(approval_id)

        if decision == DECISION_CANCEL:
            if actor.id != approval.requested_by and not actor.is_admin:
                raise AuthorizationException("Only the requester or an admin can cancel an approval request")
        elif actor.role not in APPROVER_ROLES:
            raise AuthorizationException(
                "Only admin or finance users can decide approval requests",
                required_roles=[r.value for r in APPROVER_ROLES],
            )

        if not approval.is_open:
            raise ApprovalAlreadyDecidedException(approval.id, approval.status.value)

        old_status = approval.status.value
        if decision == DECISION_APPROVE:
            approval.frozen_exchange_rate = await self.configuration.get_rate_for_currency(approval.currency)

        approval.status = DECISION_STATUS[decision]
        approval.decided_by = actor.id
        approval.decided_at = utcnow()
        approval.decision_comments = comments

        await self.audit.log_operation(
            AuditContext.for_user(actor, "approval_workflow"),
            entity_type="approval_request",
            entity_id=approval.id,
            action=decision,
            operation_type=approval.operation_type.value,
            description=f"Approval request {approval.request_number} {approval.status.value}",
            old_values={"status": old_status},
            new_values={
                "status": approval.status.value,
                "frozen_exchange_rate": approval.frozen_exchange_rate,
                "comments": comments,
            },
        )
        await self.db.commit()
        logger.info(f"Approval {approval.request_number} {approval.status.value} by {actor.email}")

        if approval.status == ApprovalStatus.APPROVED:
            approval = await self.replay_approved(approval.id)

        await self._notify_requester(approval)
        return approval

    async def replay_approved(self, approval_id: uuid.UUID) -> PendingApproval:
        """
        Execute an approved operation with its stored payload, key and frozen rate.

        Already executed approvals are returned unchanged. A failed replay is
        recorded in execution_error and can be retried.
        """
        approval = await self.get_approval(approval_id)
        if approval.status != ApprovalStatus.APPROVED:
            raise ConflictException(
                f"Approval request {approval.request_number} is {approval.status.value}, not approved",
                code=ErrorCode.APPROVAL_ALREADY_DECIDED,
            )
        if approval.is_executed:
            return approval

        try:
            await self._check_replay_periods(approval)
            result = await execute_operation(
                self.db,
                approval.operation_type,
                approval.request_payload,
                actor_id=approval.requested_by,
                idempotency_key=approval.idempotency_key,
                exchange_rate=approval.frozen_exchange_rate,
                requested_at=approval.created_at,
            )
            approval.executed_at = utcnow()
            approval.execution_result = result.model_dump(mode="json", by_alias=True)
            approval.execution_error = None

            await self.audit.log_operation(
                AuditContext.system("approval_replay"),
                entity_type=result.entity_type,
                entity_id=result.entity_id,
                action="create",
                operation_type=approval.operation_type.value,
                description=f"Executed approved {approval.operation_type.value} {approval.request_number}",
                new_values=result.data,
            )
            await self.db.commit()
            logger.info(f"Approval {approval.request_number} executed: {result.entity_number}")
        except Exception as e:
            if isinstance(e, AppException):
                error = f"{e.code.value}: {e.message}"
                details = e.extra or e.details or None
                logger.warning(f"Replay of approval {approval.request_number} rejected: {error}")
            else:
                error = str(e)
                details = None
                logger.error(f"Replay of approval {approval.request_number} failed: {e}", exc_info=True)
            await self.db.rollback()
            await self.db.refresh(approval)
            approval.execution_error = error
            await self.audit.log_operation(
                AuditContext.system("approval_replay"),
                entity_type="approval_request",
                entity_id=approval.id,
                action="execution_failed",
                operation_type=approval.operation_type.value,
                description=f"Replay of {approval.request_number} failed: {error}",
                severity=AuditSeverity.ERROR,
                new_values=details,
            )
            await self.db.commit()

        return approval

    async def _check_replay_periods(self, approval: PendingApproval) -> None:
        """
        Re-run the route's period check against the stored payload.

        The period may have been closed while the request waited.

        Raises:
            PeriodClosedException: If the operation would write into a closed period
        """
        definition = get_operation(approval.operation_type)
        if not definition.period_fields and definition.purchase_field is None:
            return

        if definition.period_admin_bypass:
            requester = await self.db.get(User, approval.requested_by)
            if requester is not None and requester.is_admin:
                await self.audit.log_operation(
                    AuditContext.for_user(requester, "approval_replay"),
                    entity_type="accounting_period",
                    action="admin_bypass",
                    operation_type=approval.operation_type.value,
                    description=f"Admin request {approval.request_number} replayed without period check",
                    severity=AuditSeverity.WARNING,
                )
                return

        periods = PeriodService(self.db)
        payload = approval.request_payload
        period_ids = await periods.periods_for_dates(payload, definition.period_fields)
        if definition.purchase_field and payload.get(definition.purchase_field):
            period_ids.extend(await periods.period_for_purchase(payload[definition.purchase_field]))

        closed = await periods.check_periods_status(list(dict.fromkeys(period_ids)))
        if closed:
            raise PeriodClosedException([serialize_closed_period(p) for p in closed])

    async def _notify_requester(self, approval: PendingApproval) -> None:
        if self.notifications is None:
            return
        requester = await self.db.get(User, approval.requested_by)
        outcome = approval.status.value
        if approval.execution_error:
            outcome += f" (execution failed: {approval.execution_error})"
        await self.notifications.create_business_alert(
            approval.requested_by,
            AlertType.WORKFLOW_ALERT.value,
            AlertCategory.APPROVAL_WORKFLOW.value,
            f"Approval request {approval.request_number} {approval.status.value}",
            f"Your {approval.operation_type.value} request was {outcome}.",
            priority=NotificationPriority.MEDIUM,
            entity_type="approval",
            entity_id=approval.id,
            action_url=f"{self.settings.base_url}/approvals/{approval.id}",
            template_data=self._template_data(approval, requester),
        )

    # ===========================================
    # ESCALATION
    # ===========================================

    async def escalate_overdue(self, hours: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Mark pending approvals older than the window as escalated and alert admins."""
        hours = hours or self.settings.approval_escalation_hours
        now = now or utcnow()
        cutoff = now - timedelta(hours=hours)

        result = await self.db.execute(
            select(PendingApproval).where(and_(
                PendingApproval.status == ApprovalStatus.PENDING,
                PendingApproval.created_at < cutoff,
            ))
        )
        overdue = list(result.scalars().all())
        if not overdue:
            return 0

        for approval in overdue:
            approval.status = ApprovalStatus.ESCALATED
            approval.escalated_at = now
            await self.audit.log_operation(
                AuditContext.system("approval_escalation"),
                entity_type="approval_request",
                entity_id=approval.id,
                action="escalate",
                operation_type=approval.operation_type.value,
                description=f"Approval {approval.request_number} pending for more than {hours} hours",
                severity=AuditSeverity.WARNING,
                old_values={"status": ApprovalStatus.PENDING.value},
                new_values={"status": ApprovalStatus.ESCALATED.value},
            )
        await self.db.commit()
        logger.warning(f"Escalated {len(overdue)} overdue approval requests")

        if self.notifications is not None:
            alerts = []
            for approval in overdue:
                requester = await self.db.get(User, approval.requested_by)
                alerts.append(dict(
                    title=f"Escalated approval: {approval.request_number}",
                    message=(
                        f"{approval.operation_type.value}{_amount_phrase(approval)} "
                        f"has waited more than {hours} hours."
                    ),
                    entity_id=approval.id,
                    action_url=f"{self.settings.base_url}/approvals/{approval.id}",
                    template_data=self._template_data(approval, requester),
                ))
            for alert in alerts:
                await self.notifications.notify_roles(
                    (UserRole.ADMIN,),
                    AlertType.WORKFLOW_ALERT.value,
                    AlertCategory.APPROVAL_WORKFLOW.value,
                    priority=NotificationPriority.HIGH,
                    entity_type="approval",
                    **alert,
                )
        return len(overdue)
