"""
WorkFlu - Pending Approval Model

A pending approval captures the full payload of a gated operation so it can
be replayed once a human approves it.

Lifecycle:
- pending -> approved | rejected | cancelled (terminal)
- pending -> escalated (overdue, still decidable)
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Index, Numeric, String, Text, Uuid, Enum as SQLEnum, text
from sqlalchemy.orm import Mapped, mapped_column

from workflu.models.base import BaseModel, JSONType


class ApprovalOperationType(str, Enum):
    """Operations routed through the approval gate."""
    PURCHASE = "purchase"
    CAPITAL_ENTRY = "capital_entry"
    SUPPLIER_ADVANCE = "supplier_advance"
    PURCHASE_RETURN = "purchase_return"
    SYSTEM_SETTING_CHANGE = "system_setting_change"


class ApprovalStatus(str, Enum):
    """Approval request status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"


class ApprovalPriority(str, Enum):
    """Approval urgency."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


OPEN_APPROVAL_STATUSES = (ApprovalStatus.PENDING, ApprovalStatus.ESCALATED)

# Enum columns store member names
_OPEN_STATUS_CLAUSE = text(
    "status IN (" + ", ".join(f"'{s.name}'" for s in OPEN_APPROVAL_STATUSES) + ")"
)


class PendingApproval(BaseModel):
    """Deferred operation awaiting an approval decision."""

    __tablename__ = "pending_approvals"
    __table_args__ = (
        # At most one open request per payload fingerprint
        Index(
            "uq_pending_approvals_open_fingerprint",
            "payload_fingerprint",
            unique=True,
            postgresql_where=_OPEN_STATUS_CLAUSE,
            sqlite_where=_OPEN_STATUS_CLAUSE,
        ),
    )

    request_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    operation_type: Mapped[ApprovalOperationType] = mapped_column(
        SQLEnum(ApprovalOperationType, native_enum=False, length=30),
        nullable=False,
        index=True,
    )
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    request_payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)

    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    business_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[ApprovalPriority] = mapped_column(
        SQLEnum(ApprovalPriority, native_enum=False, length=10),
        default=ApprovalPriority.NORMAL,
        nullable=False,
    )

    status: Mapped[ApprovalStatus] = mapped_column(
        SQLEnum(ApprovalStatus, native_enum=False, length=20),
        default=ApprovalStatus.PENDING,
        nullable=False,
        index=True,
    )

    # sha256(operation type, requester, canonical payload, created_at);
    # bound to every entity the replay creates
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # sha256(operation type, requester, canonical payload); detects duplicates
    payload_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    decision_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Central exchange rate captured when the approval decision is made
    frozen_exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)

    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    execution_result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    execution_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPROVAL_STATUSES

    @property
    def is_executed(self) -> bool:
        return self.executed_at is not None

    def __repr__(self) -> str:
        return (
            f"<PendingApproval(number={self.request_number}, "
            f"type={self.operation_type}, status={self.status})>"
        )
