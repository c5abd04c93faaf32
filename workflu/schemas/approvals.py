"""
WorkFlu - Approval Workflow Schemas
"""

import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field

from workflu.models.approval import ApprovalOperationType, ApprovalPriority, ApprovalStatus
from workflu.schemas.base import CamelModel


class ApprovalDecisionRequest(CamelModel):
    """Approve, reject or cancel an open approval request."""
    decision: str = Field(..., pattern="^(approve|reject|cancel)$")
    comments: Optional[str] = Field(None, max_length=2000)


class ApprovalResponse(CamelModel):
    """Schema for approval request response."""
    id: UUID
    request_number: str
    operation_type: ApprovalOperationType
    requested_by: UUID
    request_payload: Dict[str, Any]
    amount: Optional[Decimal] = None
    currency: str
    business_context: Optional[str] = None
    priority: ApprovalPriority
    status: ApprovalStatus
    decided_by: Optional[UUID] = None
    decided_at: Optional[datetime.datetime] = None
    decision_comments: Optional[str] = None
    escalated_at: Optional[datetime.datetime] = None
    frozen_exchange_rate: Optional[Decimal] = None
    executed_at: Optional[datetime.datetime] = None
    execution_result: Optional[Dict[str, Any]] = None
    execution_error: Optional[str] = None
    created_at: datetime.datetime


class ApprovalListResponse(CamelModel):
    approvals: List[ApprovalResponse]
    count: int
