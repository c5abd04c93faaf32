"""
WorkFlu - Approvals Router

Approval requests created by the approval gate.

Features:
- List and inspect approval requests
- Approve, reject or cancel (approval replays the stored operation)
- Retry a failed replay
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services, require_role
from workflu.models.approval import ApprovalOperationType, ApprovalStatus
from workflu.models.user import User, UserRole
from workflu.schemas.approvals import ApprovalDecisionRequest, ApprovalListResponse, ApprovalResponse
from workflu.services.approval_service import APPROVER_ROLES
from workflu.utils.error_handling import AuthorizationException


router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get(
    "",
    response_model=ApprovalListResponse,
    summary="List approval requests",
    description="Admin and finance users see every request; others see their own.",
)
async def list_approvals(
    approval_status: Optional[ApprovalStatus] = Query(None, alias="status"),
    operation_type: Optional[ApprovalOperationType] = Query(None, alias="operationType"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    requested_by = None if current_user.role in APPROVER_ROLES else current_user.id
    approvals = await services.approval_service(db).list_approvals(
        status=approval_status,
        operation_type=operation_type,
        requested_by=requested_by,
        limit=limit,
        offset=offset,
    )
    return ApprovalListResponse(
        approvals=[ApprovalResponse.model_validate(a) for a in approvals],
        count=len(approvals),
    )


@router.get(
    "/{approval_id}",
    response_model=ApprovalResponse,
    summary="Get an approval request",
)
async def get_approval(
    approval_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    approval = await services.approval_service(db).get_approval(approval_id)
    if current_user.role not in APPROVER_ROLES and approval.requested_by != current_user.id:
        raise AuthorizationException("You can only view your own approval requests")
    return approval


@router.post(
    "/{approval_id}/decision",
    response_model=ApprovalResponse,
    summary="Decide an approval request",
    description="approve and reject need admin or finance; cancel is open to the requester and admins.",
)
async def decide_approval(
    approval_id: uuid.UUID,
    request: ApprovalDecisionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    approval = await services.approval_service(db).decide(
        approval_id, current_user, request.decision, request.comments
    )
    await db.refresh(approval)
    return approval


@router.post(
    "/{approval_id}/replay",
    response_model=ApprovalResponse,
    summary="Retry execution of an approved request",
)
async def replay_approval(
    approval_id: uuid.UUID,
    current_user: User = Depends(require_role([UserRole.ADMIN, UserRole.FINANCE])),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.approval_service(db).replay_approved(approval_id)
