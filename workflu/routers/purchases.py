"""
WorkFlu - Purchases Router

Coffee purchases and purchase returns. Both pass the accounting period guard
and the approval gate; below-threshold requests execute immediately, others
are answered with 202 and an approval request.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services
from workflu.middleware import (
    ApprovalClearance,
    purchase_period_guard,
    require_approval,
    strict_period_guard,
)
from workflu.models.approval import ApprovalOperationType
from workflu.models.user import User
from workflu.schemas.operations import OperationResult


router = APIRouter(prefix="/purchases", tags=["Purchases"])


@router.post(
    "",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(purchase_period_guard)],
    summary="Record a purchase",
    description="Executes immediately below the purchase approval threshold; otherwise returns 202 "
                "with the approval request.",
)
async def create_purchase(
    clearance: ApprovalClearance = Depends(require_approval(ApprovalOperationType.PURCHASE)),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.approval_service(db).execute_immediately(clearance.context, current_user)


@router.post(
    "/{purchase_id}/return",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(strict_period_guard)],
    summary="Return a purchase",
    description="Marks the purchase returned and books the refund as a CapitalIn entry.",
)
async def return_purchase(
    clearance: ApprovalClearance = Depends(require_approval(ApprovalOperationType.PURCHASE_RETURN)),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.approval_service(db).execute_immediately(clearance.context, current_user)
