"""
WorkFlu - Capital Router

Capital movements (CapitalIn / CapitalOut) and supplier advances.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services
from workflu.middleware import ApprovalClearance, capital_entry_period_guard, require_approval
from workflu.models.approval import ApprovalOperationType
from workflu.models.user import User
from workflu.schemas.operations import OperationResult


router = APIRouter(prefix="/capital", tags=["Capital"])


@router.post(
    "/entries",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(capital_entry_period_guard)],
    summary="Record a capital entry",
)
async def create_capital_entry(
    clearance: ApprovalClearance = Depends(require_approval(ApprovalOperationType.CAPITAL_ENTRY)),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.approval_service(db).execute_immediately(clearance.context, current_user)


@router.post(
    "/advances",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(capital_entry_period_guard)],
    summary="Record a supplier advance",
    description="Booked as CapitalOut with a due date after the configured supplier terms.",
)
async def create_supplier_advance(
    clearance: ApprovalClearance = Depends(require_approval(ApprovalOperationType.SUPPLIER_ADVANCE)),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.approval_service(db).execute_immediately(clearance.context, current_user)
