"""
WorkFlu - System Settings Router

Central business configuration (exchange rate, approval thresholds, supplier
terms). Admins change settings directly; finance users' changes always go
through an approval request.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_services, require_role
from workflu.middleware import ApprovalClearance, require_admin_approval
from workflu.models.approval import ApprovalOperationType
from workflu.models.user import User, UserRole
from workflu.schemas.operations import OperationResult
from workflu.schemas.settings import SystemSettingResponse


router = APIRouter(prefix="/settings", tags=["System Settings"])

require_finance = require_role([UserRole.ADMIN, UserRole.FINANCE])


@router.get(
    "",
    response_model=List[SystemSettingResponse],
    summary="List system settings",
)
async def list_settings(
    category: Optional[str] = Query(None),
    current_user: User = Depends(require_finance),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.configuration_service(db).list_system_settings(category)


@router.put(
    "/{key}",
    response_model=OperationResult,
    dependencies=[Depends(require_finance)],
    summary="Change a system setting",
    description="Applied immediately for admins; other users get 202 with the approval request.",
)
async def update_setting(
    key: str,
    clearance: ApprovalClearance = Depends(require_admin_approval(ApprovalOperationType.SYSTEM_SETTING_CHANGE)),
    current_user: User = Depends(require_finance),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.approval_service(db).execute_immediately(clearance.context, current_user)
