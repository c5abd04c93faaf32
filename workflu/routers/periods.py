"""
WorkFlu - Accounting Periods Router

Period lifecycle: open, close, lock.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services, require_role
from workflu.models.accounting import PeriodStatus
from workflu.models.audit import AuditSeverity
from workflu.models.user import User, UserRole
from workflu.schemas.periods import PeriodCreate, PeriodResponse
from workflu.services.audit_service import AuditContext


router = APIRouter(prefix="/periods", tags=["Accounting Periods"])

require_finance = require_role([UserRole.ADMIN, UserRole.FINANCE])


@router.get(
    "",
    response_model=List[PeriodResponse],
    summary="List accounting periods",
)
async def list_periods(
    period_status: Optional[PeriodStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.period_service(db).list_periods(period_status)


@router.post(
    "",
    response_model=PeriodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open an accounting period",
    description="Periods may not overlap an existing period.",
)
async def create_period(
    request: PeriodCreate,
    current_user: User = Depends(require_finance),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    period = await services.period_service(db).create_period(
        request.period_number, request.start_date, request.end_date
    )
    await services.audit_service(db).log_operation(
        AuditContext.for_user(current_user),
        entity_type="accounting_period",
        entity_id=period.id,
        action="create",
        description=f"Opened period {period.period_number}",
        new_values={"start_date": period.start_date, "end_date": period.end_date},
    )
    await db.commit()
    return period


@router.post(
    "/{period_id}/close",
    response_model=PeriodResponse,
    summary="Close an accounting period",
)
async def close_period(
    period_id: uuid.UUID,
    current_user: User = Depends(require_finance),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    period = await services.period_service(db).close_period(period_id, current_user.id)
    await services.audit_service(db).log_operation(
        AuditContext.for_user(current_user),
        entity_type="accounting_period",
        entity_id=period.id,
        action="close",
        description=f"Closed period {period.period_number}",
        severity=AuditSeverity.WARNING,
        new_values={"status": period.status.value},
    )
    await db.commit()
    return period


@router.post(
    "/{period_id}/lock",
    response_model=PeriodResponse,
    summary="Lock a closed accounting period",
)
async def lock_period(
    period_id: uuid.UUID,
    current_user: User = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    period = await services.period_service(db).lock_period(period_id)
    await services.audit_service(db).log_operation(
        AuditContext.for_user(current_user),
        entity_type="accounting_period",
        entity_id=period.id,
        action="lock",
        description=f"Locked period {period.period_number}",
        severity=AuditSeverity.WARNING,
        new_values={"status": period.status.value},
    )
    await db.commit()
    return period
