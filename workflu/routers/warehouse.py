"""
WorkFlu - Warehouse Router

Warehouse steps against a purchase. The period is resolved through the
purchase's date, not through the request body.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services
from workflu.middleware import warehouse_period_guard
from workflu.models.user import User
from workflu.schemas.operations import WarehouseOperationCreate
from workflu.services.audit_service import AuditContext
from workflu.services.operations import record_warehouse_operation, serialize_purchase


router = APIRouter(prefix="/warehouse", tags=["Warehouse"])


@router.post(
    "/operations",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(warehouse_period_guard)],
    summary="Record a warehouse operation",
)
async def create_warehouse_operation(
    request: WarehouseOperationCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    purchase = await record_warehouse_operation(db, request, actor_id=current_user.id)
    data = serialize_purchase(purchase)
    await services.audit_service(db).log_operation(
        AuditContext.for_user(current_user),
        entity_type="purchase",
        entity_id=purchase.id,
        action=f"warehouse_{request.operation}",
        operation_type="warehouse_operation",
        description=f"Warehouse {request.operation} on purchase {purchase.purchase_number}",
        new_values={"weightKg": request.weight_kg, "notes": request.notes, "status": data["status"]},
    )
    await db.commit()
    return {"operation": request.operation, "purchase": data}
