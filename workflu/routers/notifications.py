"""
WorkFlu - Notifications Router

API endpoints for the notification inbox and its administration.

Features:
- List notifications with filtering
- Unread count
- Mark as read / dismiss
- Delivery preferences
- Delivery statistics (admin)
- Scheduler status, toggle and manual run (admin)
- Template management (admin)
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services, require_admin
from workflu.models.base import utcnow
from workflu.models.notification import NotificationPriority, NotificationStatus
from workflu.models.user import User
from workflu.schemas.notifications import (
    JobRunResponse,
    JobToggleRequest,
    NotificationListResponse,
    NotificationResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    TemplateResponse,
    TemplateUpdate,
    UnreadCountResponse,
)
from workflu.services.audit_service import AuditContext


router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ===========================================
# INBOX
# ===========================================

@router.get(
    "",
    response_model=NotificationListResponse,
    summary="Get user notifications",
    description="Get notifications for the current user. Archived notifications are excluded.",
)
async def get_notifications(
    notification_status: Optional[NotificationStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    notifications = services.notification_service(db)
    entries = await notifications.get_user_notifications(
        current_user.id, status=notification_status, limit=limit, offset=offset
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in entries],
        count=len(entries),
        unread_count=await notifications.get_unread_count(current_user.id),
    )


@router.get(
    "/unread-count",
    response_model=UnreadCountResponse,
    summary="Get unread notification count",
)
async def get_unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    notifications = services.notification_service(db)
    return UnreadCountResponse(
        unread_count=await notifications.get_unread_count(current_user.id),
        critical_count=await notifications.get_unread_count(
            current_user.id, priority=NotificationPriority.CRITICAL
        ),
    )


@router.post(
    "/{notification_id}/read",
    response_model=NotificationResponse,
    summary="Mark notification as read",
)
async def mark_as_read(
    notification_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.notification_service(db).mark_as_read(notification_id, current_user.id)


@router.post(
    "/{notification_id}/dismiss",
    response_model=NotificationResponse,
    summary="Dismiss notification",
)
async def dismiss_notification(
    notification_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.notification_service(db).dismiss(notification_id, current_user.id)


# ===========================================
# PREFERENCES
# ===========================================

@router.get(
    "/settings",
    response_model=NotificationSettingsResponse,
    summary="Get notification preferences",
)
async def get_settings(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    setting = await services.notification_service(db).get_user_settings(current_user.id)
    if setting is None:
        return NotificationSettingsResponse(email_address=current_user.email)
    return setting


@router.put(
    "/settings",
    response_model=NotificationSettingsResponse,
    summary="Update notification preferences",
)
async def update_settings(
    request: NotificationSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.notification_service(db).update_user_settings(
        current_user.id, **request.model_dump(exclude_unset=True)
    )


# ===========================================
# ADMINISTRATION
# ===========================================

@router.get(
    "/stats",
    summary="Delivery statistics",
    description="Delivery success, latency and engagement for the last N hours plus monitoring counters.",
)
async def get_stats(
    hours: int = Query(24, ge=1, le=24 * 31),
    current_user: User = Depends(require_admin()),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    delivery = await services.notification_service(db).get_delivery_stats(utcnow() - timedelta(hours=hours))
    monitoring = await services.alert_monitoring_service(db).get_monitoring_dashboard()
    return {"delivery": delivery, "monitoring": monitoring}


@router.get(
    "/scheduler",
    summary="Scheduler status",
)
async def get_scheduler_status(
    current_user: User = Depends(require_admin()),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return services.scheduler.get_scheduler_stats()


@router.post(
    "/scheduler/{job_name}/toggle",
    summary="Enable or disable a scheduled job",
)
async def toggle_job(
    job_name: str,
    request: JobToggleRequest,
    current_user: User = Depends(require_admin()),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    job = services.scheduler.toggle_task(job_name, request.enabled)
    await services.audit_service(db).log_operation(
        AuditContext.for_user(current_user),
        entity_type="scheduled_job",
        entity_id=job_name,
        action="enable" if request.enabled else "disable",
        description=f"Scheduled job {job_name} {'enabled' if request.enabled else 'disabled'}",
    )
    await db.commit()
    return job.to_dict()


@router.post(
    "/scheduler/{job_name}/run",
    response_model=JobRunResponse,
    summary="Run a scheduled job now",
    description="Runs even when the job is disabled; skipped if it is already running.",
)
async def run_job(
    job_name: str,
    current_user: User = Depends(require_admin()),
    services: ServiceContainer = Depends(get_services),
):
    return await services.scheduler.run_job(job_name)


@router.get(
    "/templates",
    response_model=List[TemplateResponse],
    summary="List notification templates",
)
async def list_templates(
    current_user: User = Depends(require_admin()),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    return await services.template_registry(db).list_templates()


@router.put(
    "/templates/{template_id}",
    response_model=TemplateResponse,
    summary="Edit a notification template",
)
async def update_template(
    template_id: uuid.UUID,
    request: TemplateUpdate,
    current_user: User = Depends(require_admin()),
    db: AsyncSession = Depends(get_async_session),
    services: ServiceContainer = Depends(get_services),
):
    changes = request.model_dump(exclude_unset=True)
    template = await services.template_registry(db).update_template(template_id, **changes)
    await services.audit_service(db).log_operation(
        AuditContext.for_user(current_user),
        entity_type="notification_template",
        entity_id=template.id,
        action="update",
        description=f"Edited template {template.name}",
        new_values=changes,
    )
    await db.commit()
    return template
