"""
WorkFlu - Approval Gate

Intercepts financial operations before they execute and decides whether they
need human approval.

Flow:
1. Validate the request body with the operation's payload schema (422 on error)
2. Extract amount, currency, business context and priority
3. Compare the USD amount with the configured threshold
4. Below threshold: return an ApprovalClearance and let the handler run
5. Otherwise: record (or reuse) a pending approval, notify approvers and
   answer 202 with the approval summary; the handler never runs

Any internal failure blocks the operation with APPROVAL_CHECK_FAILED.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

from fastapi import Depends, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.container import ServiceContainer
from workflu.database import get_async_session
from workflu.dependencies import get_current_user, get_services
from workflu.middleware.period_guard import read_json_body
from workflu.models.approval import ApprovalOperationType
from workflu.models.audit import AuditSeverity
from workflu.models.user import User
from workflu.services.approval_service import (
    OperationContext,
    build_approval_summary,
    extract_operation_context,
)
from workflu.services.audit_service import AuditContext
from workflu.services.operations import parse_payload
from workflu.utils.error_handling import (
    AppException,
    ApprovalCheckFailedException,
    ApprovalPendingException,
)

logger = logging.getLogger(__name__)


@dataclass
class ApprovalClearance:
    """Handed to the route handler when an operation may run immediately."""
    operation_type: ApprovalOperationType
    context: OperationContext

    @property
    def payload(self) -> BaseModel:
        return self.context.payload


async def read_operation_payload(request: Request, operation_type: ApprovalOperationType) -> BaseModel:
    """
    Validate the JSON body, with path parameters taking precedence over
    body fields of the same name, against the operation's schema.

    Raises:
        RequestValidationError: If the payload does not validate
    """
    body: Dict[str, Any] = await read_json_body(request)
    for name, value in request.path_params.items():
        body[to_camel(name)] = value
    try:
        return parse_payload(operation_type, body)
    except ValidationError as e:
        errors = [{**error, "loc": ("body", *error["loc"])} for error in e.errors(include_url=False)]
        raise RequestValidationError(errors, body=body) from e


def require_approval(
    operation_type: Union[str, ApprovalOperationType],
    allow_threshold_exemption: bool = True,
):
    """
    Dependency factory for the approval gate.

    Args:
        operation_type: Operation the route performs
        allow_threshold_exemption: When False every request needs approval

    Usage:
        @router.post("")
        async def create(clearance: ApprovalClearance = Depends(require_approval("purchase"))):
            ...
    """
    operation = ApprovalOperationType(operation_type)

    async def gate(
        request: Request,
        user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_async_session),
        services: ServiceContainer = Depends(get_services),
    ) -> ApprovalClearance:
        payload = await read_operation_payload(request, operation)
        approvals = services.approval_service(db)
        audit = services.audit_service(db)
        actor = AuditContext.for_user(user, "approval_gate")
        requester_email = user.email

        try:
            context = await extract_operation_context(db, operation, payload)
            needs_approval = await approvals.requires_approval(context, allow_threshold_exemption)

            if not needs_approval:
                await audit.log_operation(
                    actor,
                    entity_type="approval_check",
                    action="not_required",
                    operation_type=operation.value,
                    description=f"{operation.value} of {context.currency} {context.amount} is below the approval threshold",
                    new_values={"amount": context.amount, "currency": context.currency},
                )
                await db.commit()
                return ApprovalClearance(operation, context)

            approval, created = await approvals.submit(context, user)
            await db.commit()
            summary = build_approval_summary(approval)
        except AppException as e:
            if e.status_code < 500:
                raise
            await _record_gate_failure(db, audit, actor, operation, e)
            raise ApprovalCheckFailedException(operation.value, e) from e
        except Exception as e:
            await _record_gate_failure(db, audit, actor, operation, e)
            raise ApprovalCheckFailedException(operation.value, e) from e

        if created:
            try:
                await approvals.notify_approvers(approval, user)
            except Exception as e:
                logger.error(f"Could not notify approvers of {summary['approvalRequestNumber']}: {e}")

        logger.info(f"{operation.value} by {requester_email} deferred to approval {summary['approvalRequestNumber']}")
        raise ApprovalPendingException(summary)

    return gate


def require_admin_approval(operation_type: Union[str, ApprovalOperationType]):
    """
    Gate for sensitive operations: admins pass directly (audited), everyone
    else needs approval regardless of amount.
    """
    operation = ApprovalOperationType(operation_type)
    non_admin_gate = require_approval(operation, allow_threshold_exemption=False)

    async def admin_gate(
        request: Request,
        user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_async_session),
        services: ServiceContainer = Depends(get_services),
    ) -> ApprovalClearance:
        if not user.is_admin:
            return await non_admin_gate(request, user, db, services)

        payload = await read_operation_payload(request, operation)
        context = await extract_operation_context(db, operation, payload)
        await services.audit_service(db).log_operation(
            AuditContext.for_user(user, "approval_gate"),
            entity_type="approval_check",
            action="admin_override",
            operation_type=operation.value,
            description=f"Admin {user.email} executed {operation.value} without approval",
            severity=AuditSeverity.WARNING,
            new_values={"amount": context.amount, "currency": context.currency},
        )
        await db.commit()
        return ApprovalClearance(operation, context)

    return admin_gate


async def _record_gate_failure(db, audit, actor: AuditContext, operation: ApprovalOperationType, error: Exception) -> None:
    logger.error(f"Approval check failed for {operation.value}: {error}", exc_info=True)
    try:
        await db.rollback()
        await audit.log_operation(
            actor,
            entity_type="approval_check",
            action="check_failed",
            operation_type=operation.value,
            description=f"Approval check failed for {operation.value}: {error}",
            severity=AuditSeverity.ERROR,
        )
        await db.commit()
    except Exception as audit_error:
        logger.error(f"Could not audit approval check failure: {audit_error}")
