"""
WorkFlu - Accounting Period Guard

Blocks mutations that would write into a closed or locked accounting period.

Features:
- Reads the calendar dates a request touches from its JSON body
- Resolves each date to at most one period; dates in gaps are unrestricted
- Optional custom resolver for requests whose period comes from a related
  record (warehouse operations resolve through their purchase)
- Optional audited admin bypass
- Fails closed: if the period status cannot be determined the request is
  rejected with PERIOD_CHECK_FAILED

Read-only requests (GET, HEAD, OPTIONS) are never checked.
"""

import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.database import get_async_session
from workflu.dependencies import get_optional_user
from workflu.models.audit import AuditSeverity
from workflu.models.business import Purchase
from workflu.models.user import User
from workflu.services.audit_service import AuditContext, AuditService
from workflu.services.period_service import PeriodService, serialize_closed_period
from workflu.utils.error_handling import (
    AuthenticationException,
    PeriodCheckFailedException,
    PeriodClosedException,
)

logger = logging.getLogger(__name__)


SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

DEFAULT_DATE_FIELDS = ("date", "transactionDate", "purchaseDate", "entryDate")

PeriodResolver = Callable[[Request, AsyncSession, Dict[str, Any]], Awaitable[Optional[Iterable[uuid.UUID]]]]


async def read_json_body(request: Request) -> Dict[str, Any]:
    """The request's JSON object body, or an empty dict if there is none."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def resolve_purchase_period(
    request: Request,
    db: AsyncSession,
    body: Dict[str, Any],
) -> List[uuid.UUID]:
    """Period of the purchase named by purchaseId (body) or purchase_id (path)."""
    raw_id = body.get("purchaseId") or request.path_params.get("purchase_id")
    if not raw_id:
        return []
    return await PeriodService(db).period_for_purchase(raw_id)


def period_guard(
    date_fields: Optional[Sequence[str]] = None,
    allow_admin_bypass: bool = False,
    period_resolver: Optional[PeriodResolver] = None,
):
    """
    Dependency factory for the accounting period guard.

    Args:
        date_fields: Body fields holding dates; defaults to DEFAULT_DATE_FIELDS
        allow_admin_bypass: Let admins write into closed periods (audited)
        period_resolver: Custom period resolution. Date fields are read as well
            only when passed explicitly

    Usage:
        @router.post("", dependencies=[Depends(period_guard(["date"]))])
    """
    fields = tuple(date_fields or DEFAULT_DATE_FIELDS)
    read_dates = date_fields is not None or period_resolver is None

    async def guard(
        request: Request,
        user: Optional[User] = Depends(get_optional_user),
        db: AsyncSession = Depends(get_async_session),
    ) -> None:
        if request.method in SAFE_METHODS:
            return
        if user is None:
            raise AuthenticationException("Authentication required")

        audit = AuditService(db)
        path = request.url.path

        if allow_admin_bypass and user.is_admin:
            await audit.log_operation(
                AuditContext.for_user(user, "period_guard"),
                entity_type="accounting_period",
                action="admin_bypass",
                description=f"Admin bypassed period guard on {request.method} {path}",
                severity=AuditSeverity.WARNING,
            )
            await db.commit()
            logger.warning(f"Admin {user.email} bypassed period guard on {request.method} {path}")
            return

        try:
            body = await read_json_body(request)
            period_ids = await PeriodService(db).periods_for_dates(body, fields) if read_dates else []
            if period_resolver is not None:
                period_ids.extend(await period_resolver(request, db, body) or [])
            period_ids = list(dict.fromkeys(period_ids))

            if not period_ids:
                return

            closed = await PeriodService(db).check_periods_status(period_ids)
            details = [serialize_closed_period(p) for p in closed]
            if details:
                await audit.log_operation(
                    AuditContext.for_user(user, "period_guard"),
                    entity_type="accounting_period",
                    action="period_closed_rejection",
                    description=f"Rejected {request.method} {path}: closed period(s) "
                                f"{', '.join(d['periodNumber'] for d in details)}",
                    severity=AuditSeverity.WARNING,
                    new_values={"closedPeriods": details, "path": path},
                )
                await db.commit()
        except Exception as e:
            logger.error(f"Period guard failed on {request.method} {path}: {e}", exc_info=True)
            raise PeriodCheckFailedException(e) from e

        if details:
            logger.info(f"Period guard rejected {request.method} {path} by {user.email}")
            raise PeriodClosedException(details)

    return guard


# ===========================================
# PRESETS
# ===========================================

purchase_period_guard = period_guard(["date"], allow_admin_bypass=True)
capital_entry_period_guard = period_guard(["date"], allow_admin_bypass=True)
warehouse_period_guard = period_guard(period_resolver=resolve_purchase_period)
generic_period_guard = period_guard(
    ["date", "transactionDate", "createdAt", "updatedAt"], allow_admin_bypass=True
)
# Also blocks changes to a purchase whose own period is closed
strict_period_guard = period_guard(
    ["date"], allow_admin_bypass=False, period_resolver=resolve_purchase_period
)
