"""
WorkFlu - Audit Trail Service

Append-only audit sink used by the period guard, the approval gate, the
notification engine and the scheduler.

Entries are added to the caller's session and flushed; they commit together
with the operation they describe.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.models.audit import AuditLog, AuditSeverity

if TYPE_CHECKING:
    from workflu.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class AuditContext:
    """Who (or what) performed the audited operation."""
    user_id: Optional[uuid.UUID] = None
    user_name: Optional[str] = None
    source: str = "system"

    @classmethod
    def for_user(cls, user: "User", source: str = "api") -> "AuditContext":
        return cls(user_id=user.id, user_name=user.full_name, source=source)

    @classmethod
    def system(cls, source: str = "system") -> "AuditContext":
        return cls(user_name="system", source=source)


class AuditService:
    """Service for writing immutable audit entries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_operation(
        self,
        context: AuditContext,
        *,
        entity_type: str,
        action: str,
        entity_id: Optional[Any] = None,
        operation_type: Optional[str] = None,
        description: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Append an audit entry.

        Args:
            context: Actor and source of the operation
            entity_type: Type of entity (e.g. 'purchase', 'notification')
            action: What happened (e.g. 'create', 'reject', 'deliver')
            entity_id: ID of the affected entity
            operation_type: Business operation (e.g. 'capital_entry')
            description: Human readable summary
            severity: info, warning, error or critical
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)

        Returns:
            Created AuditLog record
        """
        entry = AuditLog(
            user_id=context.user_id,
            user_name=context.user_name,
            source=context.source,
            severity=severity,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            action=action,
            operation_type=operation_type,
            description=description,
            old_values=jsonable_encoder(old_values) if old_values is not None else None,
            new_values=jsonable_encoder(new_values) if new_values is not None else None,
        )
        self.db.add(entry)
        await self.db.flush()

        if severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            logger.warning(f"Audit [{severity.value}] {entity_type}.{action}: {description}")
        return entry
