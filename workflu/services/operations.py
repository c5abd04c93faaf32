"""
WorkFlu - Operation Registry

Replayable business operations. The same handler runs when an operation is
executed immediately (below its approval threshold) and when an approved
request is replayed.

Every handler looks up its idempotency key before writing, so running it
twice with the same key returns the entity created the first time.
Handlers flush but never commit; the caller owns the transaction.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.config import get_settings
from workflu.models.approval import ApprovalOperationType
from workflu.models.base import utcnow
from workflu.models.business import CapitalEntry, CapitalEntryType, Purchase, PurchaseStatus
from workflu.models.system_setting import SystemSetting
from workflu.schemas.operations import (
    CapitalEntryCreate,
    OperationResult,
    PurchaseCreate,
    PurchaseReturnCreate,
    SupplierAdvanceCreate,
    SystemSettingChange,
    WarehouseOperationCreate,
)
from workflu.services.configuration_service import ConfigurationService
from workflu.utils.error_handling import BusinessRuleException, NotFoundException

logger = logging.getLogger(__name__)


Entity = Union[Purchase, CapitalEntry, SystemSetting]
OperationHandler = Callable[..., Awaitable[Entity]]


# ===========================================
# PAYLOAD HASHING
# ===========================================

def canonical_json(payload: Mapping[str, Any]) -> str:
    """Key-sorted compact JSON; equal payloads hash equally."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def dump_payload(payload: BaseModel) -> Dict[str, Any]:
    """JSON-safe camelCase form stored on approvals and hashed."""
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


def immediate_idempotency_key(
    operation_type: str,
    actor_id: uuid.UUID,
    payload: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> str:
    """Key for an operation executed without approval."""
    now = now or utcnow()
    raw = f"{operation_type}|{actor_id}|{canonical_json(payload)}|{now.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _entity_number(prefix: str, on: date, idempotency_key: str) -> str:
    return f"{prefix}-{on:%Y%m%d}-{idempotency_key[:8].upper()}"


# ===========================================
# SERIALIZATION
# ===========================================

def _decimal(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def serialize_purchase(purchase: Purchase) -> Dict[str, Any]:
    return {
        "id": str(purchase.id),
        "purchaseNumber": purchase.purchase_number,
        "supplierId": str(purchase.supplier_id) if purchase.supplier_id else None,
        "date": purchase.purchase_date.isoformat(),
        "weightKg": _decimal(purchase.weight_kg),
        "pricePerKg": _decimal(purchase.price_per_kg),
        "total": _decimal(purchase.total),
        "currency": purchase.currency,
        "exchangeRate": _decimal(purchase.exchange_rate),
        "status": purchase.status.value,
    }


def serialize_capital_entry(entry: CapitalEntry) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "entryNumber": entry.entry_number,
        "date": entry.entry_date.isoformat(),
        "type": entry.type.value,
        "amount": _decimal(entry.amount),
        "currency": entry.currency,
        "exchangeRate": _decimal(entry.exchange_rate),
        "reference": entry.reference,
        "description": entry.description,
        "dueDate": entry.due_date.isoformat() if entry.due_date else None,
    }


def serialize_system_setting(setting: SystemSetting) -> Dict[str, Any]:
    return {
        "id": str(setting.id),
        "key": setting.key,
        "value": setting.value,
        "category": setting.category,
    }


# ===========================================
# HANDLERS
# ===========================================

async def _existing(db: AsyncSession, model, idempotency_key: str):
    result = await db.execute(select(model).where(model.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def execute_purchase(
    db: AsyncSession,
    payload: PurchaseCreate,
    *,
    actor_id: Optional[uuid.UUID],
    idempotency_key: str,
    exchange_rate: Optional[Decimal],
    requested_at: Optional[datetime] = None,
) -> Purchase:
    """Record a purchase."""
    existing = await _existing(db, Purchase, idempotency_key)
    if existing is not None:
        return existing

    purchase = Purchase(
        purchase_number=_entity_number("PUR", payload.date, idempotency_key),
        supplier_id=payload.supplier_id,
        purchase_date=payload.date,
        weight_kg=payload.weight_kg,
        price_per_kg=payload.price_per_kg,
        total=payload.total_amount,
        currency=payload.currency,
        exchange_rate=exchange_rate,
        status=PurchaseStatus.PENDING,
        notes=payload.notes,
        created_by=actor_id,
        idempotency_key=idempotency_key,
    )
    db.add(purchase)
    await db.flush()
    logger.info(f"Purchase {purchase.purchase_number} recorded: {purchase.currency} {purchase.total}")
    return purchase


async def execute_capital_entry(
    db: AsyncSession,
    payload: CapitalEntryCreate,
    *,
    actor_id: Optional[uuid.UUID],
    idempotency_key: str,
    exchange_rate: Optional[Decimal],
    requested_at: Optional[datetime] = None,
) -> CapitalEntry:
    """Record a capital movement."""
    existing = await _existing(db, CapitalEntry, idempotency_key)
    if existing is not None:
        return existing

    entry = CapitalEntry(
        entry_number=_entity_number("CAP", payload.date, idempotency_key),
        entry_date=payload.date,
        amount=payload.amount,
        currency=payload.currency,
        exchange_rate=exchange_rate,
        type=payload.type,
        reference=payload.reference,
        description=payload.description,
        created_by=actor_id,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    await db.flush()
    logger.info(f"Capital entry {entry.entry_number} ({entry.type.value}) recorded: {entry.currency} {entry.amount}")
    return entry


async def execute_supplier_advance(
    db: AsyncSession,
    payload: SupplierAdvanceCreate,
    *,
    actor_id: Optional[uuid.UUID],
    idempotency_key: str,
    exchange_rate: Optional[Decimal],
    requested_at: Optional[datetime] = None,
) -> CapitalEntry:
    """Pay an advance to a supplier: a CapitalOut entry due back after the credit terms."""
    existing = await _existing(db, CapitalEntry, idempotency_key)
    if existing is not None:
        return existing

    terms_days = await ConfigurationService(db, get_settings()).get_supplier_advance_terms_days()
    entry = CapitalEntry(
        entry_number=_entity_number("ADV", payload.date, idempotency_key),
        entry_date=payload.date,
        amount=payload.amount,
        currency=payload.currency,
        exchange_rate=exchange_rate,
        type=CapitalEntryType.CAPITAL_OUT,
        reference=payload.reference or f"supplier:{payload.supplier_id}",
        description=payload.description or f"Advance to supplier {payload.supplier_id}",
        due_date=payload.date + timedelta(days=terms_days),
        created_by=actor_id,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    await db.flush()
    logger.info(f"Supplier advance {entry.entry_number} recorded, due {entry.due_date}")
    return entry


async def execute_purchase_return(
    db: AsyncSession,
    payload: PurchaseReturnCreate,
    *,
    actor_id: Optional[uuid.UUID],
    idempotency_key: str,
    exchange_rate: Optional[Decimal],
    requested_at: Optional[datetime] = None,
) -> CapitalEntry:
    """Mark a purchase returned and book the refund as CapitalIn."""
    existing = await _existing(db, CapitalEntry, idempotency_key)
    if existing is not None:
        return existing

    purchase = await db.get(Purchase, payload.purchase_id)
    if purchase is None:
        raise NotFoundException("Purchase", payload.purchase_id)
    if purchase.status == PurchaseStatus.RETURNED:
        raise BusinessRuleException(
            f"Purchase {purchase.purchase_number} has already been returned",
            rule="PURCHASE_NOT_RETURNED",
        )

    amount = payload.amount if payload.amount is not None else purchase.total
    if amount > purchase.total:
        raise BusinessRuleException(
            f"Refund {amount} exceeds purchase total {purchase.total}",
            rule="REFUND_WITHIN_TOTAL",
        )

    purchase.status = PurchaseStatus.RETURNED
    purchase.returned_at = utcnow()

    refund = CapitalEntry(
        entry_number=_entity_number("RET", payload.date, idempotency_key),
        entry_date=payload.date,
        amount=amount,
        currency=purchase.currency,
        exchange_rate=exchange_rate,
        type=CapitalEntryType.CAPITAL_IN,
        reference=purchase.purchase_number,
        description=payload.reason or f"Refund for returned purchase {purchase.purchase_number}",
        created_by=actor_id,
        idempotency_key=idempotency_key,
    )
    db.add(refund)
    await db.flush()
    logger.info(f"Purchase {purchase.purchase_number} returned, refund {refund.entry_number}")
    return refund


async def execute_system_setting_change(
    db: AsyncSession,
    payload: SystemSettingChange,
    *,
    actor_id: Optional[uuid.UUID],
    idempotency_key: str,
    exchange_rate: Optional[Decimal],
    requested_at: Optional[datetime] = None,
) -> SystemSetting:
    """
    Write a central configuration value.

    A change requested before the setting was last written leaves the later
    value in place.
    """
    existing = await _existing(db, SystemSetting, idempotency_key)
    if existing is not None:
        return existing

    result = await db.execute(select(SystemSetting).where(SystemSetting.key == payload.key))
    current = result.scalar_one_or_none()
    if current is not None and requested_at is not None and current.updated_at > requested_at:
        logger.warning(
            f"System setting {payload.key} changed after this request ({current.updated_at:%Y-%m-%d %H:%M:%S}); "
            f"keeping {current.value!r}"
        )
        return current

    setting = await ConfigurationService(db, get_settings()).set_system_setting(
        payload.key, payload.value, category=payload.category, description=payload.description
    )
    setting.idempotency_key = idempotency_key
    await db.flush()
    logger.info(f"System setting {payload.key} set to {payload.value!r} by {actor_id}")
    return setting


async def record_warehouse_operation(
    db: AsyncSession,
    payload: WarehouseOperationCreate,
    *,
    actor_id: Optional[uuid.UUID],
) -> Purchase:
    """
    Apply a warehouse step to a purchase. Not amount-bearing, so never
    approval-gated; only "receive" changes the purchase status.
    """
    purchase = await db.get(Purchase, payload.purchase_id)
    if purchase is None:
        raise NotFoundException("Purchase", payload.purchase_id)
    if purchase.status == PurchaseStatus.RETURNED:
        raise BusinessRuleException(
            f"Purchase {purchase.purchase_number} has been returned",
            rule="PURCHASE_NOT_RETURNED",
        )

    if payload.operation == "receive":
        if purchase.status == PurchaseStatus.RECEIVED:
            raise BusinessRuleException(
                f"Purchase {purchase.purchase_number} has already been received",
                rule="PURCHASE_PENDING",
            )
        purchase.status = PurchaseStatus.RECEIVED
        await db.flush()

    logger.info(f"Warehouse {payload.operation} on purchase {purchase.purchase_number} by {actor_id}")
    return purchase


# ===========================================
# REGISTRY
# ===========================================

@dataclass(frozen=True)
class OperationDefinition:
    """A replayable operation: payload schema, handler and result shape."""
    operation_type: ApprovalOperationType
    schema: Type[BaseModel]
    handler: OperationHandler
    model: Type[Entity]
    entity_type: str
    serializer: Callable[[Any], Dict[str, Any]]
    number_attr: str
    # Period check re-run before a replay; mirrors the route's guard
    period_fields: Tuple[str, ...] = ()
    period_admin_bypass: bool = False
    purchase_field: Optional[str] = None


OPERATIONS: Dict[ApprovalOperationType, OperationDefinition] = {
    ApprovalOperationType.PURCHASE: OperationDefinition(
        ApprovalOperationType.PURCHASE, PurchaseCreate, execute_purchase, Purchase,
        "purchase", serialize_purchase, "purchase_number",
        period_fields=("date",), period_admin_bypass=True,
    ),
    ApprovalOperationType.CAPITAL_ENTRY: OperationDefinition(
        ApprovalOperationType.CAPITAL_ENTRY, CapitalEntryCreate, execute_capital_entry, CapitalEntry,
        "capital_entry", serialize_capital_entry, "entry_number",
        period_fields=("date",), period_admin_bypass=True,
    ),
    ApprovalOperationType.SUPPLIER_ADVANCE: OperationDefinition(
        ApprovalOperationType.SUPPLIER_ADVANCE, SupplierAdvanceCreate, execute_supplier_advance, CapitalEntry,
        "capital_entry", serialize_capital_entry, "entry_number",
        period_fields=("date",), period_admin_bypass=True,
    ),
    ApprovalOperationType.PURCHASE_RETURN: OperationDefinition(
        ApprovalOperationType.PURCHASE_RETURN, PurchaseReturnCreate, execute_purchase_return, CapitalEntry,
        "capital_entry", serialize_capital_entry, "entry_number",
        period_fields=("date",), purchase_field="purchaseId",
    ),
    ApprovalOperationType.SYSTEM_SETTING_CHANGE: OperationDefinition(
        ApprovalOperationType.SYSTEM_SETTING_CHANGE, SystemSettingChange, execute_system_setting_change,
        SystemSetting, "system_setting", serialize_system_setting, "key",
    ),
}


def get_operation(operation_type: Union[str, ApprovalOperationType]) -> OperationDefinition:
    """
    Raises:
        ValueError: If the operation type is not registered
    """
    return OPERATIONS[ApprovalOperationType(operation_type)]


def parse_payload(
    operation_type: Union[str, ApprovalOperationType],
    payload: Union[BaseModel, Mapping[str, Any]],
) -> BaseModel:
    """Validate a raw payload against the operation's schema."""
    definition = get_operation(operation_type)
    if isinstance(payload, definition.schema):
        return payload
    return definition.schema.model_validate(payload)


async def execute_operation(
    db: AsyncSession,
    operation_type: Union[str, ApprovalOperationType],
    payload: Union[BaseModel, Mapping[str, Any]],
    *,
    actor_id: Optional[uuid.UUID],
    idempotency_key: str,
    exchange_rate: Optional[Decimal],
    requested_at: Optional[datetime] = None,
) -> OperationResult:
    """
    Validate the payload and run the registered handler.

    Args:
        db: Session the handler writes into (not committed here)
        operation_type: Registered operation
        payload: Schema instance or its stored JSON form
        actor_id: User on whose behalf the operation runs
        idempotency_key: Key bound to every entity the handler creates
        exchange_rate: Central rate to stamp on the entity
        requested_at: When the change was requested; set for approval replays

    Returns:
        OperationResult describing the created entity; ``replayed`` is True
        when the key had already produced it.
    """
    definition = get_operation(operation_type)
    parsed = parse_payload(operation_type, payload)

    replayed = await _existing(db, definition.model, idempotency_key) is not None

    entity = await definition.handler(
        db,
        parsed,
        actor_id=actor_id,
        idempotency_key=idempotency_key,
        exchange_rate=exchange_rate,
        requested_at=requested_at,
    )
    return OperationResult(
        operation_type=definition.operation_type.value,
        entity_type=definition.entity_type,
        entity_id=entity.id,
        entity_number=getattr(entity, definition.number_attr),
        data=definition.serializer(entity),
        replayed=replayed,
    )
