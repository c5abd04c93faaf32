"""
WorkFlu - Gated Operation Schemas

Request payloads of the operations that pass through the period guard and the
approval gate, plus the result returned once an operation executes.

Client supplied exchange rates are not part of any payload; the central rate
is applied at execution time.
"""

import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import Field, field_validator

from workflu.models.business import CapitalEntryType
from workflu.schemas.base import CamelModel


SUPPORTED_CURRENCIES = ("USD", "ETB")


class _MoneyPayload(CamelModel):
    currency: str = Field("USD", description="USD or ETB")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = v.upper()
        if v not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency: {v}")
        return v


# ===========================================
# REQUEST PAYLOADS
# ===========================================

class PurchaseCreate(_MoneyPayload):
    """Schema for recording a purchase."""
    date: datetime.date
    supplier_id: Optional[UUID] = None
    weight_kg: Decimal = Field(..., gt=0)
    price_per_kg: Decimal = Field(..., gt=0)
    total: Optional[Decimal] = Field(None, gt=0)
    notes: Optional[str] = Field(None, max_length=2000)

    @property
    def total_amount(self) -> Decimal:
        """Explicit total, or weight times unit price."""
        if self.total is not None:
            return self.total
        return (self.weight_kg * self.price_per_kg).quantize(Decimal("0.01"))


class CapitalEntryCreate(_MoneyPayload):
    """Schema for a capital movement."""
    date: datetime.date
    amount: Decimal = Field(..., gt=0)
    type: CapitalEntryType
    reference: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)


class SupplierAdvanceCreate(_MoneyPayload):
    """Schema for an advance paid to a supplier."""
    date: datetime.date
    supplier_id: UUID
    amount: Decimal = Field(..., gt=0)
    reference: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)


class PurchaseReturnCreate(CamelModel):
    """Schema for returning a purchase; the amount defaults to the purchase total."""
    purchase_id: UUID
    date: datetime.date
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=2000)


class SystemSettingChange(CamelModel):
    """Schema for changing a central configuration value."""
    key: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Z][A-Z0-9_]*$")
    value: str = Field(..., min_length=1, max_length=500)
    category: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=2000)


class WarehouseOperationCreate(CamelModel):
    """Schema for a warehouse operation against a purchase."""
    purchase_id: UUID
    operation: str = Field("receive", pattern="^(receive|inspect|transfer)$")
    weight_kg: Optional[Decimal] = Field(None, gt=0)
    notes: Optional[str] = Field(None, max_length=2000)


# ===========================================
# RESULTS
# ===========================================

class OperationResult(CamelModel):
    """An executed operation: the entity it created or changed."""
    operation_type: str
    entity_type: str
    entity_id: UUID
    entity_number: str
    data: Dict[str, Any]
    replayed: bool = False
