"""
WorkFlu - Business Entities

Purchases and capital entries created through the approval-gated pipeline.
Both carry the idempotency key of the operation that created them so that a
replayed approval never produces a second row.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Date, DateTime, Numeric, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from workflu.models.base import BaseModel


class PurchaseStatus(str, Enum):
    """Purchase lifecycle."""
    PENDING = "pending"
    RECEIVED = "received"
    RETURNED = "returned"


class CapitalEntryType(str, Enum):
    """Direction of a capital movement."""
    CAPITAL_IN = "CapitalIn"
    CAPITAL_OUT = "CapitalOut"


class Purchase(BaseModel):
    """Coffee purchase from a supplier."""

    __tablename__ = "purchases"

    purchase_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    supplier_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    purchase_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    weight_kg: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    price_per_kg: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    status: Mapped[PurchaseStatus] = mapped_column(
        SQLEnum(PurchaseStatus, native_enum=False, length=20),
        default=PurchaseStatus.PENDING,
        nullable=False,
    )
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)


class CapitalEntry(BaseModel):
    """Movement of working capital in or out of the business."""

    __tablename__ = "capital_entries"

    entry_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    entry_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    type: Mapped[CapitalEntryType] = mapped_column(
        SQLEnum(CapitalEntryType, native_enum=False, length=20),
        nullable=False,
    )
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    @property
    def amount_usd(self) -> Decimal:
        """Amount converted to USD with the rate stored on the entry."""
        if self.currency == "USD" or not self.exchange_rate:
            return Decimal(self.amount)
        return Decimal(self.amount) / Decimal(self.exchange_rate)
