"""
WorkFlu - Accounting Period Model

Accounting periods are contiguous, non-overlapping date ranges. Mutations
dated inside a closed or locked period are rejected by the period guard.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Date, DateTime, Index, String, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from workflu.models.base import BaseModel, utcnow


class PeriodStatus(str, Enum):
    """Accounting period lifecycle."""
    OPEN = "open"
    PENDING_CLOSE = "pending_close"
    CLOSED = "closed"
    LOCKED = "locked"


# Statuses that reject mutations
BLOCKING_PERIOD_STATUSES = (PeriodStatus.CLOSED, PeriodStatus.LOCKED)


class AccountingPeriod(BaseModel):
    """A fixed accounting interval, e.g. period "2024-01"."""

    __tablename__ = "accounting_periods"
    __table_args__ = (
        Index("ix_accounting_periods_range", "start_date", "end_date"),
    )

    period_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PeriodStatus] = mapped_column(
        SQLEnum(PeriodStatus, native_enum=False, length=20),
        default=PeriodStatus.OPEN,
        nullable=False,
        index=True,
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    @property
    def is_blocking(self) -> bool:
        """True when mutations inside this period must be rejected."""
        return self.status in BLOCKING_PERIOD_STATUSES

    def contains(self, value: date) -> bool:
        return self.start_date <= value <= self.end_date

    def close(self, user_id: Optional[uuid.UUID]) -> None:
        """Close the period, stamping who closed it and when."""
        self.status = PeriodStatus.CLOSED
        self.closed_at = utcnow()
        self.closed_by = user_id

    def __repr__(self) -> str:
        return f"<AccountingPeriod(number={self.period_number}, status={self.status})>"
