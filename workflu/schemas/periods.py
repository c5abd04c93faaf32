"""
WorkFlu - Accounting Period Schemas
"""

import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field

from workflu.models.accounting import PeriodStatus
from workflu.schemas.base import CamelModel


class PeriodCreate(CamelModel):
    """Schema for opening a new accounting period."""
    period_number: str = Field(..., min_length=1, max_length=20, description="e.g. 2026-10")
    start_date: datetime.date
    end_date: datetime.date


class PeriodResponse(CamelModel):
    """Schema for accounting period response."""
    id: UUID
    period_number: str
    start_date: datetime.date
    end_date: datetime.date
    status: PeriodStatus
    closed_at: Optional[datetime.datetime] = None
    closed_by: Optional[UUID] = None
    created_at: datetime.datetime
