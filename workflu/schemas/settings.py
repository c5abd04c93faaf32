"""
WorkFlu - System Setting Schemas
"""

import datetime
from typing import Optional
from uuid import UUID

from workflu.schemas.base import CamelModel


class SystemSettingResponse(CamelModel):
    """Schema for a central configuration value."""
    id: UUID
    key: str
    value: str
    category: Optional[str] = None
    description: Optional[str] = None
    updated_at: datetime.datetime
