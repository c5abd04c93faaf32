"""
WorkFlu - System Setting Model

Key/value store for central business configuration such as USD_ETB_RATE
and APPROVAL_THRESHOLD_<OPERATION>.
"""

from typing import Optional

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from workflu.models.base import BaseModel


class SystemSetting(BaseModel):
    """Central configuration value."""

    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Key of the approved or immediate change that last wrote the value
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
