"""
WorkFlu - Configuration Service

Central business configuration backed by the system_settings table, with
environment settings as fallback.

Every stage that needs an exchange rate must read it from here; client
supplied rates are never trusted.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.config import Settings
from workflu.models.system_setting import SystemSetting
from workflu.utils.error_handling import ConfigurationException

logger = logging.getLogger(__name__)


EXCHANGE_RATE_KEY = "USD_ETB_RATE"
SUPPLIER_ADVANCE_TERMS_KEY = "SUPPLIER_ADVANCE_TERMS_DAYS"
CAPITAL_LOW_BALANCE_KEY = "CAPITAL_LOW_BALANCE_THRESHOLD"


def approval_threshold_key(operation_type: str) -> str:
    return f"APPROVAL_THRESHOLD_{operation_type.upper()}"


class ConfigurationService:
    """Read and write central configuration values."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.settings = settings

    async def get_system_setting(self, key: str) -> Optional[str]:
        result = await self.db.execute(
            select(SystemSetting.value).where(SystemSetting.key == key)
        )
        return result.scalar_one_or_none()

    async def set_system_setting(
        self,
        key: str,
        value: str,
        category: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SystemSetting:
        """Create or update a setting. The caller commits."""
        result = await self.db.execute(select(SystemSetting).where(SystemSetting.key == key))
        setting = result.scalar_one_or_none()
        if setting is None:
            setting = SystemSetting(key=key, value=value, category=category, description=description)
            self.db.add(setting)
        else:
            setting.value = value
            if category is not None:
                setting.category = category
            if description is not None:
                setting.description = description
        await self.db.flush()
        return setting

    async def list_system_settings(self, category: Optional[str] = None) -> List[SystemSetting]:
        query = select(SystemSetting).order_by(SystemSetting.key)
        if category is not None:
            query = query.where(SystemSetting.category == category)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_numeric_setting(self, key: str, default: Optional[float] = None) -> Optional[Decimal]:
        """
        Numeric setting from system_settings, else the default.

        Raises:
            ConfigurationException: If the stored value is not a number
        """
        raw = await self.get_system_setting(key)
        if raw is None or raw == "":
            return Decimal(str(default)) if default is not None else None
        try:
            return Decimal(raw)
        except InvalidOperation as e:
            raise ConfigurationException(f"Setting {key} is not numeric: {raw!r}", key=key) from e

    async def get_central_exchange_rate(self) -> Decimal:
        """
        The authoritative USD/ETB rate.

        Raises:
            ConfigurationException: If no positive rate is configured
        """
        rate = await self.get_numeric_setting(EXCHANGE_RATE_KEY, self.settings.default_usd_etb_rate)
        if rate is None or rate <= 0:
            raise ConfigurationException(
                f"Central exchange rate not configured. Please set {EXCHANGE_RATE_KEY} in settings.",
                key=EXCHANGE_RATE_KEY,
            )
        return rate

    async def get_rate_for_currency(self, currency: str) -> Optional[Decimal]:
        """
        Central rate to stamp on an entity in the given currency.

        USD amounts need no conversion, so a missing rate is tolerated for
        them and None is returned.
        """
        try:
            return await self.get_central_exchange_rate()
        except ConfigurationException:
            if currency.upper() == "USD":
                return None
            raise

    async def get_approval_threshold(self, operation_type: str) -> Optional[Decimal]:
        """Amount below which the operation is exempt from approval; None if unset."""
        fallback = self.settings.approval_thresholds.get(operation_type)
        return await self.get_numeric_setting(approval_threshold_key(operation_type), fallback)

    async def get_supplier_advance_terms_days(self) -> int:
        days = await self.get_numeric_setting(
            SUPPLIER_ADVANCE_TERMS_KEY, self.settings.supplier_advance_terms_days
        )
        return int(days)

    async def get_capital_low_balance_threshold(self) -> Decimal:
        return await self.get_numeric_setting(
            CAPITAL_LOW_BALANCE_KEY, self.settings.capital_low_balance_threshold
        )
