"""
WorkFlu - Accounting Period Service

Resolves dates to accounting periods and manages the period lifecycle.

Periods are contiguous and non-overlapping: a date belongs to at most one
period. A date in a gap between periods belongs to none and carries no
restriction.
"""

import uuid
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.models.accounting import AccountingPeriod, PeriodStatus, BLOCKING_PERIOD_STATUSES
from workflu.models.business import Purchase
from workflu.utils.error_handling import (
    BusinessRuleException,
    ConflictException,
    ErrorCode,
    NotFoundException,
    PeriodOverlapException,
    ValidationException,
)

logger = logging.getLogger(__name__)


def parse_period_date(value: Any) -> date:
    """
    Parse a request value into a calendar date.

    Accepts date/datetime objects, ISO-8601 date or datetime strings
    (a trailing "Z" is read as UTC) and epoch milliseconds. Timezone-aware
    datetimes are converted to UTC before taking the date.

    Raises:
        ValueError: If the value is not a recognizable date
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a date: {value!r}")
    if isinstance(value, datetime):
        return _utc_date(value)
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty date string")
        if len(text) == 10:
            return date.fromisoformat(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return _utc_date(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported date type: {type(value).__name__}")


def _utc_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def serialize_closed_period(period: AccountingPeriod) -> Dict[str, Any]:
    """Shape used in PERIOD_CLOSED rejections."""
    return {
        "id": str(period.id),
        "periodNumber": period.period_number,
        "closedAt": period.closed_at.isoformat() if period.closed_at else None,
        "closedBy": str(period.closed_by) if period.closed_by else None,
    }


class PeriodService:
    """Service for accounting period lookup and lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_period_for_date(self, value: date) -> Optional[AccountingPeriod]:
        """
        Return the unique period containing the date, or None for a gap.

        Raises:
            PeriodOverlapException: If more than one period contains the date
        """
        result = await self.db.execute(
            select(AccountingPeriod).where(
                and_(
                    AccountingPeriod.start_date <= value,
                    AccountingPeriod.end_date >= value,
                )
            )
        )
        periods = list(result.scalars().all())
        if len(periods) > 1:
            numbers = sorted(p.period_number for p in periods)
            raise PeriodOverlapException(
                f"Date {value.isoformat()} falls in overlapping periods: {', '.join(numbers)}",
                numbers,
            )
        return periods[0] if periods else None

    async def get_period(self, period_id: uuid.UUID) -> AccountingPeriod:
        period = await self.db.get(AccountingPeriod, period_id)
        if period is None:
            raise NotFoundException("AccountingPeriod", period_id)
        return period

    async def get_periods(self, period_ids: Iterable[uuid.UUID]) -> List[AccountingPeriod]:
        ids = list(period_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.id.in_(ids))
            .order_by(AccountingPeriod.start_date)
        )
        return list(result.scalars().all())

    async def list_periods(self, status: Optional[PeriodStatus] = None) -> List[AccountingPeriod]:
        query = select(AccountingPeriod).order_by(AccountingPeriod.start_date)
        if status is not None:
            query = query.where(AccountingPeriod.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def check_periods_status(self, period_ids: Iterable[uuid.UUID]) -> List[AccountingPeriod]:
        """Every closed or locked period among the given ids, ordered by start date."""
        return [p for p in await self.get_periods(period_ids) if p.status in BLOCKING_PERIOD_STATUSES]

    async def periods_for_dates(self, body: Mapping[str, Any], date_fields: Sequence[str]) -> List[uuid.UUID]:
        """
        Ids of the periods containing the dates held in the given body fields.

        Missing, empty and unparseable values are skipped.
        """
        period_ids: List[uuid.UUID] = []
        for field_name in date_fields:
            value = body.get(field_name)
            if value is None or value == "":
                continue
            try:
                touched = parse_period_date(value)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipped unparseable period date {field_name}={value!r}: {e}")
                continue
            period = await self.find_period_for_date(touched)
            if period is not None and period.id not in period_ids:
                period_ids.append(period.id)
        return period_ids

    async def period_for_purchase(self, raw_id: Any) -> List[uuid.UUID]:
        """Period of the purchase date, or an empty list for an unknown purchase."""
        try:
            purchase_id = uuid.UUID(str(raw_id))
        except ValueError:
            logger.warning(f"Could not parse purchase id {raw_id!r}")
            return []

        purchase = await self.db.get(Purchase, purchase_id)
        if purchase is None:
            return []
        period = await self.find_period_for_date(purchase.purchase_date)
        return [period.id] if period is not None else []

    async def create_period(
        self,
        period_number: str,
        start_date: date,
        end_date: date,
    ) -> AccountingPeriod:
        """
        Create an open period.

        Raises:
            ValidationException: If start_date is after end_date
            ConflictException: If the period number already exists
            PeriodOverlapException: If the range overlaps an existing period
        """
        if start_date > end_date:
            raise ValidationException(
                f"Invalid date range: {start_date} to {end_date}. Start date must be before end date.",
                code=ErrorCode.INVALID_DATE_RANGE,
            )

        existing = await self.db.execute(
            select(AccountingPeriod.id).where(AccountingPeriod.period_number == period_number)
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictException(f"Accounting period '{period_number}' already exists")

        overlapping = await self.db.execute(
            select(AccountingPeriod.period_number).where(
                and_(
                    AccountingPeriod.start_date <= end_date,
                    AccountingPeriod.end_date >= start_date,
                )
            )
        )
        clashes = list(overlapping.scalars().all())
        if clashes:
            raise PeriodOverlapException(
                f"Period {period_number} overlaps existing period(s): {', '.join(sorted(clashes))}",
                clashes,
            )

        period = AccountingPeriod(
            period_number=period_number,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN,
        )
        self.db.add(period)
        await self.db.flush()
        logger.info(f"Accounting period {period_number} created ({start_date} - {end_date})")
        return period

    async def close_period(self, period_id: uuid.UUID, user_id: Optional[uuid.UUID]) -> AccountingPeriod:
        """Move an open or pending_close period to closed."""
        period = await self.get_period(period_id)
        if period.status not in (PeriodStatus.OPEN, PeriodStatus.PENDING_CLOSE):
            raise BusinessRuleException(
                f"Period {period.period_number} is {period.status.value} and cannot be closed",
                rule="PERIOD_OPEN",
                code=ErrorCode.INVALID_PERIOD_TRANSITION,
            )
        period.close(user_id)
        await self.db.flush()
        logger.info(f"Accounting period {period.period_number} closed by {user_id}")
        return period

    async def lock_period(self, period_id: uuid.UUID) -> AccountingPeriod:
        """Move a closed period to locked."""
        period = await self.get_period(period_id)
        if period.status != PeriodStatus.CLOSED:
            raise BusinessRuleException(
                f"Only closed periods can be locked; {period.period_number} is {period.status.value}",
                rule="PERIOD_CLOSED",
                code=ErrorCode.INVALID_PERIOD_TRANSITION,
            )
        period.status = PeriodStatus.LOCKED
        await self.db.flush()
        return period
