"""
Tests for the accounting period guard

Covers date-to-period resolution, the fail-closed guard, admin bypass and the
warehouse resolver that goes through the purchase.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workflu.database import get_async_session
from workflu.middleware.period_guard import generic_period_guard, period_guard
from workflu.models.accounting import PeriodStatus
from workflu.models.audit import AuditLog, AuditSeverity
from workflu.models.business import Purchase, PurchaseStatus
from workflu.services.period_service import PeriodService, parse_period_date
from workflu.utils.error_handling import PeriodOverlapException, setup_exception_handlers

from conftest import auth_headers, create_period


# =============================================================================
# DATE PARSING AND RESOLUTION
# =============================================================================

class TestParsePeriodDate:
    """Request date values accepted by the guard."""

    def test_iso_date(self):
        assert parse_period_date("2024-01-15") == date(2024, 1, 15)

    def test_iso_datetime_with_z_is_utc(self):
        assert parse_period_date("2024-01-31T23:30:00Z") == date(2024, 1, 31)

    def test_offset_datetime_converted_to_utc(self):
        # 01:00 in UTC+03:00 is still the previous day in UTC
        assert parse_period_date("2024-02-01T01:00:00+03:00") == date(2024, 1, 31)

    def test_epoch_millis(self):
        millis = int(datetime(2024, 3, 5, 12, tzinfo=timezone.utc).timestamp() * 1000)
        assert parse_period_date(millis) == date(2024, 3, 5)

    @pytest.mark.parametrize("value", ["not-a-date", "", None, True, [2024, 1, 1]])
    def test_rejects_garbage(self, value):
        with pytest.raises(ValueError):
            parse_period_date(value)


class TestFindPeriodForDate:
    """A date belongs to at most one period; the end day is inclusive."""

    @pytest.mark.asyncio
    async def test_containment_includes_both_ends(self, db_session: AsyncSession):
        period = await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31))
        service = PeriodService(db_session)

        assert (await service.find_period_for_date(date(2024, 1, 1))).id == period.id
        assert (await service.find_period_for_date(date(2024, 1, 31))).id == period.id
        assert await service.find_period_for_date(date(2024, 2, 1)) is None

    @pytest.mark.asyncio
    async def test_gap_returns_none(self, db_session: AsyncSession):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31))
        await create_period(db_session, "2024-03", date(2024, 3, 1), date(2024, 3, 31))

        assert await PeriodService(db_session).find_period_for_date(date(2024, 2, 15)) is None

    @pytest.mark.asyncio
    async def test_overlapping_periods_rejected(self, db_session: AsyncSession):
        service = PeriodService(db_session)
        await service.create_period("2024-01", date(2024, 1, 1), date(2024, 1, 31))
        await db_session.commit()

        with pytest.raises(PeriodOverlapException):
            await service.create_period("2024-01b", date(2024, 1, 20), date(2024, 2, 10))


# =============================================================================
# GUARD ON REAL ROUTES
# =============================================================================

def purchase_body(purchase_date: str, weight: str = "100", price: str = "5") -> dict:
    return {"date": purchase_date, "weightKg": weight, "pricePerKg": price, "currency": "USD"}


class TestPurchaseGuard:
    """POST /api/v1/purchases with the purchase period guard."""

    @pytest.mark.asyncio
    async def test_open_period_allows_purchase(self, client: AsyncClient, db_session, worker_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31))

        response = await client.post(
            "/api/v1/purchases", json=purchase_body("2024-01-15"), headers=auth_headers(worker_user)
        )

        assert response.status_code == 201
        assert response.json()["entityType"] == "purchase"

    @pytest.mark.asyncio
    async def test_closed_period_rejected(self, client: AsyncClient, db_session, worker_user):
        period = await create_period(
            db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), status=PeriodStatus.CLOSED
        )

        response = await client.post(
            "/api/v1/purchases", json=purchase_body("2024-01-15"), headers=auth_headers(worker_user)
        )

        assert response.status_code == 403
        data = response.json()
        assert data["error"] == "PERIOD_CLOSED"
        assert data["closedPeriods"][0]["id"] == str(period.id)
        assert data["closedPeriods"][0]["periodNumber"] == "2024-01"
        assert "closedAt" in data["closedPeriods"][0]

        purchases = await db_session.execute(select(Purchase))
        assert purchases.scalars().first() is None

    @pytest.mark.asyncio
    async def test_locked_period_rejected(self, client: AsyncClient, db_session, worker_user):
        await create_period(
            db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), status=PeriodStatus.LOCKED
        )

        response = await client.post(
            "/api/v1/purchases", json=purchase_body("2024-01-31"), headers=auth_headers(worker_user)
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_date_in_gap_passes(self, client: AsyncClient, db_session, worker_user):
        await create_period(
            db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), status=PeriodStatus.CLOSED
        )

        response = await client.post(
            "/api/v1/purchases", json=purchase_body("2024-02-10"), headers=auth_headers(worker_user)
        )

        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_admin_bypass_is_audited(self, client: AsyncClient, db_session, admin_user):
        await create_period(
            db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), status=PeriodStatus.CLOSED
        )

        response = await client.post(
            "/api/v1/purchases", json=purchase_body("2024-01-15"), headers=auth_headers(admin_user)
        )

        assert response.status_code == 201
        result = await db_session.execute(select(AuditLog).where(AuditLog.action == "admin_bypass"))
        entry = result.scalars().one()
        assert entry.user_id == admin_user.id
        assert entry.severity == AuditSeverity.WARNING

    @pytest.mark.asyncio
    async def test_unauthenticated_rejected(self, client: AsyncClient, db_session):
        response = await client.post("/api/v1/purchases", json=purchase_body("2024-01-15"))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_fails_closed_on_internal_error(self, client: AsyncClient, db_session, worker_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31))

        with patch.object(
            PeriodService, "check_periods_status", AsyncMock(side_effect=RuntimeError("db down"))
        ):
            response = await client.post(
                "/api/v1/purchases", json=purchase_body("2024-01-15"), headers=auth_headers(worker_user)
            )

        assert response.status_code == 500
        assert response.json()["error"] == "PERIOD_CHECK_FAILED"
        assert "db down" not in response.text


class TestWarehouseGuard:
    """Warehouse operations resolve their period through the purchase."""

    @pytest.mark.asyncio
    async def test_purchase_in_closed_period_blocks_operation(self, client: AsyncClient, db_session, worker_user):
        await create_period(
            db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), status=PeriodStatus.CLOSED
        )
        purchase = Purchase(
            purchase_number="PUR-20240110-TEST0001",
            purchase_date=date(2024, 1, 10),
            weight_kg=Decimal("100"),
            price_per_kg=Decimal("5"),
            total=Decimal("500.00"),
            currency="USD",
            status=PurchaseStatus.PENDING,
            idempotency_key=uuid4().hex,
        )
        db_session.add(purchase)
        await db_session.commit()

        response = await client.post(
            "/api/v1/warehouse/operations",
            json={"purchaseId": str(purchase.id), "operation": "receive"},
            headers=auth_headers(worker_user),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "PERIOD_CLOSED"

    @pytest.mark.asyncio
    async def test_purchase_in_open_period_is_received(self, client: AsyncClient, db_session, worker_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31))
        purchase = Purchase(
            purchase_number="PUR-20240110-TEST0002",
            purchase_date=date(2024, 1, 10),
            weight_kg=Decimal("100"),
            price_per_kg=Decimal("5"),
            total=Decimal("500.00"),
            currency="USD",
            status=PurchaseStatus.PENDING,
            idempotency_key=uuid4().hex,
        )
        db_session.add(purchase)
        await db_session.commit()

        response = await client.post(
            "/api/v1/warehouse/operations",
            json={"purchaseId": str(purchase.id), "operation": "receive"},
            headers=auth_headers(worker_user),
        )

        assert response.status_code == 201
        assert response.json()["purchase"]["status"] == "received"


# =============================================================================
# GUARD ON A MINIMAL APP
# =============================================================================

@pytest_asyncio.fixture
async def guarded_client(db_session: AsyncSession):
    """An app with one route per guard configuration."""
    guarded = FastAPI()
    setup_exception_handlers(guarded)

    @guarded.post("/generic", dependencies=[Depends(generic_period_guard)])
    async def generic():
        return {"ok": True}

    @guarded.get("/generic", dependencies=[Depends(generic_period_guard)])
    async def generic_read():
        return {"ok": True}

    @guarded.post("/default-fields", dependencies=[Depends(period_guard())])
    async def default_fields():
        return {"ok": True}

    async def override_get_session():
        yield db_session

    guarded.dependency_overrides[get_async_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=guarded), base_url="http://test") as ac:
        yield ac


class TestGuardConfigurations:

    @pytest.mark.asyncio
    async def test_lists_every_closed_period_touched(self, guarded_client, db_session, worker_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), PeriodStatus.CLOSED)
        await create_period(db_session, "2024-02", date(2024, 2, 1), date(2024, 2, 29), PeriodStatus.LOCKED)
        await create_period(db_session, "2024-03", date(2024, 3, 1), date(2024, 3, 31))

        response = await guarded_client.post(
            "/generic",
            json={"date": "2024-01-10", "transactionDate": "2024-02-10", "updatedAt": "2024-03-10"},
            headers=auth_headers(worker_user),
        )

        assert response.status_code == 403
        numbers = sorted(p["periodNumber"] for p in response.json()["closedPeriods"])
        assert numbers == ["2024-01", "2024-02"]

    @pytest.mark.asyncio
    async def test_duplicate_dates_in_one_period_listed_once(self, guarded_client, db_session, worker_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), PeriodStatus.CLOSED)

        response = await guarded_client.post(
            "/generic",
            json={"date": "2024-01-10", "createdAt": "2024-01-20T08:00:00Z"},
            headers=auth_headers(worker_user),
        )

        assert response.status_code == 403
        assert len(response.json()["closedPeriods"]) == 1

    @pytest.mark.asyncio
    async def test_unparseable_field_skipped(self, guarded_client, db_session, worker_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), PeriodStatus.CLOSED)

        response = await guarded_client.post(
            "/generic", json={"date": "someday"}, headers=auth_headers(worker_user)
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_read_requests_not_checked(self, guarded_client, db_session):
        response = await guarded_client.get("/generic")

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_default_fields_include_entry_date(self, guarded_client, db_session, admin_user):
        await create_period(db_session, "2024-01", date(2024, 1, 1), date(2024, 1, 31), PeriodStatus.CLOSED)

        # No bypass configured on this route, so admins are checked too
        response = await guarded_client.post(
            "/default-fields", json={"entryDate": "2024-01-05"}, headers=auth_headers(admin_user)
        )

        assert response.status_code == 403
