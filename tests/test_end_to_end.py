"""
End-to-end flows through the HTTP API

Period lifecycle, a purchase passing the period guard and the approval gate,
the same period closed afterwards, and a critical alert delivered in-app only.
"""

from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from workflu.models.audit import AuditLog
from workflu.models.business import CapitalEntry, CapitalEntryType, Purchase
from workflu.models.notification import NotificationPriority, NotificationQueue, NotificationStatus

from conftest import auth_headers, set_notification_settings


async def purchase_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(Purchase))
    return result.scalar_one()


async def open_period(client: AsyncClient, user, number: str, start: str, end: str):
    return await client.post(
        "/api/v1/periods",
        json={"periodNumber": number, "startDate": start, "endDate": end},
        headers=auth_headers(user),
    )


class TestHealth:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/health", "/api/v1/health"])
    async def test_health(self, client: AsyncClient, db_session, path):
        response = await client.get(path)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert data["scheduler"]["initialized"] is False


# =============================================================================
# PERIOD LIFECYCLE
# =============================================================================

class TestPeriodLifecycle:

    @pytest.mark.asyncio
    async def test_open_close_lock(self, client: AsyncClient, db_session, finance_user, admin_user):
        created = await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")
        assert created.status_code == 201
        period = created.json()
        assert period["status"] == "open"
        assert period["closedAt"] is None

        closed = await client.post(f"/api/v1/periods/{period['id']}/close", headers=auth_headers(finance_user))
        assert closed.status_code == 200
        assert closed.json()["status"] == "closed"
        assert closed.json()["closedBy"] == str(finance_user.id)
        assert closed.json()["closedAt"] is not None

        locked = await client.post(f"/api/v1/periods/{period['id']}/lock", headers=auth_headers(admin_user))
        assert locked.status_code == 200
        assert locked.json()["status"] == "locked"

        listing = await client.get("/api/v1/periods", headers=auth_headers(finance_user))
        assert [p["periodNumber"] for p in listing.json()] == ["2024-01"]

    @pytest.mark.asyncio
    async def test_overlapping_period_rejected(self, client: AsyncClient, db_session, finance_user):
        await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")

        response = await open_period(client, finance_user, "2024-01b", "2024-01-31", "2024-02-29")

        assert response.status_code == 409
        assert response.json()["error"] == "PERIOD_OVERLAP"

    @pytest.mark.asyncio
    async def test_adjacent_period_allowed(self, client: AsyncClient, db_session, finance_user):
        await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")

        response = await open_period(client, finance_user, "2024-02", "2024-02-01", "2024-02-29")

        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, client: AsyncClient, db_session, finance_user):
        response = await open_period(client, finance_user, "2024-03", "2024-03-31", "2024-03-01")

        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_DATE_RANGE"

    @pytest.mark.asyncio
    async def test_open_period_cannot_be_locked(self, client: AsyncClient, db_session, finance_user, admin_user):
        created = await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")

        response = await client.post(
            f"/api/v1/periods/{created.json()['id']}/lock", headers=auth_headers(admin_user)
        )

        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_PERIOD_TRANSITION"

    @pytest.mark.asyncio
    async def test_worker_cannot_open_periods(self, client: AsyncClient, db_session, worker_user):
        response = await open_period(client, worker_user, "2024-01", "2024-01-01", "2024-01-31")

        assert response.status_code == 403


# =============================================================================
# PURCHASE FLOW
# =============================================================================

class TestPurchaseFlow:

    @pytest.mark.asyncio
    async def test_approved_purchase_then_closed_period(
        self, client: AsyncClient, db_session, worker_user, finance_user
    ):
        period = (await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")).json()

        # Open period: guard passes, the gate defers the large purchase
        submitted = await client.post(
            "/api/v1/purchases",
            json={"date": "2024-01-15", "weightKg": "100", "pricePerKg": "150"},
            headers=auth_headers(worker_user),
        )
        assert submitted.status_code == 202
        assert submitted.json()["status"] == "pending"
        assert await purchase_count(db_session) == 0

        decided = await client.post(
            f"/api/v1/approvals/{submitted.json()['approvalRequestId']}/decision",
            json={"decision": "approve"},
            headers=auth_headers(finance_user),
        )
        assert decided.status_code == 200
        assert await purchase_count(db_session) == 1

        # Closed period: the next purchase is rejected before anything else runs
        await client.post(f"/api/v1/periods/{period['id']}/close", headers=auth_headers(finance_user))
        rejected = await client.post(
            "/api/v1/purchases",
            json={"date": "2024-01-20", "weightKg": "10", "pricePerKg": "5"},
            headers=auth_headers(worker_user),
        )

        assert rejected.status_code == 403
        body = rejected.json()
        assert body["error"] == "PERIOD_CLOSED"
        assert body["message"] == "Operation rejected: Cannot modify data in closed period(s): 2024-01"
        assert [p["periodNumber"] for p in body["closedPeriods"]] == ["2024-01"]
        assert body["closedPeriods"][0]["closedBy"] == str(finance_user.id)
        assert await purchase_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_small_purchase_in_gap(self, client: AsyncClient, db_session, worker_user, finance_user):
        await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")

        response = await client.post(
            "/api/v1/purchases",
            json={"date": "2024-03-05", "weightKg": "10", "pricePerKg": "5"},
            headers=auth_headers(worker_user),
        )

        assert response.status_code == 201
        assert await purchase_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_period_closed_while_awaiting_approval(
        self, client: AsyncClient, db_session, worker_user, finance_user
    ):
        period = (await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")).json()
        submitted = await client.post(
            "/api/v1/purchases",
            json={"date": "2024-01-15", "weightKg": "100", "pricePerKg": "150"},
            headers=auth_headers(worker_user),
        )
        assert submitted.status_code == 202
        approval_id = submitted.json()["approvalRequestId"]

        await client.post(f"/api/v1/periods/{period['id']}/close", headers=auth_headers(finance_user))
        decided = await client.post(
            f"/api/v1/approvals/{approval_id}/decision",
            json={"decision": "approve"},
            headers=auth_headers(finance_user),
        )

        assert decided.status_code == 200
        data = decided.json()
        assert data["status"] == "approved"
        assert data["executedAt"] is None
        assert data["executionError"] == (
            "PERIOD_CLOSED: Operation rejected: Cannot modify data in closed period(s): 2024-01"
        )
        assert await purchase_count(db_session) == 0

        audit = await db_session.execute(select(AuditLog).where(AuditLog.action == "execution_failed"))
        closed = audit.scalars().one().new_values["closedPeriods"]
        assert [p["periodNumber"] for p in closed] == ["2024-01"]

        # Retrying does not get around the closed period either
        retried = await client.post(f"/api/v1/approvals/{approval_id}/replay", headers=auth_headers(finance_user))
        assert retried.json()["executedAt"] is None
        assert await purchase_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_return_of_purchase_in_closed_period_rejected(
        self, client: AsyncClient, db_session, worker_user, finance_user
    ):
        period = (await open_period(client, finance_user, "2024-01", "2024-01-01", "2024-01-31")).json()
        purchase = await client.post(
            "/api/v1/purchases",
            json={"date": "2024-01-15", "weightKg": "10", "pricePerKg": "5"},
            headers=auth_headers(worker_user),
        )
        await client.post(f"/api/v1/periods/{period['id']}/close", headers=auth_headers(finance_user))

        # The return itself is dated in a gap; the purchase it changes is not
        response = await client.post(
            f"/api/v1/purchases/{purchase.json()['entityId']}/return",
            json={"date": "2024-03-05"},
            headers=auth_headers(worker_user),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "PERIOD_CLOSED"
        assert await db_session.scalar(select(func.count()).select_from(CapitalEntry)) == 0


# =============================================================================
# CRITICAL ALERT
# =============================================================================

class TestCriticalAlertDelivery:

    @pytest.mark.asyncio
    async def test_in_app_delivery_stops_the_chain(self, db_session, services, email_transport, admin_user):
        await set_notification_settings(
            db_session, admin_user,
            enable_email=True, email_address="admin@workflu.test",
            enable_sms=True, phone_number="+251911000000",
        )
        db_session.add(CapitalEntry(
            entry_number="CAP-1",
            entry_date=date(2024, 1, 5),
            amount=1000,
            currency="USD",
            type=CapitalEntryType.CAPITAL_IN,
            idempotency_key="cap-1",
        ))
        await db_session.commit()

        with patch.object(services.sms_service, "send_sms", AsyncMock()) as send_sms:
            outcome = await services.alert_monitoring_service(db_session).check_capital_balance()

        assert outcome == {"alerts_triggered": 1, "notifications_sent": 1}
        alert = (await db_session.execute(select(NotificationQueue))).scalars().one()
        assert alert.priority == NotificationPriority.CRITICAL
        assert alert.status == NotificationStatus.SENT
        assert alert.delivered_channel == "in_app"
        assert alert.attempts == 1
        email_transport.send_email.assert_not_called()
        send_sms.assert_not_called()
