"""
Tests for scheduled business rule checks
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from workflu.models.base import utcnow
from workflu.models.business import CapitalEntry, CapitalEntryType
from workflu.models.notification import (
    NotificationPriority,
    NotificationQueue,
    NotificationStatus,
)
from workflu.services.alert_monitoring_service import MonitoringStats, capital_alert_priority

from conftest import auth_headers


async def add_capital(db, amount: str, entry_type: CapitalEntryType = CapitalEntryType.CAPITAL_IN,
                      currency: str = "USD", exchange_rate: str = None) -> CapitalEntry:
    entry = CapitalEntry(
        entry_number=f"CAP-{uuid4().hex[:8]}",
        entry_date=date(2024, 1, 10),
        amount=Decimal(amount),
        currency=currency,
        exchange_rate=Decimal(exchange_rate) if exchange_rate else None,
        type=entry_type,
        idempotency_key=uuid4().hex,
    )
    db.add(entry)
    await db.commit()
    return entry


async def capital_alerts(db):
    result = await db.execute(
        select(NotificationQueue).where(NotificationQueue.alert_category == "capital_threshold")
    )
    return list(result.scalars().all())


@pytest.mark.parametrize(
    "balance,expected",
    [
        ("9999.99", NotificationPriority.CRITICAL),
        ("10000", NotificationPriority.HIGH),
        ("24999", NotificationPriority.HIGH),
        ("25000", NotificationPriority.MEDIUM),
        ("49999", NotificationPriority.MEDIUM),
        ("50000", None),
        ("-100", NotificationPriority.CRITICAL),
    ],
)
def test_capital_alert_priority(balance, expected):
    assert capital_alert_priority(Decimal(balance), Decimal("50000")) == expected


class TestCapitalBalanceCheck:

    @pytest.mark.asyncio
    async def test_balance_nets_movements_in_usd(self, db_session, services):
        await add_capital(db_session, "30000")
        await add_capital(db_session, "500000", currency="ETB", exchange_rate="100")
        await add_capital(db_session, "12000", CapitalEntryType.CAPITAL_OUT)

        balance = await services.alert_monitoring_service(db_session).get_capital_balance()

        assert balance == Decimal("23000.00")

    @pytest.mark.asyncio
    async def test_low_balance_alerts_admin_and_finance(
        self, db_session, services, admin_user, finance_user, worker_user
    ):
        await add_capital(db_session, "8000")

        outcome = await services.alert_monitoring_service(db_session).check_capital_balance()

        assert outcome == {"alerts_triggered": 1, "notifications_sent": 2}
        alerts = await capital_alerts(db_session)
        assert {a.user_id for a in alerts} == {admin_user.id, finance_user.id}
        assert all(a.priority == NotificationPriority.CRITICAL for a in alerts)
        assert alerts[0].template_data["currentBalance"] == "8000.00"
        assert alerts[0].template_data["deficit"] == "42000.00"

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_repeat(self, db_session, services, admin_user):
        await add_capital(db_session, "8000")
        monitoring = services.alert_monitoring_service(db_session)

        await monitoring.check_capital_balance()
        repeat = await monitoring.check_capital_balance()
        later = await monitoring.check_capital_balance(now=utcnow() + timedelta(hours=2))

        assert repeat["alerts_triggered"] == 0
        assert later["alerts_triggered"] == 1
        assert len(await capital_alerts(db_session)) == 2

    @pytest.mark.asyncio
    async def test_healthy_balance_is_quiet(self, db_session, services, admin_user):
        await add_capital(db_session, "80000")

        outcome = await services.alert_monitoring_service(db_session).check_capital_balance()

        assert outcome["alerts_triggered"] == 0
        assert await capital_alerts(db_session) == []

    @pytest.mark.asyncio
    async def test_monitoring_check_updates_counters(self, db_session, services, admin_user):
        await add_capital(db_session, "20000")

        totals = await services.alert_monitoring_service(db_session).run_monitoring_check()

        assert totals == {"checks_run": 1, "alerts_triggered": 1, "notifications_sent": 1, "errors": 0}
        assert services.monitoring_stats.alerts_triggered == 1
        assert services.monitoring_stats.last_run is not None


class TestHealthCheck:

    async def _critical_alerts(self, db, user, count: int) -> None:
        for _ in range(count):
            db.add(NotificationQueue(
                user_id=user.id,
                alert_type="threshold_alert",
                alert_category="capital_threshold",
                priority=NotificationPriority.CRITICAL,
                channels=["in_app"],
                title="Low capital",
                message="Low capital",
                status=NotificationStatus.SENT,
                template_data={},
            ))
        await db.commit()

    @pytest.mark.asyncio
    async def test_admins_alerted_above_threshold(self, db_session, services, admin_user, finance_user):
        await self._critical_alerts(db_session, finance_user, 6)

        outcome = await services.alert_monitoring_service(db_session).run_health_check()

        assert outcome == {"critical_alerts": 6, "threshold": 5, "alerted": True}
        result = await db_session.execute(
            select(NotificationQueue).where(NotificationQueue.alert_category == "system_health")
        )
        warning = result.scalars().one()
        assert warning.user_id == admin_user.id
        assert warning.priority == NotificationPriority.HIGH

    @pytest.mark.asyncio
    async def test_at_threshold_is_quiet(self, db_session, services, admin_user, finance_user):
        await self._critical_alerts(db_session, finance_user, 5)

        outcome = await services.alert_monitoring_service(db_session).run_health_check()

        assert outcome["alerted"] is False


class TestMonitoringStats:

    def test_reset_clears_counters(self):
        stats = MonitoringStats(checks_run=4, alerts_triggered=2, notifications_sent=3, errors=1)

        stats.reset()

        assert stats.to_dict()["checks_run"] == 0
        assert stats.to_dict()["errors"] == 0

    @pytest.mark.asyncio
    async def test_stats_endpoint(self, client, db_session, services, admin_user):
        await add_capital(db_session, "5000")
        await services.alert_monitoring_service(db_session).run_monitoring_check()

        response = await client.get("/api/v1/notifications/stats", headers=auth_headers(admin_user))

        assert response.status_code == 200
        body = response.json()
        assert body["delivery"]["total"] == 1
        assert body["monitoring"]["total_alerts_last_24h"] == 1
        assert body["monitoring"]["stats"]["alerts_triggered"] == 1
