"""
Tests for central configuration changes behind the admin approval gate
"""

from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from workflu.config import get_settings
from workflu.models.approval import PendingApproval
from workflu.models.audit import AuditLog, AuditSeverity
from workflu.models.notification import NotificationQueue
from workflu.services.configuration_service import EXCHANGE_RATE_KEY, ConfigurationService

from conftest import auth_headers, set_exchange_rate


RATE_URL = f"/api/v1/settings/{EXCHANGE_RATE_KEY}"


async def current_rate(db) -> Decimal:
    return await ConfigurationService(db, get_settings()).get_central_exchange_rate()


class TestAdminChanges:

    @pytest.mark.asyncio
    async def test_admin_applies_directly(self, client: AsyncClient, db_session, admin_user):
        response = await client.put(
            RATE_URL, json={"value": "130", "category": "finance"}, headers=auth_headers(admin_user)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["operationType"] == "system_setting_change"
        assert data["entityType"] == "system_setting"
        assert data["entityNumber"] == EXCHANGE_RATE_KEY
        assert data["data"]["value"] == "130"
        assert await current_rate(db_session) == Decimal("130")

        audit = await db_session.execute(select(AuditLog).where(AuditLog.action == "admin_override"))
        entry = audit.scalars().one()
        assert entry.severity == AuditSeverity.WARNING
        assert entry.operation_type == "system_setting_change"

    @pytest.mark.asyncio
    async def test_path_key_wins_over_body(self, client: AsyncClient, db_session, admin_user):
        response = await client.put(
            RATE_URL, json={"key": "OTHER_KEY", "value": "125"}, headers=auth_headers(admin_user)
        )

        assert response.json()["entityNumber"] == EXCHANGE_RATE_KEY
        assert await current_rate(db_session) == Decimal("125")

    @pytest.mark.asyncio
    async def test_invalid_key(self, client: AsyncClient, db_session, admin_user):
        response = await client.put(
            "/api/v1/settings/usd_rate", json={"value": "1"}, headers=auth_headers(admin_user)
        )

        assert response.status_code == 422
        fields = [e["field"] for e in response.json()["details"]["errors"]]
        assert "body.key" in fields


class TestFinanceChanges:

    @pytest.mark.asyncio
    async def test_finance_change_needs_approval(
        self, client: AsyncClient, db_session, admin_user, finance_user
    ):
        await set_exchange_rate(db_session, "100")

        response = await client.put(RATE_URL, json={"value": "140"}, headers=auth_headers(finance_user))

        assert response.status_code == 202
        data = response.json()
        assert data["approvalRequired"] is True
        assert data["operationType"] == "system_setting_change"
        assert data["amount"] is None
        assert data["priority"] == "high"
        assert await current_rate(db_session) == Decimal("100")

        alert = await db_session.execute(
            select(NotificationQueue).where(NotificationQueue.user_id == admin_user.id)
        )
        assert alert.scalars().one().message == "Hana Tester requested system_setting_change."

        decided = await client.post(
            f"/api/v1/approvals/{data['approvalRequestId']}/decision",
            json={"decision": "approve"},
            headers=auth_headers(admin_user),
        )

        assert decided.status_code == 200
        assert decided.json()["executionResult"]["entityNumber"] == EXCHANGE_RATE_KEY
        assert await current_rate(db_session) == Decimal("140")

    @pytest.mark.asyncio
    async def test_replay_does_not_reapply(self, client: AsyncClient, db_session, admin_user, finance_user):
        submitted = await client.put(RATE_URL, json={"value": "140"}, headers=auth_headers(finance_user))
        approval_id = submitted.json()["approvalRequestId"]
        await client.post(
            f"/api/v1/approvals/{approval_id}/decision",
            json={"decision": "approve"},
            headers=auth_headers(admin_user),
        )
        # A later direct change must survive a replay of the older approval
        await client.put(RATE_URL, json={"value": "150"}, headers=auth_headers(admin_user))

        replay = await client.post(f"/api/v1/approvals/{approval_id}/replay", headers=auth_headers(admin_user))

        assert replay.status_code == 200
        approval = await db_session.get(PendingApproval, UUID(approval_id))
        assert approval.executed_at is not None
        assert await current_rate(db_session) == Decimal("150")

    @pytest.mark.asyncio
    async def test_older_request_keeps_newer_value(self, client: AsyncClient, db_session, admin_user, finance_user):
        await set_exchange_rate(db_session, "100")
        submitted = await client.put(RATE_URL, json={"value": "140"}, headers=auth_headers(finance_user))
        approval_id = submitted.json()["approvalRequestId"]
        await client.put(RATE_URL, json={"value": "150"}, headers=auth_headers(admin_user))

        decided = await client.post(
            f"/api/v1/approvals/{approval_id}/decision",
            json={"decision": "approve"},
            headers=auth_headers(admin_user),
        )

        assert decided.status_code == 200
        assert decided.json()["executedAt"] is not None
        assert decided.json()["executionError"] is None
        assert await current_rate(db_session) == Decimal("150")

    @pytest.mark.asyncio
    async def test_worker_rejected_before_gate(self, client: AsyncClient, db_session, worker_user):
        response = await client.put(RATE_URL, json={"value": "1"}, headers=auth_headers(worker_user))

        assert response.status_code == 403
        count = await db_session.execute(select(func.count()).select_from(PendingApproval))
        assert count.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_list_settings(self, client: AsyncClient, db_session, finance_user):
        await set_exchange_rate(db_session, "100")

        response = await client.get("/api/v1/settings?category=finance", headers=auth_headers(finance_user))

        assert response.status_code == 200
        assert [(s["key"], s["value"]) for s in response.json()] == [(EXCHANGE_RATE_KEY, "100")]
