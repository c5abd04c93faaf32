"""
WorkFlu - Test Configuration

Pytest fixtures and configuration.

Every test gets a fresh in-memory SQLite database, a service container wired
to it and an HTTP client bound to the FastAPI app.
"""

import os

# Settings are read at import time; point them at the test database first
os.environ["DATABASE_URL_ASYNC"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ["APP_ENV"] = "testing"
os.environ["DEBUG"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SMS_GATEWAY_URL"] = ""

from datetime import date, datetime
from typing import AsyncGenerator, Dict
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import workflu.models  # noqa: F401  (registers every table)
from workflu.config import get_settings
from workflu.container import ServiceContainer
from workflu.database import Base, get_async_session
from workflu.models.accounting import AccountingPeriod, PeriodStatus
from workflu.models.notification import NotificationSetting
from workflu.models.user import User, UserRole
from workflu.services.configuration_service import EXCHANGE_RATE_KEY, ConfigurationService
from workflu.services.sms_service import SmsService
from workflu.utils.security import create_access_token
from main import app


test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def email_transport() -> MagicMock:
    """Mail transport double; send_email returns a message id."""
    transport = MagicMock()
    transport.provider = "mock"
    transport.send_email = AsyncMock(return_value="mock-message-id")
    return transport


@pytest.fixture
def services(db_session: AsyncSession, email_transport: MagicMock) -> ServiceContainer:
    """Service container bound to the test database."""
    settings = get_settings()
    return ServiceContainer(
        settings=settings,
        session_factory=TestSessionLocal,
        email_service=email_transport,
        sms_service=SmsService(settings),
    )


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, services: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await services.scheduler.shutdown()


# ===========================================
# DATA FIXTURES
# ===========================================

async def _create_user(db: AsyncSession, role: UserRole, email: str, first_name: str) -> User:
    user = User(id=uuid4(), email=email, first_name=first_name, last_name="Tester", role=role, is_active=True)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, UserRole.ADMIN, "admin@workflu.test", "Abebe")


@pytest_asyncio.fixture
async def finance_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, UserRole.FINANCE, "finance@workflu.test", "Hana")


@pytest_asyncio.fixture
async def worker_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, UserRole.WORKER, "worker@workflu.test", "Dawit")


def auth_headers(user: User) -> Dict[str, str]:
    """Bearer header for a user."""
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


async def create_period(
    db: AsyncSession,
    period_number: str,
    start: date,
    end: date,
    status: PeriodStatus = PeriodStatus.OPEN,
) -> AccountingPeriod:
    period = AccountingPeriod(
        period_number=period_number,
        start_date=start,
        end_date=end,
        status=status,
    )
    if status in (PeriodStatus.CLOSED, PeriodStatus.LOCKED):
        period.closed_at = datetime(end.year, end.month, end.day, 18, 0)
    db.add(period)
    await db.commit()
    await db.refresh(period)
    return period


async def set_exchange_rate(db: AsyncSession, rate: str) -> None:
    await ConfigurationService(db, get_settings()).set_system_setting(EXCHANGE_RATE_KEY, rate, category="finance")
    await db.commit()


async def set_notification_settings(db: AsyncSession, user: User, **fields) -> NotificationSetting:
    setting = NotificationSetting(user_id=user.id, **fields)
    db.add(setting)
    await db.commit()
    await db.refresh(setting)
    return setting
