"""Shared fixtures: an in-memory SQLite database per test.

Settings are read at import time, so the environment is prepared before any
clinic_saas module is imported.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_JSON", "false")

from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clinic_saas.core.database import Base, configure_sqlite
from clinic_saas.modules.billing import models as billing_models  # noqa: F401
from clinic_saas.modules.billing.schemas import LineItemCreate
from clinic_saas.modules.billing.service import BillingService
from clinic_saas.modules.tenant.models import Tenant
from clinic_saas.modules.tenant.repository import TenantRepository


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


async def _create_tenant(session_maker, slug: str, name: str) -> Tenant:
    # Own session so rollbacks in the test session never expire the tenant
    async with session_maker() as tenant_session:
        tenant = await TenantRepository(tenant_session).create(slug=slug, name=name)
        await tenant_session.commit()
    return tenant


@pytest_asyncio.fixture
async def tenant(session_maker) -> Tenant:
    return await _create_tenant(session_maker, "acme", "Acme Clinic")


@pytest_asyncio.fixture
async def other_tenant(session_maker) -> Tenant:
    return await _create_tenant(session_maker, "globex", "Globex Health")


@pytest_asyncio.fixture
async def service(session) -> BillingService:
    service = BillingService(session)
    (await service.catalog.seed_default_plans()).unwrap()
    return service


@pytest.fixture
def consultation_lines() -> list[LineItemCreate]:
    """Two consultations at 50.00 with 10% tax: total 110.00."""
    return [
        LineItemCreate(
            type="consultation",
            description="General consultation",
            quantity=Decimal("2"),
            unit_price=Decimal("50.00"),
            tax_rate=Decimal("0.10"),
        )
    ]
