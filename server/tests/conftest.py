"""
Shared fixtures for the signing engine test suite.
"""

from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from esign_engine import models  # noqa: F401
from esign_engine.core import clock
from esign_engine.core.config import Settings, clear_settings_cache
from esign_engine.db.base import Base
from esign_engine.models.template import ContractTemplate
from esign_engine.schemas.common import Actor
from esign_engine.services.signing_service import IssuedContract, initiate_contract

from .factories import START, FrozenClock, create_active_template, initiate_payload

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setenv("ESIGN_SECRET_KEY", "test-secret-key-0123456789")
    monkeypatch.setenv("ESIGN_FRONTEND_URL", "https://sign.example.com")
    monkeypatch.setenv("ESIGN_REDIS_URL", "")
    monkeypatch.setenv("ESIGN_DEFAULT_PROVIDER", "native")
    monkeypatch.setenv("ESIGN_GEOLOCATION_URL", "")
    monkeypatch.setenv("ESIGN_TRUSTED_PROXIES", "[]")
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def frozen_clock(monkeypatch) -> FrozenClock:
    frozen = FrozenClock(START)
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def actor() -> Actor:
    return Actor(id="admin-1", name="Ada Admin")


@pytest_asyncio.fixture
async def active_template(session, actor, frozen_clock) -> ContractTemplate:
    return await create_active_template(session, actor)


@pytest_asyncio.fixture
async def draft_contract(session, actor, active_template) -> IssuedContract:
    return await initiate_contract(session, initiate_payload(active_template.id), actor)
