from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.models import GatewayServer
from app.services.gateway.fake import FakeGatewayClient
from app.services.gateway.session_cache import SessionCache


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def add_servers(session_factory):
    async def _add(*servers: GatewayServer) -> list[GatewayServer]:
        async with session_factory() as session:
            session.add_all(servers)
            await session.commit()
        return list(servers)

    return _add


@pytest.fixture
def fake_gateway() -> FakeGatewayClient:
    return FakeGatewayClient(session_cache=SessionCache(ttl_seconds=1800), probe_timeout=1, provision_timeout=2)
