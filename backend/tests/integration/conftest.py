# tests/integration/conftest.py
"""Integration test fixtures - real Postgres, rolled back after each test.

Set TEST_DATABASE_URL (postgresql+asyncpg://...) to run; skipped otherwise.
"""

import os

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from app.database import Base
from app.models import Client, Lead, UnipileAccount

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest_asyncio.fixture
async def db_session():
    """Session inside an outer transaction; service commits only release savepoints."""
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")

    engine = create_async_engine(TEST_DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as connection:
        transaction = await connection.begin()
        session = AsyncSession(
            bind=connection,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )
        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()

    await engine.dispose()


@pytest_asyncio.fixture
async def real_client(db_session):
    client = Client(name="Integration Test Company", plan="full", subscription_status="active")
    db_session.add(client)
    await db_session.flush()
    return client


@pytest_asyncio.fixture
async def real_account(db_session, real_client):
    account = UnipileAccount(client_id=real_client.id, unipile_account_id="it-acc-1", status="connected")
    db_session.add(account)
    await db_session.flush()
    return account


@pytest_asyncio.fixture
async def real_lead(db_session, real_client):
    lead = Lead(
        client_id=real_client.id,
        first_name="Jane",
        last_name="Doe",
        linkedin_url="https://www.linkedin.com/in/jane-doe/",
    )
    db_session.add(lead)
    await db_session.flush()
    return lead
