"""Pytest configuration and fixtures for tests.

Provides database fixtures for integration tests using an in-memory SQLite
database, and factories for the token grants most tests need.
"""

import os
import tempfile
from datetime import datetime, timezone
from typing import AsyncGenerator

# Set test environment variables BEFORE any dealbridge imports
# This must happen at the top of conftest.py before any other imports
from cryptography.fernet import Fernet
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["QUICKBOOKS_CLIENT_ID"] = "test-client-id"
os.environ["QUICKBOOKS_CLIENT_SECRET"] = "test-client-secret"
os.environ["PIPEDRIVE_API_TOKEN"] = "test-pipedrive-token"
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'dealbridge-test.db')}"
)

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dealbridge.models.base import BaseModel
from dealbridge.services.encryption import EncryptionService
from dealbridge.services.quickbooks_oauth import TokenGrant
from dealbridge.services.token_manager import RealmLocks


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing.

    Each test gets a fresh session with a clean database.
    """
    async_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def encryption_service() -> EncryptionService:
    """EncryptionService with a fresh Fernet key."""
    return EncryptionService(Fernet.generate_key().decode())


@pytest.fixture
def realm_locks() -> RealmLocks:
    """Lock registry private to one test, so no lock outlives its event loop."""
    return RealmLocks()


@pytest.fixture
def make_grant():
    """Factory for TokenGrant objects."""
    def _make(
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        expires_in: int = 3600,
        refresh_expires_in: int = 8_726_400,
    ) -> TokenGrant:
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type="bearer",
            expires_in=expires_in,
            x_refresh_token_expires_in=refresh_expires_in,
        )
    return _make


@pytest.fixture(scope="session", autouse=True)
def cleanup_global_engine():
    """Dispose of the module-level engine after all tests complete.

    Some tests use the engine from dealbridge.core.database, whose
    connection pool must be closed for pytest to exit cleanly.
    """
    yield
    import asyncio
    from dealbridge.core.database import engine as global_engine

    asyncio.run(global_engine.dispose())
