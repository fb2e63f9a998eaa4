"""
Test fixtures and configuration for pytest.
"""

import os
import sys
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from db.database import Base, build_engine, build_session_factory
from db.unit_of_work import UnitOfWork
from services.authenticator import Authenticator
from services.passwords import Argon2PasswordHasher
from services.social_auth import SocialUserInfo
from services.tokens import TokenService

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

TEST_SECRET_KEY = "test-secret-key-for-unit-tests-0123456789abcdefghijklmnop"


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh schema for each test and drop it afterwards."""
    # Import models to register them
    from models import refresh_token, social_login, user  # noqa: F401

    test_engine = build_engine(TEST_DATABASE_URL)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def uow(session_factory) -> AsyncGenerator[UnitOfWork, None]:
    async with UnitOfWork(session_factory()) as unit:
        yield unit


# ============== Service Fixtures ==============


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SECRET_KEY=TEST_SECRET_KEY,
        DATABASE_URL=TEST_DATABASE_URL,
        OAUTH_GOOGLE_CLIENT_ID="google-client",
        OAUTH_GOOGLE_CLIENT_SECRET="google-secret",
        OAUTH_GITHUB_CLIENT_ID="github-client",
        OAUTH_GITHUB_CLIENT_SECRET="github-secret",
        OAUTH_MICROSOFT_CLIENT_ID="microsoft-client",
        OAUTH_MICROSOFT_CLIENT_SECRET="microsoft-secret",
        _env_file=None,
    )


@pytest.fixture
def tokens(settings) -> TokenService:
    return TokenService(settings)


@pytest.fixture(scope="session")
def passwords() -> Argon2PasswordHasher:
    """Argon2id with minimal cost so tests stay fast."""
    return Argon2PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class FakeIdentityNormalizer:
    """Returns canned identities keyed by authorization code."""

    def __init__(self):
        self.identities: dict[str, SocialUserInfo] = {}
        self.calls: list[tuple[str, str, str]] = []

    def add(self, code: str, info: SocialUserInfo) -> None:
        self.identities[code] = info

    async def get_user_info(
        self, provider: str, code: str, redirect_uri: str
    ) -> Optional[SocialUserInfo]:
        self.calls.append((provider, code, redirect_uri))
        return self.identities.get(code)


@pytest.fixture
def identity_normalizer() -> FakeIdentityNormalizer:
    return FakeIdentityNormalizer()


@pytest_asyncio.fixture(scope="function")
async def make_authenticator(session_factory, tokens, passwords, identity_normalizer, settings):
    """Factory for Authenticators, each over its own session and UnitOfWork."""
    opened: list[UnitOfWork] = []

    def factory() -> Authenticator:
        unit = UnitOfWork(session_factory())
        opened.append(unit)
        return Authenticator(unit, tokens, passwords, identity_normalizer, settings)

    yield factory

    for unit in opened:
        await unit.close()


@pytest.fixture
def authenticator(make_authenticator) -> Authenticator:
    return make_authenticator()
