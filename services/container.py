"""
Composition root.

Every dependency of the authentication flows is wired here explicitly.
Long-lived pieces (engine, token service, hasher, OAuth client) are built
once; each request gets its own session, UnitOfWork and Authenticator from
``request_scope()``.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config import Settings, get_settings
from db.database import build_engine, build_session_factory
from db.unit_of_work import UnitOfWork
from services.authenticator import Authenticator
from services.passwords import Argon2PasswordHasher, PasswordHasher
from services.social_auth import IdentityNormalizer, SocialAuthService
from services.tokens import TokenService


@dataclass
class AuthContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    tokens: TokenService
    passwords: PasswordHasher
    identity_normalizer: IdentityNormalizer

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        async with UnitOfWork(self.session_factory()) as uow:
            yield uow

    @asynccontextmanager
    async def request_scope(self) -> AsyncIterator[Authenticator]:
        """Yield an Authenticator over a fresh session; closed on exit."""
        async with self.unit_of_work() as uow:
            yield Authenticator(
                uow,
                self.tokens,
                self.passwords,
                self.identity_normalizer,
                self.settings,
            )

    async def dispose(self) -> None:
        await self.engine.dispose()


def build_container(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
    passwords: Optional[PasswordHasher] = None,
    identity_normalizer: Optional[IdentityNormalizer] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AuthContainer:
    settings = settings or get_settings()
    engine = engine or build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

    return AuthContainer(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        tokens=TokenService(settings),
        passwords=passwords or Argon2PasswordHasher(),
        identity_normalizer=identity_normalizer
        or SocialAuthService(settings, transport=transport),
    )
