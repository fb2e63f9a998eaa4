"""
Unit of Work over one AsyncSession.

One instance per request; never shared between concurrent flows.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import RefreshTokenRepository, SocialLoginRepository, UserRepository
from services.errors import StoreUnavailableError, TransactionStateError

logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    Groups repository changes into atomic writes.

    ``complete()`` writes everything pending: it commits when no explicit
    transaction is open, and flushes into the open transaction otherwise.
    ``begin_transaction`` / ``commit_transaction`` / ``rollback_transaction``
    give multi-step flows a single all-or-nothing boundary.

    Any failure while writing rolls the session back before the error
    propagates. Unique-constraint violations propagate as ``IntegrityError``;
    other database errors become ``StoreUnavailableError``.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._transaction_open = False
        self._users: Optional[UserRepository] = None
        self._refresh_tokens: Optional[RefreshTokenRepository] = None
        self._social_logins: Optional[SocialLoginRepository] = None

    @property
    def users(self) -> UserRepository:
        if self._users is None:
            self._users = UserRepository(self.session)
        return self._users

    @property
    def refresh_tokens(self) -> RefreshTokenRepository:
        if self._refresh_tokens is None:
            self._refresh_tokens = RefreshTokenRepository(self.session)
        return self._refresh_tokens

    @property
    def social_logins(self) -> SocialLoginRepository:
        if self._social_logins is None:
            self._social_logins = SocialLoginRepository(self.session)
        return self._social_logins

    @property
    def in_transaction(self) -> bool:
        return self._transaction_open

    async def complete(self) -> int:
        """Persist pending changes; return how many objects were written."""
        pending = len(self.session.new) + len(self.session.dirty) + len(self.session.deleted)
        try:
            if self._transaction_open:
                await self.session.flush()
            else:
                await self._shielded_commit()
        except BaseException as e:
            await self.discard()
            raise self._translate(e)
        return pending

    async def begin_transaction(self) -> None:
        if self._transaction_open:
            raise TransactionStateError("Transaction already started")
        try:
            # Reads may already have auto-begun the session transaction; adopt it
            if not self.session.in_transaction():
                await self.session.begin()
        except DBAPIError as e:
            raise self._translate(e)
        self._transaction_open = True

    async def commit_transaction(self) -> None:
        if not self._transaction_open:
            raise TransactionStateError("No active transaction to commit")
        try:
            await self._shielded_commit()
        except BaseException as e:
            await self.discard()
            raise self._translate(e)
        finally:
            self._transaction_open = False

    async def rollback_transaction(self) -> None:
        if not self._transaction_open:
            raise TransactionStateError("No active transaction to rollback")
        try:
            await self.session.rollback()
        except DBAPIError as e:
            raise self._translate(e)
        finally:
            self._transaction_open = False

    @asynccontextmanager
    async def transaction(self):
        """Begin, then commit on success or roll back on any exception."""
        await self.begin_transaction()
        try:
            yield self
        except BaseException:
            if self._transaction_open:
                await self.rollback_transaction()
            raise
        await self.commit_transaction()

    async def _shielded_commit(self) -> None:
        # Once a commit is under way, cancelling the caller must not abandon it
        # halfway; wait for it to finish, then let the cancellation through.
        commit = asyncio.ensure_future(self.session.commit())
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            if not commit.done():
                await commit
            raise

    async def discard(self) -> None:
        """Roll back whatever the session holds, explicit transaction or not."""
        self._transaction_open = False
        try:
            await self.session.rollback()
        except DBAPIError as e:
            logger.error(f"Rollback after failed write also failed: {e}")

    @staticmethod
    def _translate(error: BaseException) -> BaseException:
        if isinstance(error, (IntegrityError, asyncio.CancelledError)):
            return error
        if isinstance(error, DBAPIError):
            logger.error(f"Store unavailable: {error.__class__.__name__}")
            store_error = StoreUnavailableError("The session store is unavailable")
            store_error.__cause__ = error
            return store_error
        return error

    async def close(self) -> None:
        if self._transaction_open:
            await self.rollback_transaction()
        await self.session.close()

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
