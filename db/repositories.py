"""
Repository layer over the async SQLAlchemy session.

Repositories only read and stage changes; nothing is committed here. The
owning UnitOfWork decides when pending changes are flushed or committed.
"""

from datetime import datetime
from typing import Generic, Iterable, Optional, Sequence, Type, TypeVar
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from db.database import Base
from models.base import utcnow
from models.refresh_token import RefreshToken
from models.social_login import SocialLogin
from models.user import User, normalize_email

ModelT = TypeVar("ModelT", bound=Base)

DEFAULT_PAGE_SIZE = 10


class Repository(Generic[ModelT]):
    """Generic CRUD, predicate and paged queries for one mapped model."""

    model: Type[ModelT]

    def __init__(self, session: AsyncSession):
        self.session = session

    def _scoped(self, stmt: Select, include_deleted: bool = False) -> Select:
        """Hook for repositories that hide rows (e.g. soft-deleted users)."""
        return stmt

    async def get_by_id(self, entity_id: UUID, include_deleted: bool = False) -> Optional[ModelT]:
        stmt = self._scoped(
            select(self.model).where(self.model.id == entity_id), include_deleted
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all(self) -> list[ModelT]:
        result = await self.session.execute(self._scoped(select(self.model)))
        return list(result.scalars().all())

    async def find(self, *criteria) -> list[ModelT]:
        result = await self.session.execute(
            self._scoped(select(self.model).where(*criteria))
        )
        return list(result.scalars().all())

    async def first_or_none(self, *criteria) -> Optional[ModelT]:
        result = await self.session.execute(
            self._scoped(select(self.model).where(*criteria)).limit(1)
        )
        return result.scalars().first()

    def add(self, entity: ModelT) -> ModelT:
        self.session.add(entity)
        return entity

    def add_range(self, entities: Iterable[ModelT]) -> None:
        self.session.add_all(list(entities))

    async def remove(self, entity: ModelT) -> None:
        await self.session.delete(entity)

    async def remove_range(self, entities: Iterable[ModelT]) -> None:
        for entity in entities:
            await self.session.delete(entity)

    async def any(self, *criteria) -> bool:
        result = await self.session.execute(
            self._scoped(select(self.model.id).where(*criteria)).limit(1)
        )
        return result.first() is not None

    async def count(self, *criteria) -> int:
        stmt = self._scoped(select(func.count()).select_from(self.model).where(*criteria))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_paged(
        self,
        page_number: int,
        page_size: int,
        *criteria,
        order_by: Sequence = (),
    ) -> tuple[list[ModelT], int]:
        """
        Return one page of matching rows and the total match count.

        page_number < 1 is treated as 1 and page_size < 1 as DEFAULT_PAGE_SIZE.
        """
        if page_number < 1:
            page_number = 1
        if page_size < 1:
            page_size = DEFAULT_PAGE_SIZE

        total = await self.count(*criteria)

        stmt = self._scoped(select(self.model).where(*criteria))
        if order_by:
            stmt = stmt.order_by(*order_by)
        else:
            stmt = stmt.order_by(self.model.created_at, self.model.id)
        stmt = stmt.offset((page_number - 1) * page_size).limit(page_size)

        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total


class UserRepository(Repository[User]):
    """
    Users with explicit soft-delete filtering.

    Every query excludes ``is_deleted`` rows unless ``include_deleted`` is
    passed where the method offers it.
    """

    model = User

    def _scoped(self, stmt: Select, include_deleted: bool = False) -> Select:
        if include_deleted:
            return stmt
        return stmt.where(User.is_deleted == False)  # noqa: E712

    async def get_by_email(self, email: str, include_deleted: bool = False) -> Optional[User]:
        stmt = self._scoped(
            select(User).where(User.email == normalize_email(email)), include_deleted
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_username(self, username: str, include_deleted: bool = False) -> Optional[User]:
        stmt = self._scoped(select(User).where(User.username == username), include_deleted)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def is_email_taken(self, email: str) -> bool:
        # Soft-deleted rows still hold the unique index
        stmt = select(User.id).where(User.email == normalize_email(email)).limit(1)
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def is_username_taken(self, username: str) -> bool:
        stmt = select(User.id).where(User.username == username).limit(1)
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def get_by_social_login(self, provider: str, provider_key: str) -> Optional[User]:
        stmt = self._scoped(
            select(User)
            .join(SocialLogin, SocialLogin.user_id == User.id)
            .where(
                and_(
                    SocialLogin.provider == provider,
                    SocialLogin.provider_key == provider_key,
                )
            )
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def soft_delete(self, user: User, deleted_by: Optional[str] = None) -> None:
        user.is_deleted = True
        user.is_active = False
        user.deleted_at = utcnow()
        user.updated_by = deleted_by


class RefreshTokenRepository(Repository[RefreshToken]):
    model = RefreshToken

    async def get_by_token_with_user(self, token: str) -> Optional[tuple[RefreshToken, User]]:
        """Look up a refresh token by secret together with its (non-deleted) owner."""
        stmt = (
            select(RefreshToken, User)
            .join(User, User.id == RefreshToken.user_id)
            .where(
                and_(
                    RefreshToken.token == token,
                    User.is_deleted == False,  # noqa: E712
                )
            )
        )
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def get_active_by_user_id(self, user_id: UUID) -> list[RefreshToken]:
        stmt = (
            select(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_revoked == False,  # noqa: E712
                    RefreshToken.expires_at > utcnow(),
                )
            )
            .order_by(RefreshToken.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def revoke_if_active(
        self,
        token: str,
        revoked_by_ip: Optional[str],
        replaced_by_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Revoke one token only if it is still active.

        This is a single conditional UPDATE, so of several concurrent callers
        presenting the same secret at most one sees True.
        """
        now = now or utcnow()
        revoked_ids = await self._revoke_where(
            and_(
                RefreshToken.token == token,
                RefreshToken.is_revoked == False,  # noqa: E712
                RefreshToken.expires_at > now,
            ),
            now,
            revoked_by_ip,
            replaced_by_token,
        )
        return len(revoked_ids) == 1

    async def revoke_all_for_user(self, user_id: UUID, revoked_by_ip: Optional[str]) -> int:
        """Revoke every active token of a user in one statement; return the count."""
        now = utcnow()
        revoked_ids = await self._revoke_where(
            and_(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked == False,  # noqa: E712
                RefreshToken.expires_at > now,
            ),
            now,
            revoked_by_ip,
        )
        return len(revoked_ids)

    async def _revoke_where(
        self,
        condition,
        now: datetime,
        revoked_by_ip: Optional[str],
        replaced_by_token: Optional[str] = None,
    ) -> list[UUID]:
        values = {
            "is_revoked": True,
            "revoked_at": now,
            "revoked_by_ip": revoked_by_ip[:45] if revoked_by_ip else None,
        }
        if replaced_by_token is not None:
            values["replaced_by_token"] = replaced_by_token

        result = await self.session.execute(
            update(RefreshToken)
            .where(condition)
            .values(**values)
            .returning(RefreshToken.id)
            .execution_options(synchronize_session=False)
        )
        revoked_ids = list(result.scalars().all())
        await self._refresh_tracked(revoked_ids)
        return revoked_ids

    async def _refresh_tracked(self, token_ids: list[UUID]) -> None:
        # Bulk UPDATE bypasses the identity map; re-read rows this session holds
        if not token_ids:
            return
        wanted = set(token_ids)
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, RefreshToken) and obj.id in wanted:
                await self.session.refresh(obj)

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        result = await self.session.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at < (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class SocialLoginRepository(Repository[SocialLogin]):
    model = SocialLogin

    async def get_by_provider_key(self, provider: str, provider_key: str) -> Optional[SocialLogin]:
        return await self.first_or_none(
            SocialLogin.provider == provider,
            SocialLogin.provider_key == provider_key,
        )

    async def get_for_user_and_provider(self, user_id: UUID, provider: str) -> Optional[SocialLogin]:
        return await self.first_or_none(
            SocialLogin.user_id == user_id,
            SocialLogin.provider == provider,
        )

    async def list_providers_for_user(self, user_id: UUID) -> list[str]:
        result = await self.session.execute(
            select(SocialLogin.provider)
            .where(SocialLogin.user_id == user_id)
            .order_by(SocialLogin.provider)
        )
        return list(result.scalars().all())
