"""
Authentication flows: register, login, social login, refresh rotation and
revocation.

Every flow returns a ``Result``; expected failures (bad credentials, unknown
or reused tokens, duplicate accounts) are failure results, never exceptions.
Only infrastructure problems escape: ``StoreUnavailableError`` when the
database cannot be reached and ``asyncio.TimeoutError`` when a flow outlives
its deadline.
"""

import asyncio
import json
import logging
import re
import secrets
from typing import Any, Awaitable, Optional
from uuid import UUID

from sqlalchemy.exc import DBAPIError, IntegrityError

from config import Settings, get_settings
from db.unit_of_work import UnitOfWork
from models.refresh_token import RefreshToken
from models.social_login import SocialLogin
from models.user import User, normalize_email
from schemas.auth import AuthResponse, RevokeResponse, UserSummary
from services.errors import ErrorCode, InvalidTokenError, StoreUnavailableError
from services.passwords import PasswordHasher
from services.results import Result
from services.social_auth import IdentityNormalizer, SocialUserInfo
from services.tokens import AccessToken, TokenService

logger = logging.getLogger(__name__)

USERNAME_MAX_LENGTH = 50
_USERNAME_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class _FlowFailure(Exception):
    """Raised inside a transaction to roll it back and return ``result``."""

    def __init__(self, result: Result):
        super().__init__(result.error)
        self.result = result


def _mask(secret: str) -> str:
    return f"{secret[:6]}..." if secret else "<empty>"


class Authenticator:
    """
    Orchestrates the authentication flows over one unit of work.

    An instance is bound to a single UnitOfWork and so to a single request;
    create a new one (see ``services.container``) for each caller.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        tokens: TokenService,
        passwords: PasswordHasher,
        identity_normalizer: IdentityNormalizer,
        settings: Optional[Settings] = None,
    ):
        self.uow = uow
        self.tokens = tokens
        self.passwords = passwords
        self.identity_normalizer = identity_normalizer
        self.settings = settings or get_settings()

    # ============ Flow plumbing ============

    async def _run(self, flow: str, operation: Awaitable[Any], timeout: Optional[float]) -> Any:
        deadline = timeout if timeout is not None else self.settings.FLOW_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(operation, deadline)
        except asyncio.TimeoutError:
            logger.error(f"{flow} timed out after {deadline}s")
            await self.uow.discard()
            raise
        except DBAPIError as e:
            # Raised by a read; writes are already translated by the unit of work
            logger.error(f"{flow} failed, store unavailable: {e.__class__.__name__}")
            await self.uow.discard()
            raise StoreUnavailableError("The session store is unavailable") from e

    def _new_refresh_token(self, user: User, ip_address: Optional[str]) -> RefreshToken:
        refresh = self.tokens.issue_refresh_token(ip_address)
        refresh.user_id = user.id
        return self.uow.refresh_tokens.add(refresh)

    async def _build_response(
        self, user: User, access: AccessToken, refresh: RefreshToken
    ) -> AuthResponse:
        providers = await self.uow.social_logins.list_providers_for_user(user.id)
        return AuthResponse(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_at=access.expires_at,
            user=UserSummary(
                id=user.id,
                email=user.email,
                username=user.username,
                first_name=user.first_name or "",
                last_name=user.last_name or "",
                is_email_verified=user.is_email_verified,
                created_at=user.created_at,
                linked_providers=providers,
            ),
        )

    async def _issue_session(self, user: User, ip_address: Optional[str]) -> AuthResponse:
        """Persist a fresh refresh token for ``user`` and sign an access token."""
        async with self.uow.transaction():
            refresh = self._new_refresh_token(user, ip_address)
            access = self.tokens.issue_access_token(user)
            await self.uow.complete()
        return await self._build_response(user, access, refresh)

    # ============ Registration ============

    async def register(
        self,
        email: str,
        password: str,
        username: str,
        first_name: str = "",
        last_name: str = "",
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[AuthResponse]:
        return await self._run(
            "register",
            self._register(email, password, username, first_name, last_name, ip_address),
            timeout,
        )

    async def _register(
        self,
        email: str,
        password: str,
        username: str,
        first_name: str,
        last_name: str,
        ip_address: Optional[str],
    ) -> Result[AuthResponse]:
        email = normalize_email(email or "")
        username = (username or "").strip()
        if not email or not username or not password:
            return Result.failure(
                "Email, username and password are required", ErrorCode.INVALID_CREDENTIALS
            )

        if await self.uow.users.is_email_taken(email):
            logger.info("Registration rejected: email already registered")
            return Result.failure(
                "A user with this email already exists", ErrorCode.USER_ALREADY_EXISTS
            )
        if await self.uow.users.is_username_taken(username):
            logger.info(f"Registration rejected: username {username!r} is taken")
            return Result.failure(
                "A user with this username already exists", ErrorCode.USER_ALREADY_EXISTS
            )

        password_hash = await asyncio.to_thread(self.passwords.hash, password)

        try:
            async with self.uow.transaction():
                user = self.uow.users.add(
                    User(
                        email=email,
                        username=username,
                        password_hash=password_hash,
                        first_name=first_name or "",
                        last_name=last_name or "",
                        is_email_verified=False,
                        is_active=True,
                        created_by="register",
                    )
                )
                await self.uow.complete()
                refresh = self._new_refresh_token(user, ip_address)
                access = self.tokens.issue_access_token(user)
                await self.uow.complete()
        except IntegrityError:
            # Lost a race against a concurrent registration
            logger.info("Registration rejected at commit: duplicate email or username")
            return Result.failure(
                "A user with this email or username already exists",
                ErrorCode.USER_ALREADY_EXISTS,
            )

        logger.info(f"Registered user {user.id}")
        return Result.success(await self._build_response(user, access, refresh))

    # ============ Password login ============

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[AuthResponse]:
        return await self._run("login", self._login(email, password, ip_address), timeout)

    async def _login(
        self, email: str, password: str, ip_address: Optional[str]
    ) -> Result[AuthResponse]:
        invalid = Result.failure("Invalid email or password", ErrorCode.INVALID_CREDENTIALS)

        user = await self.uow.users.get_by_email(email or "")
        if user is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password or "")
            logger.warning(f"Failed login for unknown email from {ip_address}")
            return invalid

        if not user.is_active or not user.has_password:
            await asyncio.to_thread(self.passwords.verify_dummy, password or "")
            logger.warning(f"Failed login for user {user.id}: account cannot use a password")
            return invalid

        if not await asyncio.to_thread(self.passwords.verify, password or "", user.password_hash):
            logger.warning(f"Failed login for user {user.id} from {ip_address}: wrong password")
            return invalid

        response = await self._issue_session(user, ip_address)
        logger.info(f"User {user.id} logged in")
        return Result.success(response)

    # ============ Social login ============

    async def social_login(
        self,
        provider: str,
        code: str,
        redirect_uri: str,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[AuthResponse]:
        return await self._run(
            "social_login",
            self._social_login(provider, code, redirect_uri, ip_address),
            timeout,
        )

    async def _social_login(
        self, provider: str, code: str, redirect_uri: str, ip_address: Optional[str]
    ) -> Result[AuthResponse]:
        info = await self.identity_normalizer.get_user_info(provider, code, redirect_uri)
        if info is None:
            return Result.failure("Social authentication failed", ErrorCode.INVALID_CREDENTIALS)

        try:
            async with self.uow.transaction():
                user = await self._resolve_social_user(info)
                refresh = self._new_refresh_token(user, ip_address)
                access = self.tokens.issue_access_token(user)
                await self.uow.complete()
        except _FlowFailure as failure:
            return failure.result
        except IntegrityError:
            # A concurrent flow linked or created the same identity first
            logger.info(f"Social login for {info.provider} lost a race on account linking")
            return Result.failure(
                "This social account is already linked", ErrorCode.USER_ALREADY_EXISTS
            )

        logger.info(f"User {user.id} logged in with {info.provider}")
        return Result.success(await self._build_response(user, access, refresh))

    async def _resolve_social_user(self, info: SocialUserInfo) -> User:
        """Find the user for a social identity, linking or creating as needed."""
        user = await self.uow.users.get_by_social_login(info.provider, info.id)
        if user is not None:
            self._require_active(user)
            return user

        user = await self.uow.users.get_by_email(info.email)
        if user is not None:
            self._require_active(user)
            if not info.email_verified:
                logger.warning(
                    f"Refused to link unverified {info.provider} email to existing user {user.id}"
                )
                raise _FlowFailure(
                    Result.failure(
                        "An account with this email already exists",
                        ErrorCode.USER_ALREADY_EXISTS,
                    )
                )
            existing = await self.uow.social_logins.get_for_user_and_provider(
                user.id, info.provider
            )
            if existing is not None:
                logger.warning(
                    f"User {user.id} already has a different {info.provider} identity linked"
                )
                raise _FlowFailure(
                    Result.failure(
                        f"Another {info.provider} account is already linked to this user",
                        ErrorCode.USER_ALREADY_EXISTS,
                    )
                )
            self._link(user, info)
            await self.uow.complete()
            logger.info(f"Linked {info.provider} identity to existing user {user.id}")
            return user

        if await self.uow.users.is_email_taken(info.email):
            # Held by a soft-deleted account
            raise _FlowFailure(
                Result.failure("Social authentication failed", ErrorCode.INVALID_CREDENTIALS)
            )

        user = self.uow.users.add(
            User(
                email=normalize_email(info.email),
                username=await self._unique_username(info.email),
                password_hash=None,
                first_name=info.first_name or "",
                last_name=info.last_name or "",
                is_email_verified=info.email_verified,
                is_active=True,
                created_by=f"social:{info.provider}",
            )
        )
        await self.uow.complete()
        self._link(user, info)
        await self.uow.complete()
        logger.info(f"Created user {user.id} from {info.provider} identity")
        return user

    @staticmethod
    def _require_active(user: User) -> None:
        if not user.is_active:
            logger.warning(f"Social login refused for inactive user {user.id}")
            raise _FlowFailure(
                Result.failure("Social authentication failed", ErrorCode.INVALID_CREDENTIALS)
            )

    def _link(self, user: User, info: SocialUserInfo) -> SocialLogin:
        return self.uow.social_logins.add(
            SocialLogin(
                user_id=user.id,
                provider=info.provider,
                provider_key=info.id,
                provider_data=json.dumps(
                    {
                        "first_name": info.first_name,
                        "last_name": info.last_name,
                        "profile_picture_url": info.profile_picture_url,
                    }
                ),
            )
        )

    async def _unique_username(self, email: str) -> str:
        base = _USERNAME_UNSAFE.sub("", email.split("@", 1)[0])[: USERNAME_MAX_LENGTH - 5]
        base = base or "user"
        candidate = base
        for _ in range(10):
            if not await self.uow.users.is_username_taken(candidate):
                return candidate
            candidate = f"{base}{secrets.randbelow(10000):04d}"
        return f"{base[: USERNAME_MAX_LENGTH - 13]}_{secrets.token_hex(6)}"

    # ============ Refresh rotation ============

    async def refresh_token(
        self,
        token: str,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[AuthResponse]:
        return await self._run("refresh_token", self._refresh_token(token, ip_address), timeout)

    async def _refresh_token(self, token: str, ip_address: Optional[str]) -> Result[AuthResponse]:
        invalid = Result.failure("Invalid refresh token", ErrorCode.INVALID_TOKEN)
        if not token:
            return invalid

        found = await self.uow.refresh_tokens.get_by_token_with_user(token)
        if found is None:
            logger.warning(f"Refresh with unknown token {_mask(token)} from {ip_address}")
            return invalid
        stored, user = found

        if not stored.is_active:
            await self._revoke_after_reuse(user, token, ip_address)
            return invalid

        if not user.is_active:
            async with self.uow.transaction():
                await self.uow.refresh_tokens.revoke_if_active(token, ip_address)
            logger.warning(f"Refresh refused for inactive user {user.id}")
            return invalid

        async with self.uow.transaction():
            replacement = self.tokens.issue_refresh_token(ip_address)
            rotated = await self.uow.refresh_tokens.revoke_if_active(
                token, ip_address, replaced_by_token=replacement.token
            )
            if rotated:
                replacement.user_id = user.id
                self.uow.refresh_tokens.add(replacement)
                access = self.tokens.issue_access_token(user)
                await self.uow.complete()

        if not rotated:
            # Another caller rotated this secret between our read and our update
            await self._revoke_after_reuse(user, token, ip_address)
            return invalid

        logger.info(f"Rotated refresh token for user {user.id}")
        return Result.success(await self._build_response(user, access, replacement))

    async def _revoke_after_reuse(
        self, user: User, token: str, ip_address: Optional[str]
    ) -> int:
        async with self.uow.transaction():
            revoked = await self.uow.refresh_tokens.revoke_all_for_user(user.id, ip_address)
        logger.warning(
            f"Possible token theft: inactive refresh token {_mask(token)} presented for "
            f"user {user.id} from {ip_address}; revoked {revoked} active token(s)"
        )
        return revoked

    # ============ Revocation ============

    async def revoke_token(
        self,
        token: str,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[RevokeResponse]:
        return await self._run("revoke_token", self._revoke_token(token, ip_address), timeout)

    async def _revoke_token(self, token: str, ip_address: Optional[str]) -> Result[RevokeResponse]:
        if not token:
            return Result.failure("Invalid refresh token", ErrorCode.INVALID_TOKEN)

        async with self.uow.transaction():
            revoked = await self.uow.refresh_tokens.revoke_if_active(token, ip_address)

        if not revoked:
            logger.info(f"Revoke refused for unknown or inactive token {_mask(token)}")
            return Result.failure("Invalid refresh token", ErrorCode.INVALID_TOKEN)
        return Result.success(RevokeResponse(revoked=1))

    async def revoke_all_user_tokens(
        self,
        user_id: UUID,
        ip_address: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[RevokeResponse]:
        return await self._run(
            "revoke_all_user_tokens", self._revoke_all_user_tokens(user_id, ip_address), timeout
        )

    async def _revoke_all_user_tokens(
        self, user_id: UUID, ip_address: Optional[str]
    ) -> Result[RevokeResponse]:
        user = await self.uow.users.get_by_id(user_id)
        if user is None:
            return Result.failure("User not found", ErrorCode.USER_NOT_FOUND)

        async with self.uow.transaction():
            revoked = await self.uow.refresh_tokens.revoke_all_for_user(user.id, ip_address)

        logger.info(f"Revoked {revoked} refresh token(s) for user {user.id}")
        return Result.success(RevokeResponse(revoked=revoked))

    # ============ Access tokens ============

    def validate_access_token(self, token: str) -> Result[dict]:
        try:
            return Result.success(self.tokens.validate_access_token(token))
        except InvalidTokenError as e:
            return Result.failure(str(e), ErrorCode.INVALID_TOKEN)

    def extract_user_id(self, token: str) -> Optional[UUID]:
        return self.tokens.extract_user_id(token)
