"""Access token signing/validation and refresh token issuance."""

import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID, uuid4

from jose import JWTError, jwt

from config import Settings, get_settings
from models.base import utcnow
from models.refresh_token import RefreshToken
from models.user import User
from services.errors import InvalidTokenError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
MIN_REFRESH_TOKEN_BYTES = 32

HMAC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
ASYMMETRIC_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"})
SUPPORTED_ALGORITHMS = HMAC_ALGORITHMS | ASYMMETRIC_ALGORITHMS


@dataclass
class AccessToken:
    """A signed access token and the facts needed to hand it out."""
    token: str
    jti: str
    expires_at: datetime


class TokenSigner:
    """
    Signs and verifies JWTs with exactly one configured algorithm.

    HMAC algorithms use the shared secret for both directions; RSA/EC
    algorithms sign with the private key and verify with the public key.
    A token whose header names any other algorithm is rejected before the
    signature is checked, so ``alg`` cannot be swapped at runtime (including
    ``none`` or an HMAC-with-public-key confusion).
    """

    def __init__(self, algorithm: str, signing_key: str, verifying_key: Optional[str] = None):
        algorithm = algorithm.upper()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported JWT algorithm: {algorithm}")
        if not signing_key:
            raise ValueError("A signing key is required")
        if algorithm in ASYMMETRIC_ALGORITHMS and not verifying_key:
            raise ValueError(f"{algorithm} requires a public verification key")

        self.algorithm = algorithm
        self._signing_key = signing_key
        self._verifying_key = verifying_key or signing_key

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        if settings.is_asymmetric_algorithm:
            return cls(settings.ALGORITHM, settings.JWT_PRIVATE_KEY, settings.JWT_PUBLIC_KEY)
        return cls(settings.ALGORITHM, settings.SECRET_KEY)

    def sign(self, claims: dict) -> str:
        return jwt.encode(claims, self._signing_key, algorithm=self.algorithm)

    def verify(self, token: str, audience: str, issuer: str) -> dict:
        """Return the verified claim set or raise ``JWTError``."""
        header = jwt.get_unverified_header(token)
        if header.get("alg") != self.algorithm:
            raise JWTError(f"Unexpected token algorithm: {header.get('alg')}")
        return jwt.decode(
            token,
            self._verifying_key,
            algorithms=[self.algorithm],
            audience=audience,
            issuer=issuer,
        )


class TokenService:
    """Issues access and refresh tokens and validates access tokens."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        signer: Optional[TokenSigner] = None,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ):
        self.settings = settings or get_settings()
        self.signer = signer or TokenSigner.from_settings(self.settings)
        self._random_bytes = random_bytes

        if self.settings.REFRESH_TOKEN_BYTES < MIN_REFRESH_TOKEN_BYTES:
            raise ValueError(
                f"Refresh tokens need at least {MIN_REFRESH_TOKEN_BYTES} random bytes"
            )

    def issue_access_token(
        self, user: User, expires_delta: Optional[timedelta] = None
    ) -> AccessToken:
        now = utcnow()
        expire = now + (
            expires_delta
            if expires_delta is not None
            else timedelta(minutes=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        )

        jti = str(uuid4())
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "iat": now,
            "exp": expire,
            "iss": self.settings.JWT_ISSUER,
            "aud": self.settings.JWT_AUDIENCE,
            "jti": jti,
            "type": ACCESS_TOKEN_TYPE,
        }
        return AccessToken(token=self.signer.sign(claims), jti=jti, expires_at=expire)

    def generate_refresh_secret(self) -> str:
        raw = self._random_bytes(self.settings.REFRESH_TOKEN_BYTES)
        if len(raw) < MIN_REFRESH_TOKEN_BYTES:
            raise ValueError("Random source returned too few bytes for a refresh token")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    def issue_refresh_token(
        self, created_by_ip: Optional[str], expires_delta: Optional[timedelta] = None
    ) -> RefreshToken:
        """
        Build an unsaved refresh token record.

        The caller sets ``user_id`` and persists it through the unit of work.
        """
        expire = utcnow() + (
            expires_delta
            if expires_delta is not None
            else timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)
        )
        return RefreshToken(
            token=self.generate_refresh_secret(),
            expires_at=expire,
            is_revoked=False,
            created_by_ip=created_by_ip[:45] if created_by_ip else None,
        )

    def validate_access_token(self, token: str) -> dict:
        """
        Verify signature, expiry, issuer, audience and token type.

        Raises:
            InvalidTokenError: on any verification failure
        """
        if not token or not token.strip():
            raise InvalidTokenError("Token is empty")

        try:
            payload = self.signer.verify(
                token.strip(),
                audience=self.settings.JWT_AUDIENCE,
                issuer=self.settings.JWT_ISSUER,
            )
        except JWTError as e:
            logger.debug(f"Access token rejected: {e}")
            raise InvalidTokenError("Invalid or expired token") from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError("Token is not an access token")
        if not payload.get("sub"):
            raise InvalidTokenError("Token has no subject")
        return payload

    def extract_user_id(self, token: str) -> Optional[UUID]:
        """Return the token's user id, or None if the token doesn't validate."""
        try:
            payload = self.validate_access_token(token)
        except InvalidTokenError:
            return None

        try:
            return UUID(payload["sub"])
        except (TypeError, ValueError):
            return None
