"""Password hashing capability backed by Argon2id."""

import logging
from typing import Protocol

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

logger = logging.getLogger(__name__)


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, password_hash: str) -> bool: ...

    def verify_dummy(self, plaintext: str) -> bool: ...


class Argon2PasswordHasher:
    """
    Hash and verify passwords with Argon2id.

    ``verify`` returns False for a mismatch and for a corrupt or foreign
    hash, so callers can treat every non-match as invalid credentials.
    """

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against unknown accounts so login timing doesn't leak existence
        self._dummy_hash = self._hasher.hash("dummy-password-for-timing")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as e:
            logger.warning(f"Stored password hash could not be verified: {e}")
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        self.verify(plaintext, self._dummy_hash)
        return False
