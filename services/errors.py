"""Error codes and exceptions shared by the authentication services."""

from enum import Enum


class ErrorCode(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    INVALID_TOKEN = "INVALID_TOKEN"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class AuthError(Exception):
    """Base class for exceptions raised by the authentication core."""

    code: ErrorCode = ErrorCode.INVALID_TOKEN

    def __init__(self, message: str, code: ErrorCode = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidTokenError(AuthError):
    """An access token failed signature, expiry, issuer, audience or type checks."""

    code = ErrorCode.INVALID_TOKEN


class StoreUnavailableError(AuthError):
    """The backing store could not be reached or failed mid-operation."""

    code = ErrorCode.STORE_UNAVAILABLE


class TransactionStateError(RuntimeError):
    """A UnitOfWork transaction method was called in the wrong state."""
