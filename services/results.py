"""Success/failure values returned by authentication flows."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from services.errors import ErrorCode

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Either success carrying ``data`` or failure carrying ``error`` and
    ``error_code``.

    Expected business failures (bad credentials, unknown user, stale token)
    are returned this way; callers branch on ``error_code`` rather than on
    message text.
    """

    is_success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @classmethod
    def success(cls, data: Optional[T] = None) -> "Result[T]":
        return cls(is_success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: ErrorCode) -> "Result[T]":
        return cls(is_success=False, error=error, error_code=error_code)

    def __bool__(self) -> bool:
        return self.is_success
