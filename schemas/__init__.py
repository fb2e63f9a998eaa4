from .auth import AuthResponse, RevokeResponse, UserSummary

__all__ = [
    "AuthResponse",
    "RevokeResponse",
    "UserSummary",
]
