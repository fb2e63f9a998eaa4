from .refresh_token import RefreshToken
from .social_login import SocialLogin
from .user import User

__all__ = [
    "RefreshToken",
    "SocialLogin",
    "User",
]
