from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class UserSummary(BaseModel):
    """User info returned alongside issued tokens. Never carries the password hash."""

    id: UUID
    email: str
    username: str
    first_name: str = ""
    last_name: str = ""
    is_email_verified: bool = False
    created_at: Optional[datetime] = None
    linked_providers: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class AuthResponse(BaseModel):
    """Outcome of a successful register, login, social login or refresh."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"
    user: UserSummary


class RevokeResponse(BaseModel):
    revoked: int = 0
