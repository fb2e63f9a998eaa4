"""Refresh token storage model for secure token rotation."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.sql import func

from db.database import Base
from models.base import ensure_utc, utcnow


class RefreshToken(Base):
    """
    Stores opaque refresh token secrets for rotation and revocation.

    A row is written once and afterwards only its revocation fields change.
    When a token is rotated, ``replaced_by_token`` records the secret of its
    successor so reuse of the old secret can be recognised.
    """

    __tablename__ = "refresh_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token = Column(String(500), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    created_by_ip = Column(String(45), nullable=True)  # IPv4 or IPv6 address
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by_ip = Column(String(45), nullable=True)
    replaced_by_token = Column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_refresh_tokens_user_status", "user_id", "is_revoked", "expires_at"),
    )

    def is_expired_at(self, moment: Optional[datetime] = None) -> bool:
        return (moment or utcnow()) >= ensure_utc(self.expires_at)

    @property
    def is_expired(self) -> bool:
        return self.is_expired_at()

    @property
    def is_active(self) -> bool:
        return not self.is_revoked and not self.is_expired

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, revoked={self.is_revoked})>"
