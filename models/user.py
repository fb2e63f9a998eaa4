"""User account model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlalchemy.sql import func

from db.database import Base
from models.base import utcnow


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively, so they are stored lower-cased."""
    return email.strip().lower()


class User(Base):
    """
    An account that can authenticate with a password, a linked social
    identity, or both.

    Refresh tokens and social logins reference users through their own
    ``user_id`` foreign keys; there are no ORM back-references. Query them
    through the repositories instead.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(256), nullable=False, unique=True, index=True)
    username = Column(String(50), nullable=False, unique=True, index=True)
    # Null for social-only accounts
    password_hash = Column(String(500), nullable=True)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    is_email_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Explicit soft delete: every user query in the repositories checks this flag
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', active={self.is_active})>"
