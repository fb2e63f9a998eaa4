"""Link between an external OAuth identity and a local user."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from db.database import Base
from models.base import utcnow


class SocialLogin(Base):
    __tablename__ = "social_logins"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider = Column(String(50), nullable=False)  # google, github, microsoft
    provider_key = Column(String(256), nullable=False)  # provider's user id
    provider_data = Column(Text, nullable=True)  # JSON text
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        # One external identity maps to exactly one local user
        UniqueConstraint("provider", "provider_key", name="uq_social_logins_provider_key"),
        # At most one identity per provider for a given user
        UniqueConstraint("user_id", "provider", name="uq_social_logins_user_provider"),
    )

    def __repr__(self):
        return f"<SocialLogin(id={self.id}, user_id={self.user_id}, provider='{self.provider}')>"
