"""Role grant for a user. Single-role model: at most one row per user."""
from uuid import uuid4

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from identity_service.database import Base
from identity_service.models.common import utcnow

ROLE_USER = "user"
ROLE_SUPERUSER = "superuser"


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (Index("user_roles_user_id_idx", "user_id", unique=True),)

    # Random id: row identity does not depend on insertion order
    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(64), default=ROLE_USER, server_default=ROLE_USER, nullable=False)
    data = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="role")

    def __repr__(self) -> str:
        return f"<UserRole user_id={self.user_id} name={self.name!r}>"
