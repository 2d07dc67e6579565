"""Users: one row per registered person."""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, CheckConstraint, Index, false, true
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func
from identity_service.database import Base
from identity_service.models.common import normalize_email, utcnow


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("email = lower(email)", name="ck_users_email_lower"),
        Index("users_email_idx", "email", unique=True),
        # ids are never reused, even on SQLite after deletes
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False)
    email_verified = Column(Boolean, default=False, server_default=false(), nullable=False)
    phone = Column(String(50), nullable=True)
    phone_verified = Column(Boolean, default=False, server_default=false(), nullable=False)
    is_active = Column(Boolean, default=True, server_default=true(), nullable=False)

    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    middle_name = Column(String(255), nullable=True)
    gender = Column(String(32), nullable=True)
    birthdate = Column(String(32), nullable=True)

    last_login_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    # ON DELETE CASCADE in the database does the work; the ORM just lets it happen
    identity = relationship(
        "Identity", back_populates="user", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    role = relationship(
        "UserRole", back_populates="user", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    delivery_addresses = relationship(
        "UserDeliveryAddress", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    @validates("email")
    def _normalize_email(self, key, value):
        return normalize_email(value)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"
