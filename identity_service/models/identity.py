"""Identities: the login credential bound to a user (password or external provider)."""
from sqlalchemy import Column, Integer, String, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship, validates
from identity_service.database import Base
from identity_service.models.common import normalize_email

# Provider is free text; these are the values the service itself writes
PROVIDER_EMAIL = "email"
PROVIDER_UNVERIFIED_EMAIL = "unverified_email"
PROVIDER_FACEBOOK = "facebook"
PROVIDER_GOOGLE = "google"

# Providers that vouch for the email address themselves
EXTERNAL_PROVIDERS = frozenset({PROVIDER_FACEBOOK, PROVIDER_GOOGLE})


class Identity(Base):
    __tablename__ = "identities"
    __table_args__ = (
        CheckConstraint("email = lower(email)", name="ck_identities_email_lower"),
        Index("identities_user_id_idx", "user_id", unique=True),
        Index("identities_email_idx", "email", unique=True),
    )

    # One identity per user in the current model
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    email = Column(String(255), nullable=False)
    password = Column(String(255), nullable=True)  # NULL: external-provider-only login
    provider = Column(String(64), default=PROVIDER_EMAIL, server_default=PROVIDER_EMAIL, nullable=True)

    user = relationship("User", back_populates="identity")

    @validates("email")
    def _normalize_email(self, key, value):
        return normalize_email(value)

    @property
    def has_password(self) -> bool:
        return bool(self.password)

    def __repr__(self) -> str:
        return f"<Identity user_id={self.user_id} email={self.email!r} provider={self.provider!r}>"
