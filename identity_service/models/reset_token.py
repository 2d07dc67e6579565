"""Single-use, time-bounded tokens for password reset and email verification."""
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Index, Uuid
from sqlalchemy.orm import validates
from sqlalchemy.sql import func
from identity_service.database import Base
from identity_service.models.common import normalize_email, utcnow

# token_type is open text chosen by the caller; these are the flows the service runs itself
TOKEN_EMAIL_VERIFY = "email_verify"
TOKEN_PASSWORD_RESET = "password_reset"


class ResetToken(Base):
    __tablename__ = "reset_tokens"
    __table_args__ = (
        # One outstanding token per purpose per email
        Index("reset_tokens_email_token_type_idx", "email", "token_type", unique=True),
        Index("users_reset_tokens_uuid_idx", "uuid", unique=True),
    )

    token = Column(String(255), primary_key=True)
    uuid = Column(Uuid, default=uuid4, nullable=False)
    email = Column(String(255), nullable=False)
    token_type = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)

    @validates("email")
    def _normalize_email(self, key, value):
        return normalize_email(value)

    def __repr__(self) -> str:
        # token value stays out of logs
        return f"<ResetToken uuid={self.uuid} email={self.email!r} token_type={self.token_type!r}>"
