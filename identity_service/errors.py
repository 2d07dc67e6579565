"""Typed errors returned to callers of the identity core.

Storage errors (sqlalchemy.exc.*) are translated into these before they leave the
service layer; callers never see a raw IntegrityError.
"""
from __future__ import annotations

from sqlalchemy.exc import IntegrityError

# Constraint / index names whose violation means "this email is taken"
_EMAIL_CONSTRAINTS = (
    "users_email_idx",
    "identities_email_idx",
    "reset_tokens_email_token_type_idx",
)


class IdentityServiceError(Exception):
    """Base for every error this package raises on purpose."""

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


class DuplicateEmail(IdentityServiceError):
    pass


class NotFound(IdentityServiceError):
    pass


class InvalidCredential(IdentityServiceError):
    pass


class Expired(IdentityServiceError):
    pass


class ForeignKeyViolation(IdentityServiceError):
    """Attempt to reference a user that does not exist."""


class SchemaConflict(IdentityServiceError):
    """A migration cannot be applied to the current data without explicit destructive confirmation."""


class MigrationError(IdentityServiceError):
    """Unexpected failure inside a migration step. The step has been rolled back."""


def _is_foreign_key_error(text: str) -> bool:
    return "foreign key" in text or "foreignkeyviolation" in text


def _is_unique_error(text: str) -> bool:
    return "unique" in text or "duplicate key" in text or "uniqueviolation" in text


def translate_integrity_error(exc: IntegrityError, *, email: str | None = None) -> IdentityServiceError:
    """Map a storage constraint violation onto the typed taxonomy."""
    text = f"{type(exc.orig).__name__} {exc.orig}".lower()
    if _is_foreign_key_error(text):
        return ForeignKeyViolation("Referenced user does not exist", email=email)
    if _is_unique_error(text):
        if any(name in text for name in _EMAIL_CONSTRAINTS) or "email" in text:
            return DuplicateEmail(f"Email already exists: {email}" if email else "Email already exists", email=email)
        return IdentityServiceError(f"Unique constraint violated: {exc.orig}", email=email)
    if "not null" in text:
        return IdentityServiceError(f"Missing required field: {exc.orig}", email=email)
    return IdentityServiceError(str(exc.orig), email=email)
