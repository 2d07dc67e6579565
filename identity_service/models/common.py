"""Helpers shared by the models: canonical email form and naive-UTC timestamps."""
from datetime import datetime, timezone


def normalize_email(email: str | None) -> str | None:
    """Emails are stored only in lower case, without surrounding whitespace."""
    if email is None:
        return None
    return email.strip().lower()


def utcnow() -> datetime:
    # Timestamp columns are naive UTC, like the TIMESTAMP columns the migrations create
    return datetime.now(timezone.utc).replace(tzinfo=None)
