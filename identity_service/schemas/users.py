"""Validation payloads and response shapes for users, identities and roles."""
import re
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, field_validator

from identity_service.config import get_settings

PHONE_RE = re.compile(r"^\+?\d{7}\d*$")


def _validate_phone(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    if not PHONE_RE.match(v):
        raise ValueError("Incorrect phone format")
    return v


def _validate_name(value: str | None) -> str | None:
    if value is not None and not value.strip():
        raise ValueError("Name must not be empty")
    return value


class UserProfile(BaseModel):
    """Optional profile fields accepted at registration."""
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    middle_name: str | None = None
    gender: str | None = None
    birthdate: str | None = None

    @field_validator("phone")
    @classmethod
    def phone_valid(cls, v: str | None) -> str | None:
        return _validate_phone(v)

    @field_validator("first_name", "last_name", "middle_name")
    @classmethod
    def name_not_empty(cls, v: str | None) -> str | None:
        return _validate_name(v)


class UserUpdate(UserProfile):
    """Partial update. Only fields explicitly set are written."""
    is_active: bool | None = None
    email_verified: bool | None = None
    phone_verified: bool | None = None


class UsersSearchTerms(BaseModel):
    """Substring filters for user search; unset fields do not filter."""
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_blocked: bool | None = None


class DeliveryAddressUpdate(BaseModel):
    """Partial update of a delivery address. Only fields explicitly set are written."""
    administrative_area_level_1: str | None = None
    administrative_area_level_2: str | None = None
    country: str | None = None
    locality: str | None = None
    political: str | None = None
    postal_code: str | None = None
    route: str | None = None
    street_number: str | None = None
    address: str | None = None
    is_priority: bool | None = None

    @field_validator("country", "postal_code")
    @classmethod
    def required_not_empty(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            raise ValueError("must not be empty")
        return v


class NewPassword(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        s = get_settings()
        if not (s.password_min_length <= len(v or "") <= s.password_max_length):
            raise ValueError(
                f"Password should be between {s.password_min_length} and {s.password_max_length} symbols"
            )
        return v


class NewIdentity(NewPassword):
    email: EmailStr


class UserResponse(BaseModel):
    id: int
    email: str
    email_verified: bool
    phone: str | None = None
    phone_verified: bool = False
    is_active: bool = True
    first_name: str | None = None
    last_name: str | None = None
    middle_name: str | None = None
    gender: str | None = None
    birthdate: str | None = None
    last_login_at: datetime
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RoleResponse(BaseModel):
    id: UUID
    user_id: int
    name: str
    data: dict | None = None

    class Config:
        from_attributes = True
