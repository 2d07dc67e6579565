"""Identity & credential management.

The only writer of users, identities, roles, reset tokens and delivery addresses.
Every public function runs as one transaction on the given session: it commits on
success, rolls back on failure, and raises the typed errors from
identity_service.errors instead of raw storage errors.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from identity_service.config import get_settings
from identity_service.errors import (
    DuplicateEmail,
    Expired,
    ForeignKeyViolation,
    InvalidCredential,
    NotFound,
    translate_integrity_error,
)
from identity_service.models.common import normalize_email, utcnow
from identity_service.models.delivery_address import UserDeliveryAddress
from identity_service.models.identity import (
    EXTERNAL_PROVIDERS,
    PROVIDER_EMAIL,
    PROVIDER_UNVERIFIED_EMAIL,
    Identity,
)
from identity_service.models.reset_token import TOKEN_EMAIL_VERIFY, TOKEN_PASSWORD_RESET, ResetToken
from identity_service.models.user import User
from identity_service.models.user_role import UserRole
from identity_service.schemas.users import (
    DeliveryAddressUpdate,
    NewIdentity,
    NewPassword,
    UserProfile,
    UsersSearchTerms,
    UserUpdate,
)
from identity_service.services.auth import get_password_hash, verify_password

logger = logging.getLogger(__name__)


def user_id_of(user: User | int) -> int:
    return user.id if isinstance(user, User) else int(user)


def _commit(db: Session, *, email: str | None = None) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise translate_integrity_error(e, email=email) from e


def _require_email(email: str | None) -> str:
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("email is required")
    return normalized


def _email_taken(db: Session, email: str, other_than: int | None = None) -> bool:
    """Is `email` the account email or the identity email of a user other than `other_than`?"""
    users = db.query(User.id).filter(User.email == email)
    identities = db.query(Identity.user_id).filter(Identity.email == email)
    if other_than is not None:
        users = users.filter(User.id != other_than)
        identities = identities.filter(Identity.user_id != other_than)
    return users.first() is not None or identities.first() is not None


def _new_token_value() -> str:
    return secrets.token_urlsafe(32)


def _token_expired(created_at: datetime, now: datetime | None = None) -> bool:
    ttl = timedelta(minutes=get_settings().reset_token_expire_minutes)
    return created_at + ttl <= (now or utcnow())


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_user(db: Session, user: User | int) -> User:
    user_id = user_id_of(user)
    found = db.get(User, user_id)
    if found is None:
        raise NotFound(f"User {user_id} not found", user_id=user_id)
    return found


def find_by_email(db: Session, email: str) -> User | None:
    """Case-insensitive: the lookup key is normalized exactly like stored emails."""
    return db.query(User).filter(User.email == normalize_email(email)).first()


def get_identity(db: Session, user: User | int) -> Identity:
    user_id = user_id_of(user)
    identity = db.query(Identity).filter(Identity.user_id == user_id).first()
    if identity is None:
        raise NotFound(f"No identity for user {user_id}", user_id=user_id)
    return identity


def list_users(db: Session, offset: int = 0, limit: int = 50) -> list[User]:
    return db.query(User).order_by(User.id).offset(offset).limit(limit).all()


def count_users(db: Session, only_active: bool = False) -> int:
    query = db.query(User)
    if only_active:
        query = query.filter(User.is_active.is_(True))
    return query.count()


def _contains(value: str) -> str:
    escaped = value.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_users(
    db: Session,
    terms: UsersSearchTerms,
    from_id: int | None = None,
    skip: int = 0,
    count: int = 50,
) -> list[User]:
    """Users matching every set term (case-insensitive substring), ordered by id,
    starting at `from_id` when given."""
    query = db.query(User)
    if from_id is not None:
        query = query.filter(User.id >= from_id)
    for column, value in (
        (User.email, terms.email),
        (User.phone, terms.phone),
        (User.first_name, terms.first_name),
        (User.last_name, terms.last_name),
    ):
        if value:
            query = query.filter(func.lower(column).like(_contains(value), escape="\\"))
    if terms.is_blocked is not None:
        query = query.filter(User.is_active.is_(not terms.is_blocked))
    logger.debug("Searching users from=%s skip=%s count=%s terms=%s", from_id, skip, count, terms)
    return query.order_by(User.id).offset(skip).limit(count).all()


def fuzzy_search_by_email(db: Session, term: str, limit: int = 50) -> list[User]:
    return search_users(db, UsersSearchTerms(email=term), count=limit)


# ---------------------------------------------------------------------------
# Accounts and identities
# ---------------------------------------------------------------------------

def register(
    db: Session,
    email: str,
    password: str | None = None,
    profile: UserProfile | None = None,
    provider: str = PROVIDER_EMAIL,
) -> User:
    """Create a user, its identity and the default role in one transaction."""
    email = _require_email(email)
    if password is not None:
        NewIdentity(email=email, password=password)
    if _email_taken(db, email):
        raise DuplicateEmail(f"Email already exists: {email}", email=email)

    fields = profile.model_dump(exclude_none=True) if profile else {}
    user = User(
        email=email,
        email_verified=provider in EXTERNAL_PROVIDERS,
        last_login_at=utcnow(),
        **fields,
    )
    user.identity = Identity(
        email=email,
        password=get_password_hash(password) if password else None,
        provider=provider or PROVIDER_EMAIL,
    )
    user.role = UserRole(name=get_settings().default_role)
    db.add(user)
    # Two concurrent registrations: the unique index lets exactly one through
    _commit(db, email=email)
    db.refresh(user)
    logger.info("Registered user id=%s email=%s provider=%s", user.id, email, provider)
    return user


def link_identity(
    db: Session,
    user: User | int,
    email: str,
    provider: str = PROVIDER_EMAIL,
    password: str | None = None,
) -> Identity:
    """Bind a credential to the user, replacing the user's current identity if it has one.

    The replacement is wholesale: omitting the password leaves an external-provider-only
    identity. External providers (google, facebook) vouch for the address, so the
    user's email is marked verified.
    """
    email = _require_email(email)
    user = get_user(db, user)
    if password is not None:
        NewIdentity(email=email, password=password)
    if _email_taken(db, email, other_than=user.id):
        raise DuplicateEmail(f"Email already bound to another account: {email}", email=email)

    identity = user.identity
    if identity is None:
        identity = Identity(user_id=user.id)
        db.add(identity)
    identity.email = email
    identity.provider = provider or PROVIDER_EMAIL
    identity.password = get_password_hash(password) if password else None
    if identity.provider in EXTERNAL_PROVIDERS:
        user.email_verified = True

    _commit(db, email=email)
    db.refresh(identity)
    logger.info("Linked identity user_id=%s email=%s provider=%s", user.id, email, identity.provider)
    return identity


def authenticate(db: Session, email: str, password: str) -> User:
    email = _require_email(email)
    identity = db.query(Identity).filter(Identity.email == email).first()
    if identity is None:
        raise NotFound(f"No identity for {email}", email=email)
    if not identity.has_password:
        # external-provider-only login
        raise InvalidCredential("Identity has no password", email=email)
    if not verify_password(password, identity.password):
        raise InvalidCredential("Wrong password", email=email)
    user = identity.user
    if not user.is_active:
        raise InvalidCredential("User is blocked", email=email)

    user.last_login_at = utcnow()
    _commit(db, email=email)
    db.refresh(user)
    return user


def change_password(db: Session, user: User | int, old_password: str, new_password: str) -> Identity:
    identity = get_identity(db, user)
    if not verify_password(old_password, identity.password):
        logger.debug("Password change rejected for user_id=%s", identity.user_id)
        raise InvalidCredential("Wrong password", user_id=identity.user_id)
    NewPassword(password=new_password)
    identity.password = get_password_hash(new_password)
    _commit(db)
    db.refresh(identity)
    return identity


def update_profile(db: Session, user: User | int, changes: UserUpdate) -> User:
    user = get_user(db, user)
    for field, value in changes.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    _commit(db, email=user.email)
    db.refresh(user)
    return user


def set_active(db: Session, user: User | int, is_active: bool) -> User:
    """Soft lifecycle: blocked users keep their rows but cannot authenticate."""
    user = get_user(db, user)
    user.is_active = is_active
    _commit(db)
    db.refresh(user)
    logger.info("User id=%s is_active=%s", user.id, is_active)
    return user


def delete_user(db: Session, user: User | int) -> None:
    """Hard delete. Identity, role and delivery addresses go with it (ON DELETE CASCADE)."""
    user = get_user(db, user)
    user_id = user.id
    db.delete(user)
    _commit(db)
    logger.info("Deleted user id=%s", user_id)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

def assign_role(db: Session, user: User | int, role_name: str, data: dict[str, Any] | None = None) -> UserRole:
    """Single-role model: overwrite the user's role row (create it if missing)."""
    role_name = (role_name or "").strip()
    if not role_name:
        raise ValueError("role_name is required")
    user = get_user(db, user)
    role = db.query(UserRole).filter(UserRole.user_id == user.id).first()
    previous = role.name if role is not None else None
    if role is None:
        role = UserRole(user_id=user.id)
        db.add(role)
    role.name = role_name
    role.data = data
    _commit(db)
    db.refresh(role)
    logger.info("Role for user_id=%s: %s -> %s", user.id, previous, role_name)
    return role


# ---------------------------------------------------------------------------
# Reset / verification tokens
# ---------------------------------------------------------------------------

def issue_reset_token(db: Session, email: str, token_type: str) -> ResetToken:
    """Issue a fresh token, superseding any outstanding one for (email, token_type).

    Delete-then-insert happens in one transaction. If a concurrent issuance wins the
    unique index first, the whole delete-then-insert is retried once.
    """
    email = _require_email(email)
    token_type = (token_type or "").strip()
    if not token_type:
        raise ValueError("token_type is required")
    if find_by_email(db, email) is None:
        raise NotFound(f"User with email {email} not found", email=email)

    for attempt in (1, 2):
        db.query(ResetToken).filter(
            ResetToken.email == email, ResetToken.token_type == token_type
        ).delete()
        reset_token = ResetToken(
            token=_new_token_value(),
            email=email,
            token_type=token_type,
            created_at=utcnow(),
        )
        db.add(reset_token)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if attempt == 1:
                logger.warning("Concurrent %s token issuance for %s, retrying", token_type, email)
                continue
            raise translate_integrity_error(e, email=email) from e
        db.refresh(reset_token)
        logger.info("Issued %s token for %s", token_type, email)
        return reset_token


def consume_reset_token(db: Session, token: str, token_type: str) -> str:
    """Exchange a token for the email it was issued to. Single use: the row is deleted
    whether or not it has expired, and only one concurrent consumer can delete it."""
    found = (
        db.query(ResetToken)
        .filter(ResetToken.token == token, ResetToken.token_type == token_type)
        .first()
    )
    if found is None:
        raise NotFound("Reset token not found", token_type=token_type)
    email, created_at = found.email, found.created_at

    deleted = (
        db.query(ResetToken)
        .filter(ResetToken.token == token, ResetToken.token_type == token_type)
        .delete()
    )
    if deleted != 1:
        db.rollback()
        raise NotFound("Reset token not found", token_type=token_type)
    _commit(db, email=email)

    if _token_expired(created_at):
        logger.info("Expired %s token presented for %s", token_type, email)
        raise Expired("Reset token has expired", email=email, token_type=token_type)
    logger.debug("Consumed %s token for %s", token_type, email)
    return email


def request_email_verification(db: Session, email: str) -> ResetToken:
    return issue_reset_token(db, email, TOKEN_EMAIL_VERIFY)


def verify_email(db: Session, token: str) -> User:
    email = consume_reset_token(db, token, TOKEN_EMAIL_VERIFY)
    user = find_by_email(db, email)
    if user is None:
        raise NotFound(f"User with email {email} not found", email=email)
    user.email_verified = True
    if user.identity is not None and user.identity.provider == PROVIDER_UNVERIFIED_EMAIL:
        user.identity.provider = PROVIDER_EMAIL
    _commit(db, email=email)
    db.refresh(user)
    return user


def _password_identity(db: Session, email: str) -> Identity:
    identity = (
        db.query(Identity)
        .filter(Identity.email == email, Identity.provider == PROVIDER_EMAIL)
        .first()
    )
    if identity is None:
        raise NotFound(f"No password identity for {email}", email=email)
    return identity


def request_password_reset(db: Session, email: str) -> ResetToken:
    """Only verified addresses with an email-provider identity can reset a password;
    external-provider accounts never acquire one this way."""
    email = _require_email(email)
    user = find_by_email(db, email)
    if user is None:
        raise NotFound(f"User with email {email} not found", email=email)
    if not user.email_verified:
        raise InvalidCredential("Email not verified", email=email)
    _password_identity(db, email)
    return issue_reset_token(db, email, TOKEN_PASSWORD_RESET)


def reset_password(db: Session, token: str, new_password: str) -> Identity:
    # policy is checked before the single-use token is spent
    NewPassword(password=new_password)
    email = consume_reset_token(db, token, TOKEN_PASSWORD_RESET)
    identity = _password_identity(db, email)
    identity.password = get_password_hash(new_password)
    _commit(db, email=email)
    db.refresh(identity)
    logger.info("Password reset for user_id=%s", identity.user_id)
    return identity


# ---------------------------------------------------------------------------
# Delivery addresses
# ---------------------------------------------------------------------------

def add_delivery_address(
    db: Session,
    user: User | int,
    *,
    country: str,
    postal_code: str,
    is_priority: bool = False,
    administrative_area_level_1: str | None = None,
    administrative_area_level_2: str | None = None,
    locality: str | None = None,
    political: str | None = None,
    route: str | None = None,
    street_number: str | None = None,
    address: str | None = None,
) -> UserDeliveryAddress:
    user_id = user_id_of(user)
    if db.get(User, user_id) is None:
        raise ForeignKeyViolation(f"User {user_id} does not exist", user_id=user_id)
    if is_priority:
        # at most one priority address per user
        db.query(UserDeliveryAddress).filter(
            UserDeliveryAddress.user_id == user_id, UserDeliveryAddress.is_priority.is_(True)
        ).update({UserDeliveryAddress.is_priority: False})
    entry = UserDeliveryAddress(
        user_id=user_id,
        country=country,
        postal_code=postal_code,
        is_priority=is_priority,
        administrative_area_level_1=administrative_area_level_1,
        administrative_area_level_2=administrative_area_level_2,
        locality=locality,
        political=political,
        route=route,
        street_number=street_number,
        address=address,
    )
    db.add(entry)
    _commit(db)
    db.refresh(entry)
    return entry


def list_delivery_addresses(db: Session, user: User | int) -> list[UserDeliveryAddress]:
    user_id = user_id_of(user)
    return (
        db.query(UserDeliveryAddress)
        .filter(UserDeliveryAddress.user_id == user_id)
        .order_by(UserDeliveryAddress.is_priority.desc(), UserDeliveryAddress.id)
        .all()
    )


def _get_delivery_address(db: Session, address_id: int) -> UserDeliveryAddress:
    entry = db.get(UserDeliveryAddress, address_id)
    if entry is None:
        raise NotFound(f"Delivery address {address_id} not found", address_id=address_id)
    return entry


def update_delivery_address(db: Session, address_id: int, changes: DeliveryAddressUpdate) -> UserDeliveryAddress:
    entry = _get_delivery_address(db, address_id)
    fields = changes.model_dump(exclude_unset=True)
    if fields.get("is_priority") is None:
        fields.pop("is_priority", None)
    for field, value in fields.items():
        setattr(entry, field, value)
    if fields.get("is_priority"):
        db.query(UserDeliveryAddress).filter(
            UserDeliveryAddress.user_id == entry.user_id,
            UserDeliveryAddress.id != entry.id,
            UserDeliveryAddress.is_priority.is_(True),
        ).update({UserDeliveryAddress.is_priority: False})
    _commit(db)
    db.refresh(entry)
    return entry


def delete_delivery_address(db: Session, address_id: int) -> None:
    entry = _get_delivery_address(db, address_id)
    user_id = entry.user_id
    db.delete(entry)
    _commit(db)
    logger.info("Deleted delivery address id=%s of user_id=%s", address_id, user_id)
