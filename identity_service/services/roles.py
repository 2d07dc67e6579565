"""Role resolution and permission checks. Read-only."""
import logging

from sqlalchemy.orm import Session

from identity_service.errors import NotFound
from identity_service.models.user import User
from identity_service.models.user_role import ROLE_SUPERUSER, ROLE_USER, UserRole
from identity_service.services.users import user_id_of

logger = logging.getLogger(__name__)

ACTION_ALL = "all"
ACTION_INDEX = "index"
ACTION_READ = "read"
ACTION_WRITE = "write"

SCOPE_ALL = "all"
SCOPE_OWNED = "owned"

# role -> {action: scope}
PERMISSIONS: dict[str, dict[str, str]] = {
    ROLE_SUPERUSER: {ACTION_ALL: SCOPE_ALL},
    ROLE_USER: {ACTION_READ: SCOPE_OWNED, ACTION_WRITE: SCOPE_OWNED},
}


def resolve_roles(db: Session, user: User | int) -> frozenset[str]:
    user_id = user_id_of(user)
    names = frozenset(
        name for (name,) in db.query(UserRole.name).filter(UserRole.user_id == user_id).all()
    )
    if not names:
        # every provisioned user has a role row; a missing one is reported, not assumed
        raise NotFound(f"No role for user {user_id}", user_id=user_id)
    return names


def resolve(db: Session, user: User | int) -> str:
    """The user's single authoritative role name."""
    user_id = user_id_of(user)
    role = db.query(UserRole).filter(UserRole.user_id == user_id).first()
    if role is None:
        raise NotFound(f"No role for user {user_id}", user_id=user_id)
    return role.name


def is_allowed(db: Session, user: User | int, action: str, owner_id: int | None = None) -> bool:
    """May `user` perform `action` on a row owned by `owner_id`?"""
    user_id = user_id_of(user)
    try:
        role = resolve(db, user_id)
    except NotFound:
        logger.warning("Permission check for user_id=%s without a role row", user_id)
        return False
    grants = PERMISSIONS.get(role, {})
    scope = grants.get(action) or grants.get(ACTION_ALL)
    if scope is None:
        return False
    if scope == SCOPE_ALL:
        return True
    return owner_id is not None and owner_id == user_id
