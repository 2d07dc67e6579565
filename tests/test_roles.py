import pytest

from identity_service.errors import NotFound
from identity_service.models import UserRole
from identity_service.models.user_role import ROLE_SUPERUSER, ROLE_USER
from identity_service.schemas.users import RoleResponse
from identity_service.services import roles as roles_service
from identity_service.services import users as users_service
from identity_service.services.roles import ACTION_INDEX, ACTION_READ, ACTION_WRITE


@pytest.fixture
def user(db):
    return users_service.register(db, "user@example.com", "pw-123456")


def test_new_user_has_default_role(db, user):
    assert roles_service.resolve(db, user) == ROLE_USER
    assert roles_service.resolve_roles(db, user.id) == frozenset({ROLE_USER})


def test_assign_role_replaces_previous(db, user):
    users_service.assign_role(db, user, "admin")

    assert roles_service.resolve(db, user) == "admin"
    assert roles_service.resolve_roles(db, user) == frozenset({"admin"})
    assert db.query(UserRole).filter(UserRole.user_id == user.id).count() == 1


def test_assign_role_keeps_data(db, user):
    role = users_service.assign_role(db, user, ROLE_SUPERUSER, data={"granted_by": "seed"})
    assert role.data == {"granted_by": "seed"}
    assert role.id is not None

    payload = RoleResponse.model_validate(role)
    assert payload.name == ROLE_SUPERUSER
    assert payload.user_id == user.id


def test_assign_role_to_unknown_user(db):
    with pytest.raises(NotFound):
        users_service.assign_role(db, 404, ROLE_USER)


def test_resolve_without_role_row(db, user):
    db.query(UserRole).filter(UserRole.user_id == user.id).delete()
    db.commit()

    with pytest.raises(NotFound):
        roles_service.resolve(db, user)
    with pytest.raises(NotFound):
        roles_service.resolve_roles(db, user)
    assert roles_service.is_allowed(db, user, ACTION_READ, owner_id=user.id) is False


def test_user_role_permissions(db, user):
    other = users_service.register(db, "other@example.com", "pw-123456")

    assert roles_service.is_allowed(db, user, ACTION_READ, owner_id=user.id)
    assert roles_service.is_allowed(db, user, ACTION_WRITE, owner_id=user.id)
    assert not roles_service.is_allowed(db, user, ACTION_READ, owner_id=other.id)
    assert not roles_service.is_allowed(db, user, ACTION_INDEX)


def test_superuser_permissions(db, user):
    admin = users_service.register(db, "root@example.com", "pw-123456")
    users_service.assign_role(db, admin, ROLE_SUPERUSER)

    assert roles_service.is_allowed(db, admin, ACTION_INDEX)
    assert roles_service.is_allowed(db, admin, ACTION_WRITE, owner_id=user.id)


def test_unknown_role_grants_nothing(db, user):
    users_service.assign_role(db, user, "auditor")
    assert not roles_service.is_allowed(db, user, ACTION_READ, owner_id=user.id)
