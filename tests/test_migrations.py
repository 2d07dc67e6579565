import logging
import uuid

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from identity_service import migrations
from identity_service.database import Base, make_engine
from identity_service.errors import MigrationError, SchemaConflict
from identity_service.migrations import MIGRATIONS, Migration
from identity_service.services import roles as roles_service
from identity_service.services import users as users_service
from identity_service.services.auth import get_password_hash

NAMES = [m.name for m in MIGRATIONS]
CREATE_USER_ROLES = "20180124110147_create_user_roles"
CREATE_RESET_TOKEN = "20180319180000_create_reset_token"
UPDATE_RESET_TOKEN = "20180514163000_update_reset_token"
USER_ROLES_ROLE_NAME = "20180131135736_user_roles_role_name"


def _rows(engine, sql, **params):
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(sa.text(sql), params).mappings()]


def _execute(engine, sql, **params):
    with engine.begin() as conn:
        conn.execute(sa.text(sql), params)


def test_history_is_ordered_and_unique():
    assert NAMES == sorted(NAMES)
    assert len(set(NAMES)) == len(NAMES)
    assert all(m.upgrade is not None and m.downgrade is not None for m in MIGRATIONS)


def test_upgrade_empty_database(migration_engine):
    applied = migrations.upgrade(migration_engine)

    assert applied == NAMES
    assert migrations.current_version(migration_engine) == NAMES[-1]
    assert migrations.pending(migration_engine) == []
    assert set(migrations.schema_snapshot(migration_engine)) == {
        "users",
        "identities",
        "user_roles",
        "reset_tokens",
        "user_delivery_address",
    }
    # idempotent
    assert migrations.upgrade(migration_engine) == []


def test_incremental_upgrade_matches_single_run(tmp_path):
    full = make_engine(f"sqlite:///{tmp_path / 'full.db'}", enforce_foreign_keys=False)
    stepped = make_engine(f"sqlite:///{tmp_path / 'stepped.db'}", enforce_foreign_keys=False)

    migrations.upgrade(full)
    for name in NAMES:
        assert migrations.upgrade(stepped, target=name) == [name]

    assert migrations.schema_snapshot(stepped) == migrations.schema_snapshot(full)


def test_migrated_schema_matches_models(migration_engine, tmp_path):
    migrations.upgrade(migration_engine)
    fresh = make_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
    Base.metadata.create_all(bind=fresh)

    assert migrations.schema_snapshot(migration_engine) == migrations.schema_snapshot(fresh)


def test_migrated_schema_constraints(migration_engine):
    migrations.upgrade(migration_engine)
    snapshot = migrations.schema_snapshot(migration_engine)

    assert ("users_email_idx", ("email",), True) in snapshot["users"]["indexes"]
    assert ("identities_email_idx", ("email",), True) in snapshot["identities"]["indexes"]
    assert ("user_roles_user_id_idx", ("user_id",), True) in snapshot["user_roles"]["indexes"]
    assert (
        "reset_tokens_email_token_type_idx",
        ("email", "token_type"),
        True,
    ) in snapshot["reset_tokens"]["indexes"]
    for table in ("identities", "user_roles", "user_delivery_address"):
        assert snapshot[table]["foreign_keys"] == [(("user_id",), "users", ("id",), "CASCADE")]
    assert snapshot["identities"]["primary_key"] == ("user_id",)


def test_legacy_data_is_carried_forward(migration_engine, tmp_path):
    eng = migration_engine
    migrations.upgrade(eng, target=CREATE_USER_ROLES)
    hashed = get_password_hash("legacy-pw")
    for user_id, email, provider in (
        (1, "Root@Example.com", "email"),
        (2, "Social@Example.com", "google"),
    ):
        _execute(
            eng,
            "INSERT INTO users (id, email, gender, last_login_at) VALUES (:id, :email, 'male', '2018-01-02 03:04:05')",
            id=user_id,
            email=email,
        )
        _execute(
            eng,
            "INSERT INTO identities (user_id, user_email, user_password, provider) VALUES (:id, :email, :pw, :provider)",
            id=user_id,
            email=email,
            pw=hashed if provider == "email" else None,
            provider=provider,
        )
    _execute(eng, "INSERT INTO user_roles (user_id, role_id) VALUES (1, 0), (2, 1)")

    migrations.upgrade(eng, target=CREATE_RESET_TOKEN)
    _execute(eng, "INSERT INTO reset_tokens (token, email) VALUES ('tok-1', 'root@example.com')")

    # outstanding tokens cannot be given a token_type
    with pytest.raises(SchemaConflict):
        migrations.upgrade(eng)
    assert migrations.current_version(eng) == CREATE_RESET_TOKEN
    assert _rows(eng, "SELECT token FROM reset_tokens") == [{"token": "tok-1"}]

    migrations.upgrade(eng, allow_destructive=True)
    assert migrations.current_version(eng) == NAMES[-1]

    assert _rows(eng, "SELECT id, email, gender FROM users ORDER BY id") == [
        {"id": 1, "email": "root@example.com", "gender": "male"},
        {"id": 2, "email": "social@example.com", "gender": "male"},
    ]
    identities = _rows(eng, "SELECT user_id, email, password, provider FROM identities ORDER BY user_id")
    assert [(i["user_id"], i["email"], i["provider"]) for i in identities] == [
        (1, "root@example.com", "email"),
        (2, "social@example.com", "google"),
    ]
    assert identities[0]["password"] == hashed
    assert _rows(eng, "SELECT id, email_verified FROM users ORDER BY id") == [
        {"id": 1, "email_verified": 0},
        {"id": 2, "email_verified": 1},
    ]
    roles = _rows(eng, "SELECT id, user_id, name FROM user_roles ORDER BY user_id")
    assert [(r["user_id"], r["name"]) for r in roles] == [(1, "superuser"), (2, "user")]
    assert len({r["id"] for r in roles}) == 2
    assert _rows(eng, "SELECT COUNT(*) AS n FROM reset_tokens") == [{"n": 0}]

    # the service works on the migrated database
    app_engine = make_engine(str(eng.url))
    db = sessionmaker(bind=app_engine)()
    try:
        user = users_service.authenticate(db, "ROOT@example.com", "legacy-pw")
        assert user.id == 1
        assert isinstance(user.role.id, uuid.UUID)
        assert roles_service.resolve(db, user) == "superuser"
        assert users_service.issue_reset_token(db, "social@example.com", "password_reset").uuid is not None
        assert users_service.register(db, "new@example.com", "pw-123456").id == 3
    finally:
        db.close()
        app_engine.dispose()


def test_unknown_role_id_stops_migration(migration_engine):
    migrations.upgrade(migration_engine, target=CREATE_USER_ROLES)
    _execute(
        migration_engine,
        "INSERT INTO users (id, email, gender, last_login_at) VALUES (1, 'a@example.com', 'female', '2018-01-01 00:00:00')",
    )
    _execute(migration_engine, "INSERT INTO user_roles (user_id, role_id) VALUES (1, 7)")

    with pytest.raises(SchemaConflict):
        migrations.upgrade(migration_engine)

    assert migrations.current_version(migration_engine) == "20180131135318_identities_email"
    assert _rows(migration_engine, "SELECT user_id, role_id FROM user_roles") == [{"user_id": 1, "role_id": 7}]


def test_duplicate_emails_stop_migration(migration_engine):
    migrations.upgrade(migration_engine, target=CREATE_USER_ROLES)
    for user_id, email in ((1, "dup@example.com"), (2, "DUP@example.com")):
        _execute(
            migration_engine,
            "INSERT INTO users (id, email, gender, last_login_at) VALUES (:id, :email, 'undefined', '2018-01-01 00:00:00')",
            id=user_id,
            email=email,
        )

    with pytest.raises(SchemaConflict):
        migrations.upgrade(migration_engine)
    assert migrations.current_version(migration_engine) == "20180130065506_no_enum"


def test_failing_step_rolls_back(migration_engine):
    def create_widgets(ctx):
        ctx.op.create_table("widgets", sa.Column("id", sa.Integer, primary_key=True))

    def half_done(ctx):
        ctx.op.add_column("widgets", sa.Column("name", sa.String))
        ctx.conn.execute(sa.text("INSERT INTO widgets (id, name) VALUES (1, 'a')"))
        raise RuntimeError("boom")

    history = [
        Migration("0001_widgets", "create widgets", create_widgets),
        Migration("0002_broken", "fails halfway", half_done),
    ]

    with pytest.raises(MigrationError):
        migrations.upgrade(migration_engine, migrations=history)

    assert migrations.current_version(migration_engine) == "0001_widgets"
    columns = {c["name"] for c in sa.inspect(migration_engine).get_columns("widgets")}
    assert columns == {"id"}
    assert _rows(migration_engine, "SELECT COUNT(*) AS n FROM widgets") == [{"n": 0}]


def test_applied_versions_must_match_history(migration_engine):
    migrations.upgrade(migration_engine, target=CREATE_USER_ROLES)
    other = [Migration("20171218232656_create_users", "", lambda ctx: None)]

    with pytest.raises(SchemaConflict):
        migrations.pending(migration_engine, migrations=other)


def test_downgrade_round_trip(migration_engine):
    migrations.upgrade(migration_engine)
    upgraded = migrations.schema_snapshot(migration_engine)

    assert migrations.downgrade(migration_engine) == [NAMES[-1]]
    assert migrations.current_version(migration_engine) == NAMES[-2]

    reverted = migrations.downgrade(migration_engine, target="base")
    assert reverted == list(reversed(NAMES[:-1]))
    assert migrations.current_version(migration_engine) is None
    assert migrations.schema_snapshot(migration_engine) == {}

    migrations.upgrade(migration_engine)
    assert migrations.schema_snapshot(migration_engine) == upgraded


def test_downgrade_keeps_role_names(migration_engine):
    migrations.upgrade(migration_engine, target=CREATE_USER_ROLES)
    _execute(
        migration_engine,
        "INSERT INTO users (id, email, gender, last_login_at) VALUES (1, 'r@example.com', 'male', '2018-01-01 00:00:00')",
    )
    _execute(migration_engine, "INSERT INTO user_roles (user_id, role_id) VALUES (1, 0)")
    migrations.upgrade(migration_engine)

    migrations.downgrade(migration_engine, target=CREATE_USER_ROLES)

    assert _rows(migration_engine, "SELECT user_id, role_id FROM user_roles") == [{"user_id": 1, "role_id": 0}]
    assert _rows(migration_engine, "SELECT email, gender FROM users") == [{"email": "r@example.com", "gender": "male"}]


def test_downgrade_refuses_role_data_loss(migration_engine):
    migrations.upgrade(migration_engine)
    _execute(
        migration_engine,
        "INSERT INTO users (id, email, last_login_at) VALUES (1, 'd@example.com', '2018-01-01 00:00:00')",
    )
    _execute(
        migration_engine,
        "INSERT INTO user_roles (id, user_id, name, data) VALUES (:id, 1, 'user', '{\"x\": 1}')",
        id=uuid.uuid4().hex,
    )

    with pytest.raises(SchemaConflict):
        migrations.downgrade(migration_engine, target=UPDATE_RESET_TOKEN)
    assert migrations.current_version(migration_engine) == "20180920075101_update_user_roles"


def test_role_rows_get_fresh_ids_after_rebuild(migration_engine):
    migrations.upgrade(migration_engine, target=CREATE_USER_ROLES)
    for user_id in (1, 2, 3):
        _execute(
            migration_engine,
            "INSERT INTO users (id, email, gender, last_login_at) VALUES (:id, :email, 'undefined', '2018-01-01 00:00:00')",
            id=user_id,
            email=f"u{user_id}@example.com",
        )
    _execute(migration_engine, "INSERT INTO user_roles (id, user_id, role_id) VALUES (40, 1, 0)")
    _execute(migration_engine, "INSERT INTO user_roles (id, user_id, role_id) VALUES (7, 2, 1)")

    migrations.upgrade(migration_engine, target=USER_ROLES_ROLE_NAME)
    _execute(migration_engine, "INSERT INTO user_roles (user_id, role) VALUES (3, 'user')")

    rows = _rows(migration_engine, "SELECT id, user_id, role FROM user_roles ORDER BY id")
    # reissued in the old id order, and the next insert does not collide
    assert [(r["user_id"], r["role"]) for r in rows] == [(2, "user"), (1, "superuser"), (3, "user")]
    assert len({r["id"] for r in rows}) == 3


def test_verified_flag_step_is_irreversible(migration_engine, caplog):
    assert MIGRATIONS[-1].irreversible
    migrations.upgrade(migration_engine)

    with caplog.at_level(logging.WARNING, logger="identity_service.migrations.engine"):
        assert migrations.downgrade(migration_engine) == [NAMES[-1]]

    assert NAMES[-1] in caplog.text
