"""Ordered schema history.

Each entity shape is declared per version (`_users(md, 1)`, `_users(md, 2)`, ...) so that
steps never rely on reflection, and every representation change carries rows across
with an explicit old-row -> new-row function. Names are creation-timestamp prefixed;
MIGRATIONS is applied strictly in list order.

Admin bootstrap data is not part of any step: see scripts/seed_admin.py.
"""
from __future__ import annotations

from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from identity_service.errors import SchemaConflict
from identity_service.migrations.base import Migration, StepContext

GENDER_VALUES = ("male", "female", "undefined")
PROVIDER_VALUES = ("email", "unverified_email", "facebook", "google")
EXTERNAL_PROVIDER_VALUES = ("facebook", "google")

# user_roles.role_id as stored before roles became names
ROLE_ID_NAMES = {0: "superuser", 1: "user"}
ROLE_NAME_IDS = {name: role_id for role_id, name in ROLE_ID_NAMES.items()}


def _gender_enum() -> sa.Enum:
    return sa.Enum(*GENDER_VALUES, name="gender_type")


def _provider_enum() -> sa.Enum:
    return sa.Enum(*PROVIDER_VALUES, name="provider_type")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def _with_users(md: sa.MetaData) -> sa.MetaData:
    # Referent for user_id foreign keys; never created from here
    if "users" not in md.tables:
        sa.Table("users", md, sa.Column("id", sa.Integer, primary_key=True))
    return md


# ---------------------------------------------------------------------------
# Entity shapes
# ---------------------------------------------------------------------------

def _users(md: sa.MetaData, version: int) -> sa.Table:
    """v1: gender is a closed enum. v2: free text, optional. v3: lower-case, unique email."""
    gender = (
        sa.Column("gender", _gender_enum(), nullable=False)
        if version == 1
        else sa.Column("gender", sa.String, nullable=True)
    )
    extra = []
    if version >= 3:
        extra.append(sa.CheckConstraint("email = lower(email)", name="ck_users_email_lower"))
    table = sa.Table(
        "users",
        md,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("email", sa.String, nullable=False),
        sa.Column("email_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("phone", sa.String),
        sa.Column("phone_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("first_name", sa.String),
        sa.Column("last_name", sa.String),
        sa.Column("middle_name", sa.String),
        gender,
        sa.Column("birthdate", sa.String),
        sa.Column("last_login_at", sa.DateTime, nullable=False),
        *_timestamps(),
        *extra,
        sqlite_autoincrement=True,
    )
    return table


def _identities(md: sa.MetaData, version: int) -> sa.Table:
    """v1: enum provider, user_email/user_password. v2: provider free text.
    v3: email/password, user_id is the key, email unique and lower-case."""
    _with_users(md)
    if version < 3:
        provider_type = _provider_enum() if version == 1 else sa.String
        table = sa.Table(
            "identities",
            md,
            sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE")),
            sa.Column("user_email", sa.String, nullable=False),
            sa.Column("user_password", sa.String, nullable=True),
            sa.Column("provider", provider_type, nullable=(version != 1)),
        )
        sa.Index("identities_user_id_idx", table.c.user_id, unique=True)
        return table
    table = sa.Table(
        "identities",
        md,
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("email", sa.String, nullable=False),
        sa.Column("password", sa.String, nullable=True),
        sa.Column("provider", sa.String, nullable=True, server_default="email"),
        sa.CheckConstraint("email = lower(email)", name="ck_identities_email_lower"),
    )
    sa.Index("identities_user_id_idx", table.c.user_id, unique=True)
    sa.Index("identities_email_idx", table.c.email, unique=True)
    return table


def _user_roles(md: sa.MetaData, version: int) -> sa.Table:
    """v1: integer id, small-int role_id. v2: role name. v3: random uuid id, name + data."""
    _with_users(md)
    if version == 3:
        columns = [
            sa.Column("id", sa.Uuid, primary_key=True),
            sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.String, nullable=False, server_default="user"),
            sa.Column("data", sa.JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")),
        ]
    else:
        role = (
            sa.Column("role_id", sa.SmallInteger, nullable=False)
            if version == 1
            else sa.Column("role", sa.String, nullable=False)
        )
        columns = [
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            role,
        ]
    table = sa.Table("user_roles", md, *columns, *_timestamps())
    # One role row per user, re-asserted on every shape
    sa.Index("user_roles_user_id_idx", table.c.user_id, unique=True)
    return table


def _reset_tokens(md: sa.MetaData, version: int) -> sa.Table:
    """v1: one token per email. v2: one per (email, token_type). v3: adds a uuid handle."""
    columns = [
        sa.Column("token", sa.String, primary_key=True),
        sa.Column("email", sa.String, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]
    if version >= 2:
        columns.append(sa.Column("token_type", sa.String, nullable=False))
    if version >= 3:
        columns.append(sa.Column("uuid", sa.Uuid, nullable=False))
    table = sa.Table("reset_tokens", md, *columns)
    if version == 1:
        sa.Index("reset_tokens_email_idx", table.c.email, unique=True)
    else:
        sa.Index("reset_tokens_email_token_type_idx", table.c.email, table.c.token_type, unique=True)
    if version >= 3:
        sa.Index("users_reset_tokens_uuid_idx", table.c.uuid, unique=True)
    return table


def _user_delivery_address(md: sa.MetaData) -> sa.Table:
    _with_users(md)
    table = sa.Table(
        "user_delivery_address",
        md,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("administrative_area_level_1", sa.String),
        sa.Column("administrative_area_level_2", sa.String),
        sa.Column("country", sa.String, nullable=False),
        sa.Column("locality", sa.String),
        sa.Column("political", sa.String),
        sa.Column("postal_code", sa.String, nullable=False),
        sa.Column("route", sa.String),
        sa.Column("street_number", sa.String),
        sa.Column("address", sa.String),
        sa.Column("is_priority", sa.Boolean, nullable=False),
        *_timestamps(),
    )
    sa.Index("user_delivery_address_user_id_idx", table.c.user_id)
    return table


# ---------------------------------------------------------------------------
# Row transforms (pure: old row in, new row out)
# ---------------------------------------------------------------------------

def identity_v2_to_v3(row: dict) -> dict:
    if row["user_id"] is None:
        raise SchemaConflict("identity row without user_id cannot be keyed by user", email=row["user_email"])
    return {
        "user_id": row["user_id"],
        "email": row["user_email"].lower(),
        "password": row["user_password"],
        "provider": row["provider"],
    }


def identity_v3_to_v2(row: dict) -> dict:
    return {
        "user_id": row["user_id"],
        "user_email": row["email"],
        "user_password": row["password"],
        "provider": row["provider"],
    }


def identity_v2_to_v1(row: dict) -> dict:
    if row["provider"] not in PROVIDER_VALUES:
        raise SchemaConflict(
            f"provider {row['provider']!r} is outside the enumerated set",
            user_id=row["user_id"],
        )
    return dict(row)


def role_id_to_name(row: dict) -> dict:
    name = ROLE_ID_NAMES.get(row["role_id"])
    if name is None:
        raise SchemaConflict(f"unknown role_id {row['role_id']}", user_id=row["user_id"])
    return {
        "user_id": row["user_id"],
        "role": name,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def role_name_to_id(row: dict) -> dict:
    role_id = ROLE_NAME_IDS.get(row["role"])
    if role_id is None:
        raise SchemaConflict(f"role {row['role']!r} has no numeric id", user_id=row["user_id"])
    return {
        "user_id": row["user_id"],
        "role_id": role_id,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def role_to_named_role(row: dict) -> dict:
    return {
        "id": uuid4(),
        "user_id": row["user_id"],
        "name": row["role"],
        "data": None,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def named_role_to_role(row: dict) -> dict:
    # integer id is reassigned by the sequence, in created_at order
    return {
        "user_id": row["user_id"],
        "role": row["name"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def add_token_uuid(row: dict) -> dict:
    return {**row, "uuid": uuid4()}


def drop_token_uuid(row: dict) -> dict:
    return {k: v for k, v in row.items() if k != "uuid"}


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _users_batch(ctx: StepContext, version: int):
    # users is referenced by every other table: altered in place (recreated on SQLite)
    return ctx.op.batch_alter_table(
        "users",
        copy_from=_users(sa.MetaData(), version),
        table_kwargs={"sqlite_autoincrement": True},
    )


def create_users_up(ctx: StepContext) -> None:
    md = sa.MetaData()
    _users(md, 1).create(ctx.conn)
    _identities(md, 1).create(ctx.conn)


def create_users_down(ctx: StepContext) -> None:
    ctx.op.drop_table("identities")
    ctx.op.drop_table("users")
    ctx.drop_type("provider_type")
    ctx.drop_type("gender_type")


def create_user_roles_up(ctx: StepContext) -> None:
    _user_roles(sa.MetaData(), 1).create(ctx.conn)


def drop_user_roles(ctx: StepContext) -> None:
    ctx.op.drop_table("user_roles")


def no_enum_up(ctx: StepContext) -> None:
    with _users_batch(ctx, 1) as batch:
        batch.alter_column(
            "gender",
            existing_type=_gender_enum(),
            type_=sa.String(),
            nullable=True,
            postgresql_using="gender::varchar",
        )
    ctx.rebuild_table(
        _identities(sa.MetaData(), 1),
        _identities(sa.MetaData(), 2),
        lambda row: {**row, "user_email": row["user_email"].lower()},
    )
    ctx.drop_type("provider_type")
    ctx.drop_type("gender_type")

    users = sa.table("users", sa.column("email", sa.String))
    ctx.conn.execute(users.update().values(email=sa.func.lower(users.c.email)))


def no_enum_down(ctx: StepContext) -> None:
    users = sa.table("users", sa.column("gender", sa.String))
    unknown = ctx.conn.execute(
        sa.select(sa.func.count()).select_from(users).where(
            users.c.gender.is_not(None), users.c.gender.not_in(GENDER_VALUES)
        )
    ).scalar_one()
    if unknown:
        raise SchemaConflict(f"{unknown} user(s) have a gender outside the enumerated set")
    ctx.conn.execute(users.update().where(users.c.gender.is_(None)).values(gender="undefined"))

    if ctx.dialect == "postgresql":
        _gender_enum().create(ctx.conn, checkfirst=True)
    with _users_batch(ctx, 2) as batch:
        batch.alter_column(
            "gender",
            existing_type=sa.String(),
            type_=_gender_enum(),
            nullable=False,
            postgresql_using="gender::gender_type",
        )
    ctx.rebuild_table(_identities(sa.MetaData(), 2), _identities(sa.MetaData(), 1), identity_v2_to_v1)


def users_email_unique_up(ctx: StepContext) -> None:
    duplicates = ctx.conn.execute(
        sa.text("SELECT email FROM users GROUP BY email HAVING COUNT(*) > 1")
    ).scalars().all()
    if duplicates:
        raise SchemaConflict(f"{len(duplicates)} email(s) are shared by several users", emails=duplicates[:10])
    # batch first: on SQLite the table is recreated from copy_from, which carries no indexes
    with _users_batch(ctx, 2) as batch:
        batch.create_check_constraint("ck_users_email_lower", "email = lower(email)")
    ctx.op.create_index("users_email_idx", "users", ["email"], unique=True)


def users_email_unique_down(ctx: StepContext) -> None:
    ctx.op.drop_index("users_email_idx", table_name="users")
    with _users_batch(ctx, 3) as batch:
        batch.drop_constraint("ck_users_email_lower", type_="check")


def identities_email_up(ctx: StepContext) -> None:
    duplicates = ctx.conn.execute(
        sa.text("SELECT user_email FROM identities GROUP BY user_email HAVING COUNT(*) > 1")
    ).scalars().all()
    if duplicates:
        raise SchemaConflict(f"{len(duplicates)} identity email(s) are bound more than once", emails=duplicates[:10])
    ctx.rebuild_table(_identities(sa.MetaData(), 2), _identities(sa.MetaData(), 3), identity_v2_to_v3)


def identities_email_down(ctx: StepContext) -> None:
    ctx.rebuild_table(_identities(sa.MetaData(), 3), _identities(sa.MetaData(), 2), identity_v3_to_v2)


def user_roles_name_up(ctx: StepContext) -> None:
    # ids are reissued by the new table's sequence, in the old id order
    ctx.rebuild_table(_user_roles(sa.MetaData(), 1), _user_roles(sa.MetaData(), 2), role_id_to_name, order_by="id")


def user_roles_name_down(ctx: StepContext) -> None:
    ctx.rebuild_table(_user_roles(sa.MetaData(), 2), _user_roles(sa.MetaData(), 1), role_name_to_id, order_by="id")


def create_reset_token_up(ctx: StepContext) -> None:
    _reset_tokens(sa.MetaData(), 1).create(ctx.conn)


def drop_reset_tokens(ctx: StepContext) -> None:
    ctx.op.drop_table("reset_tokens")


def update_reset_token_up(ctx: StepContext) -> None:
    # Old tokens have no token_type and cannot be classified: they are dropped
    ctx.clear_table("reset_tokens", "no token_type can be derived for outstanding tokens")
    ctx.rebuild_table(_reset_tokens(sa.MetaData(), 1), _reset_tokens(sa.MetaData(), 2))


def update_reset_token_down(ctx: StepContext) -> None:
    # Several tokens per email would violate the per-email index: start empty
    ctx.clear_table("reset_tokens", "per-email uniqueness cannot hold tokens of several types")
    ctx.rebuild_table(_reset_tokens(sa.MetaData(), 2), _reset_tokens(sa.MetaData(), 1))


def create_user_delivery_address_up(ctx: StepContext) -> None:
    _user_delivery_address(sa.MetaData()).create(ctx.conn)


def drop_user_delivery_address(ctx: StepContext) -> None:
    ctx.op.drop_table("user_delivery_address")


def update_user_roles_up(ctx: StepContext) -> None:
    ctx.rebuild_table(_user_roles(sa.MetaData(), 2), _user_roles(sa.MetaData(), 3), role_to_named_role)


def update_user_roles_down(ctx: StepContext) -> None:
    user_roles = sa.table("user_roles", sa.column("data"))
    with_data = ctx.conn.execute(
        sa.select(sa.func.count()).select_from(user_roles).where(user_roles.c.data.is_not(None))
    ).scalar_one()
    if with_data and not ctx.allow_destructive:
        raise SchemaConflict(f"{with_data} role row(s) carry data that the old shape cannot hold")
    ctx.rebuild_table(
        _user_roles(sa.MetaData(), 3),
        _user_roles(sa.MetaData(), 2),
        named_role_to_role,
        order_by="created_at",
    )


def add_token_uuid_up(ctx: StepContext) -> None:
    ctx.rebuild_table(_reset_tokens(sa.MetaData(), 2), _reset_tokens(sa.MetaData(), 3), add_token_uuid)


def add_token_uuid_down(ctx: StepContext) -> None:
    ctx.rebuild_table(_reset_tokens(sa.MetaData(), 3), _reset_tokens(sa.MetaData(), 2), drop_token_uuid)


def _external_identity_user_ids():
    identities = sa.table("identities", sa.column("user_id"), sa.column("provider"))
    return sa.select(identities.c.user_id).where(identities.c.provider.in_(EXTERNAL_PROVIDER_VALUES))


def verify_external_users_up(ctx: StepContext) -> None:
    users = sa.table("users", sa.column("id"), sa.column("email_verified", sa.Boolean))
    ctx.conn.execute(
        users.update().where(users.c.id.in_(_external_identity_user_ids())).values(email_verified=True)
    )


def verify_external_users_down(ctx: StepContext) -> None:
    # also clears users that were verified before the upgrade: marked irreversible
    users = sa.table("users", sa.column("id"), sa.column("email_verified", sa.Boolean))
    ctx.conn.execute(
        users.update().where(users.c.id.in_(_external_identity_user_ids())).values(email_verified=False)
    )


MIGRATIONS: list[Migration] = [
    Migration(
        "20171218232656_create_users",
        "Create users and identities (gender and provider as enums)",
        create_users_up,
        create_users_down,
    ),
    Migration(
        "20180124110147_create_user_roles",
        "Create user_roles with numeric role_id, one row per user",
        create_user_roles_up,
        drop_user_roles,
    ),
    Migration(
        "20180130065506_no_enum",
        "Gender and provider become free text; emails lower-cased",
        no_enum_up,
        no_enum_down,
    ),
    Migration(
        "20180131135120_users_email_unique",
        "Unique, lower-case users.email",
        users_email_unique_up,
        users_email_unique_down,
    ),
    Migration(
        "20180131135318_identities_email",
        "identities.user_email/user_password become email/password; unique email; user_id key",
        identities_email_up,
        identities_email_down,
    ),
    Migration(
        "20180131135736_user_roles_role_name",
        "user_roles.role_id becomes a role name",
        user_roles_name_up,
        user_roles_name_down,
    ),
    Migration(
        "20180319180000_create_reset_token",
        "Create reset_tokens, one outstanding token per email",
        create_reset_token_up,
        drop_reset_tokens,
    ),
    Migration(
        "20180514163000_update_reset_token",
        "reset_tokens gain token_type; uniqueness moves to (email, token_type)",
        update_reset_token_up,
        update_reset_token_down,
        destructive=True,
        irreversible=True,
    ),
    Migration(
        "20180515180036_create_user_delivery_address",
        "Create user_delivery_address",
        create_user_delivery_address_up,
        drop_user_delivery_address,
    ),
    Migration(
        "20180920075101_update_user_roles",
        "user_roles: role -> name + data, integer id -> random uuid",
        update_user_roles_up,
        update_user_roles_down,
    ),
    Migration(
        "20181121150207_add_uuid",
        "reset_tokens gain a unique random uuid",
        add_token_uuid_up,
        add_token_uuid_down,
    ),
    Migration(
        "20181213140130_update_users",
        "Users with a google/facebook identity have a verified email",
        verify_external_users_up,
        verify_external_users_down,
        irreversible=True,
    ),
]
