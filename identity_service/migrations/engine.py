"""Apply and roll back the ordered schema history.

Applied steps are recorded in `schema_migrations`. Each step runs in its own
transaction together with its version row: a failing step leaves the schema and the
data exactly as the previous step left them. Nothing is retried.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from identity_service.errors import IdentityServiceError, MigrationError, SchemaConflict
from identity_service.migrations.base import Migration, StepContext
from identity_service.migrations.versions import MIGRATIONS

logger = logging.getLogger(__name__)

VERSION_TABLE = "schema_migrations"

_metadata = sa.MetaData()
schema_migrations = sa.Table(
    VERSION_TABLE,
    _metadata,
    sa.Column("version", sa.String(255), primary_key=True),
    sa.Column("description", sa.String(500)),
    sa.Column("applied_at", sa.DateTime, nullable=False),
)


def _history(migrations: Optional[Sequence[Migration]]) -> list[Migration]:
    history = list(MIGRATIONS if migrations is None else migrations)
    names = [m.name for m in history]
    if len(set(names)) != len(names):
        raise MigrationError("Duplicate migration names in history")
    if names != sorted(names):
        raise MigrationError("Migration history is not in name order")
    return history


def _ensure_version_table(engine: Engine) -> None:
    with engine.begin() as conn:
        schema_migrations.create(conn, checkfirst=True)


def _applied(conn: Connection) -> list[str]:
    return list(
        conn.execute(sa.select(schema_migrations.c.version).order_by(schema_migrations.c.version)).scalars()
    )


def applied_versions(engine: Engine) -> list[str]:
    """Versions recorded as applied, oldest first. Empty for a database never migrated."""
    if not sa.inspect(engine).has_table(VERSION_TABLE):
        return []
    with engine.connect() as conn:
        return _applied(conn)


def _check_applied_prefix(applied: list[str], history: list[Migration]) -> None:
    known = [m.name for m in history[: len(applied)]]
    if applied != known:
        raise SchemaConflict(
            "Applied versions do not match the head of the migration history",
            applied=applied,
            expected=known,
        )


def current_version(engine: Engine) -> Optional[str]:
    applied = applied_versions(engine)
    return applied[-1] if applied else None


def pending(engine: Engine, migrations: Optional[Sequence[Migration]] = None) -> list[Migration]:
    history = _history(migrations)
    applied = applied_versions(engine)
    _check_applied_prefix(applied, history)
    return history[len(applied):]


def _index_of(history: list[Migration], target: str) -> int:
    for i, m in enumerate(history):
        if m.name == target:
            return i
    raise MigrationError(f"Unknown migration: {target}")


def _run_step(engine: Engine, migration: Migration, direction: str, allow_destructive: bool) -> None:
    fn = migration.upgrade if direction == "up" else migration.downgrade
    try:
        with engine.begin() as conn:
            fn(StepContext(conn, allow_destructive=allow_destructive))
            if direction == "up":
                conn.execute(
                    schema_migrations.insert().values(
                        version=migration.name,
                        description=migration.description,
                        applied_at=datetime.now(timezone.utc).replace(tzinfo=None),
                    )
                )
            else:
                conn.execute(schema_migrations.delete().where(schema_migrations.c.version == migration.name))
    except IdentityServiceError:
        logger.error("Migration %s (%s) rolled back", migration.name, direction)
        raise
    except Exception as e:
        logger.exception("Migration %s (%s) failed; rolled back", migration.name, direction)
        raise MigrationError(f"{migration.name} failed: {e}", version=migration.name) from e


def upgrade(
    engine: Engine,
    target: Optional[str] = None,
    allow_destructive: bool = False,
    migrations: Optional[Sequence[Migration]] = None,
) -> list[str]:
    """Apply pending steps in order, up to and including `target` (default: all).

    Returns the names of the steps applied. Stops at the first failing step; steps
    applied before it stay applied.
    """
    history = _history(migrations)
    _ensure_version_table(engine)
    with engine.connect() as conn:
        applied = _applied(conn)
    _check_applied_prefix(applied, history)

    stop = len(history) if target is None else _index_of(history, target) + 1
    if stop < len(applied):
        raise SchemaConflict(f"Database is already past {target}; use downgrade", current=applied[-1])

    done = []
    for migration in history[len(applied):stop]:
        logger.info("Applying %s: %s", migration.name, migration.description)
        _run_step(engine, migration, "up", allow_destructive)
        done.append(migration.name)
    if not done:
        logger.info("Schema is up to date (%s)", applied[-1] if applied else "empty")
    return done


def downgrade(
    engine: Engine,
    target: Optional[str] = None,
    allow_destructive: bool = False,
    migrations: Optional[Sequence[Migration]] = None,
) -> list[str]:
    """Roll back applied steps, newest first.

    target=None reverts the latest step only; target="base" reverts everything;
    any other value reverts every step applied after it.
    """
    history = _history(migrations)
    applied = applied_versions(engine)
    _check_applied_prefix(applied, history)
    if not applied:
        return []

    if target is None:
        keep = len(applied) - 1
    elif target == "base":
        keep = 0
    else:
        keep = _index_of(history, target) + 1
        if keep > len(applied):
            raise SchemaConflict(f"{target} is not applied", current=applied[-1])

    done = []
    for migration in reversed(history[keep:len(applied)]):
        if migration.downgrade is None:
            raise SchemaConflict(f"{migration.name} cannot be rolled back", version=migration.name)
        if migration.irreversible:
            logger.warning("Rolling back %s cannot restore data it removed", migration.name)
        logger.info("Reverting %s", migration.name)
        _run_step(engine, migration, "down", allow_destructive)
        done.append(migration.name)
    return done


def schema_snapshot(engine: Engine) -> dict:
    """Comparable description of the live schema: columns, keys, indexes and foreign keys per table."""
    insp = sa.inspect(engine)
    snapshot = {}
    for table in sorted(insp.get_table_names()):
        if table == VERSION_TABLE:
            continue
        columns = sorted(
            (c["name"], type(c["type"]).__name__, bool(c["nullable"])) for c in insp.get_columns(table)
        )
        pk = tuple(insp.get_pk_constraint(table).get("constrained_columns") or ())
        indexes = sorted(
            (ix["name"] or "", tuple(ix["column_names"]), bool(ix["unique"])) for ix in insp.get_indexes(table)
        )
        fks = sorted(
            (
                tuple(fk["constrained_columns"]),
                fk["referred_table"],
                tuple(fk["referred_columns"]),
                (fk.get("options") or {}).get("ondelete") or "",
            )
            for fk in insp.get_foreign_keys(table)
        )
        snapshot[table] = {"columns": columns, "primary_key": pk, "indexes": indexes, "foreign_keys": fks}
    return snapshot
