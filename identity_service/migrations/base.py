"""Building blocks for migration steps."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection

from identity_service.errors import SchemaConflict

logger = logging.getLogger(__name__)

RowTransform = Callable[[dict[str, Any]], dict[str, Any]]


class StepContext:
    """What a migration step gets to work with: the open transaction, Alembic
    operations bound to it, and the operator's destructive-change confirmation."""

    def __init__(self, conn: Connection, allow_destructive: bool = False):
        self.conn = conn
        self.allow_destructive = allow_destructive
        self.op = Operations(MigrationContext.configure(connection=conn))

    @property
    def dialect(self) -> str:
        return self.conn.dialect.name

    def count(self, table_name: str) -> int:
        return self.conn.execute(sa.text(f"SELECT COUNT(*) FROM {table_name}")).scalar_one()

    def clear_table(self, table_name: str, reason: str) -> int:
        """Delete every row of a table. Refused unless the operator confirmed data loss."""
        n = self.count(table_name)
        if n and not self.allow_destructive:
            raise SchemaConflict(
                f"{table_name} has {n} row(s) that must be deleted ({reason}); "
                "re-run with destructive changes allowed",
                table=table_name,
                rows=n,
            )
        if n:
            self.conn.execute(sa.text(f"DELETE FROM {table_name}"))
            logger.warning("Cleared %d row(s) from %s: %s", n, table_name, reason)
        return n

    def drop_type(self, name: str) -> None:
        if self.dialect == "postgresql":
            self.op.execute(f"DROP TYPE IF EXISTS {name}")

    def rebuild_table(
        self,
        old: sa.Table,
        new: sa.Table,
        transform: Optional[RowTransform] = None,
        order_by: Optional[str] = None,
    ) -> int:
        """Replace a table by a new shape, carrying every row through `transform`.

        Only for tables nothing else references. `old` must describe the current shape
        so values come back typed. The transform is a pure old-row -> new-row function;
        it raises SchemaConflict for a row it cannot map instead of dropping it.
        """
        query = sa.select(old)
        if order_by:
            query = query.order_by(old.c[order_by])
        rows = [dict(r) for r in self.conn.execute(query).mappings()]
        converted = [transform(row) if transform else row for row in rows]

        self.op.drop_table(old.name)
        new.create(self.conn)
        if converted:
            self.conn.execute(new.insert(), converted)
        logger.info("Rebuilt %s (%d row(s) carried over)", new.name, len(converted))
        return len(converted)


@dataclass(frozen=True)
class Migration:
    name: str
    description: str
    upgrade: Callable[[StepContext], None]
    downgrade: Optional[Callable[[StepContext], None]] = None
    # upgrade may delete rows (needs allow_destructive when rows exist)
    destructive: bool = False
    # downgrade cannot restore what the upgrade changed
    irreversible: bool = False
