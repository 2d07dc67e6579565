"""
Bring the database schema to the current version (or roll it back).
Run from project root before starting the service:
  python scripts/migrate.py upgrade
  python scripts/migrate.py upgrade --allow-destructive   # steps that must delete rows
  python scripts/migrate.py downgrade --target 20180131135736_user_roles_role_name
  python scripts/migrate.py status
DATABASE_URL from .env / environment unless --database-url is given.
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import click

from identity_service.config import get_settings
from identity_service.database import make_engine
from identity_service.errors import IdentityServiceError
from identity_service.logging_config import configure_logging
from identity_service import migrations


def _engine(database_url):
    # Table rebuilds must not fire ON DELETE CASCADE on SQLite
    return make_engine(database_url or get_settings().database_url, enforce_foreign_keys=False)


@click.group()
@click.option("--database-url", default=None, help="Overrides DATABASE_URL.")
@click.pass_context
def cli(ctx, database_url):
    configure_logging(get_settings().log_level)
    ctx.obj = _engine(database_url)


@cli.command()
@click.option("--target", default=None, help="Stop after this version (default: latest).")
@click.option("--allow-destructive", is_flag=True, help="Allow steps that delete rows they cannot convert.")
@click.pass_obj
def upgrade(engine, target, allow_destructive):
    try:
        applied = migrations.upgrade(engine, target=target, allow_destructive=allow_destructive)
    except IdentityServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    for name in applied:
        print(f"  applied: {name}")
    print(f"Done. Schema at {migrations.current_version(engine)}")


@cli.command()
@click.option("--target", default=None, help='Keep this version applied; "base" reverts everything. Default: last step only.')
@click.option("--allow-destructive", is_flag=True, help="Allow steps that lose data on the way down.")
@click.pass_obj
def downgrade(engine, target, allow_destructive):
    try:
        reverted = migrations.downgrade(engine, target=target, allow_destructive=allow_destructive)
    except IdentityServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    for name in reverted:
        print(f"  reverted: {name}")
    print(f"Done. Schema at {migrations.current_version(engine) or 'base'}")


@cli.command()
@click.pass_obj
def status(engine):
    print(f"Current: {migrations.current_version(engine) or 'base'}")
    for m in migrations.pending(engine):
        flag = " (destructive)" if m.destructive else ""
        print(f"  pending: {m.name}{flag} - {m.description}")


if __name__ == "__main__":
    cli()
