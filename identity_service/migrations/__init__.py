"""
Ordered schema history for the identity store.
Run scripts/migrate.py (or upgrade()) before the service accepts traffic.
"""
from identity_service.migrations.base import Migration, StepContext
from identity_service.migrations.engine import (
    VERSION_TABLE,
    applied_versions,
    current_version,
    downgrade,
    pending,
    schema_snapshot,
    upgrade,
)
from identity_service.migrations.versions import MIGRATIONS

__all__ = [
    "MIGRATIONS",
    "Migration",
    "StepContext",
    "VERSION_TABLE",
    "applied_versions",
    "current_version",
    "downgrade",
    "pending",
    "schema_snapshot",
    "upgrade",
]
