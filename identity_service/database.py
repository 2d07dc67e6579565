"""
Database connection and session.

Schema source of truth for fresh databases: identity_service.models. For a new (empty)
database, Base.metadata.create_all(bind=engine) builds every table with its constraints.
Existing databases are evolved by the ordered steps in identity_service.migrations,
which must run to completion before the service accepts traffic.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from identity_service.config import get_settings


def make_engine(url: str, enforce_foreign_keys: bool = True) -> Engine:
    """Create an engine. SQLite gets foreign key enforcement (for ON DELETE CASCADE)
    and explicit BEGIN so DDL runs inside the surrounding transaction."""
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url)
    pragma = "ON" if enforce_foreign_keys else "OFF"

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy; pysqlite would otherwise autocommit DDL
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA foreign_keys = {pragma}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


settings = get_settings()
engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
