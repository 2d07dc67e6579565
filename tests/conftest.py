"""Shared fixtures: a throwaway SQLite file per test.

DATABASE_URL is pointed at SQLite before the package is imported, so the module-level
engine in identity_service.database never needs a PostgreSQL server or driver.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy.orm import sessionmaker

from identity_service.config import get_settings
from identity_service.database import Base, make_engine
import identity_service.models  # noqa: F401  (registers every table on Base.metadata)


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'identity.db'}"


@pytest.fixture
def engine(db_url):
    """Engine over a schema created straight from the models."""
    eng = make_engine(db_url)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def migration_engine(db_url):
    """Engine the way scripts/migrate.py builds it: empty database, FK enforcement off."""
    eng = make_engine(db_url, enforce_foreign_keys=False)
    yield eng
    eng.dispose()
