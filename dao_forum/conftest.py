"""
Pytest configuration and shared fixtures.

Environment variables may come from .env.test; the defaults below let the
suite run against a local SQLite file. Settings are reloaded before any
module reads them.
"""

import os
from datetime import timedelta

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_forum.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

# Clear settings cache before any app imports to ensure test env vars are used
from dao_forum.config import get_settings
get_settings.cache_clear()

from dao_forum.coordinator import ConsistencyCoordinator  # noqa: E402
from dao_forum.reply_index import InMemoryReplyIndex  # noqa: E402
from dao_forum.storage import Base, SessionLocal, SqlMessageStore, SqlThreadOwners, engine, init_db  # noqa: E402
from dao_forum.threads import ThreadAssembler  # noqa: E402
from dao_forum.utils import utc_now  # noqa: E402

DAO_ID = "dao-1"
DAO_OWNER = "owner-1"


class StepClock:
    """Hands out strictly increasing creation times, one second apart."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.current = start or (utc_now() - timedelta(hours=1))
        self.step = step

    def __call__(self):
        self.current = self.current + self.step
        return self.current


@pytest.fixture
def db_session():
    """Fresh database for each test."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def reply_index():
    return InMemoryReplyIndex()


@pytest.fixture
def store(db_session):
    return SqlMessageStore(db_session)


@pytest.fixture
def owners(db_session):
    owners = SqlThreadOwners(db_session)
    owners.add(DAO_ID, DAO_OWNER)
    return owners


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def coordinator(store, reply_index, owners, clock):
    return ConsistencyCoordinator(store, reply_index, owners, clock=clock)


@pytest.fixture
def assembler(store, reply_index):
    return ThreadAssembler(store, reply_index)
