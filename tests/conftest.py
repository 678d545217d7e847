"""
Shared fixtures: file-backed SQLite key store, mock clock, audit sink.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from core.audit import InMemoryAuditSink
from core.clock import MockClock
from key_management.config import KeyManagerConfig
from key_management.manager import KeyManager
from storage.database import Database, DatabaseConfig
from storage.key_store import SqlAlchemyKeyStore


START = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'keys.db'}"))
    await db.connect()
    await db.create_tables()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def key_store(database):
    return SqlAlchemyKeyStore(database.session_factory, is_sqlite=True)


@pytest_asyncio.fixture
async def key_manager(key_store, audit, clock):
    return KeyManager(key_store, audit, clock, KeyManagerConfig())
