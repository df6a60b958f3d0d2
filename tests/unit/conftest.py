"""Shared fixtures for the poolboard unit test suite."""

import time

import aiosqlite
import pytest
import pytest_asyncio

from poolboard.collector import WatermarkCollector
from poolboard.leaderboard import LeaderboardRankingEngine
from poolboard.privacy import AddressPrivacyFilter
from poolboard.storage import SCHEMA_SQL, SCHEMA_VERSION, StorageManager

from fake_source import FakeSource, addr


@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    await conn.executescript(SCHEMA_SQL)
    await conn.execute(
        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
        (SCHEMA_VERSION, time.time()),
    )
    await conn.commit()
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def collector(storage, source):
    return WatermarkCollector(storage, source, keep_blocks=None)


@pytest.fixture
def privacy(storage):
    return AddressPrivacyFilter(storage.participants)


@pytest.fixture
def engine(storage, privacy):
    return LeaderboardRankingEngine(storage, privacy)


@pytest.fixture
def alice():
    return addr("alice")


@pytest.fixture
def bob():
    return addr("bob")


@pytest.fixture
def carol():
    return addr("carol")


@pytest.fixture
def dave():
    return addr("dave")
