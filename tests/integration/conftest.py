"""
Shared fixtures for poolboard integration tests.

Provides:
 - A DashboardServer wired to an in-memory database and a scripted FakeSource
 - A FastAPI TestClient over the server's real app and routers
 - Helpers for seeding blocks through the collector
"""

import pytest
import pytest_asyncio

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from poolboard.server import DashboardServer
from unit.fake_source import FakeExplorer, FakeSource, addr

RATE_LIMIT = 100


@pytest.fixture
def source():
    return FakeSource()


@pytest_asyncio.fixture
async def server(source):
    srv = DashboardServer(
        db_path=":memory:",
        source=source,
        explorer=FakeExplorer(),
        rate_limit=RATE_LIMIT,
        enable_reconcile=False,
        keep_blocks=None,
    )
    await srv.initialize()
    yield srv
    await srv.stop()


@pytest.fixture
def client(server):
    from fastapi.testclient import TestClient
    return TestClient(server.app)


@pytest.fixture
def seed(server, source):
    """Script the source for a block and collect it."""
    async def _seed(block_height, entries):
        source.set_block(block_height, entries)
        assert await server.collector.collect(block_height) is True
    return _seed


@pytest.fixture
def alice():
    return addr("alice")


@pytest.fixture
def bob():
    return addr("bob")


@pytest.fixture
def carol():
    return addr("carol")
