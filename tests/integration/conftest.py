"""
Shared fixtures for minesync integration tests.

Provides:
 - A fully wired DashboardServer over two in-memory SQLite stores
 - An httpx client talking to the FastAPI app in-process (no uvicorn)
"""

import os
import sys

import httpx
import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from minesync.server import DashboardServer
from unit._support import FakeProbe


# ── Server fixtures ───────────────────────────────────────────────────────

@pytest.fixture
def probe():
    return FakeProbe()


@pytest_asyncio.fixture
async def server(probe):
    srv = DashboardServer(local_db=":memory:", remote_db=":memory:", probe=probe)
    await srv.initialize()
    yield srv
    await srv.close()


@pytest_asyncio.fixture
async def client(server):
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://dashboard.test") as c:
        yield c
