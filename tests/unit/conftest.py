"""Shared fixtures for the minesync unit tests."""

import pytest
import pytest_asyncio

from minesync.storage import StorageManager

from _support import FakeProbe


@pytest_asyncio.fixture
async def local_storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest_asyncio.fixture
async def remote_storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def fake_probe():
    return FakeProbe()
