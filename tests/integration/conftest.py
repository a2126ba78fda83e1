"""Fixtures for integration tests against a fake niri socket."""

import pytest_asyncio

from fake_niri import FakeNiri


@pytest_asyncio.fixture
async def fake_niri(config):
    niri = FakeNiri(config.niri_socket)
    await niri.start()
    yield niri
    await niri.stop()
