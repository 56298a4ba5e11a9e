"""Shared pytest fixtures for the Kaleidoplan test suite."""

from __future__ import annotations

import pytest

from kaleidoplan.config import SpotifyCredentials
from kaleidoplan.core.token_store import MemoryTokenStore

from .fakes import FakeClock, MockSpotify


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials() -> SpotifyCredentials:
    return SpotifyCredentials(client_id="client-id", client_secret="client-secret")


@pytest.fixture
def store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture
def spotify() -> MockSpotify:
    return MockSpotify()


@pytest.fixture
async def http_client(spotify: MockSpotify):
    client = spotify.client()
    yield client
    await client.aclose()
