"""Shared fixtures."""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from platform_sessions.config import Settings
from platform_sessions.core import SessionHealthMonitor, SessionStore, SessionValidator
from platform_sessions.database import Database, init_database
from platform_sessions.errors import ErrorLogger
from platform_sessions.models import Watchlist


def _make_client(probe=True, watchlists=None, refresh=True):
    """Platform client double; pass an exception instance to make a call raise."""
    client = MagicMock()
    client.probe = AsyncMock()
    client.list_watchlists = AsyncMock()
    client.refresh = AsyncMock()

    for method, value in (
        (client.probe, probe),
        (client.list_watchlists, watchlists if watchlists is not None else [
            Watchlist(id="101", name="Tech"),
            Watchlist(id="102", name="Energy"),
        ]),
        (client.refresh, refresh),
    ):
        if isinstance(value, BaseException):
            method.side_effect = value
        else:
            method.return_value = value
    return client


@pytest.fixture
def make_client():
    return _make_client


@pytest.fixture
def test_settings():
    """Settings with short intervals so monitoring loops run quickly."""
    return Settings(
        health_check_interval=0.05,
        degraded_check_interval=0.01,
        max_check_interval=0.05,
        backoff_base=2.0,
        max_consecutive_failures=3,
        platform_timeout=0.2,
        invalidation_delay=0.01,
    )


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    await init_database(db_path)

    database = Database(db_path)
    await database.connect()

    yield database

    await database.close()
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def store(db):
    return SessionStore(db)


@pytest.fixture
def clients(make_client):
    return {
        "marketinout": make_client(),
        "tradingview": make_client(),
    }


@pytest.fixture
async def monitor(store, clients, test_settings):
    health_monitor = SessionHealthMonitor(store, clients, ErrorLogger(), test_settings)
    yield health_monitor
    await health_monitor.shutdown()


@pytest.fixture
def validator(store, monitor, clients, test_settings):
    return SessionValidator(store, monitor, clients, monitor.error_logger, test_settings)
