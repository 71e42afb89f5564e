from unittest.mock import AsyncMock

import pytest

from ridesync.api_client import RideApiClient
from ridesync.core.retry import RetryConfig
from ridesync.fetcher import RideSnapshotFetcher
from ridesync.settings import TransportSettings
from ridesync.sync_logging import LogContext
from ridesync.tracker import RideTracker
from ridesync.transport import SessionHandle
from tests.fakes import FakeConnector


@pytest.fixture(autouse=True)
def clear_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def transport_settings() -> TransportSettings:
    return TransportSettings(
        url="ws://backend.test/ws",
        reconnect_attempts=3,
        reconnect_base_delay=0.001,
        reconnect_max_delay=0.005,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
async def session(transport_settings, connector):
    handle = SessionHandle("token-p1", "p1", transport_settings, connector)
    await handle.open()
    yield handle
    await handle.close()


@pytest.fixture
def api() -> AsyncMock:
    return AsyncMock(spec=RideApiClient)


@pytest.fixture
def fetcher(api) -> RideSnapshotFetcher:
    return RideSnapshotFetcher(api, RetryConfig(max_attempts=2, base_delay=0.001))


@pytest.fixture
def effects() -> list:
    return []


@pytest.fixture
async def tracker(session, fetcher, api, effects):
    ride_tracker = RideTracker(session, fetcher, api=api, effect_sink=effects.append)
    ride_tracker.start()
    yield ride_tracker
    await ride_tracker.stop()


@pytest.fixture
async def driver_session(transport_settings, connector):
    handle = SessionHandle("token-d1", "d1", transport_settings, connector)
    await handle.open()
    yield handle
    await handle.close()
