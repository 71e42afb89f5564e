"""Wiring of the sync components for one signed-in participant."""

import logging

from pydantic import ValidationError as PydanticValidationError

from ridesync.api_client import RideApiClient
from ridesync.chat import RideChat
from ridesync.core.exceptions import ConfigurationError, StateError, TransientError
from ridesync.core.retry import RetryConfig
from ridesync.dispatch import DriverDispatchCoordinator, PassengerDispatchCoordinator
from ridesync.fetcher import RideSnapshotFetcher
from ridesync.publisher import DriverLocationPublisher, LocationProvider
from ridesync.ride import Ride, RideStatus
from ridesync.settings import Settings, get_settings
from ridesync.sync_logging import setup_logging
from ridesync.tracker import EffectSink, RideTracker
from ridesync.transport import (
    ConnectFactory,
    ConnectionState,
    SessionHandle,
    TransportSessionManager,
)

logger = logging.getLogger(__name__)


def load_settings() -> Settings:
    """Read settings from the environment, failing with ConfigurationError."""
    try:
        return get_settings()
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid ridesync configuration: {e.error_count()} error(s)",
            {"errors": e.errors(include_url=False)},
        ) from e


def create_api_client(settings: Settings) -> RideApiClient:
    return RideApiClient(settings.api.base_url, timeout=settings.api.timeout)


def create_fetcher(settings: Settings, api: RideApiClient) -> RideSnapshotFetcher:
    retry = RetryConfig(
        max_attempts=settings.api.fetch_max_attempts,
        base_delay=settings.api.fetch_retry_base_delay,
    )
    return RideSnapshotFetcher(api, retry)


class RideSyncEngine:
    """Owns the session, the tracker and the participant coordinators.

    Build one per sign-in with ``start_engine`` and close it on logout.
    """

    def __init__(
        self,
        settings: Settings,
        manager: TransportSessionManager,
        session: SessionHandle,
        api: RideApiClient,
        tracker: RideTracker,
    ):
        self.settings = settings
        self.manager = manager
        self.session = session
        self.api = api
        self.tracker = tracker
        self.passenger: PassengerDispatchCoordinator | None = None
        self.driver: DriverDispatchCoordinator | None = None
        self.publisher: DriverLocationPublisher | None = None
        self.chats: dict[str, RideChat] = {}

    def as_passenger(self, passenger_id: str) -> PassengerDispatchCoordinator:
        if self.driver is not None:
            raise StateError("Engine is already signed in as a driver")
        if self.passenger is None:
            self.passenger = PassengerDispatchCoordinator(
                self.session, self.tracker, self.api, passenger_id, self.settings.dispatch
            )
        return self.passenger

    def as_driver(self, driver_id: str, provider: LocationProvider) -> DriverDispatchCoordinator:
        if self.passenger is not None:
            raise StateError("Engine is already signed in as a passenger")
        if self.driver is None:
            self.publisher = DriverLocationPublisher(
                self.session, provider, driver_id, self.settings.publisher, api=self.api
            )
            self.driver = DriverDispatchCoordinator(
                self.session, self.tracker, self.publisher, driver_id, self.settings.dispatch
            )
            self.driver.start()
        return self.driver

    async def open_chat(self, ride_id: str, user_id: str | None = None) -> RideChat:
        """Open, or return the already open, chat of a ride."""
        chat = self.chats.get(ride_id)
        if chat is None:
            user_id = user_id or self.session.user_id
            if not user_id:
                raise StateError("Opening a chat needs the signed-in user id")
            chat = RideChat(self.session, self.api, ride_id, user_id, self.settings.chat)
            self.chats[ride_id] = chat
        await chat.open()
        return chat

    async def close_chat(self, ride_id: str) -> None:
        chat = self.chats.pop(ride_id, None)
        if chat is not None:
            await chat.close()

    async def ride_history(self, status: RideStatus | None = None) -> list[Ride]:
        """Rides of the signed-in user, optionally narrowed to one status."""
        return await self.api.list_my_rides(self.session.token, status)

    async def reauthenticate(self, token: str) -> ConnectionState:
        """Continue the sign-in with a refreshed token.

        Tracked rides, rooms and coordinators survive; rides that were
        in flight are refreshed from their snapshots once the channel
        is back.
        """
        await self.manager.reauthenticate(token)
        if self.session.is_connected and not self.tracker.non_terminal_ride_ids():
            await self._restore()
        return self.session.state

    async def _restore(self) -> None:
        try:
            await self.tracker.restore_active_ride()
        except TransientError as e:
            logger.warning(f"Could not restore the active ride, continuing without it: {e}")

    async def close(self) -> None:
        for ride_id in list(self.chats):
            await self.close_chat(ride_id)
        if self.passenger is not None:
            await self.passenger.close()
        if self.driver is not None:
            await self.driver.close()
        if self.publisher is not None:
            await self.publisher.close()
        await self.tracker.stop()
        await self.manager.disconnect()
        logger.info("Sync engine closed")


async def start_engine(
    token: str,
    user_id: str,
    settings: Settings | None = None,
    effect_sink: EffectSink | None = None,
    connect_factory: ConnectFactory | None = None,
    configure_logging: bool = False,
) -> RideSyncEngine:
    """Connect the push channel for ``token`` and resume any active ride."""
    settings = settings or load_settings()
    if configure_logging:
        setup_logging(
            level=settings.logging.level,
            json_output=settings.logging.format == "json",
            environment=settings.logging.environment,
        )

    manager = TransportSessionManager(settings.transport, connect_factory)
    session = await manager.connect(token, user_id)
    logger.info(f"Channel for {user_id} settled as {session.state.value}")

    api = create_api_client(settings)
    tracker = RideTracker(session, create_fetcher(settings, api), api=api, effect_sink=effect_sink)
    tracker.start()
    engine = RideSyncEngine(settings, manager, session, api, tracker)

    if session.is_connected:
        await engine._restore()
    return engine
