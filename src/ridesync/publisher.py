"""Driver availability toggle and throttled location publishing."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from ridesync.api_client import RideApiClient
from ridesync.core.exceptions import LocationUnavailable, TransportDisconnected
from ridesync.events import DriverLocationPayload, DriverSetUnavailablePayload, RideLocationPayload
from ridesync.geo import has_moved
from ridesync.ride import GeoPoint
from ridesync.settings import PublisherSettings
from ridesync.transport import SessionHandle

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


@dataclass(frozen=True)
class PositionFix:
    point: GeoPoint
    timestamp: datetime


FixCallback = Callable[[PositionFix], Awaitable[None] | None]


class LocationWatch(Protocol):
    def stop(self) -> None: ...


class LocationProvider(Protocol):
    """Device position source.

    Implementations raise ``LocationUnavailable`` (or ``PermissionError``)
    when the position cannot be read.
    """

    async def current_position(self) -> PositionFix: ...

    def watch(
        self, callback: FixCallback, min_interval: float, min_distance_m: float
    ) -> LocationWatch: ...


class DriverLocationPublisher:
    """Sends a driver's position while they are available and in the foreground.

    A fix is sent when ``interval_seconds`` have elapsed since the last
    send or the driver moved at least ``min_distance_m``, whichever
    comes first. Nothing is buffered while the channel is down.

    Sequence numbers start from the wall clock in milliseconds unless
    ``seq_seed`` is given, so a restarted publisher keeps outranking the
    updates it sent before the restart.
    """

    def __init__(
        self,
        session: SessionHandle,
        provider: LocationProvider,
        driver_id: str,
        settings: PublisherSettings | None = None,
        api: RideApiClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        seq_seed: int | None = None,
    ):
        self._session = session
        self._provider = provider
        self.driver_id = driver_id
        self._settings = settings or PublisherSettings()
        self._api = api
        self._clock = clock

        self._available = False
        self._app_state = AppState.FOREGROUND
        self._ride_id: str | None = None
        self._watch: LocationWatch | None = None
        self._heartbeat: asyncio.Task | None = None
        self._seq = seq_seed if seq_seed is not None else int(time.time() * 1000)
        self._last_sent_at: float | None = None
        self._last_point: GeoPoint | None = None

    @property
    def available(self) -> bool:
        return self._available

    @property
    def is_watching(self) -> bool:
        return self._watch is not None

    @property
    def ride_id(self) -> str | None:
        return self._ride_id

    @property
    def seq(self) -> int:
        return self._seq

    # --- availability --------------------------------------------------------

    async def set_availability(self, available: bool) -> None:
        if available == self._available:
            return
        if available:
            await self._go_available()
            return

        if self._api is not None:
            await self._api.set_availability(self.driver_id, False, self._session.token)
        self._available = False
        self._disarm()
        if self._session.is_connected:
            try:
                await self._session.publish(
                    "driverSetUnavailable", DriverSetUnavailablePayload(driver_id=self.driver_id)
                )
            except TransportDisconnected as e:
                logger.warning(f"driverSetUnavailable not sent: {e.message}")
        logger.info(f"Driver {self.driver_id} is unavailable")

    async def _go_available(self) -> None:
        # The backend only hears about availability once location is flowing.
        self._available = True
        try:
            if self._app_state == AppState.FOREGROUND:
                await self._arm()
            if self._api is not None:
                await self._api.set_availability(self.driver_id, True, self._session.token)
        except Exception:
            self._available = False
            self._disarm()
            raise
        logger.info(f"Driver {self.driver_id} is available")

    async def load_availability(self) -> bool:
        """Adopt the availability stored on the backend without announcing it."""
        if self._api is None:
            return self._available
        stored = await self._api.get_availability(self.driver_id, self._session.token)
        if stored and not self._available:
            self._available = True
            if self._app_state == AppState.FOREGROUND:
                await self._arm()
        elif not stored and self._available:
            self._available = False
            self._disarm()
        return self._available

    async def on_app_state(self, state: AppState) -> None:
        if state == self._app_state:
            return
        self._app_state = state
        if state == AppState.BACKGROUND:
            self._disarm()
        elif self._available:
            await self._arm()

    # --- ride scoping --------------------------------------------------------

    def attach_ride(self, ride_id: str) -> None:
        self._ride_id = ride_id

    def detach_ride(self) -> None:
        self._ride_id = None

    # --- fixes ---------------------------------------------------------------

    async def on_fix(self, fix: PositionFix) -> bool:
        """Handle a fix from the watch; returns True when it was sent."""
        if not self._available or self._watch is None:
            return False
        if not self._due(fix):
            return False
        return await self._send(fix)

    def _due(self, fix: PositionFix) -> bool:
        if self._last_sent_at is None:
            return True
        if self._clock() - self._last_sent_at >= self._settings.interval_seconds:
            return True
        previous = self._last_point.as_tuple() if self._last_point else None
        return has_moved(previous, fix.point.as_tuple(), self._settings.min_distance_m)

    async def _send(self, fix: PositionFix) -> bool:
        if not self._session.is_connected:
            logger.debug(f"Location send suppressed: channel is {self._session.state.value}")
            return False

        self._seq += 1
        seq = self._seq
        try:
            await self._session.publish(
                "driverLocationUpdate",
                DriverLocationPayload(
                    driver_id=self.driver_id,
                    latitude=fix.point.latitude,
                    longitude=fix.point.longitude,
                    seq=seq,
                    timestamp=fix.timestamp,
                    is_available=self._available,
                ),
            )
            if self._ride_id is not None:
                await self._session.publish(
                    "driver_location_update",
                    RideLocationPayload(
                        ride_id=self._ride_id,
                        driver_id=self.driver_id,
                        latitude=fix.point.latitude,
                        longitude=fix.point.longitude,
                        seq=seq,
                        timestamp=fix.timestamp,
                    ),
                )
        except TransportDisconnected as e:
            logger.debug(f"Location send dropped: {e.message}")
            return False

        self._last_sent_at = self._clock()
        self._last_point = fix.point
        return True

    async def send_current_position(self) -> bool:
        try:
            fix = await self._provider.current_position()
        except PermissionError as e:
            raise LocationUnavailable(f"Location permission denied: {e}") from e
        return await self._send(fix)

    # --- watch lifecycle -----------------------------------------------------

    async def _arm(self) -> None:
        self._disarm()
        await self.send_current_position()
        try:
            self._watch = self._provider.watch(
                self.on_fix,
                min_interval=self._settings.interval_seconds,
                min_distance_m=self._settings.min_distance_m,
            )
        except PermissionError as e:
            raise LocationUnavailable(f"Location permission denied: {e}") from e
        self._heartbeat = asyncio.create_task(
            self._heartbeat_loop(), name=f"location-heartbeat-{self.driver_id}"
        )

    def _disarm(self) -> None:
        if self._watch is not None:
            self._watch.stop()
            self._watch = None
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _heartbeat_loop(self) -> None:
        # Covers stationary drivers whose watch reports no movement.
        interval = self._settings.interval_seconds
        while True:
            await asyncio.sleep(interval)
            if self._last_sent_at is not None and self._clock() - self._last_sent_at < interval:
                continue
            try:
                await self.send_current_position()
            except LocationUnavailable as e:
                logger.warning(f"Heartbeat fix unavailable: {e.message}")

    async def close(self) -> None:
        heartbeat = self._heartbeat
        self._disarm()
        if heartbeat is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
