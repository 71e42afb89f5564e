"""Passenger side of ride dispatch: estimate, request, cancel."""

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from enum import Enum

from ridesync.api_client import FareEstimate, RideApiClient
from ridesync.core.exceptions import ActiveRideExistsError, StateError, TransportDisconnected
from ridesync.events import CancelRideRequestPayload, RequestRidePayload
from ridesync.ride import CancellationReason, GeoPoint, RideStatus
from ridesync.settings import DispatchSettings
from ridesync.state_machine import (
    CancelledByPassenger,
    RequestSubmitted,
    RideState,
    SearchTimedOut,
    Transition,
)
from ridesync.sync_logging import log_ride_context
from ridesync.tracker import RideTracker
from ridesync.transport import SessionHandle

logger = logging.getLogger(__name__)


class PassengerPhase(str, Enum):
    NOT_REQUESTING = "not_requesting"
    PANEL_OPEN = "panel_open"
    ESTIMATE_READY = "estimate_ready"
    REQUESTING = "requesting"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"


# Phases from which the request panel may be (re)opened.
PANEL_ENTRY_PHASES = frozenset({PassengerPhase.NOT_REQUESTING, PassengerPhase.CANCELLED})
PANEL_PHASES = frozenset({PassengerPhase.PANEL_OPEN, PassengerPhase.ESTIMATE_READY})
CANCELLABLE_PHASES = frozenset({PassengerPhase.REQUESTING, PassengerPhase.ACCEPTED})

# Cancellations that send the passenger back to searching for a destination.
RESEARCH_REASONS = frozenset({CancellationReason.NO_DRIVER, CancellationReason.TIMEOUT})


class PassengerDispatchCoordinator:
    """Drives a passenger from choosing a destination to a matched ride."""

    def __init__(
        self,
        session: SessionHandle,
        tracker: RideTracker,
        api: RideApiClient,
        passenger_id: str,
        settings: DispatchSettings | None = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self._session = session
        self._tracker = tracker
        self._api = api
        self.passenger_id = passenger_id
        self._settings = settings or DispatchSettings()
        self._id_factory = id_factory

        self.phase = PassengerPhase.NOT_REQUESTING
        self.origin: GeoPoint | None = None
        self.destination: GeoPoint | None = None
        self.estimate: FareEstimate | None = None
        self.ride_id: str | None = None
        self._search_timer: asyncio.Task | None = None
        self._remove_listener = tracker.add_listener(self._on_ride)

    # --- panel ---------------------------------------------------------------

    def set_origin(self, origin: GeoPoint) -> None:
        self.origin = origin
        if self.phase == PassengerPhase.ESTIMATE_READY:
            # Estimate was computed for the previous pickup.
            self.estimate = None
            self.phase = PassengerPhase.PANEL_OPEN

    def open_panel(self) -> None:
        if self.phase in PANEL_PHASES:
            return
        if self.phase not in PANEL_ENTRY_PHASES:
            raise StateError(f"Cannot open the request panel while {self.phase.value}")
        self._reset()
        self.phase = PassengerPhase.PANEL_OPEN

    def close_panel(self) -> None:
        if self.phase not in PANEL_PHASES:
            return
        self._reset()
        self.phase = PassengerPhase.NOT_REQUESTING

    async def set_destination(self, destination: GeoPoint) -> FareEstimate:
        """Choose a destination and compute its fare estimate."""
        if self.phase not in PANEL_PHASES:
            raise StateError(f"Cannot set a destination while {self.phase.value}")
        if self.origin is None:
            raise StateError("Pickup location is not known yet")

        self.destination = destination
        self.estimate = None
        self.phase = PassengerPhase.PANEL_OPEN
        estimate = await self._api.estimate(self.origin, destination, self._session.token)

        if self.destination != destination or self.phase != PassengerPhase.PANEL_OPEN:
            logger.debug("Discarding estimate for a superseded destination")
            return estimate
        self.estimate = estimate
        self.phase = PassengerPhase.ESTIMATE_READY
        return estimate

    # --- request / cancel ----------------------------------------------------

    async def request_ride(self) -> RideState:
        if self.phase != PassengerPhase.ESTIMATE_READY or self.estimate is None:
            raise StateError(f"Cannot request a ride while {self.phase.value}")
        active = self._tracker.active_ride(passenger_id=self.passenger_id)
        if active is not None:
            raise ActiveRideExistsError(
                f"Passenger already has ride {active.ride_id} ({active.status.value})",
                {"ride_id": active.ride_id},
            )

        ride_id = self._id_factory()
        estimate = self.estimate
        submitted = RequestSubmitted(
            ride_id=ride_id,
            passenger_id=self.passenger_id,
            origin=self.origin,
            destination=self.destination,
            fare_estimate=estimate.fare,
            duration_estimate=estimate.duration_seconds,
            distance_estimate=estimate.distance_meters,
        )
        payload = RequestRidePayload(
            ride_id=ride_id,
            passenger_id=self.passenger_id,
            origin=self.origin,
            destination=self.destination,
            fare_estimate=estimate.fare,
            duration_estimate=estimate.duration_seconds,
            distance_estimate=estimate.distance_meters,
        )

        # Track and join the ride room first so replies racing the send are folded.
        self.ride_id = ride_id
        self.phase = PassengerPhase.REQUESTING
        await self._tracker.submit(submitted)
        with log_ride_context(ride_id, passenger_id=self.passenger_id):
            try:
                await self._session.publish("requestRide", payload)
            except Exception:
                logger.warning(f"Request for ride {ride_id} was not sent, rolling back")
                await self._tracker.untrack(ride_id)
                if self.ride_id == ride_id:
                    self.ride_id = None
                    self.phase = PassengerPhase.ESTIMATE_READY
                raise
            logger.info(f"Requested ride {ride_id}")

        state = self._tracker.state(ride_id)
        if (
            self._settings.search_timeout_seconds is not None
            and self.ride_id == ride_id
            and state is not None
            and state.status == RideStatus.SEARCHING
        ):
            self._search_timer = asyncio.create_task(
                self._search_timeout(ride_id, self._settings.search_timeout_seconds),
                name=f"search-timeout-{ride_id}",
            )
        return state

    async def cancel_ride_request(self) -> Transition | None:
        """Cancel the current request. Repeated calls are ignored."""
        if self.phase not in CANCELLABLE_PHASES or self.ride_id is None:
            return None
        state = self._tracker.state(self.ride_id)
        if state is None or state.is_terminal:
            return None

        ride_id = self.ride_id
        previous_phase = self.phase
        self.phase = PassengerPhase.CANCELLED
        try:
            await self._session.publish(
                "cancelRideRequest",
                CancelRideRequestPayload(
                    ride_id=ride_id, passenger_id=self.passenger_id, driver_id=state.driver_id
                ),
            )
        except TransportDisconnected:
            self.phase = previous_phase
            raise
        self._cancel_timer()
        return await self._tracker.submit(CancelledByPassenger(ride_id=ride_id))

    async def _search_timeout(self, ride_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        state = self._tracker.state(ride_id)
        if self.ride_id != ride_id or state is None or state.status != RideStatus.SEARCHING:
            return
        logger.info(f"Search for ride {ride_id} timed out after {seconds:.0f}s")
        try:
            await self._session.publish(
                "cancelRideRequest",
                CancelRideRequestPayload(ride_id=ride_id, passenger_id=self.passenger_id),
            )
        except TransportDisconnected as e:
            logger.warning(f"Timed-out search {ride_id} not cancelled on the backend: {e.message}")
        await self._tracker.submit(SearchTimedOut(ride_id=ride_id))

    # --- tracker callbacks ---------------------------------------------------

    def _on_ride(self, state: RideState, transition: Transition) -> None:
        if state.ride_id != self.ride_id:
            return
        if state.status.tracks_driver:
            self._cancel_timer()
            self.phase = PassengerPhase.ACCEPTED
        elif state.status == RideStatus.CANCELLED:
            self._cancel_timer()
            if state.cancellation_reason in RESEARCH_REASONS:
                # Back to the panel; the passenger must search again.
                self._reset()
                self.phase = PassengerPhase.PANEL_OPEN
            else:
                self.phase = PassengerPhase.CANCELLED
        elif state.is_terminal:
            self._cancel_timer()
            self._reset()
            self.phase = PassengerPhase.NOT_REQUESTING

    def _cancel_timer(self) -> None:
        timer, self._search_timer = self._search_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _reset(self) -> None:
        self.destination = None
        self.estimate = None
        self.ride_id = None

    async def close(self) -> None:
        self._remove_listener()
        timer, self._search_timer = self._search_timer, None
        if timer is not None:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
