"""Ride lifecycle state machine.

A pure, participant-agnostic fold: each input event produces the next
immutable ``RideState`` plus the side-effect instructions the caller
should carry out. Nothing here performs I/O.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum

from ridesync.ride import (
    CancellationReason,
    DriverLocation,
    GeoPoint,
    Ride,
    RideStatus,
)
from ridesync.sync_logging import log_ride_context

logger = logging.getLogger(__name__)


# --- input events ------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class RideEvent:
    ride_id: str
    version: int | None = None

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, kw_only=True)
class RequestSubmitted(RideEvent):
    passenger_id: str
    origin: GeoPoint
    destination: GeoPoint
    fare_estimate: float
    duration_estimate: float | None = None
    distance_estimate: float | None = None


@dataclass(frozen=True, kw_only=True)
class MatchFound(RideEvent):
    driver_id: str


@dataclass(frozen=True, kw_only=True)
class NoMatch(RideEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class PickupConfirmed(RideEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class TripStarted(RideEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class TripCompleted(RideEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class CancelledByPassenger(RideEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class CancelledByDriver(RideEvent):
    reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class SearchTimedOut(RideEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class SnapshotFetched(RideEvent):
    ride: Ride


@dataclass(frozen=True, kw_only=True)
class LocationUpdate(RideEvent):
    location: DriverLocation
    driver_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class RideGone(RideEvent):
    """The backend no longer knows this ride (snapshot fetch returned not found)."""


# --- state and effects -------------------------------------------------------


@dataclass(frozen=True)
class RideState:
    """Immutable view of one ride, published to the UI and coordinators."""

    ride_id: str
    status: RideStatus = RideStatus.IDLE
    passenger_id: str | None = None
    driver_id: str | None = None
    origin: GeoPoint | None = None
    destination: GeoPoint | None = None
    fare_estimate: float | None = None
    duration_estimate: float | None = None
    distance_estimate: float | None = None
    driver_location: DriverLocation | None = None
    version: int | None = None
    cancellation_reason: CancellationReason | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Screen(str, Enum):
    HOME = "home"
    RIDE_IN_PROGRESS = "ride_in_progress"


@dataclass(frozen=True)
class Effect:
    ride_id: str


@dataclass(frozen=True)
class Navigate(Effect):
    screen: Screen


@dataclass(frozen=True)
class ShowAlert(Effect):
    title: str
    message: str


@dataclass(frozen=True)
class Subscribe(Effect):
    """Start listening on the ride's channel."""


@dataclass(frozen=True)
class Unsubscribe(Effect):
    """Stop listening on the ride's channel and archive the ride."""


@dataclass(frozen=True)
class RefreshSnapshot(Effect):
    """Fetch an authoritative snapshot to resolve an ambiguous event."""


@dataclass(frozen=True)
class ReauthenticationRequired(Effect):
    """The credential was rejected; the UI should route to login.

    ``ride_id`` is None when the session itself was rejected.
    """

    ride_id: str | None = None


class DropReason(str, Enum):
    TERMINAL = "terminal"
    STALE = "stale"
    STALE_LOCATION = "stale_location"
    STALE_SNAPSHOT = "stale_snapshot"
    NOT_APPLICABLE = "not_applicable"
    WRONG_RIDE = "wrong_ride"


@dataclass(frozen=True)
class Transition:
    event: RideEvent
    previous: RideState
    state: RideState
    effects: tuple[Effect, ...] = ()
    drop_reason: DropReason | None = None

    @property
    def applied(self) -> bool:
        return self.drop_reason is None

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.state.status


# event type -> (valid source statuses, target status)
TRANSITIONS: dict[type[RideEvent], tuple[frozenset[RideStatus], RideStatus]] = {
    RequestSubmitted: (frozenset({RideStatus.IDLE}), RideStatus.SEARCHING),
    MatchFound: (frozenset({RideStatus.SEARCHING}), RideStatus.ACCEPTED),
    NoMatch: (frozenset({RideStatus.SEARCHING}), RideStatus.CANCELLED),
    PickupConfirmed: (frozenset({RideStatus.ACCEPTED}), RideStatus.PICKED_UP),
    TripStarted: (
        frozenset({RideStatus.PICKED_UP, RideStatus.ACCEPTED}),
        RideStatus.IN_PROGRESS,
    ),
    TripCompleted: (frozenset({RideStatus.IN_PROGRESS}), RideStatus.COMPLETED),
    CancelledByPassenger: (
        frozenset(
            {
                RideStatus.SEARCHING,
                RideStatus.ACCEPTED,
                RideStatus.PICKED_UP,
                RideStatus.IN_PROGRESS,
            }
        ),
        RideStatus.CANCELLED,
    ),
    CancelledByDriver: (
        frozenset({RideStatus.ACCEPTED, RideStatus.PICKED_UP, RideStatus.IN_PROGRESS}),
        RideStatus.CANCELLED,
    ),
    SearchTimedOut: (frozenset({RideStatus.SEARCHING}), RideStatus.CANCELLED),
}

CANCELLATION_REASONS: dict[type[RideEvent], CancellationReason] = {
    NoMatch: CancellationReason.NO_DRIVER,
    CancelledByPassenger: CancellationReason.PASSENGER,
    CancelledByDriver: CancellationReason.DRIVER,
    SearchTimedOut: CancellationReason.TIMEOUT,
}

CANCELLATION_MESSAGES: dict[CancellationReason, tuple[str, str]] = {
    CancellationReason.NO_DRIVER: ("No driver found", "No driver is available right now."),
    CancellationReason.PASSENGER: ("Ride cancelled", "The passenger cancelled the ride."),
    CancellationReason.DRIVER: ("Ride cancelled", "The driver cancelled the ride."),
    CancellationReason.TIMEOUT: ("No driver found", "The search timed out. Try again."),
    CancellationReason.BACKEND: ("Ride cancelled", "This ride has been cancelled."),
}


def effects_for(previous: RideState, state: RideState) -> tuple[Effect, ...]:
    """Side effects produced by entering ``state`` from ``previous``."""
    if previous.status == state.status:
        return ()

    ride_id = state.ride_id
    status = state.status

    if status == RideStatus.SEARCHING:
        return (Subscribe(ride_id),)
    if status == RideStatus.ACCEPTED:
        effects: tuple[Effect, ...] = (
            Navigate(ride_id, Screen.RIDE_IN_PROGRESS),
            ShowAlert(ride_id, "Ride accepted", "A driver is on the way."),
        )
        # A snapshot can jump straight past searching.
        if previous.status == RideStatus.IDLE:
            effects = (Subscribe(ride_id), *effects)
        return effects
    if status == RideStatus.COMPLETED:
        return (
            Unsubscribe(ride_id),
            Navigate(ride_id, Screen.HOME),
            ShowAlert(ride_id, "Ride completed", "You have arrived at your destination."),
        )
    if status == RideStatus.CANCELLED:
        reason = state.cancellation_reason or CancellationReason.BACKEND
        title, message = CANCELLATION_MESSAGES[reason]
        return (
            Unsubscribe(ride_id),
            Navigate(ride_id, Screen.HOME),
            ShowAlert(ride_id, title, message),
        )
    if status == RideStatus.UNKNOWN:
        return (
            Unsubscribe(ride_id),
            Navigate(ride_id, Screen.HOME),
            ShowAlert(ride_id, "Ride unavailable", "This ride no longer exists."),
        )
    if previous.status == RideStatus.IDLE and status.tracks_driver:
        # Bootstrapped mid-ride from a snapshot.
        return (Subscribe(ride_id), Navigate(ride_id, Screen.RIDE_IN_PROGRESS))
    return ()


class RideStateMachine:
    """Folds events for a single ride id into its canonical state."""

    def __init__(self, ride_id: str, initial: RideState | None = None):
        if initial is not None and initial.ride_id != ride_id:
            raise ValueError(f"Initial state is for ride {initial.ride_id}, not {ride_id}")
        self.ride_id = ride_id
        self._state = initial or RideState(ride_id=ride_id)

    @property
    def state(self) -> RideState:
        return self._state

    def apply(self, event: RideEvent) -> Transition:
        """Apply one event to completion and return the resulting transition."""
        with log_ride_context(self.ride_id):
            transition = self._fold(event)
            if transition.applied:
                self._state = transition.state
                if transition.status_changed:
                    logger.info(
                        f"Ride {self.ride_id}: {transition.previous.status.value} -> "
                        f"{transition.state.status.value} ({event.name})"
                    )
            elif transition.drop_reason == DropReason.TERMINAL:
                logger.info(
                    f"Dropped {event.name} for ride {self.ride_id}: "
                    f"ride already {self._state.status.value}"
                )
            else:
                logger.debug(
                    f"Ignored {event.name} for ride {self.ride_id} in "
                    f"{self._state.status.value}: {transition.drop_reason.value}"
                )
            return transition

    def _fold(self, event: RideEvent) -> Transition:
        current = self._state

        if event.ride_id != self.ride_id:
            return self._drop(event, DropReason.WRONG_RIDE)
        if current.is_terminal:
            return self._drop(event, DropReason.TERMINAL)

        if isinstance(event, SnapshotFetched):
            return self._apply_snapshot(event)

        if event.version is not None and current.version is not None:
            if event.version < current.version:
                return self._drop(event, DropReason.STALE)

        if isinstance(event, LocationUpdate):
            return self._apply_location(event)
        if isinstance(event, RideGone):
            return self._advance(event, replace(current, status=RideStatus.UNKNOWN))

        rule = TRANSITIONS.get(type(event))
        if rule is None:
            return self._drop(event, DropReason.NOT_APPLICABLE)
        sources, target = rule
        if current.status not in sources:
            return self._drop(event, DropReason.NOT_APPLICABLE)

        changes: dict = {"status": target}
        if isinstance(event, RequestSubmitted):
            changes.update(
                passenger_id=event.passenger_id,
                origin=event.origin,
                destination=event.destination,
                fare_estimate=event.fare_estimate,
                duration_estimate=event.duration_estimate,
                distance_estimate=event.distance_estimate,
                driver_id=None,
            )
        elif isinstance(event, MatchFound):
            changes["driver_id"] = event.driver_id
        if target == RideStatus.CANCELLED:
            changes["cancellation_reason"] = CANCELLATION_REASONS[type(event)]
        if not target.tracks_driver:
            changes["driver_location"] = None

        return self._advance(event, replace(current, **changes))

    def _apply_location(self, event: LocationUpdate) -> Transition:
        current = self._state
        if not current.status.tracks_driver:
            return self._drop(event, DropReason.NOT_APPLICABLE)
        if event.driver_id is not None and event.driver_id != current.driver_id:
            return self._drop(event, DropReason.NOT_APPLICABLE)
        stored = current.driver_location
        if stored is not None and event.location.seq <= stored.seq:
            return self._drop(event, DropReason.STALE_LOCATION)
        # Location sequence is independent from the ride version.
        return Transition(
            event=event,
            previous=current,
            state=replace(current, driver_location=event.location),
        )

    def _apply_snapshot(self, event: SnapshotFetched) -> Transition:
        current = self._state
        ride = event.ride
        if ride.id != self.ride_id:
            return self._drop(event, DropReason.WRONG_RIDE)
        if (
            ride.version is not None
            and current.version is not None
            and ride.version < current.version
        ):
            return self._drop(event, DropReason.STALE_SNAPSHOT)

        if current.status != RideStatus.IDLE and ride.status != current.status:
            logger.info(
                f"Snapshot for ride {self.ride_id} overrides "
                f"{current.status.value} with {ride.status.value}"
            )

        status = ride.status
        driver_id = None
        if status != RideStatus.SEARCHING:
            driver_id = ride.driver_id or current.driver_id
            if current.driver_id and ride.driver_id and ride.driver_id != current.driver_id:
                logger.warning(
                    f"Snapshot for ride {self.ride_id} reassigns driver "
                    f"{current.driver_id} -> {ride.driver_id}"
                )

        driver_location = None
        if status.tracks_driver:
            driver_location = current.driver_location
            incoming = ride.driver_location
            if incoming is not None and (
                driver_location is None or incoming.seq > driver_location.seq
            ):
                driver_location = incoming

        reason = current.cancellation_reason
        if status == RideStatus.CANCELLED and reason is None:
            reason = CancellationReason.BACKEND

        state = replace(
            current,
            status=status,
            passenger_id=current.passenger_id or ride.passenger_id,
            driver_id=driver_id,
            origin=current.origin or ride.origin,
            destination=current.destination or ride.destination,
            fare_estimate=_first_set(current.fare_estimate, ride.fare_estimate),
            duration_estimate=_first_set(current.duration_estimate, ride.duration_estimate),
            distance_estimate=_first_set(current.distance_estimate, ride.distance_estimate),
            driver_location=driver_location,
            version=ride.version if ride.version is not None else current.version,
            cancellation_reason=reason if status == RideStatus.CANCELLED else None,
        )
        return Transition(
            event=event,
            previous=current,
            state=state,
            effects=effects_for(current, state),
        )

    def _advance(self, event: RideEvent, state: RideState) -> Transition:
        if event.version is not None:
            state = replace(state, version=max(event.version, self._state.version or event.version))
        return Transition(
            event=event,
            previous=self._state,
            state=state,
            effects=effects_for(self._state, state),
        )

    def _drop(self, event: RideEvent, reason: DropReason) -> Transition:
        return Transition(event=event, previous=self._state, state=self._state, drop_reason=reason)


def _first_set(current: float | None, incoming: float | None) -> float | None:
    return current if current is not None else incoming
