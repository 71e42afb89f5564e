"""Ride tracking: binds the push channel and snapshot fetches to state machines.

The tracker owns one ``RideStateMachine`` per ride id. Wire events and
snapshot results are folded one at a time; resulting ``RideState``
values are handed to listeners and UI effects to the effect sink.
Terminal rides are archived and further events for them are dropped.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from ridesync.api_client import RideApiClient
from ridesync.core.exceptions import (
    StateError,
    TransportDisconnected,
    Unauthorized,
    ValidationError,
)
from ridesync.events import (
    RIDE_SCOPED_EVENT_NAMES,
    RideStatusUpdatedEvent,
    RideStatusUpdatePayload,
    status_event,
    to_ride_event,
)
from ridesync.fetcher import (
    FetchResult,
    FetchTransportError,
    FetchUnauthorized,
    RideNotFound,
    RideSnapshotFetcher,
)
from ridesync.ride import Ride, RideStatus
from ridesync.state_machine import (
    CancelledByDriver,
    DropReason,
    Effect,
    RefreshSnapshot,
    ReauthenticationRequired,
    RequestSubmitted,
    RideEvent,
    RideGone,
    RideState,
    RideStateMachine,
    ShowAlert,
    SnapshotFetched,
    Subscribe,
    Transition,
    Unsubscribe,
)
from ridesync.sync_logging import log_ride_context
from ridesync.transport import ConnectionEvent, ConnectionState, SessionHandle, Subscription

logger = logging.getLogger(__name__)

EffectSink = Callable[[Effect], Awaitable[None] | None]
RideListener = Callable[[RideState, Transition], Awaitable[None] | None]

# Statuses a driver may set through the REST status endpoint.
DRIVER_SETTABLE_STATUSES = frozenset(
    {RideStatus.PICKED_UP, RideStatus.IN_PROGRESS, RideStatus.COMPLETED, RideStatus.CANCELLED}
)

# Events that may open tracking for a ride the tracker has not seen.
_OPENING_EVENTS = (RequestSubmitted, SnapshotFetched)


def ride_room(ride_id: str) -> str:
    return f"ride:{ride_id}"


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class RideTracker:
    """Tracks rides for one authenticated session."""

    def __init__(
        self,
        session: SessionHandle,
        fetcher: RideSnapshotFetcher,
        api: RideApiClient | None = None,
        effect_sink: EffectSink | None = None,
    ):
        self._session = session
        self._fetcher = fetcher
        self._api = api
        self._effect_sink = effect_sink
        self._machines: dict[str, RideStateMachine] = {}
        self._archive: dict[str, RideState] = {}
        self._listeners: list[RideListener] = []
        self._subscriptions: list[Subscription] = []
        self._remove_connection_listener: Callable[[], None] | None = None
        self._refreshes: dict[str, asyncio.Task] = {}

    # --- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Register channel handlers. Safe to call more than once."""
        if self._remove_connection_listener is not None:
            return
        for name in sorted(RIDE_SCOPED_EVENT_NAMES):
            self._subscriptions.append(self._session.subscribe(name, self._on_wire_event))
        self._remove_connection_listener = self._session.on_state_change(self._on_connection)

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        if self._remove_connection_listener is not None:
            self._remove_connection_listener()
            self._remove_connection_listener = None
        tasks = list(self._refreshes.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshes.clear()

    # --- queries -------------------------------------------------------------

    def state(self, ride_id: str) -> RideState | None:
        machine = self._machines.get(ride_id)
        if machine is not None:
            return machine.state
        return self._archive.get(ride_id)

    def is_archived(self, ride_id: str) -> bool:
        return ride_id in self._archive

    def non_terminal_ride_ids(self) -> list[str]:
        return [rid for rid, m in self._machines.items() if not m.state.is_terminal]

    def active_ride(
        self, passenger_id: str | None = None, driver_id: str | None = None
    ) -> RideState | None:
        """The tracked non-terminal ride for a participant, if any."""
        for machine in self._machines.values():
            state = machine.state
            if state.is_terminal or state.status == RideStatus.IDLE:
                continue
            if passenger_id is not None and state.passenger_id != passenger_id:
                continue
            if driver_id is not None and state.driver_id != driver_id:
                continue
            return state
        return None

    def add_listener(self, listener: RideListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # --- tracking ------------------------------------------------------------

    async def track(self, ride_id: str, wait: bool = True) -> RideState:
        """Start tracking ``ride_id`` from an authoritative snapshot.

        With ``wait=False`` the snapshot is fetched in the background so
        channel handlers can call this without stalling event delivery.
        """
        if ride_id in self._archive:
            raise StateError(f"Ride {ride_id} already finished", {"ride_id": ride_id})
        self._machines.setdefault(ride_id, RideStateMachine(ride_id))
        task = self.schedule_refresh(ride_id)
        if wait:
            await task
        return self.state(ride_id)

    async def untrack(self, ride_id: str) -> None:
        """Stop tracking without archiving, e.g. when the ride screen unmounts."""
        self._machines.pop(ride_id, None)
        task = self._refreshes.pop(ride_id, None)
        if task is not None:
            task.cancel()
        await self._session.leave_room(ride_room(ride_id))

    def discard(self, ride_id: str) -> None:
        """Forget an archived ride."""
        self._archive.pop(ride_id, None)

    async def submit(self, event: RideEvent) -> Transition | None:
        """Fold one event into its ride and carry out the resulting effects."""
        ride_id = event.ride_id
        if ride_id in self._archive:
            logger.info(
                f"Dropped late {event.name} for archived ride {ride_id} "
                f"({self._archive[ride_id].status.value})"
            )
            return None

        machine = self._machines.get(ride_id)
        if machine is None:
            if not isinstance(event, _OPENING_EVENTS):
                logger.debug(f"Ignored {event.name} for untracked ride {ride_id}")
                return None
            machine = self._machines[ride_id] = RideStateMachine(ride_id)

        transition = machine.apply(event)
        if not transition.applied:
            return transition

        for listener in list(self._listeners):
            try:
                await _call(listener, transition.state, transition)
            except Exception as e:
                logger.exception(f"Ride listener failed for {ride_id}: {e}")

        for effect in transition.effects:
            await self._perform(effect, transition.state)
        return transition

    async def refresh(self, ride_id: str) -> Transition | None:
        """Fetch the authoritative snapshot and fold its outcome."""
        result = await self._fetcher.fetch_ride_with_retry(ride_id, self._session.token)

        if isinstance(result, Ride):
            return await self.submit(SnapshotFetched(ride_id=ride_id, ride=result))
        if isinstance(result, RideNotFound):
            return await self.submit(RideGone(ride_id=ride_id))
        if isinstance(result, FetchUnauthorized):
            logger.warning(f"Snapshot fetch for ride {ride_id} rejected credentials")
            await self.emit(ReauthenticationRequired(ride_id))
            return None
        if isinstance(result, FetchTransportError):
            logger.warning(
                f"Snapshot fetch for ride {ride_id} failed after {result.attempts} attempt(s): "
                f"{result.message}"
            )
            await self.emit(
                ShowAlert(
                    ride_id,
                    "Connection problem",
                    "Could not update the ride. It will refresh when the connection recovers.",
                )
            )
        return None

    async def fetch_snapshot(self, ride_id: str) -> FetchResult:
        """The authoritative record of a ride, without folding it into tracking."""
        return await self._fetcher.fetch_ride_with_retry(ride_id, self._session.token)

    def schedule_refresh(self, ride_id: str) -> asyncio.Task:
        """Refresh in the background; concurrent requests for one ride share a task."""
        task = self._refreshes.get(ride_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self.refresh(ride_id), name=f"refresh-{ride_id}")
        self._refreshes[ride_id] = task
        task.add_done_callback(lambda t: self._refresh_done(ride_id, t))
        return task

    def _refresh_done(self, ride_id: str, task: asyncio.Task) -> None:
        if self._refreshes.get(ride_id) is task:
            del self._refreshes[ride_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background refresh of ride {ride_id} failed: {task.exception()!r}")

    async def restore_active_ride(self) -> RideState | None:
        """Resume tracking the caller's active ride after a restart."""
        if self._api is None:
            raise StateError("restore_active_ride needs a REST client")
        try:
            ride = await self._api.get_active_ride(self._session.token)
        except Unauthorized:
            await self.emit(ReauthenticationRequired())
            return None
        except ValidationError as e:
            logger.warning(f"Active ride document is malformed, not restoring it: {e.message}")
            return None
        if ride is None:
            logger.info("No active ride to restore")
            return None
        with log_ride_context(ride.id):
            logger.info(f"Restoring active ride {ride.id} ({ride.status.value})")
        await self.submit(SnapshotFetched(ride_id=ride.id, ride=ride))
        return self.state(ride.id)

    async def driver_update_status(
        self, ride_id: str, status: RideStatus, reason: str | None = None
    ) -> Transition | None:
        """Commit a driver-initiated status change, then broadcast it."""
        if self._api is None:
            raise StateError("driver_update_status needs a REST client")
        if status not in DRIVER_SETTABLE_STATUSES:
            raise StateError(f"Drivers cannot set status {status.value}", {"status": status.value})
        state = self.state(ride_id)
        if state is None or state.is_terminal:
            raise StateError(f"Ride {ride_id} is not active", {"ride_id": ride_id})

        try:
            ride = await self._api.update_ride_status(ride_id, status, self._session.token)
        except Unauthorized:
            await self.emit(ReauthenticationRequired(ride_id))
            raise

        payload = RideStatusUpdatePayload(
            ride_id=ride_id,
            status=status,
            passenger_id=state.passenger_id,
            driver_id=state.driver_id,
        )
        try:
            await self._session.publish("ride_status_update", payload)
        except TransportDisconnected as e:
            # The REST write is authoritative; the backend relays it on its own.
            logger.warning(f"ride_status_update for {ride_id} not sent: {e.message}")

        if ride is not None:
            return await self.submit(SnapshotFetched(ride_id=ride_id, ride=ride))
        if status == RideStatus.CANCELLED:
            return await self.submit(CancelledByDriver(ride_id=ride_id, reason=reason))
        event = status_event(ride_id, status, state.driver_id)
        if event is None:
            self.schedule_refresh(ride_id)
            return None
        return await self.submit(event)

    async def emit(self, effect: Effect) -> None:
        if self._effect_sink is None:
            return
        try:
            await _call(self._effect_sink, effect)
        except Exception as e:
            logger.exception(f"Effect sink failed on {type(effect).__name__}: {e}")

    # --- channel callbacks ---------------------------------------------------

    async def _on_wire_event(self, event: BaseModel) -> None:
        ride_id = getattr(event, "ride_id", None)
        if ride_id is None:
            return
        if ride_id in self._archive:
            logger.info(
                f"Dropped late {type(event).__name__} for archived ride {ride_id} "
                f"({self._archive[ride_id].status.value})"
            )
            return
        if ride_id not in self._machines:
            return

        ride_event = to_ride_event(event)
        if ride_event is None:
            if isinstance(event, RideStatusUpdatedEvent):
                logger.info(
                    f"Ambiguous status {event.status.value} for ride {ride_id}, refreshing"
                )
                self.schedule_refresh(ride_id)
            return

        transition = await self.submit(ride_event)
        if (
            transition is not None
            and isinstance(event, RideStatusUpdatedEvent)
            and transition.drop_reason == DropReason.NOT_APPLICABLE
            and transition.state.status != event.status
        ):
            # The push skipped a step we never saw; let the backend settle it.
            self.schedule_refresh(ride_id)

    async def _on_connection(self, change: ConnectionEvent) -> None:
        if change.state == ConnectionState.UNAUTHENTICATED:
            await self.emit(ReauthenticationRequired())
            return
        if change.state == ConnectionState.CONNECTED and change.resumed:
            ride_ids = self.non_terminal_ride_ids()
            if ride_ids:
                logger.info(f"Channel resumed, refreshing {len(ride_ids)} ride(s)")
            for ride_id in ride_ids:
                self.schedule_refresh(ride_id)

    # --- effects -------------------------------------------------------------

    async def _perform(self, effect: Effect, state: RideState) -> None:
        if isinstance(effect, Subscribe):
            await self._session.join_room(ride_room(effect.ride_id))
        elif isinstance(effect, Unsubscribe):
            await self._session.leave_room(ride_room(effect.ride_id))
            self._machines.pop(effect.ride_id, None)
            self._archive[effect.ride_id] = state
        elif isinstance(effect, RefreshSnapshot):
            self.schedule_refresh(effect.ride_id)
        else:
            await self.emit(effect)
