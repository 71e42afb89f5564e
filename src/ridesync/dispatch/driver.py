"""Driver side of ride dispatch: offers, optimistic acceptance, rejection."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ridesync.core.exceptions import StateError, TransportDisconnected
from ridesync.events import (
    DriverAcceptsRidePayload,
    DriverRejectsRidePayload,
    DriverUnavailableEvent,
    RideCancelledByPassengerEvent,
    RideRequestAcceptedEvent,
    RideStatusUpdatedEvent,
    TripRequestCancelledEvent,
    TripRequestEvent,
)
from ridesync.fetcher import FetchUnauthorized, RideNotFound
from ridesync.publisher import DriverLocationPublisher
from ridesync.ride import GeoPoint, Ride, RideStatus
from ridesync.settings import DispatchSettings
from ridesync.state_machine import (
    ReauthenticationRequired,
    RideState,
    ShowAlert,
    SnapshotFetched,
    Transition,
)
from ridesync.sync_logging import log_ride_context
from ridesync.tracker import RideTracker
from ridesync.transport import ConnectionEvent, ConnectionState, SessionHandle, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingOffer:
    ride_id: str
    passenger_id: str | None = None
    origin: GeoPoint | None = None
    destination: GeoPoint | None = None
    fare_estimate: float | None = None
    duration_estimate: float | None = None
    distance_estimate: float | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_event(cls, event: TripRequestEvent) -> "PendingOffer":
        return cls(
            ride_id=event.ride_id,
            passenger_id=event.passenger_id,
            origin=event.origin,
            destination=event.destination,
            fare_estimate=event.fare_estimate,
            duration_estimate=event.duration_estimate,
            distance_estimate=event.distance_estimate,
        )


@dataclass(frozen=True)
class ProvisionalAcceptance:
    """Acceptance sent to the backend and not yet confirmed."""

    ride_id: str
    offer: PendingOffer
    accepted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DriverDispatchCoordinator:
    """Holds at most one pending offer and reconciles acceptances with the backend.

    Accepting clears the prompt immediately and records a provisional
    acceptance. It is confirmed when the backend reports this driver on
    the ride and rolled back when it reports another driver or a
    cancellation. A push lost while the channel was down is made up for
    by a snapshot fetch once the channel resumes.
    """

    def __init__(
        self,
        session: SessionHandle,
        tracker: RideTracker,
        publisher: DriverLocationPublisher,
        driver_id: str,
        settings: DispatchSettings | None = None,
    ):
        self._session = session
        self._tracker = tracker
        self._publisher = publisher
        self.driver_id = driver_id
        self._settings = settings or DispatchSettings()

        self.pending_offer: PendingOffer | None = None
        self.provisional: ProvisionalAcceptance | None = None
        self._offer_timer: asyncio.Task | None = None
        self._subscriptions: list[Subscription] = []
        self._remove_listener = None
        self._remove_connection_listener = None
        self._reconcile_task: asyncio.Task | None = None

    @property
    def available(self) -> bool:
        return self._publisher.available

    @property
    def has_offer(self) -> bool:
        return self.pending_offer is not None

    def start(self) -> None:
        if self._remove_listener is not None:
            return
        handlers = {
            "tripRequest": self._on_trip_request,
            "tripRequestCancelled": self._on_offer_cancelled,
            "ride_cancelled_by_passenger": self._on_offer_cancelled,
            "rideRequestAccepted": self._on_ride_accepted,
            "ride_status_updated": self._on_status_updated,
            "driverUnavailable": self._on_driver_unavailable,
        }
        for name, handler in handlers.items():
            self._subscriptions.append(self._session.subscribe(name, handler))
        self._remove_listener = self._tracker.add_listener(self._on_ride)
        self._remove_connection_listener = self._session.on_state_change(self._on_connection)

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._remove_connection_listener is not None:
            self._remove_connection_listener()
            self._remove_connection_listener = None
        for task in (self._offer_timer, self._reconcile_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._offer_timer = self._reconcile_task = None

    # --- availability --------------------------------------------------------

    async def set_availability(self, available: bool) -> None:
        await self._publisher.set_availability(available)
        if not available:
            self._clear_offer()

    # --- offers --------------------------------------------------------------

    async def accept(self) -> ProvisionalAcceptance:
        offer = self.pending_offer
        if offer is None:
            raise StateError("No pending offer to accept")

        with log_ride_context(offer.ride_id, driver_id=self.driver_id):
            await self._session.publish(
                "driver_accepts_ride",
                DriverAcceptsRidePayload(ride_id=offer.ride_id, driver_id=self.driver_id),
            )
            logger.info(f"Accepted ride {offer.ride_id}, awaiting confirmation")

        self._clear_offer()
        self.provisional = ProvisionalAcceptance(ride_id=offer.ride_id, offer=offer)
        return self.provisional

    async def reject(self) -> None:
        """Dismiss the pending offer.

        The backend only hears about it when ``emit_reject_event`` is on.
        """
        offer = self.pending_offer
        if offer is None:
            return
        self._clear_offer()
        logger.info(f"Rejected offer for ride {offer.ride_id}")
        if self._settings.emit_reject_event:
            await self._publish_reject(offer.ride_id)

    async def _publish_reject(self, ride_id: str) -> None:
        try:
            await self._session.publish(
                "driver_rejects_ride",
                DriverRejectsRidePayload(ride_id=ride_id, driver_id=self.driver_id),
            )
        except TransportDisconnected as e:
            logger.warning(f"driver_rejects_ride for {ride_id} not sent: {e.message}")

    async def _offer_timeout(self, ride_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if self.pending_offer is None or self.pending_offer.ride_id != ride_id:
            return
        logger.info(f"Offer for ride {ride_id} expired after {seconds:.0f}s")
        self._offer_timer = None
        self.pending_offer = None
        if self._settings.emit_reject_event:
            await self._publish_reject(ride_id)

    def _clear_offer(self) -> None:
        self.pending_offer = None
        timer, self._offer_timer = self._offer_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    # --- channel handlers ----------------------------------------------------

    async def _on_trip_request(self, event: TripRequestEvent) -> None:
        if not self.available:
            logger.debug(f"Ignoring offer {event.ride_id}: driver unavailable")
            return
        if self.provisional is not None or self._tracker.active_ride(driver_id=self.driver_id):
            logger.debug(f"Ignoring offer {event.ride_id}: driver is busy")
            return

        current = self.pending_offer
        if current is not None and current.ride_id != event.ride_id:
            logger.info(f"Offer {event.ride_id} replaces pending offer {current.ride_id}")
        self._clear_offer()
        self.pending_offer = PendingOffer.from_event(event)
        if self._settings.offer_timeout_seconds is not None:
            self._offer_timer = asyncio.create_task(
                self._offer_timeout(event.ride_id, self._settings.offer_timeout_seconds),
                name=f"offer-timeout-{event.ride_id}",
            )

    async def _on_offer_cancelled(
        self, event: TripRequestCancelledEvent | RideCancelledByPassengerEvent
    ) -> None:
        if self.pending_offer is not None and self.pending_offer.ride_id == event.ride_id:
            self._clear_offer()
            await self._tracker.emit(
                ShowAlert(
                    event.ride_id, "Request cancelled", "The passenger cancelled the request."
                )
            )
        elif self.provisional is not None and self.provisional.ride_id == event.ride_id:
            await self._rollback("The ride was cancelled before it was confirmed.")

    async def _on_ride_accepted(self, event: RideRequestAcceptedEvent) -> None:
        if self.pending_offer is not None and self.pending_offer.ride_id == event.ride_id:
            if event.driver_id != self.driver_id:
                # Another driver won the offer that is still on screen.
                self._clear_offer()
            return
        if self.provisional is None or self.provisional.ride_id != event.ride_id:
            return
        if event.driver_id == self.driver_id:
            await self._confirm()
        else:
            await self._rollback("Another driver accepted this ride.")

    async def _on_status_updated(self, event: RideStatusUpdatedEvent) -> None:
        if self.provisional is None or self.provisional.ride_id != event.ride_id:
            return
        if event.status == RideStatus.CANCELLED:
            await self._rollback("The ride was cancelled before it was confirmed.")
        elif event.status.tracks_driver and event.driver_id is not None:
            if event.driver_id == self.driver_id:
                await self._confirm()
            else:
                await self._rollback("Another driver accepted this ride.")

    async def _on_driver_unavailable(self, event: DriverUnavailableEvent) -> None:
        if event.driver_id != self.driver_id:
            return
        self._clear_offer()
        await self._publisher.set_availability(False)

    # --- reconciliation ------------------------------------------------------

    async def _confirm(self, ride: Ride | None = None) -> None:
        provisional, self.provisional = self.provisional, None
        ride_id = provisional.ride_id
        with log_ride_context(ride_id, driver_id=self.driver_id):
            logger.info(f"Acceptance of ride {ride_id} confirmed")
        self._publisher.attach_ride(ride_id)
        if ride is not None:
            await self._tracker.submit(SnapshotFetched(ride_id=ride_id, ride=ride))
        else:
            await self._tracker.track(ride_id, wait=False)

    async def _rollback(self, message: str) -> None:
        provisional, self.provisional = self.provisional, None
        with log_ride_context(provisional.ride_id, driver_id=self.driver_id):
            logger.info(f"Acceptance of ride {provisional.ride_id} rolled back: {message}")
        await self._tracker.emit(ShowAlert(provisional.ride_id, "Ride unavailable", message))

    async def _on_connection(self, change: ConnectionEvent) -> None:
        if change.state != ConnectionState.CONNECTED or not change.resumed:
            return
        provisional = self.provisional
        if provisional is None:
            return
        if self._reconcile_task is not None and not self._reconcile_task.done():
            return
        self._reconcile_task = asyncio.create_task(
            self._reconcile(provisional), name=f"reconcile-{provisional.ride_id}"
        )

    async def _reconcile(self, provisional: ProvisionalAcceptance) -> None:
        """Settle an acceptance whose outcome may have been pushed while offline."""
        ride_id = provisional.ride_id
        result = await self._tracker.fetch_snapshot(ride_id)
        if self.provisional is not provisional:
            return

        with log_ride_context(ride_id, driver_id=self.driver_id):
            if isinstance(result, Ride):
                if result.status == RideStatus.CANCELLED:
                    await self._rollback("The ride was cancelled before it was confirmed.")
                elif result.driver_id == self.driver_id:
                    await self._confirm(result)
                elif result.driver_id is not None:
                    await self._rollback("Another driver accepted this ride.")
                else:
                    await self._rollback("The acceptance did not reach the server.")
            elif isinstance(result, RideNotFound):
                await self._rollback("The ride no longer exists.")
            elif isinstance(result, FetchUnauthorized):
                logger.warning(f"Cannot reconcile ride {ride_id}: credentials rejected")
                await self._tracker.emit(ReauthenticationRequired(ride_id))
            else:
                logger.warning(
                    f"Acceptance of ride {ride_id} still unconfirmed: {result.message}"
                )

    def _on_ride(self, state: RideState, transition: Transition) -> None:
        if state.driver_id != self.driver_id or not state.is_terminal:
            return
        if self._publisher.ride_id == state.ride_id:
            self._publisher.detach_ride()
