"""Tests for driver offers, acceptance reconciliation and rejection."""

import asyncio

import pytest

from ridesync.core.exceptions import NetworkError, NotFoundError, StateError
from ridesync.dispatch import DriverDispatchCoordinator
from ridesync.publisher import DriverLocationPublisher
from ridesync.ride import RideStatus
from ridesync.settings import DispatchSettings, PublisherSettings
from ridesync.state_machine import ShowAlert, TripCompleted, TripStarted
from ridesync.tracker import RideTracker
from tests.fakes import FakeClock, FakeLocationProvider, make_ride, wait_for

OFFER = {
    "rideId": "r1",
    "passengerId": "p1",
    "origin": {"lat": -23.5505, "lng": -46.6333},
    "destination": {"lat": -23.5629, "lng": -46.6544},
    "fareEstimate": 18.5,
}


@pytest.fixture
async def driver_tracker(driver_session, fetcher, api, effects):
    ride_tracker = RideTracker(driver_session, fetcher, api=api, effect_sink=effects.append)
    ride_tracker.start()
    yield ride_tracker
    await ride_tracker.stop()


@pytest.fixture
async def publisher(driver_session):
    pub = DriverLocationPublisher(
        driver_session,
        FakeLocationProvider(),
        "d1",
        settings=PublisherSettings(interval_seconds=30.0),
        clock=FakeClock(),
    )
    yield pub
    await pub.close()


async def make_driver(driver_session, driver_tracker, publisher, **settings):
    driver = DriverDispatchCoordinator(
        driver_session, driver_tracker, publisher, "d1", settings=DispatchSettings(**settings)
    )
    driver.start()
    await driver.set_availability(True)
    return driver


@pytest.fixture
async def driver(driver_session, driver_tracker, publisher):
    coordinator = await make_driver(driver_session, driver_tracker, publisher)
    yield coordinator
    await coordinator.close()


async def offered(driver, connector, payload=None) -> None:
    connector.current.push("tripRequest", payload or OFFER)
    await wait_for(lambda: driver.has_offer)


def alert_titles(effects) -> list[str]:
    return [e.title for e in effects if isinstance(e, ShowAlert)]


@pytest.mark.unit
class TestOffers:
    async def test_offer_is_shown(self, driver, connector):
        await offered(driver, connector)

        offer = driver.pending_offer
        assert offer.ride_id == "r1"
        assert offer.passenger_id == "p1"
        assert offer.fare_estimate == 18.5
        assert offer.origin.latitude == pytest.approx(-23.5505)

    async def test_offer_ignored_while_unavailable(self, driver, connector):
        await driver.set_availability(False)
        marker = []
        driver._session.subscribe("tripRequestCancelled", marker.append)

        connector.current.push("tripRequest", OFFER)
        connector.current.push("tripRequestCancelled", {"rideId": "zz"})
        await wait_for(lambda: len(marker) == 1)

        assert not driver.has_offer

    async def test_newer_offer_replaces_pending(self, driver, connector):
        await offered(driver, connector)
        connector.current.push("tripRequest", {**OFFER, "rideId": "r2"})
        await wait_for(lambda: driver.pending_offer.ride_id == "r2")

    async def test_passenger_cancel_clears_offer(self, driver, connector, effects):
        await offered(driver, connector)

        connector.current.push("tripRequestCancelled", {"rideId": "r1"})
        await wait_for(lambda: not driver.has_offer)

        assert "Request cancelled" in alert_titles(effects)

    async def test_offer_taken_by_other_driver_disappears(self, driver, connector):
        await offered(driver, connector)

        connector.current.push("rideRequestAccepted", {"rideId": "r1", "driverId": "d2"})
        await wait_for(lambda: not driver.has_offer)

    async def test_going_unavailable_clears_offer(self, driver, connector):
        await offered(driver, connector)
        await driver.set_availability(False)

        assert not driver.has_offer
        assert connector.current.sent_data("driverSetUnavailable") == [{"driverId": "d1"}]

    async def test_backend_marking_driver_unavailable(self, driver, connector):
        await offered(driver, connector)

        connector.current.push("driverUnavailable", {"driverId": "d1"})
        await wait_for(lambda: not driver.available)

        assert not driver.has_offer

    async def test_offer_expires_when_configured(
        self, driver_session, driver_tracker, publisher, connector
    ):
        driver = await make_driver(
            driver_session, driver_tracker, publisher, offer_timeout_seconds=0.01
        )
        await offered(driver, connector)

        await wait_for(lambda: not driver.has_offer)

        assert connector.current.sent_data("driver_rejects_ride") == []
        await driver.close()


@pytest.mark.unit
class TestAccept:
    @pytest.mark.critical
    async def test_accept_is_optimistic(self, driver, connector):
        await offered(driver, connector)

        provisional = await driver.accept()

        assert provisional.ride_id == "r1"
        assert not driver.has_offer
        assert driver.provisional == provisional
        assert connector.current.sent_data("driver_accepts_ride") == [
            {"rideId": "r1", "driverId": "d1"}
        ]

    async def test_accept_without_offer(self, driver):
        with pytest.raises(StateError):
            await driver.accept()

    @pytest.mark.critical
    async def test_confirmation_starts_tracking(
        self, driver, driver_tracker, publisher, api, connector
    ):
        api.get_ride.return_value = make_ride(status=RideStatus.ACCEPTED, driver_id="d1")
        await offered(driver, connector)
        await driver.accept()

        connector.current.push("rideRequestAccepted", {"rideId": "r1", "driverId": "d1"})
        await wait_for(lambda: driver_tracker.state("r1") is not None)
        await wait_for(lambda: driver_tracker.state("r1").status == RideStatus.ACCEPTED)

        assert driver.provisional is None
        assert publisher.ride_id == "r1"
        assert {"room": "ride:r1"} in connector.current.sent_data("join_room")

    async def test_status_push_confirms(self, driver, driver_tracker, api, connector):
        api.get_ride.return_value = make_ride(status=RideStatus.ACCEPTED, driver_id="d1")
        await offered(driver, connector)
        await driver.accept()

        connector.current.push(
            "ride_status_updated", {"rideId": "r1", "status": "aceptado", "driverId": "d1"}
        )
        await wait_for(lambda: driver.provisional is None)
        await wait_for(lambda: driver_tracker.state("r1") is not None)

    @pytest.mark.critical
    async def test_lost_race_rolls_back(
        self, driver, driver_tracker, publisher, connector, effects
    ):
        await offered(driver, connector)
        await driver.accept()

        connector.current.push("rideRequestAccepted", {"rideId": "r1", "driverId": "d2"})
        await wait_for(lambda: driver.provisional is None)

        assert "Ride unavailable" in alert_titles(effects)
        assert driver_tracker.state("r1") is None
        assert publisher.ride_id is None

    async def test_cancel_before_confirmation_rolls_back(self, driver, connector, effects):
        await offered(driver, connector)
        await driver.accept()

        connector.current.push("ride_cancelled_by_passenger", {"rideId": "r1"})
        await wait_for(lambda: driver.provisional is None)

        assert "Ride unavailable" in alert_titles(effects)

    async def test_busy_driver_ignores_offers(self, driver, connector):
        await offered(driver, connector)
        await driver.accept()
        marker = []
        driver._session.subscribe("tripRequestCancelled", marker.append)

        connector.current.push("tripRequest", {**OFFER, "rideId": "r2"})
        connector.current.push("tripRequestCancelled", {"rideId": "zz"})
        await wait_for(lambda: len(marker) == 1)

        assert not driver.has_offer

    async def test_finished_ride_detaches_publisher(
        self, driver, driver_tracker, publisher, api, connector
    ):
        api.get_ride.return_value = make_ride(status=RideStatus.ACCEPTED, driver_id="d1")
        await offered(driver, connector)
        await driver.accept()
        connector.current.push("rideRequestAccepted", {"rideId": "r1", "driverId": "d1"})
        await wait_for(
            lambda: driver_tracker.state("r1") is not None
            and driver_tracker.state("r1").status == RideStatus.ACCEPTED
        )

        await driver_tracker.submit(TripStarted(ride_id="r1"))
        await driver_tracker.submit(TripCompleted(ride_id="r1"))

        assert publisher.ride_id is None


@pytest.mark.unit
class TestReconcileOnResume:
    """Acceptances whose confirmation was pushed while offline."""

    @pytest.mark.critical
    async def test_missed_confirmation_is_recovered(
        self, driver, driver_tracker, publisher, api, connector
    ):
        await offered(driver, connector)
        await driver.accept()
        api.get_ride.return_value = make_ride(status=RideStatus.ACCEPTED, driver_id="d1")

        connector.current.drop()
        await wait_for(lambda: driver.provisional is None)

        assert driver_tracker.state("r1").status == RideStatus.ACCEPTED
        assert publisher.ride_id == "r1"
        api.get_ride.assert_awaited_with("r1", "token-d1")

    async def test_missed_loss_is_rolled_back(
        self, driver, driver_tracker, publisher, api, connector, effects
    ):
        await offered(driver, connector)
        await driver.accept()
        api.get_ride.return_value = make_ride(status=RideStatus.ACCEPTED, driver_id="d2")

        connector.current.drop()
        await wait_for(lambda: driver.provisional is None)

        assert "Ride unavailable" in alert_titles(effects)
        assert driver_tracker.state("r1") is None
        assert publisher.ride_id is None

    async def test_unacknowledged_acceptance_is_rolled_back(
        self, driver, api, connector, effects
    ):
        await offered(driver, connector)
        await driver.accept()
        api.get_ride.return_value = make_ride(status=RideStatus.SEARCHING)

        connector.current.drop()
        await wait_for(lambda: driver.provisional is None)

        assert "Ride unavailable" in alert_titles(effects)

    async def test_vanished_ride_is_rolled_back(self, driver, api, connector, effects):
        await offered(driver, connector)
        await driver.accept()
        api.get_ride.side_effect = NotFoundError("gone")

        connector.current.drop()
        await wait_for(lambda: driver.provisional is None)

        assert "Ride unavailable" in alert_titles(effects)

    async def test_unreachable_backend_keeps_acceptance_pending(
        self, driver, api, connector, effects
    ):
        await offered(driver, connector)
        provisional = await driver.accept()
        api.get_ride.side_effect = NetworkError("refused")

        connector.current.drop()
        await wait_for(lambda: api.get_ride.await_count == 2)
        await asyncio.sleep(0.01)

        assert driver.provisional == provisional
        assert alert_titles(effects) == []

    async def test_confirmation_push_wins_over_late_snapshot(
        self, driver, driver_tracker, api, connector
    ):
        gate = asyncio.Event()

        async def slow_snapshot(ride_id, token):
            await gate.wait()
            return make_ride(status=RideStatus.ACCEPTED, driver_id="d2")

        api.get_ride.side_effect = slow_snapshot
        await offered(driver, connector)
        await driver.accept()

        connector.current.drop()
        await wait_for(lambda: len(connector.connections) == 2 and driver._reconcile_task)
        api.get_ride.side_effect = None
        api.get_ride.return_value = make_ride(status=RideStatus.ACCEPTED, driver_id="d1")
        connector.current.push("rideRequestAccepted", {"rideId": "r1", "driverId": "d1"})
        await wait_for(lambda: driver.provisional is None)
        gate.set()
        await asyncio.sleep(0.01)

        assert driver_tracker.state("r1").driver_id == "d1"


@pytest.mark.unit
class TestReject:
    async def test_reject_is_silent_by_default(self, driver, connector):
        await offered(driver, connector)

        await driver.reject()

        assert not driver.has_offer
        assert connector.current.sent_data("driver_rejects_ride") == []

    async def test_reject_event_when_enabled(
        self, driver_session, driver_tracker, publisher, connector
    ):
        driver = await make_driver(
            driver_session, driver_tracker, publisher, emit_reject_event=True
        )
        await offered(driver, connector)

        await driver.reject()

        assert connector.current.sent_data("driver_rejects_ride") == [
            {"rideId": "r1", "driverId": "d1"}
        ]
        await driver.close()

    async def test_reject_without_offer_is_noop(self, driver, connector):
        await driver.reject()
        await asyncio.sleep(0)
        assert connector.current.sent_data("driver_rejects_ride") == []
