"""Tests for the REST client's request shapes and error mapping."""

import json

import httpx
import pytest
import respx

from ridesync.api_client import RideApiClient
from ridesync.core.exceptions import (
    ActiveRideExistsError,
    NetworkError,
    NotFoundError,
    ServiceUnavailableError,
    Unauthorized,
    ValidationError,
)
from ridesync.ride import RideStatus
from tests.fakes import DROPOFF, PICKUP

BASE = "http://api.test"

RIDE_DOC = {
    "_id": "r1",
    "status": "aceptado",
    "passenger": {"_id": "p1", "name": "Lia"},
    "driver": "d1",
    "origin": {"coordinates": [-46.6333, -23.5505]},
    "destination": {"lat": -23.5629, "lng": -46.6544},
    "fareEstimate": 18.5,
    "updatedAt": "2026-01-01T12:00:00Z",
}


@pytest.fixture
def client() -> RideApiClient:
    return RideApiClient(BASE + "/", timeout=1.0)


@pytest.mark.unit
class TestGetRide:
    @respx.mock
    async def test_sends_bearer_and_parses_document(self, client):
        route = respx.get(f"{BASE}/rides/r1").mock(return_value=httpx.Response(200, json=RIDE_DOC))

        ride = await client.get_ride("r1", "tok")

        assert route.calls.last.request.headers["Authorization"] == "Bearer tok"
        assert ride.id == "r1"
        assert ride.status == RideStatus.ACCEPTED
        assert ride.passenger_id == "p1"
        assert ride.driver_id == "d1"
        assert ride.origin.latitude == pytest.approx(-23.5505)
        assert ride.version is not None

    @respx.mock
    async def test_unwraps_ride_envelope(self, client):
        respx.get(f"{BASE}/rides/r1").mock(
            return_value=httpx.Response(200, json={"ride": RIDE_DOC})
        )
        ride = await client.get_ride("r1", "tok")
        assert ride.id == "r1"

    @respx.mock
    async def test_empty_body_is_not_found(self, client):
        respx.get(f"{BASE}/rides/r1").mock(return_value=httpx.Response(200))
        with pytest.raises(NotFoundError):
            await client.get_ride("r1", "tok")

    @respx.mock
    async def test_malformed_document_is_validation_error(self, client):
        respx.get(f"{BASE}/rides/r1").mock(
            return_value=httpx.Response(200, json={"_id": "r1", "status": "volando"})
        )
        with pytest.raises(ValidationError):
            await client.get_ride("r1", "tok")


@pytest.mark.unit
class TestErrorMapping:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, Unauthorized),
            (403, Unauthorized),
            (404, NotFoundError),
            (409, ActiveRideExistsError),
            (422, ValidationError),
            (500, ServiceUnavailableError),
            (503, ServiceUnavailableError),
        ],
    )
    @respx.mock
    async def test_status_codes(self, client, status, expected):
        respx.get(f"{BASE}/rides/r1").mock(
            return_value=httpx.Response(status, json={"message": "nope"})
        )
        with pytest.raises(expected):
            await client.get_ride("r1", "tok")

    @respx.mock
    async def test_error_message_taken_from_body(self, client):
        respx.post(f"{BASE}/rides/accept").mock(
            return_value=httpx.Response(409, json={"message": "Ride already taken"})
        )
        with pytest.raises(ActiveRideExistsError, match="Ride already taken"):
            await client.accept_ride("r1", "d1", "tok")

    @respx.mock
    async def test_timeout_is_network_error(self, client):
        respx.get(f"{BASE}/rides/r1").mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(NetworkError, match="timed out"):
            await client.get_ride("r1", "tok")

    @respx.mock
    async def test_connection_failure_is_network_error(self, client):
        respx.get(f"{BASE}/rides/r1").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(NetworkError):
            await client.get_ride("r1", "tok")

    @respx.mock
    async def test_invalid_json_is_service_error(self, client):
        respx.get(f"{BASE}/rides/r1").mock(return_value=httpx.Response(200, text="<html>"))
        with pytest.raises(ServiceUnavailableError, match="invalid JSON"):
            await client.get_ride("r1", "tok")


@pytest.mark.unit
class TestActiveRide:
    @respx.mock
    async def test_returns_active_ride(self, client):
        respx.get(f"{BASE}/rides/active").mock(return_value=httpx.Response(200, json=RIDE_DOC))
        ride = await client.get_active_ride("tok")
        assert ride.id == "r1"

    @respx.mock
    async def test_not_found_means_no_active_ride(self, client):
        respx.get(f"{BASE}/rides/active").mock(return_value=httpx.Response(404))
        assert await client.get_active_ride("tok") is None

    @respx.mock
    async def test_unauthorized_propagates(self, client):
        respx.get(f"{BASE}/rides/active").mock(return_value=httpx.Response(401))
        with pytest.raises(Unauthorized):
            await client.get_active_ride("tok")


@pytest.mark.unit
class TestMutations:
    @respx.mock
    async def test_update_status_puts_status_value(self, client):
        route = respx.put(f"{BASE}/rides/status/r1").mock(
            return_value=httpx.Response(200, json={**RIDE_DOC, "status": "recogido"})
        )

        ride = await client.update_ride_status("r1", RideStatus.PICKED_UP, "tok")

        assert json.loads(route.calls.last.request.content) == {"status": "picked_up"}
        assert ride.status == RideStatus.PICKED_UP

    @respx.mock
    async def test_update_status_without_body(self, client):
        respx.put(f"{BASE}/rides/status/r1").mock(return_value=httpx.Response(204))
        assert await client.update_ride_status("r1", RideStatus.COMPLETED, "tok") is None

    @respx.mock
    async def test_estimate(self, client):
        route = respx.post(f"{BASE}/rides/estimate").mock(
            return_value=httpx.Response(
                200, json={"fareEstimate": 21.0, "durationEstimate": 840, "distanceEstimate": 5200}
            )
        )

        estimate = await client.estimate(PICKUP, DROPOFF, "tok")

        sent = json.loads(route.calls.last.request.content)
        assert sent["origin"] == {"lat": PICKUP.latitude, "lng": PICKUP.longitude}
        assert sent["destination"] == {"lat": DROPOFF.latitude, "lng": DROPOFF.longitude}
        assert estimate.fare == 21.0
        assert estimate.duration_seconds == 840
        assert estimate.distance_meters == 5200

    @respx.mock
    async def test_availability_round_trip(self, client):
        respx.get(f"{BASE}/drivers/d1/availability").mock(
            return_value=httpx.Response(200, json={"isAvailable": True})
        )
        route = respx.put(f"{BASE}/drivers/d1/availability").mock(
            return_value=httpx.Response(200, json={"isAvailable": False})
        )

        assert await client.get_availability("d1", "tok") is True
        assert await client.set_availability("d1", False, "tok") is False
        assert json.loads(route.calls.last.request.content) == {"isAvailable": False}

    @respx.mock
    async def test_accept_ride_body(self, client):
        route = respx.post(f"{BASE}/rides/accept").mock(
            return_value=httpx.Response(200, json=RIDE_DOC)
        )
        ride = await client.accept_ride("r1", "d1", "tok")
        assert json.loads(route.calls.last.request.content) == {"rideId": "r1", "driverId": "d1"}
        assert ride.driver_id == "d1"

    @respx.mock
    async def test_available_rides_skip_malformed(self, client):
        respx.get(f"{BASE}/rides/available").mock(
            return_value=httpx.Response(200, json=[RIDE_DOC, {"status": "buscando"}])
        )
        rides = await client.list_available_rides("tok")
        assert [r.id for r in rides] == ["r1"]

    @respx.mock
    async def test_available_rides_skip_bad_coordinates(self, client):
        bad = {**RIDE_DOC, "_id": "r2", "origin": {"lat": 200, "lng": 0}}
        respx.get(f"{BASE}/rides/available").mock(
            return_value=httpx.Response(200, json=[bad, RIDE_DOC, "not a ride"])
        )
        rides = await client.list_available_rides("tok")
        assert [r.id for r in rides] == ["r1"]

    @respx.mock
    async def test_invalid_estimate_is_validation_error(self, client):
        respx.post(f"{BASE}/rides/estimate").mock(
            return_value=httpx.Response(200, json={"fare": "ask the driver"})
        )
        with pytest.raises(ValidationError, match="Estimate response is invalid"):
            await client.estimate(PICKUP, DROPOFF, "tok")


@pytest.mark.unit
class TestRideHistory:
    @respx.mock
    async def test_lists_my_rides(self, client):
        finished = {**RIDE_DOC, "_id": "r2", "status": "finalizado"}
        route = respx.get(f"{BASE}/rides/my").mock(
            return_value=httpx.Response(200, json=[RIDE_DOC, finished])
        )

        rides = await client.list_my_rides("tok")

        assert route.calls.last.request.headers["Authorization"] == "Bearer tok"
        assert [(r.id, r.status) for r in rides] == [
            ("r1", RideStatus.ACCEPTED),
            ("r2", RideStatus.COMPLETED),
        ]

    @respx.mock
    async def test_filters_by_canonical_status(self, client):
        pending = {**RIDE_DOC, "_id": "r2", "status": "pendiente", "driver": None}
        active = {**RIDE_DOC, "_id": "r3", "status": "activo"}
        respx.get(f"{BASE}/rides/my").mock(
            return_value=httpx.Response(200, json={"rides": [RIDE_DOC, pending, active]})
        )

        rides = await client.list_my_rides("tok", status=RideStatus.SEARCHING)

        assert [r.id for r in rides] == ["r2"]

    @respx.mock
    async def test_malformed_history_entries_skipped(self, client):
        respx.get(f"{BASE}/rides/my").mock(
            return_value=httpx.Response(200, json=[{"_id": "r9", "status": "volando"}, RIDE_DOC])
        )
        assert [r.id for r in await client.list_my_rides("tok")] == ["r1"]


@pytest.mark.unit
class TestMessages:
    @respx.mock
    async def test_history_parses_populated_sender(self, client):
        route = respx.get(f"{BASE}/messages/r1").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {
                        "_id": "m1",
                        "ride": "r1",
                        "sender": {"_id": "p1", "name": "Lia"},
                        "content": "I'm at the corner",
                        "createdAt": "2026-01-01T12:00:00Z",
                    },
                    {"_id": "m2", "sender": "d1", "content": "On my way"},
                ],
            )
        )

        messages = await client.get_messages("r1", "tok")

        assert route.calls.last.request.headers["Authorization"] == "Bearer tok"
        assert [(m.message_id, m.sender_id, m.content) for m in messages] == [
            ("m1", "p1", "I'm at the corner"),
            ("m2", "d1", "On my way"),
        ]
        assert messages[0].sender_name == "Lia"
        assert messages[1].ride_id == "r1"

    @respx.mock
    async def test_history_skips_malformed_messages(self, client):
        respx.get(f"{BASE}/messages/r1").mock(
            return_value=httpx.Response(
                200, json=[{"_id": "m1", "content": "no sender"}, {"sender": "d1", "content": "ok"}]
            )
        )
        messages = await client.get_messages("r1", "tok")
        assert [m.content for m in messages] == ["ok"]

    @respx.mock
    async def test_history_of_unknown_ride(self, client):
        respx.get(f"{BASE}/messages/r1").mock(return_value=httpx.Response(404))
        with pytest.raises(NotFoundError):
            await client.get_messages("r1", "tok")
