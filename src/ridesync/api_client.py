"""REST collaborator client for the ride backend."""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ridesync.core.exceptions import (
    ActiveRideExistsError,
    NetworkError,
    NotFoundError,
    ServiceUnavailableError,
    Unauthorized,
    ValidationError,
)
from ridesync.events import ChatMessage
from ridesync.ride import GeoPoint, Ride, RideStatus

logger = logging.getLogger(__name__)


class FareEstimate(BaseModel):
    fare: float = Field(ge=0.0)
    duration_seconds: float | None = Field(default=None, ge=0.0)
    distance_meters: float | None = Field(default=None, ge=0.0)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class RideApiClient:
    """Bearer-authenticated calls the sync engine makes against the backend.

    Every call round-trips; nothing is cached. HTTP failures are mapped
    onto the engine's exception taxonomy: 401/403 -> Unauthorized,
    404 -> NotFoundError, 409 -> ActiveRideExistsError, other 4xx ->
    ValidationError, 5xx -> ServiceUnavailableError, timeouts and
    connection failures -> NetworkError.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise Unauthorized(f"{method} {path} rejected credentials", {"status": status})
        if status == 404:
            raise NotFoundError(_error_message(response), {"path": path})
        if status == 409:
            raise ActiveRideExistsError(_error_message(response), {"path": path})
        if 400 <= status < 500:
            raise ValidationError(_error_message(response), {"path": path, "status": status})
        if status >= 500:
            raise ServiceUnavailableError(
                f"{method} {path} server error: {status}", {"status": status}
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ServiceUnavailableError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _ride_from(body: Any) -> Ride:
        # Some endpoints wrap the document as {"ride": {...}}.
        if isinstance(body, dict) and isinstance(body.get("ride"), dict):
            body = body["ride"]
        if not isinstance(body, dict):
            raise ValidationError(f"Expected a ride document, got {type(body).__name__}")
        return Ride.from_payload(body)

    async def get_ride(self, ride_id: str, token: str) -> Ride:
        body = await self._request("GET", f"/rides/{ride_id}", token)
        if not body:
            raise NotFoundError(f"Ride {ride_id} not found", {"ride_id": ride_id})
        return self._ride_from(body)

    async def get_active_ride(self, token: str) -> Ride | None:
        """The caller's non-terminal ride, or None when there is none."""
        try:
            body = await self._request("GET", "/rides/active", token)
        except NotFoundError:
            return None
        if not body:
            return None
        return self._ride_from(body)

    async def update_ride_status(self, ride_id: str, status: RideStatus, token: str) -> Ride | None:
        body = await self._request(
            "PUT", f"/rides/status/{ride_id}", token, json={"status": status.value}
        )
        return self._ride_from(body) if body else None

    async def estimate(self, origin: GeoPoint, destination: GeoPoint, token: str) -> FareEstimate:
        body = await self._request(
            "POST",
            "/rides/estimate",
            token,
            json={
                "origin": {"lat": origin.latitude, "lng": origin.longitude},
                "destination": {"lat": destination.latitude, "lng": destination.longitude},
            },
        )
        if not isinstance(body, dict):
            raise ValidationError("Estimate response is not an object")
        try:
            return FareEstimate(
                fare=body.get("fare", body.get("fareEstimate")),
                duration_seconds=body.get("duration", body.get("durationEstimate")),
                distance_meters=body.get("distance", body.get("distanceEstimate")),
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Estimate response is invalid: {e.error_count()} error(s)",
                {"errors": e.errors(include_url=False)},
            ) from None

    async def get_availability(self, driver_id: str, token: str) -> bool:
        body = await self._request("GET", f"/drivers/{driver_id}/availability", token)
        return bool((body or {}).get("isAvailable", False))

    async def set_availability(self, driver_id: str, available: bool, token: str) -> bool:
        body = await self._request(
            "PUT",
            f"/drivers/{driver_id}/availability",
            token,
            json={"isAvailable": available},
        )
        return bool((body or {}).get("isAvailable", available))

    async def accept_ride(self, ride_id: str, driver_id: str, token: str) -> Ride | None:
        body = await self._request(
            "POST", "/rides/accept", token, json={"rideId": ride_id, "driverId": driver_id}
        )
        return self._ride_from(body) if body else None

    async def list_available_rides(self, token: str) -> list[Ride]:
        body = await self._request("GET", "/rides/available", token)
        return self._rides_from(body, "available ride")

    async def list_my_rides(self, token: str, status: RideStatus | None = None) -> list[Ride]:
        """Ride history of the caller, optionally narrowed to one status."""
        body = await self._request("GET", "/rides/my", token)
        rides = self._rides_from(body, "ride history entry")
        if status is not None:
            rides = [ride for ride in rides if ride.status == status]
        return rides

    async def get_messages(self, ride_id: str, token: str) -> list[ChatMessage]:
        """Chat history of a ride, oldest first."""
        body = await self._request("GET", f"/messages/{ride_id}", token)
        if isinstance(body, dict):
            body = body.get("messages", [])
        messages = []
        for document in body or []:
            if isinstance(document, dict):
                document = {"rideId": ride_id, **document}
            try:
                messages.append(ChatMessage.model_validate(document))
            except PydanticValidationError as e:
                logger.warning(
                    f"Skipping malformed message in ride {ride_id}: {e.error_count()} error(s)"
                )
        return messages

    def _rides_from(self, body: Any, label: str) -> list[Ride]:
        if isinstance(body, dict):
            body = body.get("rides", [])
        rides = []
        for document in body or []:
            try:
                rides.append(self._ride_from(document))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {label}: {e.message}")
        return rides
