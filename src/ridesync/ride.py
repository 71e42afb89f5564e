"""Ride data model and boundary normalisation."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ridesync.core.exceptions import ValidationError


class RideStatus(str, Enum):
    """Ride lifecycle states.

    IDLE and UNKNOWN are client-side only: the backend never reports them.
    """

    IDLE = "idle"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def tracks_driver(self) -> bool:
        return self in DRIVER_TRACKING_STATUSES

    @classmethod
    def from_backend(cls, raw: str) -> "RideStatus":
        """Canonicalize a backend status, including its localized synonyms."""
        key = str(raw).strip().lower()
        try:
            return STATUS_SYNONYMS[key]
        except KeyError:
            raise ValidationError(f"Unknown ride status: {raw!r}", {"status": raw}) from None


STATUS_SYNONYMS: dict[str, RideStatus] = {
    "buscando": RideStatus.SEARCHING,
    "pendiente": RideStatus.SEARCHING,
    "pending": RideStatus.SEARCHING,
    "requested": RideStatus.SEARCHING,
    "searching": RideStatus.SEARCHING,
    "aceptado": RideStatus.ACCEPTED,
    "matched": RideStatus.ACCEPTED,
    "accepted": RideStatus.ACCEPTED,
    "recogido": RideStatus.PICKED_UP,
    "picked_up": RideStatus.PICKED_UP,
    "en_curso": RideStatus.IN_PROGRESS,
    "activo": RideStatus.IN_PROGRESS,
    "started": RideStatus.IN_PROGRESS,
    "in_progress": RideStatus.IN_PROGRESS,
    "finalizado": RideStatus.COMPLETED,
    "completado": RideStatus.COMPLETED,
    "completed": RideStatus.COMPLETED,
    "cancelado": RideStatus.CANCELLED,
    "canceled": RideStatus.CANCELLED,
    "cancelled": RideStatus.CANCELLED,
}

TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.UNKNOWN})
DRIVER_TRACKING_STATUSES = frozenset(
    {RideStatus.ACCEPTED, RideStatus.PICKED_UP, RideStatus.IN_PROGRESS}
)


class CancellationReason(str, Enum):
    NO_DRIVER = "no_driver"
    PASSENGER = "passenger"
    DRIVER = "driver"
    TIMEOUT = "timeout"
    BACKEND = "backend"


class GeoPoint(BaseModel):
    """Latitude/longitude pair with an optional human-readable address."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str | None = None

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class DriverLocation(BaseModel):
    """Latest known driver position, ordered by ``seq``."""

    model_config = ConfigDict(frozen=True)

    point: GeoPoint
    seq: int = Field(ge=0)
    timestamp: datetime | None = None


def parse_point(raw: Any) -> GeoPoint | None:
    """Normalise the coordinate shapes the backend emits.

    Accepts ``{latitude, longitude}``, ``{lat, lng}``, GeoJSON
    ``{coordinates: [lng, lat]}`` and ``(lat, lon)`` pairs.
    """
    if raw is None:
        return None
    if isinstance(raw, GeoPoint):
        return raw
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        return _point(raw[0], raw[1], None)
    if not isinstance(raw, dict):
        raise ValidationError(f"Unsupported coordinate payload: {raw!r}")

    address = raw.get("address")
    if "coordinates" in raw:
        coords = raw["coordinates"]
        if not isinstance(coords, (list, tuple)) or len(coords) != 2:
            raise ValidationError(f"GeoJSON coordinates must be [lng, lat]: {coords!r}")
        # GeoJSON order is longitude first
        return _point(coords[1], coords[0], address)

    lat = raw.get("latitude", raw.get("lat"))
    lon = raw.get("longitude", raw.get("lng", raw.get("lon")))
    if lat is None or lon is None:
        raise ValidationError(f"Coordinate payload missing latitude/longitude: {raw!r}")
    return _point(lat, lon, address)


def _point(lat: Any, lon: Any, address: Any) -> GeoPoint:
    if isinstance(lat, bool) or isinstance(lon, bool):
        raise ValidationError(f"Coordinates must be numbers: {lat!r}, {lon!r}")
    try:
        return GeoPoint(latitude=float(lat), longitude=float(lon), address=address)
    except (TypeError, ValueError) as e:
        # pydantic's ValidationError is a ValueError too (out-of-range values)
        raise ValidationError(f"Invalid coordinates {lat!r}, {lon!r}: {e}") from None


def parse_version(raw: Any) -> int | None:
    """Logical version from an integer counter or an ISO ``updatedAt`` timestamp (ms)."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid version: {raw!r}")
    if isinstance(raw, (int, float)):
        return int(raw)
    if isinstance(raw, datetime):
        return int(raw.timestamp() * 1000)
    if isinstance(raw, str):
        text = raw.strip()
        if text.isdigit():
            return int(text)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid version: {raw!r}") from None
        return int(parsed.timestamp() * 1000)
    raise ValidationError(f"Invalid version: {raw!r}")


def _ref_id(raw: Any) -> str | None:
    """Extract an id from either a bare id or a populated ``{_id}`` document."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        value = raw.get("_id", raw.get("id"))
        return str(value) if value is not None else None
    return str(raw)


class Ride(BaseModel):
    """Authoritative ride record as returned by the backend."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: RideStatus
    passenger_id: str
    driver_id: str | None = None
    origin: GeoPoint | None = None
    destination: GeoPoint | None = None
    fare_estimate: float | None = None
    duration_estimate: float | None = None
    distance_estimate: float | None = None
    driver_location: DriverLocation | None = None
    version: int | None = None

    @model_validator(mode="after")
    def driver_assigned_once_accepted(self) -> "Ride":
        if self.status.tracks_driver and not self.driver_id:
            raise ValueError(f"ride {self.id} is {self.status.value} without a driver")
        return self

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Ride":
        """Build a Ride from a backend document, normalising field names."""
        ride_id = _ref_id(data.get("_id", data.get("id", data.get("rideId"))))
        if not ride_id:
            raise ValidationError("Ride payload missing id", {"payload_keys": sorted(data)})

        passenger_id = _ref_id(data.get("passenger", data.get("passengerId")))
        if not passenger_id:
            raise ValidationError(f"Ride {ride_id} missing passenger", {"ride_id": ride_id})

        status = RideStatus.from_backend(data.get("status", ""))
        driver_id = _ref_id(data.get("driver", data.get("driverId")))

        try:
            driver_location = None
            raw_location = data.get("driverLocation")
            if raw_location is not None and status.tracks_driver:
                seq = raw_location.get("seq", 0) if isinstance(raw_location, dict) else 0
                driver_location = DriverLocation(point=parse_point(raw_location), seq=seq)

            return cls(
                id=ride_id,
                status=status,
                passenger_id=passenger_id,
                driver_id=driver_id,
                origin=parse_point(data.get("origin")),
                destination=parse_point(data.get("destination")),
                fare_estimate=data.get("fareEstimate", data.get("costoEstimado")),
                duration_estimate=data.get("durationEstimate"),
                distance_estimate=data.get("distanceEstimate"),
                driver_location=driver_location,
                version=parse_version(data.get("version", data.get("updatedAt"))),
            )
        except (PydanticValidationError, TypeError) as e:
            raise ValidationError(
                f"Ride {ride_id} payload is invalid: {e}", {"ride_id": ride_id}
            ) from None
