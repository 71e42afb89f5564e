"""Wire event schemas for the push channel.

Inbound events form a tagged union discriminated by ``event`` (the
channel event name) and are validated before any subscriber sees them.
Outbound payloads are serialised with the backend's camelCase keys.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ridesync.core.exceptions import ValidationError
from ridesync.ride import DriverLocation, GeoPoint, RideStatus, parse_point, parse_version
from ridesync.state_machine import (
    CancelledByDriver,
    CancelledByPassenger,
    LocationUpdate,
    MatchFound,
    NoMatch,
    PickupConfirmed,
    RideEvent,
    TripCompleted,
    TripStarted,
)

logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


def _coerce_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("_id", value.get("id"))
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class RideScopedEvent(WireModel):
    ride_id: str
    version: int | None = None

    @field_validator("ride_id", mode="before")
    @classmethod
    def coerce_ride_id(cls, v: Any) -> Any:
        return _coerce_id(v)

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> int | None:
        try:
            return parse_version(v)
        except ValidationError as e:
            raise ValueError(e.message) from e


# --- inbound -----------------------------------------------------------------


class TripRequestEvent(RideScopedEvent):
    """Match offer pushed to a driver."""

    event: Literal["tripRequest"] = "tripRequest"
    passenger_id: str | None = None
    origin: GeoPoint | None = None
    destination: GeoPoint | None = None
    fare_estimate: float | None = None
    duration_estimate: float | None = None
    distance_estimate: float | None = None

    @field_validator("passenger_id", mode="before")
    @classmethod
    def coerce_passenger(cls, v: Any) -> Any:
        return _coerce_id(v)

    @field_validator("origin", "destination", mode="before")
    @classmethod
    def coerce_point(cls, v: Any) -> GeoPoint | None:
        try:
            return parse_point(v)
        except ValidationError as e:
            raise ValueError(e.message) from e


class TripRequestCancelledEvent(RideScopedEvent):
    event: Literal["tripRequestCancelled"] = "tripRequestCancelled"


class RideRequestAcceptedEvent(RideScopedEvent):
    event: Literal["rideRequestAccepted"] = "rideRequestAccepted"
    driver_id: str

    @field_validator("driver_id", mode="before")
    @classmethod
    def coerce_driver(cls, v: Any) -> Any:
        return _coerce_id(v)


class NoDriverFoundEvent(RideScopedEvent):
    event: Literal["noDriverFound"] = "noDriverFound"


class RideCancelledByDriverEvent(RideScopedEvent):
    event: Literal["rideRequestCancelledByDriver"] = "rideRequestCancelledByDriver"
    reason: str | None = None


class RideCancelledByPassengerEvent(RideScopedEvent):
    event: Literal["ride_cancelled_by_passenger"] = "ride_cancelled_by_passenger"


class RideStatusUpdatedEvent(RideScopedEvent):
    event: Literal["ride_status_updated"] = "ride_status_updated"
    status: RideStatus
    driver_id: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def canonicalize_status(cls, v: Any) -> RideStatus:
        if isinstance(v, RideStatus):
            return v
        try:
            return RideStatus.from_backend(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("driver_id", mode="before")
    @classmethod
    def coerce_driver(cls, v: Any) -> Any:
        return _coerce_id(v)


class _LocationEvent(RideScopedEvent):
    driver_id: str | None = None
    location: GeoPoint
    seq: int = Field(ge=0)
    timestamp: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def normalise_location(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw = data.get("location")
        if raw is None:
            raw = data.get("coordinates", data)
            if isinstance(raw, list):
                raw = {"coordinates": raw}
        if not isinstance(raw, GeoPoint):
            try:
                data["location"] = parse_point(raw)
            except ValidationError as e:
                raise ValueError(e.message) from e
        if data.get("seq") is None:
            # Fall back to the send timestamp as the ordering key.
            try:
                data["seq"] = parse_version(data.get("timestamp"))
            except ValidationError as e:
                raise ValueError(e.message) from e
        if data.get("seq") is None:
            raise ValueError("location update carries neither seq nor timestamp")
        return data

    @field_validator("driver_id", mode="before")
    @classmethod
    def coerce_driver(cls, v: Any) -> Any:
        return _coerce_id(v)


class PassengerLocationBroadcastEvent(_LocationEvent):
    """Driver position relayed to the passenger of a ride."""

    event: Literal["driverLocationUpdateForPassengers"] = "driverLocationUpdateForPassengers"


class RideLocationEvent(_LocationEvent):
    """Driver position scoped to a ride room."""

    event: Literal["driver_location_update"] = "driver_location_update"


class DriverUnavailableEvent(WireModel):
    event: Literal["driverUnavailable"] = "driverUnavailable"
    driver_id: str

    @field_validator("driver_id", mode="before")
    @classmethod
    def coerce_driver(cls, v: Any) -> Any:
        return _coerce_id(v)


class UnauthorizedEvent(WireModel):
    event: Literal["unauthorized"] = "unauthorized"
    message: str = "Authentication error"


class ChatMessage(WireModel):
    """One ride chat message, pushed live or loaded from history."""

    event: Literal["receive_message"] = "receive_message"
    message_id: str | None = None
    ride_id: str
    sender_id: str
    sender_name: str | None = None
    content: str
    created_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def flatten_document(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # History documents carry a populated {_id, name} sender and a ride ref.
        sender = data.get("sender")
        if isinstance(sender, dict):
            data.setdefault("senderId", sender.get("_id", sender.get("id")))
            data.setdefault("senderName", sender.get("name"))
        elif sender is not None:
            data.setdefault("senderId", sender)
        if "ride" in data:
            data.setdefault("rideId", data["ride"])
        if "_id" in data:
            data.setdefault("messageId", data["_id"])
        return data

    @field_validator("ride_id", "sender_id", "message_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _coerce_id(v)


class TypingEvent(WireModel):
    event: Literal["user_typing"] = "user_typing"
    ride_id: str | None = None
    sender_id: str

    @field_validator("ride_id", "sender_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _coerce_id(v)


InboundEvent = Annotated[
    TripRequestEvent
    | TripRequestCancelledEvent
    | RideRequestAcceptedEvent
    | NoDriverFoundEvent
    | RideCancelledByDriverEvent
    | RideCancelledByPassengerEvent
    | RideStatusUpdatedEvent
    | PassengerLocationBroadcastEvent
    | RideLocationEvent
    | DriverUnavailableEvent
    | UnauthorizedEvent
    | ChatMessage
    | TypingEvent,
    Field(discriminator="event"),
]

INBOUND_EVENT_NAMES = frozenset(
    {
        "tripRequest",
        "tripRequestCancelled",
        "rideRequestAccepted",
        "noDriverFound",
        "rideRequestCancelledByDriver",
        "ride_cancelled_by_passenger",
        "ride_status_updated",
        "driverLocationUpdateForPassengers",
        "driver_location_update",
        "driverUnavailable",
        "unauthorized",
        "receive_message",
        "user_typing",
    }
)

CHAT_EVENT_NAMES = frozenset({"receive_message", "user_typing"})

# Events that move a ride through its lifecycle.
RIDE_SCOPED_EVENT_NAMES = (
    INBOUND_EVENT_NAMES - {"tripRequest", "driverUnavailable", "unauthorized"} - CHAT_EVENT_NAMES
)

_inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def parse_inbound(name: str, data: Any) -> BaseModel | None:
    """Validate one inbound frame.

    Returns None for event names outside the schema; raises
    ValidationError for a known event whose payload does not validate.
    """
    if name not in INBOUND_EVENT_NAMES:
        return None
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"{name} payload must be an object", {"event": name})
    try:
        return _inbound_adapter.validate_python({**data, "event": name})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {name} payload: {e.error_count()} error(s)",
            {"event": name, "errors": e.errors(include_url=False)},
        ) from e


# --- outbound ----------------------------------------------------------------


class OutboundPayload(WireModel):
    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RequestRidePayload(OutboundPayload):
    ride_id: str
    passenger_id: str
    origin: GeoPoint
    destination: GeoPoint
    fare_estimate: float
    duration_estimate: float | None = None
    distance_estimate: float | None = None


class CancelRideRequestPayload(OutboundPayload):
    ride_id: str
    passenger_id: str
    driver_id: str | None = None


class DriverAcceptsRidePayload(OutboundPayload):
    ride_id: str
    driver_id: str


class DriverRejectsRidePayload(OutboundPayload):
    ride_id: str
    driver_id: str


class DriverSetUnavailablePayload(OutboundPayload):
    driver_id: str


class DriverLocationPayload(OutboundPayload):
    driver_id: str
    latitude: float
    longitude: float
    seq: int
    timestamp: datetime
    is_available: bool = True


class RideLocationPayload(OutboundPayload):
    ride_id: str
    driver_id: str
    latitude: float
    longitude: float
    seq: int
    timestamp: datetime


class RideStatusUpdatePayload(OutboundPayload):
    ride_id: str
    status: RideStatus
    passenger_id: str | None = None
    driver_id: str | None = None


class RoomPayload(OutboundPayload):
    room: str


class JoinRideChatPayload(OutboundPayload):
    ride_id: str


class SendMessagePayload(OutboundPayload):
    ride_id: str
    sender_id: str
    content: str = Field(min_length=1)


class TypingPayload(OutboundPayload):
    ride_id: str
    sender_id: str


OUTBOUND_EVENTS: dict[str, type[OutboundPayload]] = {
    "requestRide": RequestRidePayload,
    "cancelRideRequest": CancelRideRequestPayload,
    "driver_accepts_ride": DriverAcceptsRidePayload,
    "driver_rejects_ride": DriverRejectsRidePayload,
    "driverSetUnavailable": DriverSetUnavailablePayload,
    "driverLocationUpdate": DriverLocationPayload,
    "driver_location_update": RideLocationPayload,
    "ride_status_update": RideStatusUpdatePayload,
    "join_room": RoomPayload,
    "leave_room": RoomPayload,
    "join_ride_chat": JoinRideChatPayload,
    "send_message": SendMessagePayload,
    "typing": TypingPayload,
}


def encode_outbound(name: str, payload: OutboundPayload | dict[str, Any]) -> dict[str, Any]:
    """Check an outbound payload against its schema and return the frame data."""
    schema = OUTBOUND_EVENTS.get(name)
    if schema is None:
        raise ValidationError(f"Unknown outbound event: {name}", {"event": name})
    if isinstance(payload, dict):
        try:
            payload = schema.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {name} payload: {e.error_count()} error(s)",
                {"event": name, "errors": e.errors(include_url=False)},
            ) from e
    elif not isinstance(payload, schema):
        raise ValidationError(
            f"{name} expects {schema.__name__}, got {type(payload).__name__}", {"event": name}
        )
    return payload.to_wire()


# --- translation to state machine inputs -------------------------------------


def status_event(
    ride_id: str,
    status: RideStatus,
    driver_id: str | None = None,
    version: int | None = None,
) -> RideEvent | None:
    """Machine input for a bare status change.

    Returns None when the status alone does not identify a table event
    (searching, cancelled without a known initiator, accepted without a
    driver); the caller resolves those with a snapshot fetch.
    """
    if status == RideStatus.ACCEPTED and driver_id:
        return MatchFound(ride_id=ride_id, version=version, driver_id=driver_id)
    if status == RideStatus.PICKED_UP:
        return PickupConfirmed(ride_id=ride_id, version=version)
    if status == RideStatus.IN_PROGRESS:
        return TripStarted(ride_id=ride_id, version=version)
    if status == RideStatus.COMPLETED:
        return TripCompleted(ride_id=ride_id, version=version)
    return None


def to_ride_event(event: BaseModel) -> RideEvent | None:
    """Translate a validated ride-scoped wire event into a machine input."""
    if isinstance(event, RideRequestAcceptedEvent):
        return MatchFound(ride_id=event.ride_id, version=event.version, driver_id=event.driver_id)
    if isinstance(event, NoDriverFoundEvent):
        return NoMatch(ride_id=event.ride_id, version=event.version)
    if isinstance(event, (TripRequestCancelledEvent, RideCancelledByPassengerEvent)):
        return CancelledByPassenger(ride_id=event.ride_id, version=event.version)
    if isinstance(event, RideCancelledByDriverEvent):
        return CancelledByDriver(ride_id=event.ride_id, version=event.version, reason=event.reason)
    if isinstance(event, RideStatusUpdatedEvent):
        return status_event(event.ride_id, event.status, event.driver_id, event.version)
    if isinstance(event, _LocationEvent):
        return LocationUpdate(
            ride_id=event.ride_id,
            version=event.version,
            driver_id=event.driver_id,
            location=DriverLocation(point=event.location, seq=event.seq, timestamp=event.timestamp),
        )
    return None
