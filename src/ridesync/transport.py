"""Push-channel session management.

One ``SessionHandle`` per authenticated identity owns a websocket to the
backend, reconnects with bounded exponential backoff, re-issues its
room subscriptions after every (re)connection, and delivers validated
inbound events to subscribers. Frames are JSON objects of the form
``{"event": <name>, "data": <payload>}``.
"""

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus
from websockets.typing import Subprotocol

from ridesync.core.exceptions import (
    StateError,
    TransportDisconnected,
    Unauthorized,
    ValidationError,
)
from ridesync.core.retry import RetryConfig, compute_delay
from ridesync.events import INBOUND_EVENT_NAMES, OutboundPayload, encode_outbound, parse_inbound
from ridesync.settings import TransportSettings

logger = logging.getLogger(__name__)

# Close codes the backend uses to reject a credential.
AUTH_CLOSE_CODES = frozenset({1008, 4401, 4403})
AUTH_HTTP_STATUSES = frozenset({401, 403})


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    UNAUTHENTICATED = "unauthenticated"
    FAILED = "failed"


LIVE_STATES = frozenset(
    {ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.RECONNECTING}
)
SETTLED_STATES = frozenset(
    {ConnectionState.CONNECTED, ConnectionState.UNAUTHENTICATED, ConnectionState.FAILED}
)


@dataclass(frozen=True)
class ConnectionEvent:
    """Connectivity change published to listeners (the UI shows these)."""

    state: ConnectionState
    resumed: bool = False
    error: str | None = None


class Connection(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


ConnectFactory = Callable[[str, str], Awaitable[Connection]]
EventHandler = Callable[[Any], Awaitable[None] | None]
StateListener = Callable[[ConnectionEvent], Awaitable[None] | None]


class WebSocketConnection:
    """Adapts a websockets client connection to the session's error taxonomy."""

    def __init__(self, websocket: Any):
        self._ws = websocket

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise _classify_close(e) from e

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise _classify_close(e) from e

    async def close(self) -> None:
        await self._ws.close()


def _classify_close(exc: ConnectionClosed) -> Exception:
    code = exc.rcvd.code if exc.rcvd is not None else None
    if code in AUTH_CLOSE_CODES:
        return Unauthorized(f"Channel closed by server: {exc.rcvd.reason or code}", {"code": code})
    return TransportDisconnected(f"Channel closed: {exc}", {"code": code})


def websocket_factory(settings: TransportSettings) -> ConnectFactory:
    """Connect factory offering the token as a ``bearer.<token>`` subprotocol."""

    async def _connect(url: str, token: str) -> Connection:
        try:
            websocket = await ws_connect(
                url,
                subprotocols=[Subprotocol(f"bearer.{token}")],
                open_timeout=settings.connect_timeout,
                ping_interval=settings.ping_interval,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in AUTH_HTTP_STATUSES:
                raise Unauthorized(f"Handshake rejected with HTTP {status}") from e
            raise TransportDisconnected(f"Handshake failed with HTTP {status}") from e
        except (InvalidHandshake, OSError, TimeoutError) as e:
            raise TransportDisconnected(f"Cannot reach {url}: {e}") from e
        return WebSocketConnection(websocket)

    return _connect


class Subscription:
    """Registration of one handler for one inbound event name."""

    def __init__(self, handle: "SessionHandle", event: str, handler: EventHandler):
        self.event = event
        self.handler = handler
        self._handle = handle

    @property
    def active(self) -> bool:
        return self.handler in self._handle._handlers.get(self.event, [])

    def unsubscribe(self) -> None:
        self._handle._remove_handler(self.event, self.handler)


async def _call(callback: Callable[[Any], Any], arg: Any) -> None:
    result = callback(arg)
    if inspect.isawaitable(result):
        await result


class SessionHandle:
    """A live push-channel session for one identity token."""

    def __init__(
        self,
        token: str,
        user_id: str | None,
        settings: TransportSettings,
        connect_factory: ConnectFactory | None = None,
    ):
        self.token = token
        self.user_id = user_id
        self.url = settings.url
        self._connect_factory = connect_factory or websocket_factory(settings)
        self._retry = RetryConfig(
            max_attempts=settings.reconnect_attempts,
            base_delay=settings.reconnect_base_delay,
            multiplier=settings.reconnect_multiplier,
            max_delay=settings.reconnect_max_delay,
        )
        self._state = ConnectionState.IDLE
        self._connection: Connection | None = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._state_listeners: list[StateListener] = []
        # Insertion-ordered set of rooms to (re)join on every connection.
        self._rooms: dict[str, None] = {}
        self._task: asyncio.Task | None = None
        self._settled = asyncio.Event()
        self._closing = False
        # Next successful connection is announced as resumed.
        self._resume_next = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._connection is not None

    @property
    def is_live(self) -> bool:
        return self._state in LIVE_STATES

    @property
    def rooms(self) -> tuple[str, ...]:
        return tuple(self._rooms)

    @property
    def identity_room(self) -> str | None:
        return f"user:{self.user_id}" if self.user_id else None

    async def open(self) -> ConnectionState:
        """Start the connection loop and wait for the first settled outcome."""
        if self._task is None:
            name = f"transport-{self.user_id or 'anon'}"
            self._task = asyncio.create_task(self._run(), name=name)
        await self._settled.wait()
        return self._state

    async def close(self) -> None:
        """Explicit logout: stop reconnecting and drop the connection."""
        self._closing = True
        await self._stop_loop()
        await self._close_connection()
        if self._state not in (ConnectionState.UNAUTHENTICATED, ConnectionState.FAILED):
            await self._set_state(ConnectionState.DISCONNECTED)
        self._settled.set()

    async def reauthenticate(self, token: str) -> ConnectionState:
        """Reconnect with a fresh credential.

        Subscriptions, rooms and state listeners are kept. The new
        connection is announced as resumed so trackers refresh whatever
        changed while the old credential was being replaced.
        """
        if self._closing:
            raise StateError("Cannot reauthenticate a closed session")
        await self._stop_loop()
        await self._close_connection()
        self.token = token
        self._resume_next = True
        self._settled.clear()
        logger.info(f"Reauthenticating channel to {self.url}")
        return await self.open()

    async def _stop_loop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # --- pub/sub -------------------------------------------------------------

    def subscribe(self, event: str, handler: EventHandler) -> Subscription:
        if event not in INBOUND_EVENT_NAMES:
            raise ValidationError(f"Cannot subscribe to unknown event: {event}", {"event": event})
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)
        return Subscription(self, event, handler)

    def _remove_handler(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def _remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _remove

    async def publish(self, event: str, payload: OutboundPayload | dict[str, Any]) -> None:
        data = encode_outbound(event, payload)
        await self._send(event, data)

    async def join_room(self, room: str) -> None:
        if room in self._rooms:
            return
        self._rooms[room] = None
        if self.is_connected:
            await self._send_quietly("join_room", room)

    async def leave_room(self, room: str) -> None:
        if room not in self._rooms:
            return
        del self._rooms[room]
        if self.is_connected:
            await self._send_quietly("leave_room", room)

    # --- connection loop -----------------------------------------------------

    async def _run(self) -> None:
        failures = 0

        while not self._closing:
            await self._set_state(
                ConnectionState.RECONNECTING
                if self._resume_next or failures
                else ConnectionState.CONNECTING
            )
            try:
                connection = await self._connect_factory(self.url, self.token)
            except Unauthorized as e:
                logger.error(f"Authentication rejected for {self.url}: {e.message}")
                await self._set_state(ConnectionState.UNAUTHENTICATED, error=e.message)
                return
            except (TransportDisconnected, OSError, TimeoutError) as e:
                failures += 1
                if failures > self._retry.max_attempts:
                    logger.error(f"Giving up on {self.url} after {failures} failed attempts: {e}")
                    await self._set_state(ConnectionState.FAILED, error=str(e))
                    return
                delay = compute_delay(self._retry, failures - 1)
                logger.warning(
                    f"Connect to {self.url} failed (attempt {failures}/"
                    f"{self._retry.max_attempts}), retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue

            failures = 0
            resumed = self._resume_next
            self._resume_next = True
            try:
                await self._on_connected(connection, resumed)
                await self._receive_loop(connection)
            except Unauthorized as e:
                logger.error(f"Session rejected by server: {e.message}")
                await self._close_connection()
                await self._set_state(ConnectionState.UNAUTHENTICATED, error=e.message)
                return
            except (TransportDisconnected, OSError) as e:
                logger.warning(f"Channel to {self.url} lost: {e}")
                self._connection = None
                if self._closing:
                    break
                await self._set_state(ConnectionState.DISCONNECTED, error=str(e))
                await asyncio.sleep(compute_delay(self._retry, 0))

    async def _on_connected(self, connection: Connection, resumed: bool) -> None:
        self._connection = connection
        if self.identity_room:
            await connection.send(_frame("join_room", {"room": self.identity_room}))
        # Rooms joined while these sends are in flight are picked up by the next pass.
        issued: set[str] = set()
        while pending := [room for room in self._rooms if room not in issued]:
            for room in pending:
                await connection.send(_frame("join_room", {"room": room}))
                issued.add(room)
        logger.info(
            f"{'Resumed' if resumed else 'Connected'} channel to {self.url} "
            f"({len(self._rooms)} room(s))"
        )
        await self._set_state(ConnectionState.CONNECTED, resumed=resumed)

    async def _receive_loop(self, connection: Connection) -> None:
        while True:
            raw = await connection.recv()
            await self._dispatch(raw)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            # Covers undecodable bytes as well as malformed JSON.
            logger.warning(f"Invalid JSON on channel: {raw!r:.200}")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.warning(f"Malformed frame on channel: {frame!r:.200}")
            return

        name = frame["event"]
        try:
            event = parse_inbound(name, frame.get("data"))
        except ValidationError as e:
            logger.warning(f"Dropped invalid {name} event: {e.message}")
            return
        except Exception as e:
            logger.exception(f"Dropped unparseable {name} event: {e}")
            return
        if event is None:
            logger.debug(f"Ignoring unsubscribed event {name}")
            return
        if name == "unauthorized":
            raise Unauthorized(getattr(event, "message", "Authentication error"))

        await self._deliver(name, event)

    async def _deliver(self, name: str, event: BaseModel) -> None:
        for handler in list(self._handlers.get(name, [])):
            try:
                await _call(handler, event)
            except Exception as e:
                logger.exception(f"Handler for {name} failed: {e}")

    async def _set_state(
        self, state: ConnectionState, resumed: bool = False, error: str | None = None
    ) -> None:
        self._state = state
        if state in SETTLED_STATES:
            self._settled.set()
        change = ConnectionEvent(state=state, resumed=resumed, error=error)
        for listener in list(self._state_listeners):
            try:
                await _call(listener, change)
            except Exception as e:
                logger.exception(f"Connection listener failed on {state.value}: {e}")

    async def _send(self, event: str, data: dict[str, Any]) -> None:
        connection = self._connection
        if connection is None or self._state != ConnectionState.CONNECTED:
            raise TransportDisconnected(f"Cannot publish {event}: channel is {self._state.value}")
        try:
            await connection.send(_frame(event, data))
        except OSError as e:
            raise TransportDisconnected(f"Publishing {event} failed: {e}") from e

    async def _send_quietly(self, event: str, room: str) -> None:
        # Rooms are re-issued on the next connection if this send is lost.
        try:
            await self._send(event, encode_outbound(event, {"room": room}))
        except (TransportDisconnected, Unauthorized) as e:
            logger.info(f"{event} {room} deferred until reconnect: {e}")

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            with contextlib.suppress(TransportDisconnected, Unauthorized, OSError):
                await connection.close()


def _frame(event: str, data: dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data})


class TransportSessionManager:
    """Creates and owns the single process-wide session per identity."""

    def __init__(
        self,
        settings: TransportSettings | None = None,
        connect_factory: ConnectFactory | None = None,
    ):
        self._settings = settings or TransportSettings()
        self._connect_factory = connect_factory
        self._handle: SessionHandle | None = None

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    async def connect(self, token: str, user_id: str | None = None) -> SessionHandle:
        """Return the live handle for ``token``, creating it if needed."""
        current = self._handle
        if current is not None and current.token == token and current.is_live:
            await current.open()
            return current
        if current is not None:
            await current.close()

        handle = SessionHandle(token, user_id, self._settings, self._connect_factory)
        self._handle = handle
        await handle.open()
        return handle

    async def reauthenticate(self, token: str) -> SessionHandle:
        """Replace the credential of the current session in place."""
        if self._handle is None:
            raise StateError("No session to reauthenticate")
        await self._handle.reauthenticate(token)
        return self._handle

    async def disconnect(self) -> None:
        if self._handle is not None:
            await self._handle.close()
            self._handle = None
