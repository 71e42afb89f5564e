"""Ride chat between the passenger and the driver of one ride.

History is loaded over REST when the chat opens and again after the
channel resumes; new messages and typing notices arrive on the push
channel. A sent message shows up once the backend echoes it back as
``receive_message``.
"""

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable

from ridesync.api_client import RideApiClient
from ridesync.core.exceptions import RideSyncError, TransportDisconnected, ValidationError
from ridesync.events import (
    ChatMessage,
    JoinRideChatPayload,
    SendMessagePayload,
    TypingEvent,
    TypingPayload,
)
from ridesync.settings import ChatSettings
from ridesync.transport import ConnectionEvent, ConnectionState, SessionHandle, Subscription

logger = logging.getLogger(__name__)

ChatListener = Callable[["RideChat"], Awaitable[None] | None]


def _message_key(message: ChatMessage) -> object | None:
    if message.message_id is not None:
        return message.message_id
    if message.created_at is not None:
        return (message.sender_id, message.created_at, message.content)
    return None


class RideChat:
    """Message thread of one ride, as seen by one participant."""

    def __init__(
        self,
        session: SessionHandle,
        api: RideApiClient,
        ride_id: str,
        user_id: str,
        settings: ChatSettings | None = None,
    ):
        self._session = session
        self._api = api
        self.ride_id = ride_id
        self.user_id = user_id
        self._settings = settings or ChatSettings()

        self.messages: list[ChatMessage] = []
        self.typing_user: str | None = None
        self._seen: set[object] = set()
        self._listeners: list[ChatListener] = []
        self._subscriptions: list[Subscription] = []
        self._remove_connection_listener: Callable[[], None] | None = None
        self._typing_timer: asyncio.Task | None = None
        self._rejoin_task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self._remove_connection_listener is not None

    def add_listener(self, listener: ChatListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def open(self) -> list[ChatMessage]:
        """Join the ride's chat and load its history."""
        if self.is_open:
            return self.messages
        self._subscriptions = [
            self._session.subscribe("receive_message", self._on_message),
            self._session.subscribe("user_typing", self._on_typing),
        ]
        self._remove_connection_listener = self._session.on_state_change(self._on_connection)
        await self._join()
        await self.load_history()
        return self.messages

    async def load_history(self) -> list[ChatMessage]:
        history = await self._api.get_messages(self.ride_id, self._session.token)
        # Messages pushed while the request was in flight come after the history.
        live, self.messages = self.messages, []
        self._seen.clear()
        for message in [*history, *live]:
            self._add(message)
        logger.debug(f"Loaded {len(history)} chat message(s) for ride {self.ride_id}")
        await self._notify()
        return self.messages

    async def send(self, content: str) -> None:
        text = content.strip()
        if not text:
            raise ValidationError("Cannot send an empty message", {"ride_id": self.ride_id})
        await self._session.publish(
            "send_message",
            SendMessagePayload(ride_id=self.ride_id, sender_id=self.user_id, content=text),
        )

    async def notify_typing(self) -> None:
        try:
            await self._session.publish(
                "typing", TypingPayload(ride_id=self.ride_id, sender_id=self.user_id)
            )
        except TransportDisconnected as e:
            logger.debug(f"typing for ride {self.ride_id} not sent: {e.message}")

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        if self._remove_connection_listener is not None:
            self._remove_connection_listener()
            self._remove_connection_listener = None
        for task in (self._typing_timer, self._rejoin_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._typing_timer = self._rejoin_task = None

    # --- internals -----------------------------------------------------------

    async def _join(self) -> None:
        try:
            await self._session.publish("join_ride_chat", JoinRideChatPayload(ride_id=self.ride_id))
        except TransportDisconnected as e:
            logger.info(f"join_ride_chat {self.ride_id} deferred until reconnect: {e.message}")

    def _add(self, message: ChatMessage) -> bool:
        key = _message_key(message)
        if key is not None:
            if key in self._seen:
                return False
            self._seen.add(key)
        self.messages.append(message)
        return True

    async def _on_message(self, message: ChatMessage) -> None:
        if message.ride_id != self.ride_id or not self._add(message):
            return
        if message.sender_id == self.typing_user:
            self._stop_typing()
        await self._notify()

    async def _on_typing(self, event: TypingEvent) -> None:
        if event.sender_id == self.user_id:
            return
        if event.ride_id is not None and event.ride_id != self.ride_id:
            return
        self._stop_typing()
        self.typing_user = event.sender_id
        self._typing_timer = asyncio.create_task(
            self._typing_expires(self._settings.typing_indicator_seconds),
            name=f"chat-typing-{self.ride_id}",
        )
        await self._notify()

    async def _typing_expires(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self._typing_timer = None
        self.typing_user = None
        await self._notify()

    def _stop_typing(self) -> None:
        self.typing_user = None
        timer, self._typing_timer = self._typing_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _on_connection(self, change: ConnectionEvent) -> None:
        if change.state != ConnectionState.CONNECTED or not change.resumed:
            return
        if self._rejoin_task is not None and not self._rejoin_task.done():
            return
        self._rejoin_task = asyncio.create_task(self._rejoin(), name=f"chat-rejoin-{self.ride_id}")

    async def _rejoin(self) -> None:
        await self._join()
        try:
            await self.load_history()
        except RideSyncError as e:
            logger.warning(f"Chat history for ride {self.ride_id} not refreshed: {e.message}")

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(self)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Chat listener failed for ride {self.ride_id}: {e}")
