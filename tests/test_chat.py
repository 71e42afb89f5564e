"""Tests for the ride chat thread."""

import asyncio
from datetime import UTC, datetime

import pytest

from ridesync.chat import RideChat
from ridesync.core.exceptions import NetworkError, ValidationError
from ridesync.events import ChatMessage
from ridesync.settings import ChatSettings
from tests.fakes import wait_for

SENT_AT = datetime(2024, 5, 1, 12, tzinfo=UTC)


def message(message_id: str | None, sender_id: str = "d1", content: str = "On my way"):
    return ChatMessage(
        message_id=message_id,
        ride_id="r1",
        sender_id=sender_id,
        content=content,
        created_at=SENT_AT,
    )


def pushed(message_id: str, sender_id: str = "d1", content: str = "On my way") -> dict:
    return {
        "_id": message_id,
        "ride": "r1",
        "sender": {"_id": sender_id, "name": "Ana"},
        "content": content,
        "createdAt": SENT_AT.isoformat(),
    }


@pytest.fixture
async def chat(session, api):
    api.get_messages.return_value = [message("m1")]
    ride_chat = RideChat(
        session, api, "r1", "p1", settings=ChatSettings(typing_indicator_seconds=0.02)
    )
    await ride_chat.open()
    yield ride_chat
    await ride_chat.close()


@pytest.mark.unit
class TestOpen:
    async def test_joins_and_loads_history(self, chat, api, connector):
        assert chat.is_open
        assert connector.current.sent_data("join_ride_chat") == [{"rideId": "r1"}]
        api.get_messages.assert_awaited_once_with("r1", "token-p1")
        assert [m.message_id for m in chat.messages] == ["m1"]

    async def test_open_twice_joins_once(self, chat, api, connector):
        await chat.open()

        assert len(connector.current.sent_data("join_ride_chat")) == 1
        assert api.get_messages.await_count == 1

    async def test_history_failure_propagates(self, session, api):
        api.get_messages.side_effect = NetworkError("refused")
        ride_chat = RideChat(session, api, "r1", "p1")

        with pytest.raises(NetworkError):
            await ride_chat.open()
        await ride_chat.close()


@pytest.mark.unit
class TestMessages:
    @pytest.mark.critical
    async def test_live_message_is_appended(self, chat, connector):
        updates = []
        chat.add_listener(lambda c: updates.append(len(c.messages)))

        connector.current.push("receive_message", pushed("m2", content="Arrived"))
        await wait_for(lambda: len(chat.messages) == 2)

        assert chat.messages[-1].content == "Arrived"
        assert chat.messages[-1].sender_name == "Ana"
        assert updates == [2]

    async def test_message_already_in_history_is_not_repeated(self, chat, connector):
        connector.current.push("receive_message", pushed("m1"))
        connector.current.push("receive_message", pushed("m2"))
        await wait_for(lambda: len(chat.messages) == 2)

        assert [m.message_id for m in chat.messages] == ["m1", "m2"]

    async def test_messages_of_other_rides_are_ignored(self, chat, connector):
        connector.current.push("receive_message", {**pushed("x1"), "ride": "r9"})
        connector.current.push("receive_message", pushed("m2"))
        await wait_for(lambda: len(chat.messages) == 2)

        assert "x1" not in [m.message_id for m in chat.messages]

    async def test_history_reload_keeps_live_messages(self, chat, api, connector):
        connector.current.push("receive_message", pushed("m3"))
        await wait_for(lambda: len(chat.messages) == 2)
        api.get_messages.return_value = [message("m1"), message("m2")]

        await chat.load_history()

        assert [m.message_id for m in chat.messages] == ["m1", "m2", "m3"]

    async def test_failing_listener_does_not_block_others(self, chat, connector):
        seen = []

        def broken(_chat):
            raise RuntimeError("boom")

        chat.add_listener(broken)
        chat.add_listener(lambda c: seen.append(c.ride_id))

        connector.current.push("receive_message", pushed("m2"))
        await wait_for(lambda: seen == ["r1"])


@pytest.mark.unit
class TestSend:
    async def test_send_publishes_message(self, chat, connector):
        await chat.send("  Be right there ")

        assert connector.current.sent_data("send_message") == [
            {"rideId": "r1", "senderId": "p1", "content": "Be right there"}
        ]
        assert len(chat.messages) == 1

    async def test_echo_adds_sent_message(self, chat, connector):
        await chat.send("Be right there")
        connector.current.push("receive_message", pushed("m2", "p1", "Be right there"))

        await wait_for(lambda: len(chat.messages) == 2)
        assert chat.messages[-1].sender_id == "p1"

    @pytest.mark.parametrize("content", ["", "   "])
    async def test_empty_message_rejected(self, chat, connector, content):
        with pytest.raises(ValidationError, match="empty"):
            await chat.send(content)
        assert connector.current.sent_data("send_message") == []

    async def test_typing_notice(self, chat, connector):
        await chat.notify_typing()

        assert connector.current.sent_data("typing") == [{"rideId": "r1", "senderId": "p1"}]

    async def test_typing_notice_while_disconnected_is_dropped(self, chat, connector):
        connector.current.closed = True

        await chat.notify_typing()

        assert connector.current.sent_data("typing") == []


@pytest.mark.unit
class TestTypingIndicator:
    async def test_other_participant_typing_expires(self, chat, connector):
        connector.current.push("user_typing", {"rideId": "r1", "senderId": "d1"})
        await wait_for(lambda: chat.typing_user == "d1")

        await wait_for(lambda: chat.typing_user is None)

    async def test_own_typing_is_ignored(self, chat, connector):
        connector.current.push("user_typing", {"rideId": "r1", "senderId": "p1"})
        connector.current.push("user_typing", {"rideId": "r9", "senderId": "d9"})
        connector.current.push("receive_message", pushed("m2"))
        await wait_for(lambda: len(chat.messages) == 2)

        assert chat.typing_user is None

    async def test_message_clears_typing(self, session, api, connector):
        api.get_messages.return_value = []
        ride_chat = RideChat(
            session, api, "r1", "p1", settings=ChatSettings(typing_indicator_seconds=10)
        )
        await ride_chat.open()

        connector.current.push("user_typing", {"rideId": "r1", "senderId": "d1"})
        await wait_for(lambda: ride_chat.typing_user == "d1")
        connector.current.push("receive_message", pushed("m2"))
        await wait_for(lambda: len(ride_chat.messages) == 1)

        assert ride_chat.typing_user is None
        await ride_chat.close()


@pytest.mark.unit
class TestResume:
    @pytest.mark.critical
    async def test_resume_rejoins_and_reloads(self, chat, api, connector):
        api.get_messages.return_value = [message("m1"), message("m2", content="Missed")]

        connector.current.drop()
        await wait_for(lambda: len(connector.connections) == 2)
        await wait_for(lambda: len(chat.messages) == 2)

        assert connector.current.sent_data("join_ride_chat") == [{"rideId": "r1"}]
        assert chat.messages[-1].content == "Missed"

    async def test_failed_reload_keeps_messages(self, chat, api, connector):
        api.get_messages.side_effect = NetworkError("refused")

        connector.current.drop()
        await wait_for(lambda: api.get_messages.await_count == 2)
        await asyncio.sleep(0.01)

        assert [m.message_id for m in chat.messages] == ["m1"]


@pytest.mark.unit
class TestClose:
    async def test_closed_chat_stops_listening(self, chat, session, connector):
        await chat.close()
        marker = []
        session.subscribe("noDriverFound", marker.append)

        connector.current.push("receive_message", pushed("m2"))
        connector.current.push("noDriverFound", {"rideId": "zz"})
        await wait_for(lambda: len(marker) == 1)

        assert not chat.is_open
        assert len(chat.messages) == 1
