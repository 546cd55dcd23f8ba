"""Tests for the reconnecting chat socket client."""

import asyncio

import pytest

from chat_client import ConnectionState, RoomHistory, WebSocketManager, websocket_url
from conftest import FakeClientSocket, FakeConnector, wait_for_condition

AUTH_SUCCESS = {"type": "auth_success"}


def manager_for(connector, **kwargs):
    kwargs.setdefault("reconnect_interval", 0.01)
    return WebSocketManager("session-token", "https://market.example.edu", connect=connector, **kwargs)


def test_websocket_url_follows_page_scheme():
    assert websocket_url("https://market.example.edu") == "wss://market.example.edu/ws"
    assert websocket_url("http://localhost:5000") == "ws://localhost:5000/ws"
    assert websocket_url("http://localhost:5000/", "/chat") == "ws://localhost:5000/chat"


@pytest.mark.asyncio
async def test_authenticates_on_open_and_becomes_ready():
    socket = FakeClientSocket()
    connector = FakeConnector(socket)
    manager = manager_for(connector)

    manager.start()
    await wait_for_condition(lambda: socket.sent)

    assert connector.urls == ["wss://market.example.edu/ws"]
    assert socket.sent[0] == {"type": "auth", "token": "session-token"}
    assert manager.state == ConnectionState.AUTHENTICATING
    assert await manager.send({"type": "join_room", "roomId": "r1"}) is False

    socket.push(AUTH_SUCCESS)
    await wait_for_condition(lambda: manager.is_ready)

    assert await manager.send_message("r1", "u1", "hello") is True
    assert socket.sent[-1] == {
        "type": "chat_message", "roomId": "r1", "senderId": "u1",
        "content": "hello", "messageType": "user"
    }
    await manager.close()


@pytest.mark.asyncio
async def test_send_before_start_is_dropped():
    manager = manager_for(FakeConnector())
    assert await manager.send({"type": "chat_message"}) is False


@pytest.mark.asyncio
async def test_handlers_receive_events_by_type():
    socket = FakeClientSocket([AUTH_SUCCESS])
    manager = manager_for(FakeConnector(socket))
    received = []
    async_received = []

    async def async_handler(event):
        async_received.append(event)

    manager.subscribe("new_message", received.append)
    manager.subscribe("new_message", async_handler)
    manager.subscribe("other", lambda event: received.append("wrong"))

    async with manager:
        await wait_for_condition(lambda: manager.is_ready)
        socket.push({"type": "new_message", "message": {"id": "m1"}})
        socket.push({"type": "unknown"})
        await wait_for_condition(lambda: async_received)

    assert received == [{"type": "new_message", "message": {"id": "m1"}}]
    assert async_received == received


@pytest.mark.asyncio
async def test_unsubscribe_removes_only_that_registration():
    socket = FakeClientSocket([AUTH_SUCCESS])
    manager = manager_for(FakeConnector(socket))
    calls = []
    handler = calls.append

    unsubscribe_first = manager.subscribe("new_message", handler)
    manager.subscribe("new_message", handler)
    unsubscribe_first()
    unsubscribe_first()

    async with manager:
        await wait_for_condition(lambda: manager.is_ready)
        socket.push({"type": "new_message"})
        await wait_for_condition(lambda: calls)
        await asyncio.sleep(0.02)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_bad_frames_are_ignored():
    socket = FakeClientSocket(["not json", "[1, 2]", AUTH_SUCCESS])
    manager = manager_for(FakeConnector(socket))

    async with manager:
        await wait_for_condition(lambda: manager.is_ready)


@pytest.mark.asyncio
async def test_reconnects_after_drop_and_authenticates_again():
    first = FakeClientSocket([AUTH_SUCCESS])
    second = FakeClientSocket([AUTH_SUCCESS])
    connector = FakeConnector(first, second)
    manager = manager_for(connector)

    manager.start()
    await wait_for_condition(lambda: manager.is_ready)
    first.drop()
    await wait_for_condition(lambda: len(connector.urls) == 2 and manager.is_ready)

    assert second.sent[0] == {"type": "auth", "token": "session-token"}
    assert manager.reconnect_attempts == 0
    await manager.close()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    connector = FakeConnector()
    manager = manager_for(connector, max_reconnect_attempts=2)

    task = manager.start()
    await asyncio.wait_for(task, timeout=2)

    # Initial attempt plus two retries
    assert len(connector.urls) == 3
    assert manager.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_backoff_grows_linearly(monkeypatch):
    delays = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr("chat_client.asyncio.sleep", recording_sleep)
    manager = manager_for(FakeConnector(), max_reconnect_attempts=3, reconnect_interval=1.0)

    await asyncio.wait_for(manager.start(), timeout=2)

    assert delays == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_close_cancels_pending_reconnect():
    connector = FakeConnector()
    manager = manager_for(connector, reconnect_interval=10)

    manager.start()
    await wait_for_condition(lambda: manager.reconnect_attempts == 1)
    await manager.close()
    await asyncio.sleep(0.02)

    assert len(connector.urls) == 1
    assert manager.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_close_never_reconnects():
    socket = FakeClientSocket([AUTH_SUCCESS])
    connector = FakeConnector(socket, FakeClientSocket([AUTH_SUCCESS]))
    manager = manager_for(connector)

    manager.start()
    await wait_for_condition(lambda: manager.is_ready)
    await manager.close()
    await asyncio.sleep(0.05)

    assert socket.closed
    assert len(connector.urls) == 1
    assert await manager.send({"type": "join_room", "roomId": "r1"}) is False


@pytest.mark.asyncio
async def test_manual_reconnect_resets_attempts():
    connector = FakeConnector()
    manager = manager_for(connector, max_reconnect_attempts=1)
    await asyncio.wait_for(manager.start(), timeout=2)
    assert manager.reconnect_attempts == 1

    socket = FakeClientSocket([AUTH_SUCCESS])
    connector.outcomes.append(socket)
    await manager.reconnect()
    await wait_for_condition(lambda: manager.is_ready)

    assert manager.reconnect_attempts == 0
    await manager.close()


def message(message_id, created_at, room_id="r1", content="hi"):
    return {"id": message_id, "roomId": room_id, "senderId": "u1", "content": content, "createdAt": created_at}


def test_room_history_ignores_duplicates():
    """A message delivered twice (live and via history) is shown once."""
    history = RoomHistory("r1", [message("m1", "2024-03-01T12:00:00Z")])

    assert history.add(message("m1", "2024-03-01T12:00:00Z")) is False
    history.on_new_message({"type": "new_message", "message": message("m1", "2024-03-01T12:00:00Z")})

    assert len(history) == 1


def test_room_history_orders_by_creation_time():
    history = RoomHistory("r1")
    history.add(message("m2", "2024-03-01T12:00:02Z"))
    history.add(message("m1", "2024-03-01T12:00:01Z"))
    history.add(message("m3", "2024-03-01T12:00:03+00:00"))

    assert [m["id"] for m in history.messages] == ["m1", "m2", "m3"]


def test_room_history_ignores_other_rooms():
    history = RoomHistory("r1")
    assert history.add(message("m1", "2024-03-01T12:00:00Z", room_id="r2")) is False
    assert "m1" not in history


def test_room_history_rejects_bad_timestamps_and_keeps_working():
    history = RoomHistory("r1", [message("m1", "2024-03-01T12:00:01Z")])

    assert history.add(message("bad", "yesterday")) is False
    assert history.add({"id": "none", "roomId": "r1", "content": "no timestamp"}) is False
    assert "bad" not in history

    assert history.add(message("m0", "2024-03-01T12:00:00Z")) is True
    assert history.add(message("m2", "2024-03-01T12:00:02Z")) is True
    assert [m["id"] for m in history.messages] == ["m0", "m1", "m2"]


def test_room_history_keeps_arrival_order_for_equal_timestamps():
    history = RoomHistory("r1")
    for message_id in ("a", "b", "c"):
        history.add(message(message_id, "2024-03-01T12:00:00Z"))

    assert [m["id"] for m in history.messages] == ["a", "b", "c"]


def test_pending_message_is_replaced_by_confirmed_copy():
    history = RoomHistory("r1")
    pending = history.add_pending("u1", "hi")

    assert history.messages == [pending]
    assert pending["status"] == "pending"

    history.on_new_message({
        "type": "new_message",
        "message": message("m1", "2024-03-01T12:00:00Z"),
        "clientId": pending["clientId"]
    })

    assert history.pending == []
    assert [m["id"] for m in history.messages] == ["m1"]


def test_error_event_marks_matching_pending_message_failed():
    history = RoomHistory("r1")
    pending = history.add_pending("u1", "hi")
    other = history.add_pending("u1", "still going")

    history.on_error({"type": "error", "code": "persistence_failed", "roomId": "r2", "clientId": pending["clientId"]})
    assert not history.is_failed(pending["clientId"])

    history.on_error({"type": "error", "code": "persistence_failed", "roomId": "r1", "clientId": pending["clientId"]})

    assert history.is_failed(pending["clientId"])
    assert pending["status"] == "failed"
    assert not history.is_failed(other["clientId"])
    assert history.mark_failed("unknown") is False


@pytest.mark.asyncio
async def test_send_chat_marks_dropped_send_failed():
    manager = manager_for(FakeConnector())
    history = RoomHistory("r1")

    pending = await manager.send_chat(history, "u1", "hello")

    assert history.is_failed(pending["clientId"])
    assert history.messages == [pending]


@pytest.mark.asyncio
async def test_send_chat_resolves_through_tracked_events():
    socket = FakeClientSocket([AUTH_SUCCESS])
    manager = manager_for(FakeConnector(socket))
    history = RoomHistory("r1")
    manager.track(history)

    async with manager:
        await wait_for_condition(lambda: manager.is_ready)
        delivered = await manager.send_chat(history, "u1", "hello")
        rejected = await manager.send_chat(history, "u1", "again")

        assert socket.sent[-2]["clientId"] == delivered["clientId"]
        socket.push({
            "type": "new_message",
            "message": message("m1", "2024-03-01T12:00:00Z", content="hello"),
            "clientId": delivered["clientId"]
        })
        socket.push({
            "type": "error",
            "code": "persistence_failed",
            "error": "Message could not be sent",
            "roomId": "r1",
            "clientId": rejected["clientId"]
        })
        await wait_for_condition(lambda: history.is_failed(rejected["clientId"]))

    assert "m1" in history
    assert history.pending == [rejected]
