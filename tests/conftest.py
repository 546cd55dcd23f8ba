"""Shared fakes for the chat and exchange tests."""

import asyncio
import time
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosedOK

from auth import AuthError, CurrentUser
from api.chat.exceptions import PersistenceError
from api.chat.models import ChatMessage, ChatRoom, MessageType
from exchange.db import RateSnapshot

BUYER = "buyer-1"
SELLER = "seller-1"
STRANGER = "stranger-1"


class FakeWebSocket:
    """Server-side websocket double recording everything sent to it."""

    def __init__(self, frames: Optional[List[Any]] = None):
        self.frames = list(frames or [])
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.close_code: Optional[int] = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.fail_sends = False

    async def accept(self):
        self.accepted = True

    async def receive(self) -> Dict[str, Any]:
        """ASGI receive message; str frames are text, bytes frames are binary."""
        if not self.frames:
            self.client_state = WebSocketState.DISCONNECTED
            return {"type": "websocket.disconnect", "code": 1000}
        frame = self.frames.pop(0)
        if isinstance(frame, bytes):
            return {"type": "websocket.receive", "bytes": frame}
        if not isinstance(frame, str):
            frame = json.dumps(frame)
        return {"type": "websocket.receive", "text": frame}

    async def send_json(self, data: Dict[str, Any]):
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.sent if event.get("type") == event_type]


class FakeChatStore:
    """In-memory stand-in for ChatStore."""

    def __init__(self):
        self.rooms: Dict[str, ChatRoom] = {}
        self.messages: List[ChatMessage] = []
        self.fail_writes = False
        self._clock = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def add_room(self, buyer_id: str = BUYER, seller_id: str = SELLER, item_id: str = "item-1") -> ChatRoom:
        room = ChatRoom(
            id=str(uuid.uuid4()),
            item_id=item_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            created_at=self._clock
        )
        self.rooms[room.id] = room
        return room

    async def get_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        return self.rooms.get(room_id)

    async def create_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.USER
    ) -> ChatMessage:
        if self.fail_writes:
            raise PersistenceError("database unavailable")
        self._clock += timedelta(seconds=1)
        message = ChatMessage(
            id=str(uuid.uuid4()),
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            created_at=self._clock
        )
        self.messages.append(message)
        return message

    async def count_unread(self, user_id: str) -> int:
        visible = {
            room.id for room in self.rooms.values()
            if (room.buyer_id == user_id and not room.buyer_hidden)
            or (room.seller_id == user_id and not room.seller_hidden)
        }
        return sum(
            1 for message in self.messages
            if message.room_id in visible and message.sender_id != user_id and not message.is_read
        )


class FakeProvider:
    """Rate provider returning queued results; exceptions in the queue are raised."""

    name = "fake"

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def fetch_rates(self):
        self.calls += 1
        result = self.results.pop(0) if self.results else self.results_exhausted()
        if isinstance(result, Exception):
            raise result
        return result

    def results_exhausted(self):
        raise AssertionError("provider called more often than expected")


class SlowProvider:
    """Provider that blocks its worker thread until released."""

    name = "slow"

    def __init__(self, rates, delay: float):
        self.rates = rates
        self.delay = delay
        self.calls = 0

    def fetch_rates(self):
        self.calls += 1
        time.sleep(self.delay)
        return dict(self.rates)


class FakeSnapshotStore:
    """In-memory stand-in for SnapshotStore."""

    def __init__(self, snapshot: Optional[RateSnapshot] = None):
        self.snapshot = snapshot
        self.saved: List[Dict[str, Decimal]] = []
        self.fail_load = False
        self.fail_save = False

    async def load_latest_snapshot(self, base_currency: str) -> Optional[RateSnapshot]:
        if self.fail_load:
            raise OSError("database unavailable")
        return self.snapshot

    async def save_snapshot(self, base_currency: str, rates) -> RateSnapshot:
        if self.fail_save:
            raise OSError("database unavailable")
        self.saved.append(dict(rates))
        self.snapshot = RateSnapshot(
            base_currency=base_currency,
            rates=dict(rates),
            updated_at=datetime.now(timezone.utc)
        )
        return self.snapshot


def token_verifier(token: str) -> CurrentUser:
    """Tokens look like 'token:<user id>'; anything else is rejected."""
    if not token.startswith("token:"):
        raise AuthError("Invalid token")
    return CurrentUser(id=token.split(":", 1)[1])


class FakeClientSocket:
    """Client-side socket double for WebSocketManager."""

    def __init__(self, incoming: Optional[List[Any]] = None):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        for frame in incoming or []:
            self.push(frame)

    def push(self, frame: Any) -> None:
        self._queue.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server going away."""
        self._queue.put_nowait(None)

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        frame = await self._queue.get()
        if frame is None:
            self.closed = True
            raise StopAsyncIteration
        return frame


class FakeConnector:
    """Replacement for websockets.connect handing out queued sockets or errors."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: List[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        if not self.outcomes:
            raise OSError("connection refused")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def wait_for_condition(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def chat_store() -> FakeChatStore:
    return FakeChatStore()
