"""Reconnecting chat socket client.

This module provides:
1. WebSocketManager - one authenticated socket to the chat relay with
   linear-backoff reconnects and type-keyed subscriptions
2. RoomHistory - a room's message list that ignores duplicate deliveries
   and tracks messages still waiting for the server
"""

import asyncio
import bisect
import inspect
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urlsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_INTERVAL = 1.0  # seconds, multiplied by the attempt number

Handler = Callable[[Dict[str, Any]], Any]


def websocket_url(origin: str, path: str = "/ws") -> str:
    """Build the socket URL for a page origin, keeping TLS when the page has it."""
    parts = urlsplit(origin)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    host = parts.netloc or parts.path
    return f"{scheme}://{host.rstrip('/')}{path}"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"


class _Registration:
    __slots__ = ("handler",)

    def __init__(self, handler: Handler):
        self.handler = handler


class WebSocketManager:
    """Keeps one authenticated connection to the chat relay.

    Messages are not queued: sends made while the socket is not ready are
    dropped and reported as False. After ``max_reconnect_attempts`` failed
    attempts the manager stops until ``reconnect()`` is called.
    """

    def __init__(
        self,
        token: str,
        origin: str,
        connect: Callable[..., Any] = websockets.connect,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        path: str = "/ws"
    ):
        """Initialize socket manager.

        Args:
            token: Session token sent in the auth event
            origin: Page origin, e.g. https://market.example.edu
            connect: Coroutine factory opening a socket for a URL
            max_reconnect_attempts: Attempts before giving up
            reconnect_interval: Base delay; attempt n waits n times this
            path: Socket path on the server
        """
        self.token = token
        self.url = websocket_url(origin, path)
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_interval = reconnect_interval
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0

        self._connect = connect
        self._handlers: Dict[str, List[_Registration]] = {}
        self._socket = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY and self._socket is not None

    async def __aenter__(self) -> "WebSocketManager":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def start(self) -> asyncio.Task:
        """Start the connection task if it is not already running."""
        if self._task and not self._task.done():
            return self._task
        self._closed = False
        self._task = asyncio.create_task(self._run(), name="chat-socket")
        return self._task

    async def _run(self) -> None:
        while not self._closed:
            await self._connect_once()
            if self._closed:
                break
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Max reconnection attempts reached")
                break
            self.reconnect_attempts += 1
            delay = self.reconnect_interval * self.reconnect_attempts
            logger.info(
                f"Attempting to reconnect ({self.reconnect_attempts}/{self.max_reconnect_attempts}) "
                f"in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
        self.state = ConnectionState.DISCONNECTED

    async def _connect_once(self) -> None:
        self.state = ConnectionState.CONNECTING
        try:
            socket = await self._connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"WebSocket connection to {self.url} failed: {e}")
            self.state = ConnectionState.DISCONNECTED
            return

        logger.info("WebSocket connected")
        self._socket = socket
        self.reconnect_attempts = 0
        self.state = ConnectionState.AUTHENTICATING
        try:
            await socket.send(json.dumps({"type": "auth", "token": self.token}))
            async for raw in socket:
                await self._dispatch(raw)
            logger.info("WebSocket disconnected")
        except ConnectionClosed as e:
            logger.info(f"WebSocket disconnected: {e}")
        finally:
            self._socket = None
            self.state = ConnectionState.DISCONNECTED

    async def _dispatch(self, raw: Any) -> None:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Error parsing WebSocket message: {e}")
            return
        if not isinstance(event, dict):
            logger.error("Ignoring WebSocket message that is not an object")
            return

        event_type = event.get("type")
        if event_type == "auth_success":
            self.state = ConnectionState.READY
            logger.info("WebSocket authenticated")
        elif event_type == "auth_error":
            logger.error(f"WebSocket authentication failed: {event.get('error')}")

        for registration in list(self._handlers.get(event_type, ())):
            try:
                result = registration.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for {event_type!r} failed: {e}")

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Call ``handler`` with every inbound event of ``event_type``.

        Returns:
            A function removing exactly this subscription
        """
        registration = _Registration(handler)
        self._handlers.setdefault(event_type, []).append(registration)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            for index, registered in enumerate(handlers):
                if registered is registration:
                    del handlers[index]
                    break
            if not handlers:
                self._handlers.pop(event_type, None)

        return unsubscribe

    async def send(self, event: Dict[str, Any]) -> bool:
        """Send an event if the socket is authenticated.

        Returns:
            False when the event was dropped
        """
        socket = self._socket
        if not self.is_ready:
            logger.debug(f"Dropping {event.get('type')!r}: socket not ready")
            return False
        try:
            await socket.send(json.dumps(event))
            return True
        except ConnectionClosed as e:
            logger.warning(f"Send failed, socket closed: {e}")
            return False

    async def send_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        client_id: Optional[str] = None
    ) -> bool:
        event = {
            "type": "chat_message",
            "roomId": room_id,
            "senderId": sender_id,
            "content": content,
            "messageType": "user"
        }
        if client_id is not None:
            event["clientId"] = client_id
        return await self.send(event)

    async def send_chat(self, history: "RoomHistory", sender_id: str, content: str) -> Dict[str, Any]:
        """Show a message as pending in a room history and send it.

        A send dropped by this client marks the message failed at once; a
        relay rejection arrives later as an ``error`` event, see ``track``.
        """
        pending = history.add_pending(sender_id, content)
        if not await self.send_message(history.room_id, sender_id, content, pending["clientId"]):
            history.mark_failed(pending["clientId"])
        return pending

    def track(self, history: "RoomHistory") -> Callable[[], None]:
        """Feed a room history from this socket's ``new_message`` and ``error`` events.

        Returns:
            Callable that stops the tracking
        """
        unsubscribers = [
            self.subscribe("new_message", history.on_new_message),
            self.subscribe("error", history.on_error)
        ]

        def untrack() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return untrack

    async def join_room(self, room_id: str) -> bool:
        return await self.send({"type": "join_room", "roomId": room_id})

    async def leave_room(self, room_id: str) -> bool:
        return await self.send({"type": "leave_room", "roomId": room_id})

    async def reconnect(self) -> None:
        """Tear down the current socket and start over with a fresh attempt count."""
        await self.close()
        self.reconnect_attempts = 0
        self.start()

    async def close(self) -> None:
        """Close the socket and cancel any pending reconnect."""
        self._closed = True
        socket, task = self._socket, self._task
        self._task = None
        if socket is not None:
            try:
                await socket.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing socket: {e}")
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._socket = None
        self.state = ConnectionState.DISCONNECTED


def _created_at(message: Dict[str, Any]) -> datetime:
    value = message.get("createdAt")
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class RoomHistory:
    """Messages of one room as shown to the user, oldest first.

    Stored messages are keyed by server id. Messages the user has sent but
    the server has not confirmed yet are kept separately under their
    ``clientId`` and listed after the stored ones until a ``new_message``
    carrying the same ``clientId`` replaces them, or an ``error`` marks them
    failed.
    """

    def __init__(self, room_id: str, messages: Iterable[Dict[str, Any]] = ()):
        self.room_id = room_id
        self._messages: List[Dict[str, Any]] = []
        self._keys: List[datetime] = []
        self._ids: Set[str] = set()
        self._pending: Dict[str, Dict[str, Any]] = {}
        self.failed: Set[str] = set()
        self.extend(messages)

    def __len__(self) -> int:
        return len(self._messages) + len(self._pending)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return self._messages + list(self._pending.values())

    @property
    def pending(self) -> List[Dict[str, Any]]:
        return list(self._pending.values())

    def add(self, message: Dict[str, Any]) -> bool:
        """Add a message unless it belongs elsewhere, was already seen or has no usable timestamp.

        Returns:
            True if the message was added
        """
        if message.get("roomId") != self.room_id:
            return False
        message_id = message.get("id")
        if message_id is None or message_id in self._ids:
            return False
        try:
            key = _created_at(message)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring message {message_id!r} with bad createdAt {message.get('createdAt')!r}")
            return False

        # bisect_right keeps arrival order for equal timestamps
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._ids.add(message_id)
        return True

    def extend(self, messages: Iterable[Dict[str, Any]]) -> int:
        return sum(1 for message in messages if self.add(message))

    def add_pending(self, sender_id: str, content: str, client_id: Optional[str] = None) -> Dict[str, Any]:
        """Show a message the user is sending before the server confirms it."""
        client_id = client_id or uuid.uuid4().hex
        message = {
            "clientId": client_id,
            "roomId": self.room_id,
            "senderId": sender_id,
            "content": content,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "status": "pending"
        }
        self._pending[client_id] = message
        return message

    def mark_failed(self, client_id: str) -> bool:
        """Flag a pending message as failed so it can be shown with a retry option."""
        message = self._pending.get(client_id)
        if message is None:
            return False
        message["status"] = "failed"
        self.failed.add(client_id)
        return True

    def is_failed(self, client_id: str) -> bool:
        return client_id in self.failed

    def on_new_message(self, event: Dict[str, Any]) -> None:
        """Handler for ``new_message`` events."""
        message = event.get("message")
        if not isinstance(message, dict):
            return
        self.add(message)
        client_id = event.get("clientId")
        if client_id in self._pending and message.get("id") in self._ids:
            del self._pending[client_id]
            self.failed.discard(client_id)

    def on_error(self, event: Dict[str, Any]) -> None:
        """Handler for ``error`` events answering one of this room's sends."""
        if event.get("roomId") != self.room_id:
            return
        client_id = event.get("clientId")
        if client_id is not None and self.mark_failed(client_id):
            logger.info(f"Message {client_id} failed in room {self.room_id}: {event.get('code')}")


__all__ = [
    'WebSocketManager',
    'RoomHistory',
    'ConnectionState',
    'websocket_url',
    'DEFAULT_MAX_RECONNECT_ATTEMPTS',
    'DEFAULT_RECONNECT_INTERVAL'
]
