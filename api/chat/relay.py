"""Chat relay: inbound websocket events in, persisted messages out to both room participants."""

import logging
from typing import Optional, Union
from fastapi import WebSocket, WebSocketDisconnect

from .exceptions import MalformedEventError
from .models import (
    AuthEvent, ChatMessage, ChatMessageEvent, ChatRoom, JoinRoomEvent, LeaveRoomEvent,
    error_event, new_message, parse_event
)
from .registry import ClientConnection, ConnectionRegistry

logger = logging.getLogger(__name__)


class ChatRelay:
    """Validates inbound chat events, persists messages and fans them out.

    Each connection is served by one loop that handles one frame at a time, so
    a sender's messages are stored and delivered in the order they were sent.
    Offline participants are skipped; they read the message from history later.
    """

    def __init__(self, registry: ConnectionRegistry, store):
        """Initialize chat relay.

        Args:
            registry: Live connection registry
            store: Chat persistence with async ``get_chat_room`` and ``create_message``
        """
        self.registry = registry
        self.store = store

    async def serve(self, websocket: WebSocket) -> None:
        """Run one websocket connection until the client goes away."""
        await websocket.accept()
        connection = ClientConnection(websocket)
        logger.info("WebSocket connection established")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))

                # Text and binary frames both carry JSON
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue

                try:
                    await self.handle_frame(connection, raw)
                except Exception as e:
                    logger.error(f"Error handling frame from {connection!r}: {e}")
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected: {connection!r}")
        except Exception as e:
            logger.error(f"WebSocket error on {connection!r}: {e}")
        finally:
            self.registry.remove(connection)

    async def handle_frame(self, connection: ClientConnection, raw: Union[str, bytes]) -> None:
        """Dispatch one inbound frame. Malformed frames are logged and dropped."""
        try:
            event = parse_event(raw)
        except MalformedEventError as e:
            logger.warning(f"Dropping malformed WebSocket message from {connection!r}: {e}")
            return

        if isinstance(event, AuthEvent):
            await self.registry.authenticate(connection, event.token)
        elif isinstance(event, JoinRoomEvent):
            if connection.is_authenticated:
                self.registry.join_room(connection, event.room_id)
        elif isinstance(event, LeaveRoomEvent):
            if connection.is_authenticated:
                self.registry.leave_room(connection, event.room_id)
        elif isinstance(event, ChatMessageEvent):
            await self.handle_chat_message(connection, event)

    async def handle_chat_message(
        self,
        connection: ClientConnection,
        event: ChatMessageEvent
    ) -> Optional[ChatMessage]:
        """Persist a chat message and deliver it to the room's participants.

        Returns:
            The persisted message, or None if it was rejected or not stored
        """
        if not connection.is_authenticated:
            await self._reject(connection, event, "not_authenticated", "Authenticate before sending messages")
            return None

        if event.sender_id != connection.user_id:
            logger.warning(
                f"User {connection.user_id} tried to send as {event.sender_id} in room {event.room_id}"
            )
            await self._reject(connection, event, "forbidden", "Sender does not match the authenticated user")
            return None

        try:
            room = await self.store.get_chat_room(event.room_id)
        except Exception as e:
            logger.error(f"Error loading room {event.room_id}: {e}")
            await self._reject(connection, event, "persistence_failed", "Message could not be sent")
            return None

        if room is None:
            await self._reject(connection, event, "room_not_found", "Chat room not found")
            return None

        if not room.has_participant(event.sender_id):
            logger.warning(
                f"Access denied: user {event.sender_id} is not a participant of room {room.id}"
            )
            await self._reject(connection, event, "forbidden", "You are not a participant in this chat room")
            return None

        try:
            message = await self.store.create_message(
                room.id, event.sender_id, event.content, event.message_type
            )
        except Exception as e:
            logger.error(f"Error creating message in room {room.id}: {e}")
            await self._reject(connection, event, "persistence_failed", "Message could not be sent")
            return None

        logger.info(f"Message created by user {event.sender_id} in room {room.id}")
        await self.broadcast_message(room, message, event.client_id)
        return message

    async def broadcast_message(
        self,
        room: ChatRoom,
        message: ChatMessage,
        client_id: Optional[str] = None
    ) -> int:
        """Push a stored message to every online participant of its room.

        The sender's ``client_id``, when given, rides along so the sending
        client can match the stored message to its pending copy.

        Returns:
            Number of participants the message was delivered to
        """
        event = new_message(message, client_id)
        delivered = 0
        for participant_id in room.participants:
            if await self.registry.send_to_user(participant_id, event):
                delivered += 1
        return delivered

    async def _reject(
        self,
        connection: ClientConnection,
        event: ChatMessageEvent,
        code: str,
        error: str
    ) -> None:
        await self._reply(connection, error_event(code, error, event.room_id, event.client_id))

    async def _reply(self, connection: ClientConnection, event: dict) -> None:
        try:
            await connection.send(event)
        except Exception as e:
            logger.warning(f"Failed to reply on {connection!r}: {e}")
