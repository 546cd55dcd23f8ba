from enum import Enum
import logging
from typing import Any, Callable, Dict, List, Optional
from fastapi import WebSocket
from starlette.websockets import WebSocketState

from auth import AuthError, CurrentUser, verify_token
from .models import auth_error, auth_success

logger = logging.getLogger(__name__)

SUPERSEDED_CLOSE_CODE = 4000


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


class ClientConnection:
    """One live websocket plus the per-connection chat state."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.state = ConnectionState.UNAUTHENTICATED
        self.user: Optional[CurrentUser] = None
        # Advisory only, never consulted for delivery
        self.room_id: Optional[str] = None
        self.closed = False

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_authenticated(self, user: CurrentUser) -> None:
        self.user = user
        self.state = ConnectionState.AUTHENTICATED

    async def send(self, event: Dict[str, Any]) -> None:
        await self.websocket.send_json(event)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        await self.websocket.close(code=code, reason=reason)

    def __repr__(self) -> str:
        return f"<ClientConnection user={self.user_id} state={self.state.value}>"


class ConnectionRegistry:
    """Maps each user id to its most recently authenticated connection.

    The newest authenticated connection for a user wins. The superseded
    connection stays open unless evict_superseded is set.
    """

    def __init__(
        self,
        evict_superseded: bool = False,
        token_verifier: Callable[[str], CurrentUser] = verify_token
    ):
        self.connections: Dict[str, ClientConnection] = {}
        self.evict_superseded = evict_superseded
        self.token_verifier = token_verifier

    def __len__(self) -> int:
        return len(self.connections)

    def __contains__(self, user_id: str) -> bool:
        return self.lookup(user_id) is not None

    async def authenticate(self, connection: ClientConnection, token: str) -> Optional[CurrentUser]:
        """Verify a token and register the connection under its user id.

        A bad token gets an auth_error reply; the connection stays open and
        unregistered so the client can retry on the same socket.
        """
        try:
            user = self.token_verifier(token)
        except AuthError as e:
            logger.info(f"WebSocket authentication failed: {e}")
            await self._safe_send(connection, auth_error("Invalid token"))
            return None

        # Same socket re-authenticating as someone else drops its old mapping
        old_user_id = connection.user_id
        if old_user_id and old_user_id != user.id and self.connections.get(old_user_id) is connection:
            del self.connections[old_user_id]

        previous = self.connections.get(user.id)
        self.connections[user.id] = connection
        connection.mark_authenticated(user)
        logger.info(f"WebSocket authenticated for user {user.id}")

        if previous is not None and previous is not connection:
            if self.evict_superseded:
                logger.info(f"Closing superseded connection for user {user.id}")
                try:
                    await previous.close(SUPERSEDED_CLOSE_CODE, "Superseded by a newer connection")
                except Exception as e:
                    logger.debug(f"Superseded connection already gone: {e}")
            else:
                logger.info(f"User {user.id} reconnected; previous connection is no longer addressed")

        await self._safe_send(connection, auth_success())
        return user

    def lookup(self, user_id: str) -> Optional[ClientConnection]:
        """Return the live connection for a user, or None if absent or stale."""
        connection = self.connections.get(user_id)
        if connection is None:
            return None
        if not connection.is_open:
            self.remove(connection)
            return None
        return connection

    def remove(self, connection: ClientConnection) -> bool:
        """Remove the mapping that points at exactly this connection."""
        connection.closed = True
        for user_id, registered in list(self.connections.items()):
            if registered is connection:
                del self.connections[user_id]
                logger.info(f"Removed connection for user {user_id}")
                return True
        return False

    def join_room(self, connection: ClientConnection, room_id: str) -> None:
        connection.room_id = room_id

    def leave_room(self, connection: ClientConnection, room_id: Optional[str] = None) -> None:
        connection.room_id = None

    def online_users(self) -> List[str]:
        return [user_id for user_id, connection in self.connections.items() if connection.is_open]

    async def send_to_user(self, user_id: str, event: Dict[str, Any]) -> bool:
        """Send an event to a user's live connection.

        Returns:
            True if the event was handed to the transport
        """
        connection = self.lookup(user_id)
        if connection is None:
            return False
        try:
            await connection.send(event)
            return True
        except Exception as e:
            logger.warning(f"Failed to send to user {user_id}, dropping connection: {e}")
            self.remove(connection)
            return False

    async def _safe_send(self, connection: ClientConnection, event: Dict[str, Any]) -> None:
        try:
            await connection.send(event)
        except Exception as e:
            logger.warning(f"Failed to reply on {connection!r}: {e}")
