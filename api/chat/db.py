from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging
import asyncpg
from .exceptions import PersistenceError
from .models import ChatMessage, ChatRoom, MessageType

logger = logging.getLogger(__name__)

ROOM_COLUMNS = "id, item_id, buyer_id, seller_id, buyer_hidden, seller_hidden, created_at"
MESSAGE_COLUMNS = "id, room_id, sender_id, content, message_type, is_read, created_at"


def _as_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _room(row: asyncpg.Record) -> ChatRoom:
    return ChatRoom(
        id=str(row['id']),
        item_id=row['item_id'],
        buyer_id=row['buyer_id'],
        seller_id=row['seller_id'],
        buyer_hidden=row['buyer_hidden'],
        seller_hidden=row['seller_hidden'],
        created_at=row['created_at']
    )


def _message(row: asyncpg.Record) -> ChatMessage:
    return ChatMessage(
        id=str(row['id']),
        room_id=str(row['room_id']),
        sender_id=row['sender_id'],
        content=row['content'],
        message_type=MessageType(row['message_type']),
        is_read=row['is_read'],
        created_at=row['created_at']
    )


async def create_message(
    conn: asyncpg.Connection,
    room_id: str,
    sender_id: str,
    content: str,
    message_type: MessageType = MessageType.USER
) -> ChatMessage:
    """Create a new chat message"""
    row = await conn.fetchrow(
        f"""
        INSERT INTO messages (room_id, sender_id, content, message_type)
        VALUES ($1, $2, $3, $4)
        RETURNING {MESSAGE_COLUMNS}
        """,
        UUID(room_id), sender_id, content, message_type.value
    )
    return _message(row)


async def get_chat_room(conn: asyncpg.Connection, room_id: str) -> Optional[ChatRoom]:
    """Get a chat room by id"""
    room_uuid = _as_uuid(room_id)
    if room_uuid is None:
        return None
    row = await conn.fetchrow(
        f"SELECT {ROOM_COLUMNS} FROM chat_rooms WHERE id = $1",
        room_uuid
    )
    return _room(row) if row else None


async def get_room_messages(
    conn: asyncpg.Connection,
    room_id: str,
    limit: Optional[int] = None
) -> List[ChatMessage]:
    """Get messages for a room, oldest first"""
    room_uuid = _as_uuid(room_id)
    if room_uuid is None:
        return []
    if limit:
        # Newest `limit` messages, still returned oldest first
        rows = await conn.fetch(
            f"""
            SELECT * FROM (
                SELECT {MESSAGE_COLUMNS}
                FROM messages
                WHERE room_id = $1
                ORDER BY created_at DESC
                LIMIT $2
            ) recent
            ORDER BY created_at ASC
            """,
            room_uuid, limit
        )
    else:
        rows = await conn.fetch(
            f"""
            SELECT {MESSAGE_COLUMNS}
            FROM messages
            WHERE room_id = $1
            ORDER BY created_at ASC
            """,
            room_uuid
        )
    return [_message(row) for row in rows]


async def get_user_rooms(conn: asyncpg.Connection, user_id: str) -> List[ChatRoom]:
    """Get rooms where the user is buyer or seller and has not hidden the room"""
    rows = await conn.fetch(
        f"""
        SELECT {ROOM_COLUMNS}
        FROM chat_rooms
        WHERE (buyer_id = $1 AND NOT buyer_hidden)
           OR (seller_id = $1 AND NOT seller_hidden)
        ORDER BY created_at DESC
        """,
        user_id
    )
    return [_room(row) for row in rows]


async def find_or_create_room(
    conn: asyncpg.Connection,
    item_id: str,
    buyer_id: str,
    seller_id: str
) -> Tuple[ChatRoom, bool]:
    """Find the room between a buyer and seller, creating it on first contact.

    Rooms are keyed by the (buyer, seller) pair, not by item. The pair is
    unique in the schema, so when two first contacts race only one insert
    wins and the other falls through to the existing row.

    Returns:
        (room, created)
    """
    async with conn.transaction():
        row = await conn.fetchrow(
            f"""
            INSERT INTO chat_rooms (item_id, buyer_id, seller_id)
            VALUES ($1, $2, $3)
            ON CONFLICT (buyer_id, seller_id) DO NOTHING
            RETURNING {ROOM_COLUMNS}
            """,
            item_id, buyer_id, seller_id
        )
        if row:
            return _room(row), True

        row = await conn.fetchrow(
            f"""
            SELECT {ROOM_COLUMNS}
            FROM chat_rooms
            WHERE buyer_id = $1 AND seller_id = $2
            FOR UPDATE
            """,
            buyer_id, seller_id
        )
        if row['buyer_hidden'] or row['seller_hidden']:
            # A new conversation brings the room back for both sides
            row = await conn.fetchrow(
                f"""
                UPDATE chat_rooms
                SET buyer_hidden = false, seller_hidden = false
                WHERE id = $1
                RETURNING {ROOM_COLUMNS}
                """,
                row['id']
            )
        return _room(row), False


async def count_unread(conn: asyncpg.Connection, user_id: str) -> int:
    """Count unread messages from others across the user's visible rooms"""
    count = await conn.fetchval(
        """
        SELECT COUNT(*)
        FROM messages m
        JOIN chat_rooms r ON r.id = m.room_id
        WHERE ((r.buyer_id = $1 AND NOT r.buyer_hidden)
            OR (r.seller_id = $1 AND NOT r.seller_hidden))
          AND m.sender_id <> $1
          AND NOT m.is_read
        """,
        user_id
    )
    return int(count or 0)


async def mark_room_read(conn: asyncpg.Connection, room_id: str, reader_id: str) -> int:
    """Mark messages sent by the other participant as read"""
    room_uuid = _as_uuid(room_id)
    if room_uuid is None:
        return 0
    result = await conn.execute(
        """
        UPDATE messages
        SET is_read = true
        WHERE room_id = $1 AND sender_id <> $2 AND NOT is_read
        """,
        room_uuid, reader_id
    )
    return int(result.split()[-1])


async def hide_room(conn: asyncpg.Connection, room_id: str, user_id: str) -> bool:
    """Hide a room for one side of the conversation"""
    room_uuid = _as_uuid(room_id)
    if room_uuid is None:
        return False
    result = await conn.execute(
        """
        UPDATE chat_rooms
        SET buyer_hidden = buyer_hidden OR buyer_id = $2,
            seller_hidden = seller_hidden OR seller_id = $2
        WHERE id = $1 AND (buyer_id = $2 OR seller_id = $2)
        """,
        room_uuid, user_id
    )
    return result == "UPDATE 1"


async def delete_room(conn: asyncpg.Connection, room_id: str, user_id: str) -> bool:
    """Delete a room and its messages if the user is a participant"""
    room_uuid = _as_uuid(room_id)
    if room_uuid is None:
        return False
    result = await conn.execute(
        """
        DELETE FROM chat_rooms
        WHERE id = $1 AND (buyer_id = $2 OR seller_id = $2)
        """,
        room_uuid, user_id
    )
    return result == "DELETE 1"


async def get_item(conn: asyncpg.Connection, item_id: str) -> Optional[Dict[str, Any]]:
    """Get the id, title and seller of a listing from the marketplace items table"""
    row = await conn.fetchrow(
        "SELECT id, title, seller_id FROM items WHERE id = $1",
        item_id
    )
    if not row:
        return None
    return {'id': str(row['id']), 'title': row['title'], 'seller_id': str(row['seller_id'])}


class ChatStore:
    """Chat persistence bound to a connection pool.

    Write failures surface as PersistenceError so callers can report a send
    failure without knowing about asyncpg.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.USER
    ) -> ChatMessage:
        try:
            async with self.pool.acquire() as conn:
                return await create_message(conn, room_id, sender_id, content, message_type)
        except (asyncpg.PostgresError, OSError, ValueError) as e:
            logger.error(f"Error creating message in room {room_id}: {e}")
            raise PersistenceError(f"Failed to store message: {e}")

    async def get_chat_room(self, room_id: str) -> Optional[ChatRoom]:
        async with self.pool.acquire() as conn:
            return await get_chat_room(conn, room_id)

    async def get_room_messages(self, room_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        async with self.pool.acquire() as conn:
            return await get_room_messages(conn, room_id, limit)

    async def get_user_rooms(self, user_id: str) -> List[ChatRoom]:
        async with self.pool.acquire() as conn:
            return await get_user_rooms(conn, user_id)

    async def find_or_create_room(self, item_id: str, buyer_id: str, seller_id: str) -> Tuple[ChatRoom, bool]:
        try:
            async with self.pool.acquire() as conn:
                return await find_or_create_room(conn, item_id, buyer_id, seller_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Error creating chat room for item {item_id}: {e}")
            raise PersistenceError(f"Failed to create chat room: {e}")

    async def count_unread(self, user_id: str) -> int:
        async with self.pool.acquire() as conn:
            return await count_unread(conn, user_id)

    async def mark_room_read(self, room_id: str, reader_id: str) -> int:
        async with self.pool.acquire() as conn:
            return await mark_room_read(conn, room_id, reader_id)

    async def hide_room(self, room_id: str, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            return await hide_room(conn, room_id, user_id)

    async def delete_room(self, room_id: str, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            return await delete_room(conn, room_id, user_id)

    async def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            return await get_item(conn, item_id)
