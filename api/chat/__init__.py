"""
Chat module for the Campus Market API.
Provides buyer/seller chat rooms with real-time delivery over WebSocket.
"""

import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, status

from auth import CurrentUser, get_current_user
from .exceptions import ChatError, MalformedEventError, PersistenceError
from .models import (
    ChatMessage, ChatRoom, CreateRoomRequest, MessageType, RoomResponse, SendMessageRequest
)
from .registry import ClientConnection, ConnectionRegistry
from .relay import ChatRelay

logger = logging.getLogger(__name__)

# Create routers
router = APIRouter(
    prefix="/api/chat",
    tags=["Chat"]
)

ws_router = APIRouter(tags=["Chat"])


def get_store(request: Request):
    """Chat store installed on the app at startup."""
    return request.app.state.chat_store


def get_relay(request: Request) -> ChatRelay:
    """Chat relay installed on the app at startup."""
    return request.app.state.chat_relay


async def _room_for_participant(store, room_id: str, user: CurrentUser) -> ChatRoom:
    room = await store.get_chat_room(room_id)
    if room is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Chat room not found"
        )
    if not room.has_participant(user.id):
        logger.warning(
            f"Access denied: User {user.id} tried to access room {room_id} "
            f"(buyer: {room.buyer_id}, seller: {room.seller_id})"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied - You are not a participant in this chat room"
        )
    return room


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time chat.

    The first frame should be {"type": "auth", "token": ...}; chat messages
    are rejected until it succeeds.
    """
    await websocket.app.state.chat_relay.serve(websocket)


@router.get("/rooms", response_model=List[ChatRoom], response_model_by_alias=True)
async def list_rooms(
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Get the chat rooms the current user takes part in."""
    rooms = await store.get_user_rooms(current_user.id)
    logger.info(f"Found {len(rooms)} rooms for user {current_user.id}")
    return rooms


@router.get("/unread-count")
async def unread_count(
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Count unread messages from others across the current user's visible rooms."""
    count = await store.count_unread(current_user.id)
    return {"count": count}


@router.post("/rooms",response_model=RoomResponse, response_model_by_alias=True)
async def create_room(
    body: CreateRoomRequest,
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Find or create the chat room between the current user and an item's seller."""
    item = await store.get_item(body.item_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Item not found"
        )

    if item['seller_id'] == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot chat with yourself"
        )

    try:
        room, created = await store.find_or_create_room(body.item_id, current_user.id, item['seller_id'])
        if not created and room.item_id != body.item_id:
            # Same buyer and seller share one room; announce the new item in it
            await store.create_message(
                room.id,
                "system",
                f"Started a chat about {item['title']}.",
                MessageType.SYSTEM
            )
    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    return RoomResponse(room=room, created=created)


@router.get("/rooms/{room_id}", response_model=ChatRoom, response_model_by_alias=True)
async def get_room(
    room_id: str,
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Get a chat room the current user takes part in."""
    return await _room_for_participant(store, room_id, current_user)


@router.get("/rooms/{room_id}/messages", response_model=List[ChatMessage], response_model_by_alias=True)
async def get_messages(
    room_id: str,
    limit: int = Query(None, ge=1, le=500),
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Get a room's message history, oldest first."""
    await _room_for_participant(store, room_id, current_user)
    messages = await store.get_room_messages(room_id, limit)
    logger.info(f"Returning {len(messages)} messages for room {room_id} to user {current_user.id}")
    return messages


@router.post("/rooms/{room_id}/messages", response_model=ChatMessage, response_model_by_alias=True)
async def send_message(
    room_id: str,
    body: SendMessageRequest,
    store=Depends(get_store),
    relay: ChatRelay = Depends(get_relay),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Send a message over HTTP and push it to both participants."""
    content = body.content.strip()
    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message content is required"
        )

    room = await _room_for_participant(store, room_id, current_user)

    try:
        message = await store.create_message(room.id, current_user.id, content, MessageType.USER)
    except PersistenceError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create message"
        )

    logger.info(f"Message created by user {current_user.id} in room {room.id}")
    await relay.broadcast_message(room, message)
    return message


@router.post("/rooms/{room_id}/read")
async def mark_read(
    room_id: str,
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Mark the other participant's messages as read."""
    await _room_for_participant(store, room_id, current_user)
    updated = await store.mark_room_read(room_id, current_user.id)
    return {"updated": updated}


@router.post("/rooms/{room_id}/hide")
async def hide_room(
    room_id: str,
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Hide a room from the current user's room list."""
    await _room_for_participant(store, room_id, current_user)
    await store.hide_room(room_id, current_user.id)
    return {"message": "Chat room hidden"}


@router.delete("/rooms/{room_id}")
async def delete_room(
    room_id: str,
    store=Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user)
):
    """Delete a chat room and its messages."""
    success = await store.delete_room(room_id, current_user.id)
    if not success:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot delete this chat room"
        )
    return {"message": "Chat room deleted successfully"}


# Export the routers
__all__ = [
    'router',
    'ws_router',
    'ChatRelay',
    'ConnectionRegistry',
    'ClientConnection',
    'ChatError',
    'MalformedEventError',
    'PersistenceError'
]
