from datetime import datetime
from enum import Enum
import json
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .exceptions import MalformedEventError

MAX_CONTENT_LENGTH = 2000


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class MessageType(str, Enum):
    USER = "user"
    SYSTEM = "system"


class ChatRoom(CamelModel):
    id: str
    item_id: str
    buyer_id: str
    seller_id: str
    buyer_hidden: bool = False
    seller_hidden: bool = False
    created_at: datetime

    @property
    def participants(self) -> Tuple[str, str]:
        return (self.buyer_id, self.seller_id)

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id


class ChatMessage(CamelModel):
    id: str
    room_id: str
    sender_id: str
    content: str
    message_type: MessageType = MessageType.USER
    is_read: bool = False
    created_at: datetime


def _stripped_id(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


# Client -> server events

class AuthEvent(CamelModel):
    type: Literal["auth"]
    token: str


class JoinRoomEvent(CamelModel):
    type: Literal["join_room"]
    room_id: str

    @field_validator("room_id")
    @classmethod
    def room_id_not_blank(cls, value: str) -> str:
        return _stripped_id(value)


class LeaveRoomEvent(CamelModel):
    type: Literal["leave_room"]
    room_id: Optional[str] = None


class ChatMessageEvent(CamelModel):
    type: Literal["chat_message"]
    room_id: str
    sender_id: str
    content: str = Field(max_length=MAX_CONTENT_LENGTH)
    message_type: MessageType = MessageType.USER
    # Opaque id chosen by the sender, echoed back so it can match replies
    client_id: Optional[str] = Field(default=None, max_length=100)

    @field_validator("room_id", "sender_id")
    @classmethod
    def ids_not_blank(cls, value: str) -> str:
        return _stripped_id(value)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("message content is required")
        return value


InboundEvent = Annotated[
    Union[AuthEvent, JoinRoomEvent, LeaveRoomEvent, ChatMessageEvent],
    Field(discriminator="type")
]

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_event(raw: Union[str, bytes]) -> Union[AuthEvent, JoinRoomEvent, LeaveRoomEvent, ChatMessageEvent]:
    """Decode and validate one inbound frame.

    Raises:
        MalformedEventError: If the frame is not JSON or not a known event shape
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedEventError("Event must be a JSON object")
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid event {data.get('type')!r}: {e.error_count()} error(s)")


# Server -> client events

def auth_success() -> Dict[str, Any]:
    return {"type": "auth_success"}


def auth_error(error: str) -> Dict[str, Any]:
    return {"type": "auth_error", "error": error}


def new_message(message: ChatMessage, client_id: Optional[str] = None) -> Dict[str, Any]:
    event = {"type": "new_message", "message": message.to_wire()}
    if client_id is not None:
        event["clientId"] = client_id
    return event


def error_event(
    code: str,
    error: str,
    room_id: Optional[str] = None,
    client_id: Optional[str] = None
) -> Dict[str, Any]:
    event = {"type": "error", "code": code, "error": error}
    if room_id is not None:
        event["roomId"] = room_id
    if client_id is not None:
        event["clientId"] = client_id
    return event


# REST payloads

class CreateRoomRequest(CamelModel):
    item_id: str


class SendMessageRequest(CamelModel):
    content: str = Field(max_length=MAX_CONTENT_LENGTH)


class RoomResponse(CamelModel):
    room: ChatRoom
    created: bool
