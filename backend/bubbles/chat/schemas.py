"""Pydantic schemas for chats, messages and the realtime wire protocol.

These models are shared by the server (store, event router, HTTP routes) and
the client library (timeline reconciler, mutation pipeline), so both halves
agree on field names and on the JSON frames exchanged over the socket.

Wire frames are always ``{"type": <EventType>, "payload": {...}}``.
"""
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


def new_message_id() -> str:
    """Mint a globally unique message id on the sending side."""
    return str(uuid.uuid4())


# =============================================================================
# Chats
# =============================================================================


class ChatKind(str, Enum):
    """Kind of chat.

    Attributes:
        DIRECT: Exactly two members, unique per unordered member pair.
        GROUP: Named chat with the creator plus at least one other member.
    """
    DIRECT = "direct"
    GROUP = "group"


class ChatMember(BaseModel):
    """Membership of one user in one chat."""
    chat_id: str = Field(..., description="Chat ID")
    user_id: str = Field(..., description="Member user ID")
    username: str = Field(default="", description="Member display name")
    joined_at: float = Field(default_factory=time.time, description="Join timestamp")
    last_read_message_id: Optional[str] = Field(None, description="Last read message")
    last_read_at: Optional[float] = Field(None, description="sent_at of the last read message")
    is_active: bool = Field(default=True, description="False once the member has left")


class Chat(BaseModel):
    """A direct or group chat with its member list."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Chat ID")
    kind: ChatKind = Field(..., description="direct or group")
    name: Optional[str] = Field(None, description="Display name (groups only)")
    created_by: str = Field(..., description="Creator user ID")
    created_at: float = Field(default_factory=time.time, description="Creation timestamp")
    members: List[ChatMember] = Field(default_factory=list)

    def active_member_ids(self) -> List[str]:
        return [m.user_id for m in self.members if m.is_active]


class CreateChatRequest(BaseModel):
    member_ids: List[str] = Field(..., min_length=1, description="Other members")
    name: Optional[str] = Field(None, description="Group name")


class CreateChatResponse(BaseModel):
    chat: Chat
    existing: bool = False


# =============================================================================
# Messages
# =============================================================================


class Message(BaseModel):
    """A chat message.

    The id is minted by the sender, so the optimistic local copy, the
    persisted row and every broadcast echo share the same identity.
    """
    id: str = Field(default_factory=new_message_id, description="Client-minted message ID")
    chat_id: str = Field(..., description="Chat this message belongs to")
    sender_id: str = Field(..., description="Sender user ID")
    sender_username: str = Field(default="", description="Sender display name")
    content: Optional[str] = Field(None, description="Text content, None when image-only or deleted")
    images: List[str] = Field(default_factory=list, description="Ordered attachment URLs")
    sent_at: float = Field(default_factory=time.time, description="Seconds since epoch")
    is_edited: bool = Field(default=False)
    is_deleted: bool = Field(default=False)

    @property
    def position(self) -> "Cursor":
        return Cursor(sent_at=self.sent_at, id=self.id)


class Cursor(BaseModel):
    """Pagination cursor: the (sent_at, id) of the oldest item seen so far."""
    sent_at: float
    id: str

    def as_tuple(self) -> Tuple[float, str]:
        return (self.sent_at, self.id)


class MessagePage(BaseModel):
    """One page of history, newest first."""
    items: List[Message] = Field(default_factory=list)
    next_cursor: Optional[Cursor] = None
    has_more: bool = False


class SendMessageRequest(BaseModel):
    id: str = Field(default_factory=new_message_id, description="Client-minted message ID")
    content: Optional[str] = None
    images: List[str] = Field(default_factory=list)


class EditMessageRequest(BaseModel):
    content: Optional[str] = None
    images: Optional[List[str]] = Field(None, description="Replacement attachments; None keeps them")


class ReadReceipt(BaseModel):
    """A member's read pointer in a chat."""
    chat_id: str
    user_id: str
    last_read_message_id: str
    last_read_at: float

    @property
    def position(self) -> Cursor:
        return Cursor(sent_at=self.last_read_at, id=self.last_read_message_id)


# =============================================================================
# Wire protocol
# =============================================================================


class EventType(str, Enum):
    """Socket event names. Kept stable for interop with web clients."""
    JOIN_CHAT = "join_chat"
    LEAVE_CHAT = "leave_chat"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    MESSAGE_READ = "message_read"
    MESSAGE_SENT = "message_sent"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    # Server-only frames
    CHAT_CREATED = "chat_created"
    CONNECTED = "connected"
    ERROR = "error"


class WSMessage(BaseModel):
    """Envelope for every frame on the socket."""
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)


class ChatRef(BaseModel):
    chat_id: str


class TypingPayload(BaseModel):
    chat_id: str
    user_id: str = ""
    username: str = ""
    member_ids: List[str] = Field(default_factory=list)


class MessageReadInput(BaseModel):
    chat_id: str
    message_id: str


class MessageDeletedPayload(BaseModel):
    id: str
    chat_id: str
    is_deleted: bool = True


def frame(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Build a JSON-ready wire frame."""
    return {"type": event_type.value, "payload": payload}


class ChatSummary(BaseModel):
    """A chat as shown in the chat list, with its latest message."""
    chat: Chat
    last_message: Optional[Message] = None
