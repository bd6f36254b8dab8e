"""Event router: inbound socket events in, fan-out to member rooms out.

Inbound (client -> server):
    - join_chat{chat_id}: verify membership, remember the join
    - leave_chat{chat_id}: forget the join, drop the user's typing entry
    - typing_start{chat_id, user_id, username, member_ids}
    - typing_stop{chat_id, user_id, member_ids}
    - message_read{chat_id, message_id}: advance the read pointer

Outbound (server -> client):
    - typing_start / typing_stop relayed to every member except the typist;
      a typist's periodic typing_start refresh is relayed again at most once
      per TYPING_RELAY_INTERVAL_SECONDS
    - chat_created{...Chat} to every member of a newly created chat
    - message_read{chat_id, user_id, last_read_message_id, last_read_at}
    - message_sent{...Message, member_ids}, message_edited{...Message},
      message_deleted{id, chat_id} published after persistence, to every
      member including the sender (their other tabs need the update too)
    - error{error} for malformed or unauthorized frames

The sender identity of every inbound event is the authenticated socket's,
never the one claimed in the payload.
"""
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError

from bubbles.auth import Identity
from bubbles.errors import BubblesError

from .manager import RoomRegistry
from .schemas import (
    Chat,
    ChatRef,
    EventType,
    Message,
    MessageDeletedPayload,
    MessageReadInput,
    TypingPayload,
    WSMessage,
    frame,
)
from .store import ChatStore

logger = logging.getLogger(__name__)

# Clients refresh typing_start every few seconds; anything faster is dropped
TYPING_RELAY_INTERVAL_SECONDS = 1.0


class EventRouter:
    """Routes typed socket events between chat members.

    Attributes:
        registry: Room registry used for delivery.
        store: Persistence collaborator (membership, read pointers).
        typing: chat_id -> {user_id: username} of members currently typing.
            A typing_stop for someone not typing emits nothing, and a repeated
            typing_start is only relayed once the relay interval has passed.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        store: ChatStore,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.store = store
        self.clock = clock
        self.typing: Dict[str, Dict[str, str]] = {}
        # (chat_id, user_id) -> when the last typing_start was relayed
        self._typing_relayed_at: Dict[Tuple[str, str], float] = {}

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle(self, websocket: WebSocket, identity: Identity, data: dict) -> None:
        """Dispatch one inbound frame from an authenticated socket."""
        try:
            event = WSMessage(**data)
        except (PydanticValidationError, TypeError) as e:
            logger.debug(f"[Router] Malformed frame from {identity.user_id}: {e}")
            await self._send_error(websocket, "Invalid message format")
            return

        handlers = {
            EventType.JOIN_CHAT: self._on_join_chat,
            EventType.LEAVE_CHAT: self._on_leave_chat,
            EventType.TYPING_START: self._on_typing_start,
            EventType.TYPING_STOP: self._on_typing_stop,
            EventType.MESSAGE_READ: self._on_message_read,
        }
        handler = handlers.get(event.type)
        if handler is None:
            await self._send_error(websocket, f"Unsupported event type: {event.type.value}")
            return

        try:
            await handler(websocket, identity, event.payload)
        except PydanticValidationError as e:
            await self._send_error(websocket, f"Invalid {event.type.value} payload: {e.errors()[0]['msg']}")
        except BubblesError as e:
            await self._send_error(websocket, e.message)

    async def _on_join_chat(self, websocket: WebSocket, identity: Identity, payload: dict) -> None:
        ref = ChatRef(**payload)
        if not self.store.is_member(ref.chat_id, identity.user_id):
            logger.warning(f"[Router] Unauthorized join attempt: user={identity.user_id}, chat={ref.chat_id}")
            await self._send_error(websocket, "You are not a member of this chat")
            return
        self.registry.join_chat(websocket, ref.chat_id)
        logger.debug(f"[Router] {identity.user_id} joined chat {ref.chat_id}")

    async def _on_leave_chat(self, websocket: WebSocket, identity: Identity, payload: dict) -> None:
        ref = ChatRef(**payload)
        self.registry.leave_chat(websocket, ref.chat_id)
        await self.clear_typing(ref.chat_id, identity.user_id)

    async def _on_typing_start(self, websocket: WebSocket, identity: Identity, payload: dict) -> None:
        typing = TypingPayload(**payload)
        if not await self._ensure_member(websocket, identity, typing.chat_id):
            return

        chat_typing = self.typing.setdefault(typing.chat_id, {})
        key = (typing.chat_id, identity.user_id)
        now = self.clock()
        if identity.user_id in chat_typing and now - self._typing_relayed_at[key] < TYPING_RELAY_INTERVAL_SECONDS:
            return
        chat_typing[identity.user_id] = identity.username
        self._typing_relayed_at[key] = now

        recipients = self._recipients(typing.chat_id, typing.member_ids)
        await self.registry.emit_to_users(
            recipients,
            frame(EventType.TYPING_START, {
                "chat_id": typing.chat_id,
                "user_id": identity.user_id,
                "username": identity.username,
                "member_ids": recipients,
            }),
            exclude_user_id=identity.user_id,
        )

    async def _on_typing_stop(self, websocket: WebSocket, identity: Identity, payload: dict) -> None:
        typing = TypingPayload(**payload)
        if not await self._ensure_member(websocket, identity, typing.chat_id):
            return
        await self.clear_typing(typing.chat_id, identity.user_id, typing.member_ids)

    async def _on_message_read(self, websocket: WebSocket, identity: Identity, payload: dict) -> None:
        read = MessageReadInput(**payload)
        if not await self._ensure_member(websocket, identity, read.chat_id):
            return

        receipt, advanced = self.store.set_last_read(read.chat_id, identity.user_id, read.message_id)
        if not advanced:
            return

        await self.registry.emit_to_users(
            self.store.get_active_member_ids(read.chat_id),
            frame(EventType.MESSAGE_READ, receipt.model_dump()),
            exclude_user_id=identity.user_id,
        )

    # =========================================================================
    # Typing state
    # =========================================================================

    async def clear_typing(
        self, chat_id: str, user_id: str, member_ids: Optional[List[str]] = None
    ) -> bool:
        """Remove a typist and relay typing_stop if they were typing.

        Returns:
            True if a typing_stop was relayed.
        """
        chat_typing = self.typing.get(chat_id, {})
        if user_id not in chat_typing:
            return False
        del chat_typing[user_id]
        self._typing_relayed_at.pop((chat_id, user_id), None)
        if not chat_typing:
            self.typing.pop(chat_id, None)

        recipients = self._recipients(chat_id, member_ids or [])
        await self.registry.emit_to_users(
            recipients,
            frame(EventType.TYPING_STOP, {
                "chat_id": chat_id,
                "user_id": user_id,
                "member_ids": recipients,
            }),
            exclude_user_id=user_id,
        )
        return True

    async def handle_disconnect(self, identity: Identity) -> None:
        """Drop typing entries of a user whose last socket went away."""
        if self.registry.is_online(identity.user_id):
            return
        for chat_id in [cid for cid, users in self.typing.items() if identity.user_id in users]:
            await self.clear_typing(chat_id, identity.user_id)

    def get_typing(self, chat_id: str) -> Dict[str, str]:
        return dict(self.typing.get(chat_id, {}))

    # =========================================================================
    # Outbound publishing (after persistence)
    # =========================================================================

    async def publish_chat_created(self, chat: Chat) -> int:
        """Push a new chat to every active member so it shows up in their lists."""
        delivered = await self.registry.emit_to_users(
            chat.active_member_ids(),
            frame(EventType.CHAT_CREATED, chat.model_dump(mode="json")),
        )
        logger.info(f"[Router] chat_created {chat.id} reached {delivered} sockets")
        return delivered

    async def publish_message_sent(self, message: Message) -> int:
        """Fan out a persisted message to every active member, sender included."""
        await self.clear_typing(message.chat_id, message.sender_id)
        member_ids = self.store.get_active_member_ids(message.chat_id)
        delivered = await self.registry.emit_to_users(
            member_ids,
            frame(EventType.MESSAGE_SENT, {**message.model_dump(), "member_ids": member_ids}),
        )
        logger.info(f"[Router] message_sent {message.id} in chat {message.chat_id} reached {delivered} sockets")
        return delivered

    async def publish_message_edited(self, message: Message) -> int:
        return await self.registry.emit_to_users(
            self.store.get_active_member_ids(message.chat_id),
            frame(EventType.MESSAGE_EDITED, message.model_dump()),
        )

    async def publish_message_deleted(self, message: Message) -> int:
        payload = MessageDeletedPayload(id=message.id, chat_id=message.chat_id)
        return await self.registry.emit_to_users(
            self.store.get_active_member_ids(message.chat_id),
            frame(EventType.MESSAGE_DELETED, payload.model_dump()),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ensure_member(self, websocket: WebSocket, identity: Identity, chat_id: str) -> bool:
        """Check membership, using the socket's joined set as a cache."""
        if self.registry.has_joined(websocket, chat_id):
            return True
        if self.store.is_member(chat_id, identity.user_id):
            self.registry.join_chat(websocket, chat_id)
            return True
        logger.warning(f"[Router] Event from non-member: user={identity.user_id}, chat={chat_id}")
        await self._send_error(websocket, "You are not a member of this chat")
        return False

    def _recipients(self, chat_id: str, member_ids: List[str]) -> List[str]:
        """Claimed member ids, restricted to the chat's active members."""
        active = self.store.get_active_member_ids(chat_id)
        if not member_ids:
            return active
        allowed = set(active)
        return sorted({uid for uid in member_ids if uid in allowed})

    async def _send_error(self, websocket: WebSocket, error: str) -> None:
        await self.registry.send_to(websocket, frame(EventType.ERROR, {"error": error}))
