"""Typing indicators and read acknowledgements on the client.

TypingNotifier (outbound): the first keystroke of a typing session sends
typing_start, and a keystroke once the refresh interval has passed sends it
again so peers do not expire a long session. Every keystroke restarts an idle
timer, and typing_stop goes out once the timer runs out or stop() is called
explicitly (message sent, input cleared, field blurred).

TypingTracker (inbound): who is typing in the open chat, fed by relayed
typing_start / typing_stop frames.

ReadReceiptNotifier (outbound): sends message_read only for confirmed messages
after the last one already acknowledged.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional

from bubbles.auth import Identity
from bubbles.chat.schemas import Cursor, EventType, Message, ReadReceipt

from .timeline import PENDING_IMAGE_SCHEME, Timeline, is_after

logger = logging.getLogger(__name__)

# Peers are dropped after this long without a typing_stop (lost frame, crashed tab)
DEFAULT_PEER_EXPIRY_SECONDS = 10.0

# Must stay well below DEFAULT_PEER_EXPIRY_SECONDS
DEFAULT_TYPING_REFRESH_SECONDS = 3.0


class TypingNotifier:
    """Debounced typing_start / typing_stop for one chat.

    Args:
        connection: ConnectionManager used to send frames.
        chat_id: Chat being typed in.
        identity: The typist.
        member_ids: Chat members the relay should reach.
        idle_seconds: Quiet period after the last keystroke before typing_stop.
        refresh_seconds: How often a continuing session re-sends typing_start.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        connection,
        chat_id: str,
        identity: Identity,
        member_ids: Iterable[str],
        idle_seconds: float = 2.0,
        refresh_seconds: float = DEFAULT_TYPING_REFRESH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self.chat_id = chat_id
        self.identity = identity
        self.member_ids = list(member_ids)
        self.idle_seconds = idle_seconds
        self.refresh_seconds = refresh_seconds
        self.clock = clock
        self.is_typing = False
        self._last_start = 0.0
        self._idle_task: Optional[asyncio.Task] = None

    async def handle_keystroke(self) -> None:
        now = self.clock()
        if not self.is_typing or now - self._last_start >= self.refresh_seconds:
            self.is_typing = True
            self._last_start = now
            await self.connection.send(EventType.TYPING_START.value, {
                "chat_id": self.chat_id,
                "user_id": self.identity.user_id,
                "username": self.identity.username,
                "member_ids": self.member_ids,
            })

        # Each keystroke restarts the idle timer
        self._cancel_idle_timer()
        self._idle_task = asyncio.create_task(self._stop_when_idle())

    async def stop(self) -> None:
        """Stop immediately, cancelling the pending idle timer."""
        self._cancel_idle_timer()
        await self._emit_stop()

    async def _stop_when_idle(self) -> None:
        await asyncio.sleep(self.idle_seconds)
        self._idle_task = None
        await self._emit_stop()

    async def _emit_stop(self) -> None:
        if not self.is_typing:
            return
        self.is_typing = False
        await self.connection.send(EventType.TYPING_STOP.value, {
            "chat_id": self.chat_id,
            "user_id": self.identity.user_id,
            "member_ids": self.member_ids,
        })

    def _cancel_idle_timer(self) -> None:
        task, self._idle_task = self._idle_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class TypingTracker:
    """Who is typing in the chat currently on screen.

    Entries expire after ``expiry_seconds`` without a typing_start refresh, so
    a lost typing_stop never leaves a peer typing forever.
    """

    def __init__(
        self,
        chat_id: str,
        current_user_id: str,
        expiry_seconds: float = DEFAULT_PEER_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chat_id = chat_id
        self.current_user_id = current_user_id
        self.expiry_seconds = expiry_seconds
        self.clock = clock
        # user_id -> (username, last seen)
        self._typing: Dict[str, tuple] = {}

    def on_typing_start(self, payload: Dict[str, Any]) -> None:
        user_id = payload.get("user_id")
        if payload.get("chat_id") != self.chat_id or not user_id or user_id == self.current_user_id:
            return
        self._typing[user_id] = (payload.get("username", ""), self.clock())

    def on_typing_stop(self, payload: Dict[str, Any]) -> None:
        if payload.get("chat_id") != self.chat_id:
            return
        self._typing.pop(payload.get("user_id"), None)

    def set_chat(self, chat_id: str) -> None:
        """Switch to another chat; typists of the old one are forgotten."""
        if chat_id != self.chat_id:
            self.chat_id = chat_id
            self._typing.clear()

    def typing_users(self) -> Dict[str, str]:
        """user_id -> username of everyone currently typing."""
        now = self.clock()
        expired = [uid for uid, (_, seen) in self._typing.items() if now - seen > self.expiry_seconds]
        for uid in expired:
            del self._typing[uid]
        return {uid: username for uid, (username, _) in self._typing.items()}

    @property
    def is_visible(self) -> bool:
        return bool(self.typing_users())

    def bind(self, connection) -> Callable[[], None]:
        unsubscribers = [
            connection.on(EventType.TYPING_START.value, self.on_typing_start),
            connection.on(EventType.TYPING_STOP.value, self.on_typing_stop),
        ]

        def unbind() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unbind


class ReadReceiptNotifier:
    """Acknowledges read messages, never twice and never backwards.

    With a ``timeline``, its optimistic (pending) messages are never
    acknowledged: the server does not know their ids yet and their client-clock
    position would hold back acknowledgements of real messages.
    """

    def __init__(
        self,
        connection,
        chat_id: str,
        visibility_threshold: float = 0.5,
        timeline: Optional[Timeline] = None,
    ) -> None:
        self.connection = connection
        self.chat_id = chat_id
        self.visibility_threshold = visibility_threshold
        self.timeline = timeline
        self.last_acknowledged: Optional[Cursor] = None

    def seed(self, receipt: Optional[ReadReceipt]) -> None:
        """Start from the pointer the server already holds."""
        if receipt is not None and is_after(receipt.position, self.last_acknowledged):
            self.last_acknowledged = receipt.position

    async def mark_read(self, message: Message) -> bool:
        """Send message_read for a message if it advances the pointer.

        Returns:
            True if a frame was sent (or queued).
        """
        if message.chat_id != self.chat_id or self._is_pending(message):
            return False
        if not is_after(message.position, self.last_acknowledged):
            return False
        self.last_acknowledged = message.position
        await self.connection.send(EventType.MESSAGE_READ.value, {
            "chat_id": self.chat_id,
            "message_id": message.id,
        })
        return True

    async def on_visible(self, message: Message, visible_ratio: float) -> bool:
        """Viewport signal: a message scrolled (partly) into view."""
        if visible_ratio < self.visibility_threshold:
            return False
        return await self.mark_read(message)

    async def on_at_bottom(self, timeline: Timeline) -> bool:
        """The viewer reached the bottom: the newest confirmed message is read."""
        for message in reversed(timeline.messages):
            if message.id in timeline.pending_ids or self._is_pending(message):
                continue
            return await self.mark_read(message)
        return False

    def _is_pending(self, message: Message) -> bool:
        if self.timeline is not None and message.id in self.timeline.pending_ids:
            return True
        return any(url.startswith(PENDING_IMAGE_SCHEME) for url in message.images)
