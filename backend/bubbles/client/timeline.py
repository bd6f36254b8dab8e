"""Timeline reconciler: one ordered, deduplicated view of a chat.

Three feeds write into a timeline and may arrive in any order:

    - history pages (newest first, walked backwards with a cursor)
    - optimistic local writes from the mutation pipeline
    - broadcast frames from the socket

Every feed is merged by message id and the result is sorted ascending by
(sent_at, id), so arrival order never shows in the view. Edits and deletes
update a message in place; its sent_at, and so its position, never changes.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from bubbles.chat.schemas import Cursor, Message, MessagePage, ReadReceipt

logger = logging.getLogger(__name__)

Position = Union[Cursor, Tuple[float, str]]
FetchPage = Callable[[Optional[Cursor]], Awaitable[MessagePage]]

PENDING_IMAGE_SCHEME = "pending://"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_READ = "read"


# =============================================================================
# Pure merge functions
# =============================================================================


def sort_key(message: Message) -> Tuple[float, str]:
    return (message.sent_at, message.id)


def _as_tuple(position: Optional[Position]) -> Optional[Tuple[float, str]]:
    if position is None:
        return None
    if isinstance(position, Cursor):
        return position.as_tuple()
    return (position[0], position[1])


def is_after(a: Optional[Position], b: Optional[Position]) -> bool:
    """True if position ``a`` is strictly after ``b``. Anything is after None.

    Examples:
        >>> is_after((2.0, "a"), (1.0, "z"))
        True
        >>> is_after((1.0, "a"), (1.0, "b"))
        False
        >>> is_after((1.0, "a"), None)
        True
    """
    a_key, b_key = _as_tuple(a), _as_tuple(b)
    if a_key is None:
        return False
    if b_key is None:
        return True
    return a_key > b_key


def merge_messages(current: Iterable[Message], incoming: Iterable[Message]) -> List[Message]:
    """Merge messages by id and return them sorted ascending.

    The incoming copy replaces the current one, except that a deleted
    message stays deleted: a late echo of an older copy cannot resurrect it.
    """
    by_id: Dict[str, Message] = {m.id: m for m in current}
    for message in incoming:
        existing = by_id.get(message.id)
        if existing is None:
            by_id[message.id] = message
            continue
        if existing.is_deleted and not message.is_deleted:
            continue
        by_id[message.id] = message
    return sorted(by_id.values(), key=sort_key)


def apply_edit(
    current: List[Message],
    message_id: str,
    content: Optional[str],
    images: Optional[List[str]] = None,
) -> List[Message]:
    """Replace content (and optionally images) of one message in place."""
    result = []
    for message in current:
        if message.id == message_id and not message.is_deleted:
            update: Dict[str, Any] = {"content": content, "is_edited": True}
            if images is not None:
                update["images"] = list(images)
            message = message.model_copy(update=update)
        result.append(message)
    return result


def apply_delete(current: List[Message], message_id: str) -> List[Message]:
    """Soft-delete one message: content and images cleared, position kept."""
    return [
        m.model_copy(update={"is_deleted": True, "content": None, "images": []})
        if m.id == message_id else m
        for m in current
    ]


def remove_message(current: List[Message], message_id: str) -> List[Message]:
    return [m for m in current if m.id != message_id]


# =============================================================================
# Scroll state
# =============================================================================


class ScrollState:
    """Auto-scroll policy for a message list.

    The view follows new messages only when the viewer was already near the
    bottom. Callers must read should_auto_scroll() before applying the new
    item, since appending changes the distance from bottom.
    """

    def __init__(self, threshold: float = 100.0) -> None:
        self.threshold = threshold
        self.distance_from_bottom = 0.0
        self.new_items_below = 0

    def update(self, scroll_top: float, scroll_height: float, client_height: float) -> None:
        """Record the viewport position after a user scroll."""
        self.distance_from_bottom = max(0.0, scroll_height - scroll_top - client_height)
        if self.is_at_bottom:
            self.new_items_below = 0

    @property
    def is_at_bottom(self) -> bool:
        return self.distance_from_bottom < self.threshold

    def should_auto_scroll(self) -> bool:
        return self.is_at_bottom

    def items_appended(self, count: int, auto_scroll: bool) -> None:
        """Account for items added below the viewport.

        Args:
            count: Number of new items.
            auto_scroll: The value of should_auto_scroll() captured before
                the items were applied.
        """
        if auto_scroll:
            self.scroll_to_bottom()
        else:
            self.new_items_below += count

    def scroll_to_bottom(self) -> None:
        self.distance_from_bottom = 0.0
        self.new_items_below = 0


# =============================================================================
# Timeline
# =============================================================================


class Timeline:
    """Live, reconciled message list of one chat.

    Attributes:
        chat_id: The chat this timeline shows.
        current_user_id: Viewer; read status is derived for their messages.
        messages: Ascending by (sent_at, id), one entry per id.
        oldest_cursor: Position of the oldest message fetched from history.
        member_ids: Active members, used for read status.
        read_receipts: user_id -> read pointer, only ever moved forward.
        pending_ids: Optimistic messages not yet confirmed by the server.
    """

    def __init__(
        self,
        chat_id: str,
        current_user_id: str,
        member_ids: Optional[Iterable[str]] = None,
        scroll: Optional[ScrollState] = None,
    ) -> None:
        self.chat_id = chat_id
        self.current_user_id = current_user_id
        self.member_ids: Set[str] = set(member_ids or [])
        self.scroll = scroll or ScrollState()

        self.messages: List[Message] = []
        self.oldest_cursor: Optional[Cursor] = None
        self.read_receipts: Dict[str, Cursor] = {}
        self.pending_ids: Set[str] = set()

        self._has_more = True
        self._fetching = False
        self._listeners: List[Callable[["Timeline"], Any]] = []

    # -- queries --------------------------------------------------------------

    @property
    def has_more(self) -> bool:
        return self._has_more

    def get(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @property
    def newest(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    # -- pagination -----------------------------------------------------------

    def load_page(self, page: MessagePage) -> int:
        """Merge one newest-first history page.

        Returns:
            Number of messages that were not in the timeline yet.
        """
        known = {m.id for m in self.messages}
        added = sum(1 for m in page.items if m.id not in known)
        self.messages = merge_messages(self.messages, page.items)

        if page.items:
            oldest = min(page.items, key=sort_key).position
            if self.oldest_cursor is None or is_after(self.oldest_cursor, oldest):
                self.oldest_cursor = oldest
        self._has_more = page.has_more
        self._notify()
        return added

    async def fetch_older(self, fetch_page: FetchPage) -> int:
        """Fetch the page before the oldest loaded message.

        Args:
            fetch_page: Called with the current cursor (None for the first
                page), returns a MessagePage.

        Returns:
            Number of new messages, 0 when history is exhausted or a fetch is
            already running.
        """
        if not self._has_more or self._fetching:
            return 0
        self._fetching = True
        try:
            page = await fetch_page(self.oldest_cursor)
        finally:
            self._fetching = False
        return self.load_page(page)

    # -- local writes ---------------------------------------------------------

    def upsert(self, message: Message, pending: bool = False) -> bool:
        """Insert or update a message by id.

        Returns:
            True if the message was new to the timeline.
        """
        if message.chat_id != self.chat_id:
            return False
        is_new = self.get(message.id) is None
        if pending:
            self.pending_ids.add(message.id)
        else:
            self.pending_ids.discard(message.id)
        self.messages = merge_messages(self.messages, [message])
        self._notify()
        return is_new

    def restore(self, message: Message) -> None:
        """Put back an exact earlier copy (rollback of an edit or delete)."""
        self.messages = sorted(
            remove_message(self.messages, message.id) + [message], key=sort_key
        )
        self.pending_ids.discard(message.id)
        self._notify()

    def edit(self, message_id: str, content: Optional[str], images: Optional[List[str]] = None) -> None:
        self.messages = apply_edit(self.messages, message_id, content, images)
        self._notify()

    def delete(self, message_id: str) -> None:
        self.messages = apply_delete(self.messages, message_id)
        self._notify()

    def remove(self, message_id: str) -> None:
        self.messages = remove_message(self.messages, message_id)
        self.pending_ids.discard(message_id)
        self._notify()

    # -- broadcast handlers ---------------------------------------------------

    def on_message_sent(self, payload: Dict[str, Any]) -> bool:
        """Handle a message_sent frame.

        Returns:
            Whether the view should scroll to the new message.
        """
        if payload.get("chat_id") != self.chat_id:
            return False
        if payload.get("member_ids"):
            self.member_ids = set(payload["member_ids"])

        auto_scroll = self.scroll.should_auto_scroll()
        message = Message(**payload)
        newest = self.newest
        if self.upsert(message) and (newest is None or is_after(message.position, newest.position)):
            self.scroll.items_appended(1, auto_scroll)
            return auto_scroll
        return False

    def on_message_edited(self, payload: Dict[str, Any]) -> None:
        if payload.get("chat_id") != self.chat_id:
            return
        message = Message(**payload)
        if self.get(message.id) is None:
            # Not loaded yet; the next history fetch brings the edited copy
            return
        self.upsert(message)

    def on_message_deleted(self, payload: Dict[str, Any]) -> None:
        if payload.get("chat_id") != self.chat_id:
            return
        self.delete(payload["id"])
        self.pending_ids.discard(payload["id"])

    def on_message_read(self, payload: Dict[str, Any]) -> None:
        if payload.get("chat_id") != self.chat_id:
            return
        receipt = ReadReceipt(**payload)
        self.update_read_receipt(receipt.user_id, receipt.position)

    def bind(self, connection) -> Callable[[], None]:
        """Subscribe the broadcast handlers to a ConnectionManager.

        Returns:
            A callable that unsubscribes all of them.
        """
        unsubscribers = [
            connection.on("message_sent", self.on_message_sent),
            connection.on("message_edited", self.on_message_edited),
            connection.on("message_deleted", self.on_message_deleted),
            connection.on("message_read", self.on_message_read),
        ]

        def unbind() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unbind

    # -- read receipts --------------------------------------------------------

    def load_read_receipts(self, receipts: Iterable[ReadReceipt]) -> None:
        for receipt in receipts:
            self.update_read_receipt(receipt.user_id, receipt.position, notify=False)
        self._notify()

    def update_read_receipt(self, user_id: str, position: Cursor, notify: bool = True) -> bool:
        """Move a member's read pointer forward. Older positions are ignored."""
        current = self.read_receipts.get(user_id)
        if not is_after(position, current):
            return False
        self.read_receipts[user_id] = position
        if notify:
            self._notify()
        return True

    def is_read(self, message: Message) -> bool:
        """True if every other active member has read up to this message."""
        others = self.member_ids - {self.current_user_id}
        if not others:
            return False
        return all(
            user_id in self.read_receipts
            and not is_after(message.position, self.read_receipts[user_id])
            for user_id in others
        )

    def read_status(self, message_id: str) -> Optional[str]:
        """Delivery status of one of the viewer's own messages.

        Returns:
            "pending", "sent" or "read"; None for other users' messages and
            unknown ids.
        """
        message = self.get(message_id)
        if message is None or message.sender_id != self.current_user_id:
            return None
        if message_id in self.pending_ids:
            return STATUS_PENDING
        return STATUS_READ if self.is_read(message) else STATUS_SENT

    # -- listeners ------------------------------------------------------------

    def add_listener(self, listener: Callable[["Timeline"], Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception(f"[Timeline] Listener failed for chat {self.chat_id}")
