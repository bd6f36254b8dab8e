"""Message service: business rules of the durable request path.

Every mutation is validated here, persisted through the ChatStore and only
then announced through the EventRouter, so a broadcast never describes state
the database does not hold. The edit window is re-checked on the server with
the service's own clock; a client that skipped its local check is still
rejected.
"""
import logging
import time
from typing import Callable, List, Optional, Tuple

from bubbles.auth import Identity
from bubbles.config import AppSettings, get_config
from bubbles.errors import (
    EditWindowExpiredError,
    ForbiddenError,
    NotAMemberError,
    ValidationError,
)
from bubbles.files.service import ImageStorageService

from .events import EventRouter
from .manager import RoomRegistry
from .schemas import (
    Chat,
    ChatSummary,
    Cursor,
    EditMessageRequest,
    Message,
    MessagePage,
    ReadReceipt,
    SendMessageRequest,
)
from .store import ChatStore

logger = logging.getLogger(__name__)


def _normalize_content(content: Optional[str]) -> Optional[str]:
    if content is None:
        return None
    content = content.strip()
    return content or None


class MessageService:
    """Validates and persists chat mutations, then publishes them.

    Args:
        store: Persistence collaborator.
        events: Event router used for fan-out after each persist.
        files: Upload collaborator; removed attachments are deleted through it.
        config: Settings; defaults to the process-wide config.
        clock: Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        store: ChatStore,
        events: EventRouter,
        files: Optional[ImageStorageService] = None,
        config: Optional[AppSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.events = events
        self.files = files
        self.config = config or get_config()
        self.clock = clock

    @property
    def registry(self) -> RoomRegistry:
        return self.events.registry

    # =========================================================================
    # Chats
    # =========================================================================

    async def create_chat(
        self, identity: Identity, member_ids: List[str], name: Optional[str] = None
    ) -> Tuple[Chat, bool]:
        """Create a chat, or return the existing one for the same members.

        Members are told about a new chat through chat_created; finding an
        existing chat publishes nothing.
        """
        self.store.remember_user(identity.user_id, identity.username)
        chat, existing = self.store.create_chat(identity.user_id, member_ids, name)
        if not existing:
            await self.events.publish_chat_created(chat)
        return chat, existing

    def get_chat(self, identity: Identity, chat_id: str) -> Chat:
        chat = self.store.get_chat(chat_id)
        self._require_member(chat_id, identity.user_id)
        return chat

    def list_chats(self, identity: Identity) -> List[ChatSummary]:
        return self.store.get_user_chats(identity.user_id)

    async def leave_chat(self, identity: Identity, chat_id: str) -> bool:
        """Leave a chat; the last member out deletes it with its images.

        Returns:
            True if the chat was deleted.
        """
        self._require_member(chat_id, identity.user_id)
        await self.events.clear_typing(chat_id, identity.user_id)
        fully_deleted, image_urls = self.store.leave_chat(chat_id, identity.user_id)
        self.registry.forget_chat(chat_id, None if fully_deleted else identity.user_id)
        if image_urls:
            self._delete_images(image_urls)
        return fully_deleted

    # =========================================================================
    # Messages
    # =========================================================================

    def get_messages(
        self,
        identity: Identity,
        chat_id: str,
        limit: Optional[int] = None,
        cursor: Optional[Cursor] = None,
    ) -> MessagePage:
        """Read one page of history, newest first.

        The limit is clamped to [1, max_page_size]; a missing limit uses the
        configured default page size.
        """
        self._require_member(chat_id, identity.user_id)
        settings = self.config.messages
        if limit is None:
            limit = settings.default_page_size
        limit = max(1, min(limit, settings.max_page_size))
        return self.store.get_chat_messages(chat_id, limit, cursor)

    async def send_message(
        self, identity: Identity, chat_id: str, request: SendMessageRequest
    ) -> Message:
        self._require_member(chat_id, identity.user_id)
        content = _normalize_content(request.content)
        self._validate_body(content, request.images)

        self.store.remember_user(identity.user_id, identity.username)
        message = self.store.create_message(
            message_id=request.id,
            chat_id=chat_id,
            sender_id=identity.user_id,
            sender_username=identity.username,
            content=content,
            image_urls=request.images,
            sent_at=self.clock(),
        )
        await self.events.publish_message_sent(message)
        return message

    async def edit_message(
        self, identity: Identity, message_id: str, request: EditMessageRequest
    ) -> Message:
        message = self.store.get_message(message_id)
        self._require_member(message.chat_id, identity.user_id)
        if message.sender_id != identity.user_id:
            raise ForbiddenError("Only the sender can edit this message")
        if message.is_deleted:
            raise ValidationError("Deleted messages cannot be edited")

        window = self.config.messages.edit_window_seconds
        if self.clock() - message.sent_at > window:
            logger.info(f"[Messages] Rejected late edit of {message_id} by {identity.user_id}")
            raise EditWindowExpiredError(message_id, window)

        content = _normalize_content(request.content)
        images = message.images if request.images is None else request.images
        self._validate_body(content, images)

        updated = self.store.edit_message(message_id, content, images)
        removed = [url for url in message.images if url not in images]
        if removed:
            self._delete_images(removed)

        await self.events.publish_message_edited(updated)
        return updated

    async def delete_message(self, identity: Identity, message_id: str) -> Message:
        message = self.store.get_message(message_id)
        self._require_member(message.chat_id, identity.user_id)
        if message.sender_id != identity.user_id:
            raise ForbiddenError("Only the sender can delete this message")
        if message.is_deleted:
            return message

        deleted = self.store.soft_delete_message(message_id)
        if message.images:
            self._delete_images(message.images)

        await self.events.publish_message_deleted(deleted)
        return deleted

    def get_read_receipts(self, identity: Identity, chat_id: str) -> List[ReadReceipt]:
        self._require_member(chat_id, identity.user_id)
        return self.store.get_read_receipts(chat_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_member(self, chat_id: str, user_id: str) -> None:
        if not self.store.is_member(chat_id, user_id):
            raise NotAMemberError(chat_id, user_id)

    def _validate_body(self, content: Optional[str], images: List[str]) -> None:
        settings = self.config.messages
        if content is None and not images:
            raise ValidationError("Message must have content or images")
        if content is not None and len(content) > settings.max_content_length:
            raise ValidationError(
                f"Message content exceeds {settings.max_content_length} characters"
            )
        if len(images) > settings.max_images:
            raise ValidationError(f"A message can carry at most {settings.max_images} images")

    def _delete_images(self, urls: List[str]) -> None:
        if self.files is None:
            logger.warning(f"[Messages] No image storage configured, {len(urls)} images left on disk")
            return
        self.files.delete_images(urls)
