"""Optimistic mutation pipeline.

Send, edit and delete are applied to the timeline before any network call and
confirmed or rolled back afterwards:

    1. Validate locally (edit window, content rules); reject before any I/O
    2. Apply the optimistic copy to the timeline under the client-minted id
    3. Notify peers over the socket (typing stops when a message is sent)
    4. Upload every attached image; all must succeed
    5. Issue the durable HTTP request
    6. Success: merge the server copy by id (placeholder URLs replaced)
       Failure: roll the timeline back, hand the compose input back to the
       caller, report through on_error and raise MutationFailedError
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx

from bubbles.auth import Identity
from bubbles.chat.schemas import EditMessageRequest, Message, SendMessageRequest, new_message_id
from bubbles.config import MessageSettings
from bubbles.errors import (
    BubblesError,
    EditWindowExpiredError,
    ForbiddenError,
    MutationFailedError,
    NotFoundError,
    ValidationError,
)

from .api import BubblesApiClient
from .presence import TypingNotifier
from .timeline import PENDING_IMAGE_SCHEME, Timeline

logger = logging.getLogger(__name__)

# Failures that roll an optimistic mutation back
RECOVERABLE_ERRORS = (BubblesError, httpx.HTTPError)


@dataclass
class ImageFile:
    """An image picked in the compose box, not uploaded yet."""
    filename: str
    content: bytes
    mime_type: str


@dataclass
class ComposeInput:
    """What the user typed and attached."""
    content: str = ""
    images: List[ImageFile] = field(default_factory=list)


class OptimisticPipeline:
    """Runs mutations for one chat timeline.

    Args:
        timeline: The timeline to update optimistically.
        api: HTTP client for uploads and durable requests.
        identity: The current user.
        settings: Message rules (edit window, limits).
        typing: Typing notifier to stop when a message goes out.
        on_error: Called with the MutationFailedError of every rollback.
        on_restore_input: Called with the original ComposeInput after a
            failed send so the compose box can be repopulated.
        clock: Current epoch time in seconds.
    """

    def __init__(
        self,
        timeline: Timeline,
        api: BubblesApiClient,
        identity: Identity,
        settings: Optional[MessageSettings] = None,
        typing: Optional[TypingNotifier] = None,
        on_error: Optional[Callable[[MutationFailedError], None]] = None,
        on_restore_input: Optional[Callable[[ComposeInput], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeline = timeline
        self.api = api
        self.identity = identity
        self.settings = settings or MessageSettings()
        self.typing = typing
        self.on_error = on_error
        self.on_restore_input = on_restore_input
        self.clock = clock

    @property
    def chat_id(self) -> str:
        return self.timeline.chat_id

    # =========================================================================
    # Send
    # =========================================================================

    async def send_message(self, compose: ComposeInput) -> Message:
        """Send a message with optional images.

        Raises:
            ValidationError: Empty, too long or too many images (nothing applied).
            MutationFailedError: Upload or persistence failed; rolled back.
        """
        content = compose.content.strip() or None
        self._validate_body(content, len(compose.images))

        message_id = new_message_id()
        optimistic = Message(
            id=message_id,
            chat_id=self.chat_id,
            sender_id=self.identity.user_id,
            sender_username=self.identity.username,
            content=content,
            images=[f"{PENDING_IMAGE_SCHEME}{message_id}/{i}" for i in range(len(compose.images))],
            sent_at=self.clock(),
        )
        self.timeline.upsert(optimistic, pending=True)

        if self.typing is not None:
            await self.typing.stop()

        uploaded: List[str] = []
        try:
            for image in compose.images:
                uploaded.append(await self.api.upload_image(image.filename, image.content, image.mime_type))
            persisted = await self.api.send_message(
                self.chat_id,
                SendMessageRequest(id=message_id, content=content, images=uploaded),
            )
        except RECOVERABLE_ERRORS as e:
            self.timeline.remove(message_id)
            await self._discard_uploads(uploaded)
            if self.on_restore_input is not None:
                self.on_restore_input(compose)
            self._fail(f"Failed to send message: {_describe(e)}", message_id, e)

        self.timeline.upsert(persisted)
        logger.debug(f"[Mutations] Message {message_id} confirmed")
        return persisted

    # =========================================================================
    # Edit
    # =========================================================================

    async def edit_message(
        self,
        message_id: str,
        content: Optional[str],
        images: Optional[List[str]] = None,
    ) -> Message:
        """Edit one of the current user's messages.

        Args:
            message_id: The message to edit.
            content: New text.
            images: New attachment URLs (a subset of the current ones);
                None keeps the current attachments.

        Raises:
            EditWindowExpiredError: Outside the edit window (no request made).
            MutationFailedError: The server rejected the edit; rolled back.
        """
        original = self._own_message(message_id, "edit")
        if original.is_deleted:
            raise ValidationError("Deleted messages cannot be edited")

        window = self.settings.edit_window_seconds
        if self.clock() - original.sent_at > window:
            raise EditWindowExpiredError(message_id, window)

        content = (content or "").strip() or None
        kept_images = original.images if images is None else images
        self._validate_body(content, len(kept_images))

        self.timeline.edit(message_id, content, kept_images)
        try:
            updated = await self.api.edit_message(
                message_id, EditMessageRequest(content=content, images=images)
            )
        except RECOVERABLE_ERRORS as e:
            self.timeline.restore(original)
            self._fail(f"Failed to edit message: {_describe(e)}", message_id, e)

        self.timeline.upsert(updated)
        return updated

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete_message(self, message_id: str) -> Message:
        """Soft-delete one of the current user's messages.

        Raises:
            MutationFailedError: The server rejected the delete; rolled back.
        """
        original = self._own_message(message_id, "delete")
        if original.is_deleted:
            return original

        self.timeline.delete(message_id)
        try:
            deleted = await self.api.delete_message(message_id)
        except RECOVERABLE_ERRORS as e:
            self.timeline.restore(original)
            self._fail(f"Failed to delete message: {_describe(e)}", message_id, e)

        self.timeline.upsert(deleted)
        return deleted

    # =========================================================================
    # Helpers
    # =========================================================================

    def _own_message(self, message_id: str, action: str) -> Message:
        message = self.timeline.get(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.sender_id != self.identity.user_id:
            raise ForbiddenError(f"Only the sender can {action} this message")
        if message_id in self.timeline.pending_ids:
            raise ValidationError("Message is still being sent")
        return message

    def _validate_body(self, content: Optional[str], image_count: int) -> None:
        if content is None and image_count == 0:
            raise ValidationError("Message must have content or images")
        if content is not None and len(content) > self.settings.max_content_length:
            raise ValidationError(
                f"Message content exceeds {self.settings.max_content_length} characters"
            )
        if image_count > self.settings.max_images:
            raise ValidationError(f"A message can carry at most {self.settings.max_images} images")

    async def _discard_uploads(self, urls: List[str]) -> None:
        if not urls:
            return
        try:
            await self.api.delete_images(urls)
        except RECOVERABLE_ERRORS as e:
            logger.warning(f"[Mutations] Could not delete {len(urls)} uploads after a failed send: {e}")

    def _fail(self, message: str, message_id: str, cause: Exception) -> None:
        error = MutationFailedError(message, message_id, cause)
        logger.warning(f"[Mutations] {message}")
        if self.on_error is not None:
            self.on_error(error)
        raise error from cause


def _describe(error: Exception) -> str:
    if isinstance(error, BubblesError):
        return error.message
    return str(error) or error.__class__.__name__
