"""HTTP client for the Bubbles REST API.

Thin httpx wrapper used by the mutation pipeline and timelines. Requests use a
fixed timeout and are never retried automatically: a retried send could
persist a message twice under a fresh id.

Error responses are mapped back onto the shared exception hierarchy, so
callers handle the same BubblesError subclasses on both sides of the wire.
"""
import logging
from typing import List, Optional

import httpx

from bubbles.chat.schemas import (
    Chat,
    ChatSummary,
    CreateChatResponse,
    Cursor,
    EditMessageRequest,
    Message,
    MessagePage,
    ReadReceipt,
    SendMessageRequest,
)
from bubbles.errors import (
    AuthenticationError,
    BubblesError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UploadError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _error_from_response(response: httpx.Response) -> BubblesError:
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    if not isinstance(detail, str):
        detail = str(detail)

    status = response.status_code
    if status == 400:
        return ValidationError(detail)
    if status == 401:
        return AuthenticationError(detail)
    if status == 403:
        return ForbiddenError(detail)
    if status == 404:
        return NotFoundError(detail)
    if status == 409:
        return ConflictError(detail)
    if status in (413, 415):
        return UploadError(detail, status_code=status)
    return BubblesError(detail, status_code=status)


class BubblesApiClient:
    """Async client for chats, messages and image uploads.

    Args:
        base_url: Server root, e.g. ``http://localhost:8000``.
        token: Bearer access token.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.ASGITransport``
            or ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BubblesApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        if response.is_error:
            error = _error_from_response(response)
            logger.debug(f"[Api] {method} {url} failed: {error.status_code} {error.message}")
            raise error
        return response

    # -- chats ----------------------------------------------------------------

    async def create_chat(self, member_ids: List[str], name: Optional[str] = None) -> CreateChatResponse:
        response = await self._request("POST", "/chats", json={"member_ids": member_ids, "name": name})
        return CreateChatResponse(**response.json())

    async def list_chats(self) -> List[ChatSummary]:
        response = await self._request("GET", "/chats")
        return [ChatSummary(**item) for item in response.json()]

    async def get_chat(self, chat_id: str) -> Chat:
        response = await self._request("GET", f"/chats/{chat_id}")
        return Chat(**response.json())

    async def leave_chat(self, chat_id: str) -> bool:
        response = await self._request("POST", f"/chats/{chat_id}/leave")
        return response.json()["deleted"]

    # -- messages -------------------------------------------------------------

    async def get_chat_messages(
        self, chat_id: str, limit: Optional[int] = None, cursor: Optional[Cursor] = None
    ) -> MessagePage:
        params = {}
        if limit is not None:
            params["limit"] = limit
        if cursor is not None:
            params["cursor_sent_at"] = cursor.sent_at
            params["cursor_id"] = cursor.id
        response = await self._request("GET", f"/chats/{chat_id}/messages", params=params)
        return MessagePage(**response.json())

    async def send_message(self, chat_id: str, request: SendMessageRequest) -> Message:
        response = await self._request("POST", f"/chats/{chat_id}/messages", json=request.model_dump())
        return Message(**response.json())

    async def edit_message(self, message_id: str, request: EditMessageRequest) -> Message:
        response = await self._request("PATCH", f"/messages/{message_id}", json=request.model_dump())
        return Message(**response.json())

    async def delete_message(self, message_id: str) -> Message:
        response = await self._request("DELETE", f"/messages/{message_id}")
        return Message(**response.json())

    async def get_read_receipts(self, chat_id: str) -> List[ReadReceipt]:
        response = await self._request("GET", f"/chats/{chat_id}/read-receipts")
        return [ReadReceipt(**item) for item in response.json()]

    # -- uploads --------------------------------------------------------------

    async def upload_image(self, filename: str, content: bytes, mime_type: str) -> str:
        """Upload one image and return its public URL."""
        response = await self._request(
            "POST",
            "/uploads/images",
            files={"file": (filename, content, mime_type)},
        )
        return response.json()["url"]

    async def delete_images(self, urls: List[str]) -> None:
        """No-op: the server deletes attachment files with their message.

        Uploads orphaned by a failed send stay on disk until an operator sweeps
        ``image_metadata`` rows that no message references.
        """
        if urls:
            logger.info(f"[Api] Leaving {len(urls)} orphaned uploads for server-side cleanup")
