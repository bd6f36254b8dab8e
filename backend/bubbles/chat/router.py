"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws: the realtime channel of an authenticated user
    - POST /chats, GET /chats, GET /chats/{chat_id}, POST /chats/{chat_id}/leave
    - GET/POST /chats/{chat_id}/messages: paginated history and durable sends
    - PATCH/DELETE /messages/{message_id}: edit and soft delete
    - GET /chats/{chat_id}/read-receipts: current read pointers

Writes go through HTTP and are broadcast after they are persisted; the socket
carries only ephemeral signals (joins, typing, read acknowledgements) inbound.

Protocol Flow:
    1. Client opens /ws with its token (``token`` query parameter,
       ``Authorization`` header or ``Bearer.<token>`` subprotocol)
       -> invalid: socket closed with 1008, nothing joined
       -> valid: Server sends {type: "connected", payload: {user_id, username}}
    2. Client sends {type: "join_chat", payload: {chat_id}} for open chats
    3. Client sends typing_start / typing_stop / message_read as the user acts
       -> relayed to the other members' rooms
    4. Messages sent over HTTP arrive as message_sent / message_edited /
       message_deleted frames on every member's sockets
"""
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from bubbles.auth import Identity, extract_bearer_token, require_identity, resolve_credential
from bubbles.auth.service import SUBPROTOCOL_PREFIX
from bubbles.config import get_config
from bubbles.errors import AuthenticationError, BubblesError
from bubbles.files.service import ImageStorageService

from .events import EventRouter
from .manager import manager
from .schemas import (
    Chat,
    ChatSummary,
    CreateChatRequest,
    CreateChatResponse,
    Cursor,
    EditMessageRequest,
    EventType,
    Message,
    MessagePage,
    ReadReceipt,
    SendMessageRequest,
    frame,
)
from .service import MessageService
from .store import ChatStore

logger = logging.getLogger(__name__)

router = APIRouter()

_event_router: Optional[EventRouter] = None


def get_event_router() -> EventRouter:
    """Return the process-wide event router, bound to the global registry."""
    global _event_router
    if _event_router is None:
        _event_router = EventRouter(manager, ChatStore.get_instance())
    return _event_router


def set_event_router(event_router: Optional[EventRouter]) -> None:
    """Replace (or with None, drop) the process-wide event router."""
    global _event_router
    _event_router = event_router


def get_message_service() -> MessageService:
    config = get_config()
    return MessageService(
        store=ChatStore.get_instance(),
        events=get_event_router(),
        files=ImageStorageService.get_instance(),
        config=config,
    )


# =============================================================================
# WebSocket
# =============================================================================


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Access token (alternative to subprotocol)"),
) -> None:
    """Realtime channel of one authenticated socket.

    SECURITY MODEL:
        - The identity comes from the handshake credential only
        - Every inbound event is attributed to that identity, never to ids
          claimed in the payload
        - A rejected handshake never joins any room
    """
    subprotocols: List[str] = list(websocket.scope.get("subprotocols", []))
    credential = extract_bearer_token(
        authorization=websocket.headers.get("authorization"),
        query_token=token,
        subprotocols=subprotocols,
    )
    try:
        identity = resolve_credential(credential)
    except AuthenticationError as e:
        logger.warning(f"[WS] Handshake rejected: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    # Echo the bearer subprotocol back; browsers drop the socket otherwise
    accepted = next((p for p in subprotocols if p.startswith(SUBPROTOCOL_PREFIX)), None)
    await websocket.accept(subprotocol=accepted)

    events = get_event_router()
    events.store.remember_user(identity.user_id, identity.username)
    room = manager.connect(websocket, identity)
    logger.info(f"[WS] {identity.username} ({identity.user_id}) connected to {room}")

    try:
        await manager.send_to(websocket, frame(EventType.CONNECTED, identity.model_dump()))

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(websocket, frame(EventType.ERROR, {"error": "Invalid JSON"}))
                continue
            if not isinstance(data, dict):
                await manager.send_to(websocket, frame(EventType.ERROR, {"error": "Invalid message format"}))
                continue
            logger.debug("[WS] %s received: type=%s", identity.user_id, data.get("type", "?"))
            await events.handle(websocket, identity, data)

    except WebSocketDisconnect:
        logger.info(f"[WS] {identity.user_id} disconnected")
    finally:
        manager.disconnect(websocket)
        await events.handle_disconnect(identity)


# =============================================================================
# Chats
# =============================================================================


@router.post("/chats", response_model=CreateChatResponse)
async def create_chat(
    request: CreateChatRequest,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> CreateChatResponse:
    """Create a chat; a direct chat for an existing pair is returned as is."""
    try:
        chat, existing = await service.create_chat(identity, request.member_ids, request.name)
    except BubblesError as e:
        raise e.to_http()
    return CreateChatResponse(chat=chat, existing=existing)


@router.get("/chats", response_model=List[ChatSummary])
async def list_chats(
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> List[ChatSummary]:
    return service.list_chats(identity)


@router.get("/chats/{chat_id}", response_model=Chat)
async def get_chat(
    chat_id: str,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> Chat:
    try:
        return service.get_chat(identity, chat_id)
    except BubblesError as e:
        raise e.to_http()


@router.post("/chats/{chat_id}/leave")
async def leave_chat(
    chat_id: str,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> dict:
    """Leave a chat. The last member to leave deletes it."""
    try:
        deleted = await service.leave_chat(identity, chat_id)
    except BubblesError as e:
        raise e.to_http()
    return {"chat_id": chat_id, "deleted": deleted}


# =============================================================================
# Messages
# =============================================================================


@router.get("/chats/{chat_id}/messages", response_model=MessagePage)
async def get_chat_messages(
    chat_id: str,
    limit: Optional[int] = Query(None, description="Page size, clamped to the configured maximum"),
    cursor_sent_at: Optional[float] = Query(None, description="sent_at of the oldest message already loaded"),
    cursor_id: Optional[str] = Query(None, description="id of the oldest message already loaded"),
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> MessagePage:
    """Get one page of history, newest first.

    Example:
        GET /chats/abc/messages?limit=20
        GET /chats/abc/messages?limit=20&cursor_sent_at=1707321600.123&cursor_id=m-42
    """
    if (cursor_sent_at is None) != (cursor_id is None):
        raise HTTPException(status_code=400, detail="cursor_sent_at and cursor_id go together")
    cursor = Cursor(sent_at=cursor_sent_at, id=cursor_id) if cursor_id is not None else None
    try:
        return service.get_messages(identity, chat_id, limit, cursor)
    except BubblesError as e:
        raise e.to_http()


@router.post("/chats/{chat_id}/messages", response_model=Message)
async def send_message(
    chat_id: str,
    request: SendMessageRequest,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> Message:
    try:
        return await service.send_message(identity, chat_id, request)
    except BubblesError as e:
        raise e.to_http()


@router.patch("/messages/{message_id}", response_model=Message)
async def edit_message(
    message_id: str,
    request: EditMessageRequest,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> Message:
    try:
        return await service.edit_message(identity, message_id, request)
    except BubblesError as e:
        raise e.to_http()


@router.delete("/messages/{message_id}", response_model=Message)
async def delete_message(
    message_id: str,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> Message:
    try:
        return await service.delete_message(identity, message_id)
    except BubblesError as e:
        raise e.to_http()


@router.get("/chats/{chat_id}/read-receipts", response_model=List[ReadReceipt])
async def get_read_receipts(
    chat_id: str,
    identity: Identity = Depends(require_identity),
    service: MessageService = Depends(get_message_service),
) -> List[ReadReceipt]:
    try:
        return service.get_read_receipts(identity, chat_id)
    except BubblesError as e:
        raise e.to_http()
