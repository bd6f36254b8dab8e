"""Client-side connection manager for the realtime socket.

Keeps at most one live socket per manager and hides connectivity errors from
application code:

    - Frames sent while disconnected are queued and flushed FIFO on open
    - Every chat the client joined is re-joined after each (re)connect,
      because server-side joins do not survive a dropped socket
    - Unexpected closes are retried with exponential backoff
      (base * 2**attempt, capped), the counter resetting on a successful open
    - A rejected credential (close 1008 or a 401/403 handshake) stops
      reconnecting; callers must connect again with a fresh credential
    - disconnect() is final for the instance and cancels pending reconnects

Usage:
    conn = ConnectionManager("ws://localhost:8000/ws")
    unsubscribe = conn.on("message_sent", timeline.on_message_sent)
    await conn.connect(token)
    await conn.join_chat(chat_id)
"""
import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus
from websockets.typing import Subprotocol

from bubbles.auth.service import SUBPROTOCOL_PREFIX
from bubbles.chat.schemas import EventType, frame
from bubbles.config import RealtimeSettings
from bubbles.errors import AuthenticationError

logger = logging.getLogger(__name__)

# Close code the server uses for a rejected credential
POLICY_VIOLATION = 1008

Handler = Callable[[Dict[str, Any]], Any]


class TransportClosed(Exception):
    """The socket went away. ``code`` is the close code when one was received."""

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"Connection closed (code={code}, reason={reason!r})")


class Transport(ABC):
    """One open socket. Implementations raise TransportClosed once it is gone."""

    @abstractmethod
    async def send(self, data: str) -> None:
        pass

    @abstractmethod
    async def recv(self) -> str:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


TransportFactory = Callable[[str, str], Awaitable[Transport]]


class WebSocketTransport(Transport):
    """Transport over the ``websockets`` client.

    The credential travels as a ``Bearer.<token>`` subprotocol, which is the
    one handshake slot browsers and native clients both support.
    """

    def __init__(self, connection) -> None:
        self._connection = connection

    @classmethod
    async def open(cls, url: str, credential: str, open_timeout: float = 10.0) -> "WebSocketTransport":
        try:
            connection = await ws_connect(
                url,
                subprotocols=[Subprotocol(f"{SUBPROTOCOL_PREFIX}{credential}")],
                open_timeout=open_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationError(f"Handshake rejected with HTTP {status}") from e
            raise
        return cls(connection)

    async def send(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e

    async def recv(self) -> str:
        try:
            data = await self._connection.recv()
        except ConnectionClosed as e:
            raise TransportClosed(*_close_details(e)) from e
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return data

    async def close(self) -> None:
        await self._connection.close()


def _close_details(error: ConnectionClosed):
    if error.rcvd is None:
        return None, ""
    return error.rcvd.code, error.rcvd.reason


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    UNAUTHORIZED = "unauthorized"
    CLOSED = "closed"


class ConnectionManager:
    """Owns the realtime socket of one client.

    Attributes:
        url: WebSocket endpoint.
        state: Current ConnectionState.
        joined_chats: Chats to (re)join on every open.
        pending: Frames waiting for an open socket, oldest first.
    """

    def __init__(
        self,
        url: str,
        transport_factory: Optional[TransportFactory] = None,
        settings: Optional[RealtimeSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_state_change: Optional[Callable[["ConnectionState"], Any]] = None,
    ) -> None:
        self.url = url
        self.settings = settings or RealtimeSettings()
        self._transport_factory = transport_factory or self._default_factory
        self._sleep = sleep
        self._on_state_change = on_state_change

        self.state = ConnectionState.IDLE
        self.joined_chats: Set[str] = set()
        self.pending: Deque[Dict[str, Any]] = deque()
        self.reconnect_attempts = 0

        self._handlers: Dict[str, List[Handler]] = {}
        self._credential: Optional[str] = None
        self._transport: Optional[Transport] = None
        self._task: Optional[asyncio.Task] = None
        self._should_reconnect = True
        self._closed = False

    async def _default_factory(self, url: str, credential: str) -> Transport:
        return await WebSocketTransport.open(url, credential, self.settings.request_timeout_seconds)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.OPEN and self._transport is not None

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (0-based)."""
        return min(self.settings.reconnect_base_delay * (2 ** attempt), self.settings.reconnect_max_delay)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, credential: str) -> None:
        """Open the socket with a credential.

        A no-op while a socket is open or a reconnect loop is running. If the
        first attempt fails for a transient reason, the reconnect loop takes
        over in the background.

        Raises:
            AuthenticationError: The credential was rejected at handshake.
            RuntimeError: disconnect() was already called on this manager.
        """
        if self._closed:
            raise RuntimeError("ConnectionManager was disconnected; create a new one to reconnect")
        if self.is_connected or (self._task is not None and not self._task.done()):
            return

        self._credential = credential
        self._should_reconnect = True
        self.reconnect_attempts = 0

        try:
            await self._open()
        except AuthenticationError:
            await self._close_transport()
            self._set_state(ConnectionState.UNAUTHORIZED)
            raise
        except Exception as e:
            logger.warning(f"[Connection] Initial connect failed: {e}")
            await self._close_transport()
            self._task = asyncio.create_task(self._run(opened=False))
            return

        self._task = asyncio.create_task(self._run(opened=True))

    async def disconnect(self) -> None:
        """Close the socket and disable reconnection for this instance."""
        self._closed = True
        self._should_reconnect = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_transport()
        self._set_state(ConnectionState.CLOSED)
        logger.info("[Connection] Disconnected")

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        transport = await self._transport_factory(self.url, self._credential)
        self._transport = transport
        self.reconnect_attempts = 0
        logger.info(f"[Connection] Connected to {self.url}")

        # Stay CONNECTING until the backlog is out: send() keeps queueing
        # behind it, and chats joined meanwhile are picked up here.
        await self._flush_pending()
        rejoined: Set[str] = set()
        while self.joined_chats - rejoined:
            chat_id = min(self.joined_chats - rejoined)
            rejoined.add(chat_id)
            await self._write(frame(EventType.JOIN_CHAT, {"chat_id": chat_id}))
        await self._flush_pending()
        self._set_state(ConnectionState.OPEN)

    async def _run(self, opened: bool) -> None:
        """Read while open; reconnect with backoff after unexpected closes."""
        while self._should_reconnect:
            if not opened:
                self._set_state(ConnectionState.RECONNECTING)
                delay = self.backoff_delay(self.reconnect_attempts)
                logger.info(f"[Connection] Reconnecting in {delay:.1f}s (attempt {self.reconnect_attempts + 1})")
                await self._sleep(delay)
                self.reconnect_attempts += 1
                if not self._should_reconnect:
                    break
                try:
                    await self._open()
                except AuthenticationError as e:
                    logger.warning(f"[Connection] Credential rejected: {e.message}")
                    self._set_state(ConnectionState.UNAUTHORIZED)
                    return
                except Exception as e:
                    logger.warning(f"[Connection] Reconnect failed: {e}")
                    await self._close_transport()
                    continue

            opened = False
            code = await self._read_until_closed()
            if code == POLICY_VIOLATION:
                logger.warning("[Connection] Server rejected the credential, not reconnecting")
                self._set_state(ConnectionState.UNAUTHORIZED)
                return

        self._set_state(ConnectionState.CLOSED)

    async def _read_until_closed(self) -> Optional[int]:
        transport = self._transport
        code: Optional[int] = None
        try:
            while True:
                raw = await transport.recv()
                await self._dispatch(raw)
        except TransportClosed as e:
            code = e.code
            logger.info(f"[Connection] Socket closed (code={e.code})")
        except Exception as e:
            logger.warning(f"[Connection] Socket error: {e}")
        self._transport = None
        return code

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"[Connection] Error closing transport: {e}")

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """Send a frame now, or queue it until the socket opens.

        Returns:
            True if the frame was written to an open socket.
        """
        message = frame(EventType(event_type), payload)
        if self.is_connected:
            try:
                await self._write(message)
                return True
            except TransportClosed as e:
                logger.debug(f"[Connection] Send failed, queueing: {e}")
        self._enqueue(message)
        return False

    async def join_chat(self, chat_id: str) -> None:
        """Join a chat now and after every reconnect."""
        self.joined_chats.add(chat_id)
        if self.is_connected:
            await self.send(EventType.JOIN_CHAT.value, {"chat_id": chat_id})

    async def leave_chat(self, chat_id: str) -> None:
        self.joined_chats.discard(chat_id)
        if self.is_connected:
            await self.send(EventType.LEAVE_CHAT.value, {"chat_id": chat_id})

    async def _write(self, message: Dict[str, Any]) -> None:
        if self._transport is None:
            raise TransportClosed()
        await self._transport.send(json.dumps(message))

    def _enqueue(self, message: Dict[str, Any]) -> None:
        if len(self.pending) >= self.settings.pending_queue_max:
            dropped = self.pending.popleft()
            logger.warning(f"[Connection] Pending queue full, dropped oldest {dropped['type']} frame")
        self.pending.append(message)

    async def _flush_pending(self) -> None:
        while self.pending:
            message = self.pending[0]
            await self._write(message)
            self.pending.popleft()

    # =========================================================================
    # Inbound
    # =========================================================================

    def on(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for one frame type.

        Returns:
            A callable that removes the handler.
        """
        key = EventType(event_type).value
        self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(key)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[key]

        return unsubscribe

    async def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
            event_type = message["type"]
            payload = message.get("payload") or {}
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"[Connection] Error parsing frame: {e}")
            return

        for handler in list(self._handlers.get(event_type, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"[Connection] Handler for {event_type} failed")
