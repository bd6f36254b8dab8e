"""Room registry for the realtime socket layer.

Every authenticated socket joins exactly one room keyed by its user identity
(``user:{id}``). Fan-out to a chat means emitting to the user rooms of the
chat's active members, which reaches every tab and device of each member
without a connection registry keyed by chat.

Key features:
    - One room per user, any number of sockets per room
    - Per-socket joined-chat set caching the membership check of join_chat
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup
    - Emitting to a room with no sockets is a silent no-op

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
    Room membership is mutated only by connect/disconnect and join/leave.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from bubbles.auth import Identity

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    """Name of the room that holds every socket of a user."""
    return f"user:{user_id}"


class RoomRegistry:
    """Maps user identities to their live sockets.

    Note:
        The application uses one module-level instance (``manager``); the
        event router and tests receive it explicitly so fresh registries can
        be built in isolation.
    """

    def __init__(self) -> None:
        # room name -> list of live sockets
        self.rooms: Dict[str, List[WebSocket]] = {}

        # socket -> identity it authenticated as
        self.socket_identity: Dict[WebSocket, Identity] = {}

        # socket -> chat ids it has joined (membership already verified)
        self.joined_chats: Dict[WebSocket, Set[str]] = {}

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def connect(self, websocket: WebSocket, identity: Identity) -> str:
        """Register an authenticated socket in its user's room.

        Returns:
            The room name the socket joined.
        """
        room = user_room(identity.user_id)
        self.rooms.setdefault(room, []).append(websocket)
        self.socket_identity[websocket] = identity
        self.joined_chats[websocket] = set()
        logger.info(
            f"[Registry] {identity.username} ({identity.user_id}) connected. "
            f"Room {room} now has {len(self.rooms[room])} sockets"
        )
        return room

    def disconnect(self, websocket: WebSocket) -> Optional[Identity]:
        """Remove a socket from every room it belongs to.

        Returns:
            The identity of the socket, or None if it was not registered.
        """
        identity = self.socket_identity.pop(websocket, None)
        self.joined_chats.pop(websocket, None)
        if identity is None:
            return None

        room = user_room(identity.user_id)
        sockets = self.rooms.get(room, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.rooms.pop(room, None)
        logger.info(f"[Registry] {identity.user_id} disconnected. Remaining in {room}: {len(sockets)}")
        return identity

    def get_identity(self, websocket: WebSocket) -> Optional[Identity]:
        return self.socket_identity.get(websocket)

    def is_online(self, user_id: str) -> bool:
        return bool(self.rooms.get(user_room(user_id)))

    def get_room_size(self, room: str) -> int:
        """Get the number of live sockets in a room."""
        return len(self.rooms.get(room, []))

    # =========================================================================
    # Chat joins
    # =========================================================================

    def join_chat(self, websocket: WebSocket, chat_id: str) -> None:
        """Record that a socket joined a chat (membership checked by caller)."""
        if websocket in self.joined_chats:
            self.joined_chats[websocket].add(chat_id)

    def leave_chat(self, websocket: WebSocket, chat_id: str) -> None:
        self.joined_chats.get(websocket, set()).discard(chat_id)

    def has_joined(self, websocket: WebSocket, chat_id: str) -> bool:
        return chat_id in self.joined_chats.get(websocket, set())

    def forget_chat(self, chat_id: str, user_id: Optional[str] = None) -> None:
        """Drop a chat from the joined sets, for one user or for everyone."""
        for ws, identity in self.socket_identity.items():
            if user_id is None or identity.user_id == user_id:
                self.joined_chats.get(ws, set()).discard(chat_id)

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def emit_to_room(self, room: str, message: dict) -> int:
        """Send a message to every socket in a room concurrently.

        Returns:
            Number of sockets the message was delivered to.
        """
        connections = self.rooms.get(room, []).copy()
        if not connections:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(failed_connections)
        return len(connections) - len(failed_connections)

    async def emit_to_users(
        self,
        user_ids: Iterable[str],
        message: dict,
        exclude_user_id: Optional[str] = None,
    ) -> int:
        """Send a message to the rooms of several users.

        Args:
            user_ids: Recipients; duplicates are ignored.
            message: JSON-serializable frame.
            exclude_user_id: User whose sockets are skipped (the sender, for
                typing and read receipt relays).

        Returns:
            Total number of sockets reached.
        """
        rooms = {user_room(uid) for uid in user_ids if uid and uid != exclude_user_id}
        if not rooms:
            return 0
        counts = await asyncio.gather(*[self.emit_to_room(room, message) for room in sorted(rooms)])
        return sum(counts)

    async def send_to(self, websocket: WebSocket, message: dict) -> bool:
        """Send a frame to a single socket (handshake replies, errors)."""
        return await self._safe_send(websocket, message)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a socket, returning False if the socket is dead."""
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"[Registry] Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[WebSocket]) -> None:
        for conn in failed_connections:
            if self.disconnect(conn) is not None:
                logger.debug("[Registry] Removed dead connection")


# Global instance used by the WebSocket endpoint
manager = RoomRegistry()
