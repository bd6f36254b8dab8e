"""Client library for the Bubbles realtime API.

    - connection.ConnectionManager: one reconnecting socket, queue and rejoin
    - timeline.Timeline: reconciled, ordered message list of a chat
    - mutations.OptimisticPipeline: optimistic send/edit/delete with rollback
    - presence: typing indicators and read acknowledgements
    - api.BubblesApiClient: REST calls over httpx
"""
from .api import BubblesApiClient
from .connection import ConnectionManager, ConnectionState, Transport, TransportClosed
from .mutations import ComposeInput, ImageFile, OptimisticPipeline
from .presence import ReadReceiptNotifier, TypingNotifier, TypingTracker
from .timeline import ScrollState, Timeline

__all__ = [
    "BubblesApiClient",
    "ComposeInput",
    "ConnectionManager",
    "ConnectionState",
    "ImageFile",
    "OptimisticPipeline",
    "ReadReceiptNotifier",
    "ScrollState",
    "Timeline",
    "Transport",
    "TransportClosed",
    "TypingNotifier",
    "TypingTracker",
]
