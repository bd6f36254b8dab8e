"""Chats, messages and the realtime socket layer.

Server modules:
    - store.ChatStore: DuckDB persistence (source of truth)
    - manager.RoomRegistry: user rooms and socket fan-out
    - events.EventRouter: inbound socket events and post-persist broadcasts
    - service.MessageService: business rules of the durable request path
    - router: HTTP and WebSocket endpoints
"""
