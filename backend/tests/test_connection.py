"""Tests for the client connection manager.

The socket is replaced by an in-memory transport so reconnects, close codes
and backoff delays can be driven deterministically.
"""
import asyncio
import json
import logging

import pytest

from bubbles.client.connection import (
    ConnectionManager,
    ConnectionState,
    Transport,
    TransportClosed,
)
from bubbles.config import RealtimeSettings
from bubbles.errors import AuthenticationError

_CLOSED = object()


class FakeTransport(Transport):
    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.close_code = None
        # Called after each frame is written; the writer then yields once
        self.on_send = None

    async def send(self, data: str) -> None:
        if self.closed:
            raise TransportClosed(self.close_code)
        self.sent.append(json.loads(data))
        if self.on_send is not None:
            self.on_send(self.sent[-1])
            await asyncio.sleep(0)

    async def recv(self) -> str:
        item = await self.inbox.get()
        if item is _CLOSED:
            raise TransportClosed(self.close_code)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSED)

    def push(self, event_type: str, payload: dict) -> None:
        self.inbox.put_nowait(json.dumps({"type": event_type, "payload": payload}))

    def drop(self, code: int = 1006) -> None:
        """Simulate the server going away."""
        self.close_code = code
        self.closed = True
        self.inbox.put_nowait(_CLOSED)

    def types(self):
        return [f["type"] for f in self.sent]


class FakeServer:
    """Transport factory recording every socket it opens."""

    def __init__(self):
        self.transports = []
        self.credentials = []
        self.reject = False
        self.fail_next = 0
        self.on_send = None

    async def __call__(self, url: str, credential: str) -> FakeTransport:
        self.credentials.append(credential)
        if self.reject:
            raise AuthenticationError("Handshake rejected with HTTP 401")
        if self.fail_next:
            self.fail_next -= 1
            raise OSError("connection refused")
        transport = FakeTransport()
        transport.on_send = self.on_send
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


class RecordingSleep:
    def __init__(self, block: bool = False):
        self.delays = []
        self.block = block

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.block:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


async def until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def make_manager(server, sleep=None, **settings):
    return ConnectionManager(
        "ws://test/ws",
        transport_factory=server,
        settings=RealtimeSettings(**settings),
        sleep=sleep or RecordingSleep(),
    )


class TestConnect:
    """Tests for opening the socket."""

    @pytest.mark.asyncio
    async def test_queued_frames_flush_before_rejoins(self):
        server = FakeServer()
        conn = make_manager(server)
        await conn.join_chat("chat-y")
        await conn.join_chat("chat-x")
        assert await conn.send("typing_start", {"chat_id": "chat-x", "user_id": "u1"}) is False

        await conn.connect("token-1")

        assert conn.state == ConnectionState.OPEN
        assert server.current.types() == ["typing_start", "join_chat", "join_chat"]
        assert [f["payload"]["chat_id"] for f in server.current.sent[1:]] == ["chat-x", "chat-y"]
        assert not conn.pending
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_send_during_flush_queues_behind_backlog(self):
        server = FakeServer()
        conn = make_manager(server)
        for message_id in ("q1", "q2", "q3"):
            await conn.send("message_read", {"chat_id": "c", "message_id": message_id})
        live = []

        def send_live(_frame):
            if not live:
                live.append(asyncio.ensure_future(
                    conn.send("message_read", {"chat_id": "c", "message_id": "live"})
                ))

        server.on_send = send_live
        await conn.connect("token-1")

        assert await live[0] is False
        assert [f["payload"]["message_id"] for f in server.current.sent] == ["q1", "q2", "q3", "live"]
        assert conn.state == ConnectionState.OPEN
        assert not conn.pending
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_noop_while_open(self):
        server = FakeServer()
        conn = make_manager(server)
        await conn.connect("token-1")
        await conn.connect("token-1")
        assert len(server.transports) == 1
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_handshake_rejection_raises_and_stops(self):
        server = FakeServer()
        server.reject = True
        conn = make_manager(server)

        with pytest.raises(AuthenticationError):
            await conn.connect("expired")

        assert conn.state == ConnectionState.UNAUTHORIZED
        await asyncio.sleep(0)
        assert len(server.credentials) == 1

    @pytest.mark.asyncio
    async def test_transient_initial_failure_retries_in_background(self):
        server = FakeServer()
        server.fail_next = 1
        sleep = RecordingSleep()
        conn = make_manager(server, sleep=sleep)

        await conn.connect("token-1")
        await until(lambda: conn.state == ConnectionState.OPEN)

        assert sleep.delays == [1.0]
        await conn.disconnect()


class TestReconnect:
    """Tests for recovery after the socket drops."""

    @pytest.mark.asyncio
    async def test_rejoins_every_chat_and_receives_events(self):
        server = FakeServer()
        conn = make_manager(server)
        received = []
        conn.on("message_sent", received.append)

        await conn.connect("token-1")
        await conn.join_chat("chat-x")
        await conn.join_chat("chat-y")
        first = server.current

        first.drop()
        await until(lambda: len(server.transports) == 2 and conn.is_connected)

        second = server.current
        assert [f["payload"]["chat_id"] for f in second.sent if f["type"] == "join_chat"] == ["chat-x", "chat-y"]
        assert server.credentials == ["token-1", "token-1"]

        second.push("message_sent", {"id": "m-1", "chat_id": "chat-x"})
        await until(lambda: received)
        assert received[0]["id"] == "m-1"
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_backoff_doubles_then_resets_after_open(self):
        server = FakeServer()
        sleep = RecordingSleep()
        conn = make_manager(server, sleep=sleep)
        await conn.connect("token-1")

        server.fail_next = 3
        server.current.drop()
        await until(lambda: len(server.transports) == 2 and conn.is_connected)
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
        assert conn.reconnect_attempts == 0

        server.current.drop()
        await until(lambda: len(server.transports) == 3 and conn.is_connected)
        assert sleep.delays[-1] == 1.0
        await conn.disconnect()

    def test_backoff_is_capped(self):
        conn = make_manager(FakeServer())
        assert conn.backoff_delay(0) == 1.0
        assert conn.backoff_delay(4) == 16.0
        assert conn.backoff_delay(10) == 30.0

    @pytest.mark.asyncio
    async def test_policy_violation_close_stops_reconnecting(self):
        server = FakeServer()
        sleep = RecordingSleep()
        states = []
        conn = make_manager(server, sleep=sleep)
        conn._on_state_change = states.append

        await conn.connect("token-1")
        server.current.drop(code=1008)
        await until(lambda: conn.state == ConnectionState.UNAUTHORIZED)

        assert sleep.delays == []
        assert len(server.transports) == 1
        assert states[-1] == ConnectionState.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self):
        server = FakeServer()
        sleep = RecordingSleep(block=True)
        conn = make_manager(server, sleep=sleep)
        await conn.connect("token-1")

        server.current.drop()
        await until(lambda: sleep.delays)
        await conn.disconnect()

        assert conn.state == ConnectionState.CLOSED
        assert len(server.transports) == 1

    @pytest.mark.asyncio
    async def test_connect_after_disconnect_is_refused(self):
        server = FakeServer()
        conn = make_manager(server)
        await conn.connect("token-1")
        await conn.disconnect()

        with pytest.raises(RuntimeError):
            await conn.connect("token-2")
        server.current.drop()
        await asyncio.sleep(0.01)

        assert server.credentials == ["token-1"]
        assert len(server.transports) == 1
        assert conn.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_frames_sent_while_reconnecting_are_flushed(self):
        server = FakeServer()
        sleep = RecordingSleep(block=True)
        conn = make_manager(server, sleep=sleep)
        await conn.connect("token-1")

        server.current.drop()
        await until(lambda: sleep.delays)
        assert await conn.send("message_read", {"chat_id": "c", "message_id": "m"}) is False
        assert len(conn.pending) == 1
        await conn.disconnect()


class TestQueueAndHandlers:
    """Tests for the pending queue and event subscriptions."""

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self, caplog):
        conn = make_manager(FakeServer(), pending_queue_max=3)
        with caplog.at_level(logging.WARNING, logger="bubbles.client.connection"):
            for i in range(5):
                await conn.send("message_read", {"chat_id": "c", "message_id": f"m-{i}"})

        assert [f["payload"]["message_id"] for f in conn.pending] == ["m-2", "m-3", "m-4"]
        assert "dropped oldest" in caplog.text

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_reader(self):
        server = FakeServer()
        conn = make_manager(server)
        seen = []

        def broken(payload):
            raise RuntimeError("boom")

        async def recording(payload):
            seen.append(payload["id"])

        conn.on("message_deleted", broken)
        conn.on("message_deleted", recording)
        await conn.connect("token-1")

        server.current.push("message_deleted", {"id": "a", "chat_id": "c"})
        server.current.inbox.put_nowait("not json")
        server.current.push("message_deleted", {"id": "b", "chat_id": "c"})
        await until(lambda: len(seen) == 2)

        assert seen == ["a", "b"]
        assert conn.is_connected
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        server = FakeServer()
        conn = make_manager(server)
        seen = []
        unsubscribe = conn.on("typing_start", seen.append)
        conn.on("typing_stop", seen.append)
        await conn.connect("token-1")

        unsubscribe()
        server.current.push("typing_start", {"chat_id": "c", "user_id": "u"})
        server.current.push("typing_stop", {"chat_id": "c", "user_id": "u"})
        await until(lambda: seen)

        assert seen == [{"chat_id": "c", "user_id": "u"}]
        assert "typing_start" not in conn._handlers
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_leave_chat_is_not_rejoined(self):
        server = FakeServer()
        conn = make_manager(server)
        await conn.connect("token-1")
        await conn.join_chat("chat-x")
        await conn.leave_chat("chat-x")

        assert conn.joined_chats == set()
        assert server.current.types() == ["join_chat", "leave_chat"]
        await conn.disconnect()
