"""Tests for the optimistic mutation pipeline and the HTTP client."""
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from bubbles.auth import Identity
from bubbles.chat.schemas import Cursor, EditMessageRequest, Message, SendMessageRequest
from bubbles.client.api import BubblesApiClient
from bubbles.client.mutations import ComposeInput, ImageFile, OptimisticPipeline
from bubbles.client.timeline import PENDING_IMAGE_SCHEME, Timeline
from bubbles.errors import (
    EditWindowExpiredError,
    ForbiddenError,
    MutationFailedError,
    NotFoundError,
    UploadError,
    ValidationError,
)

CHAT = "chat-1"
T0 = 1_700_000_000.0
ALICE = Identity(user_id="alice", username="Alice")


class FakeApi:
    """Records calls; the server copy is the request echoed back."""

    def __init__(self, timeline: Timeline = None):
        self.timeline = timeline
        self.calls = []
        self.fail_send = None
        self.fail_upload_at = None
        self.fail_edit = None
        self.fail_delete = None
        self.seen_during_send = None
        self.uploads = 0

    async def upload_image(self, filename, content, mime_type):
        self.calls.append(("upload_image", filename))
        if self.fail_upload_at is not None and self.uploads == self.fail_upload_at:
            raise UploadError("Upload failed")
        self.uploads += 1
        return f"http://testserver/uploads/images/{filename}"

    async def delete_images(self, urls):
        self.calls.append(("delete_images", list(urls)))

    async def send_message(self, chat_id, request: SendMessageRequest):
        self.calls.append(("send_message", request.id))
        if self.timeline is not None:
            self.seen_during_send = self.timeline.get(request.id)
        if self.fail_send is not None:
            raise self.fail_send
        return Message(
            id=request.id, chat_id=chat_id, sender_id="alice", sender_username="Alice",
            content=request.content, images=request.images, sent_at=T0 + 0.5,
        )

    async def edit_message(self, message_id, request: EditMessageRequest):
        self.calls.append(("edit_message", message_id))
        if self.fail_edit is not None:
            raise self.fail_edit
        current = self.timeline.get(message_id)
        return current.model_copy(update={"content": request.content, "is_edited": True})

    async def delete_message(self, message_id):
        self.calls.append(("delete_message", message_id))
        if self.fail_delete is not None:
            raise self.fail_delete
        current = self.timeline.get(message_id)
        return current.model_copy(update={"is_deleted": True, "content": None, "images": []})

    def names(self):
        return [name for name, _ in self.calls]


class Clock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now


@pytest.fixture
def timeline():
    return Timeline(CHAT, "alice", member_ids=["alice", "bob"])


@pytest.fixture
def api(timeline):
    return FakeApi(timeline)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def errors():
    return []


@pytest.fixture
def restored():
    return []


@pytest.fixture
def pipeline(timeline, api, clock, errors, restored):
    return OptimisticPipeline(
        timeline, api, ALICE,
        typing=MagicMock(stop=AsyncMock()),
        on_error=errors.append,
        on_restore_input=restored.append,
        clock=clock,
    )


def png(name="cat.png"):
    return ImageFile(filename=name, content=b"\x89PNG", mime_type="image/png")


def own_message(timeline, index=1, sent_at=T0, **overrides):
    message = Message(
        id=f"m-{index}", chat_id=CHAT, sender_id="alice", sender_username="Alice",
        content="original", sent_at=sent_at, **overrides,
    )
    timeline.upsert(message)
    return message


class TestSend:
    """Tests for optimistic sends."""

    @pytest.mark.asyncio
    async def test_optimistic_copy_then_server_copy(self, pipeline, timeline, api):
        persisted = await pipeline.send_message(ComposeInput(content=" hello ", images=[png("a.png"), png("b.png")]))

        optimistic = api.seen_during_send
        assert optimistic.content == "hello"
        assert optimistic.images == [f"{PENDING_IMAGE_SCHEME}{persisted.id}/0", f"{PENDING_IMAGE_SCHEME}{persisted.id}/1"]
        assert optimistic.sent_at == T0

        assert [m.id for m in timeline.messages] == [persisted.id]
        assert timeline.get(persisted.id).images == [
            "http://testserver/uploads/images/a.png",
            "http://testserver/uploads/images/b.png",
        ]
        assert timeline.read_status(persisted.id) == "sent"
        pipeline.typing.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_echo_before_response_is_not_duplicated(self, pipeline, timeline, api):
        original_send = api.send_message

        async def send_with_early_echo(chat_id, request):
            result = await original_send(chat_id, request)
            timeline.on_message_sent({**result.model_dump(), "member_ids": ["alice", "bob"]})
            return result

        api.send_message = send_with_early_echo
        persisted = await pipeline.send_message(ComposeInput(content="hi"))
        assert [m.id for m in timeline.messages] == [persisted.id]

    @pytest.mark.asyncio
    async def test_invalid_input_applies_nothing(self, pipeline, timeline, api):
        with pytest.raises(ValidationError):
            await pipeline.send_message(ComposeInput(content="   "))
        with pytest.raises(ValidationError):
            await pipeline.send_message(ComposeInput(content="x", images=[png() for _ in range(6)]))
        assert timeline.messages == []
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_persist_failure_rolls_back(self, pipeline, timeline, api, errors, restored):
        api.fail_send = httpx.ConnectError("offline")
        compose = ComposeInput(content="hello", images=[png()])

        with pytest.raises(MutationFailedError) as exc:
            await pipeline.send_message(compose)

        assert timeline.messages == []
        assert timeline.pending_ids == set()
        assert restored == [compose]
        assert errors == [exc.value]
        assert isinstance(exc.value.cause, httpx.ConnectError)
        assert api.names() == ["upload_image", "send_message", "delete_images"]

    @pytest.mark.asyncio
    async def test_upload_failure_skips_send(self, pipeline, timeline, api, restored):
        api.fail_upload_at = 1
        compose = ComposeInput(content="two pics", images=[png("a.png"), png("b.png")])

        with pytest.raises(MutationFailedError) as exc:
            await pipeline.send_message(compose)

        assert "send_message" not in api.names()
        assert ("delete_images", ["http://testserver/uploads/images/a.png"]) in api.calls
        assert timeline.messages == []
        assert restored == [compose]
        assert exc.value.status_code == 502


class TestEdit:
    """Tests for optimistic edits."""

    @pytest.mark.asyncio
    async def test_edit_applies_and_confirms(self, pipeline, timeline, api):
        own_message(timeline)
        updated = await pipeline.edit_message("m-1", "changed")
        assert updated.content == "changed"
        assert timeline.get("m-1").is_edited

    @pytest.mark.asyncio
    async def test_expired_window_makes_no_request(self, pipeline, timeline, api, clock):
        own_message(timeline)
        clock.now = T0 + 10 * 60 + 1

        with pytest.raises(EditWindowExpiredError):
            await pipeline.edit_message("m-1", "late")

        assert api.calls == []
        assert timeline.get("m-1").content == "original"

    @pytest.mark.asyncio
    async def test_server_rejection_restores_original(self, pipeline, timeline, api, errors):
        original = own_message(timeline, images=["http://testserver/uploads/images/a.png"])
        api.fail_edit = EditWindowExpiredError("m-1", 600)

        with pytest.raises(MutationFailedError) as exc:
            await pipeline.edit_message("m-1", "changed", images=[])

        assert timeline.get("m-1") == original
        assert exc.value.status_code == 400
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_cannot_edit_others_or_unknown(self, pipeline, timeline):
        timeline.upsert(Message(id="m-9", chat_id=CHAT, sender_id="bob", content="bob's", sent_at=T0))
        with pytest.raises(ForbiddenError):
            await pipeline.edit_message("m-9", "mine now")
        with pytest.raises(NotFoundError):
            await pipeline.edit_message("missing", "x")


class TestDelete:
    """Tests for optimistic deletes."""

    @pytest.mark.asyncio
    async def test_delete_confirms(self, pipeline, timeline):
        own_message(timeline)
        deleted = await pipeline.delete_message("m-1")
        assert deleted.is_deleted
        assert timeline.get("m-1").content is None

    @pytest.mark.asyncio
    async def test_delete_failure_restores(self, pipeline, timeline, api):
        original = own_message(timeline)
        api.fail_delete = httpx.ReadTimeout("slow")

        with pytest.raises(MutationFailedError):
            await pipeline.delete_message("m-1")

        assert timeline.get("m-1") == original

    @pytest.mark.asyncio
    async def test_pending_message_cannot_be_deleted(self, pipeline, timeline):
        timeline.upsert(Message(id="m-1", chat_id=CHAT, sender_id="alice", content="x", sent_at=T0), pending=True)
        with pytest.raises(ValidationError):
            await pipeline.delete_message("m-1")


class TestApiClient:
    """Tests for the httpx client against a mock transport."""

    @pytest.mark.asyncio
    async def test_history_request_and_error_mapping(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/chats/c1/messages":
                return httpx.Response(200, json={"items": [], "next_cursor": None, "has_more": False})
            return httpx.Response(403, json={"detail": "You are not a member of this chat"})

        async with BubblesApiClient("http://bubbles.test/", "tok", transport=httpx.MockTransport(handler)) as api:
            page = await api.get_chat_messages("c1", limit=20, cursor=Cursor(sent_at=T0, id="m-1"))
            assert page.items == []

            with pytest.raises(ForbiddenError) as exc:
                await api.get_chat("c2")
            assert exc.value.message == "You are not a member of this chat"

        assert requests[0].headers["authorization"] == "Bearer tok"
        assert requests[0].url.params["cursor_id"] == "m-1"
        assert float(requests[0].url.params["cursor_sent_at"]) == T0

    @pytest.mark.asyncio
    async def test_send_posts_client_minted_id(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json={**body, "chat_id": "c1", "sender_id": "alice", "sent_at": T0})

        async with BubblesApiClient("http://bubbles.test", "tok", transport=httpx.MockTransport(handler)) as api:
            message = await api.send_message("c1", SendMessageRequest(id="m-42", content="hi"))

        assert bodies[0]["id"] == "m-42"
        assert message.id == "m-42"
