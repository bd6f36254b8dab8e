"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from bubbles.auth import create_access_token
from bubbles.chat.manager import manager
from bubbles.chat.router import set_event_router
from bubbles.chat.store import ChatStore
from bubbles.config import AppSettings, reset_config, set_config
from bubbles.files.service import ImageStorageService


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket: records every frame sent to it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def frames(self, event_type=None):
        return [f for f in self.sent if event_type is None or f["type"] == event_type]


@pytest.fixture(autouse=True)
def settings(tmp_path):
    """In-memory databases and a throwaway upload dir for every test."""
    config = AppSettings()
    config.storage.db_path = ":memory:"
    config.storage.files_db_path = ":memory:"
    config.storage.upload_dir = str(tmp_path / "uploads")
    config.storage.public_base_url = "http://testserver"
    config.secrets.jwt.secret_key = "test-secret"
    set_config(config)
    yield config
    reset_config()


@pytest.fixture(autouse=True)
def clean_registry():
    """Clear the global room registry after each test to avoid interference."""
    yield
    manager.rooms.clear()
    manager.socket_identity.clear()
    manager.joined_chats.clear()


@pytest.fixture
def store():
    ChatStore.reset_instance()
    instance = ChatStore.get_instance(db_path=":memory:")
    yield instance
    ChatStore.reset_instance()


@pytest.fixture
def files(settings):
    ImageStorageService.reset_instance()
    instance = ImageStorageService.get_instance(
        upload_dir=settings.storage.upload_dir,
        db_path=":memory:",
        public_base_url=settings.storage.public_base_url,
    )
    yield instance
    ImageStorageService.reset_instance()


@pytest.fixture
def api_client(store, files):
    """Provide a TestClient for the main FastAPI app.

    Entered as a context manager so HTTP calls and WebSocket sessions share
    one event loop; broadcasts triggered over HTTP reach the open sockets.
    """
    from bubbles.main import app

    set_event_router(None)
    with TestClient(app) as client:
        yield client
    set_event_router(None)


def make_token(user_id: str, username: str = None) -> str:
    return create_access_token(user_id, username or user_id.capitalize())


def auth_headers(user_id: str, username: str = None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, username)}"}
