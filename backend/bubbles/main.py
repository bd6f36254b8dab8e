"""Bubbles Backend Application.

This is the main entry point for the Bubbles realtime chat service.

Modules:
    - auth: JWT identity for HTTP requests and socket handshakes
    - chat: DuckDB chat store, room registry, event router, HTTP + WebSocket routes
    - files: image uploads referenced by message attachments
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bubbles.chat.router import router as chat_router, set_event_router
from bubbles.chat.store import ChatStore
from bubbles.config import get_config
from bubbles.files.router import router as files_router
from bubbles.files.service import ImageStorageService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every TCP connection; websockets logs every frame.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
    "multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in bubbles.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = ChatStore.get_instance(config.storage.db_path)
    ImageStorageService.get_instance(
        upload_dir=config.storage.upload_dir,
        db_path=config.storage.files_db_path,
        public_base_url=config.storage.public_base_url,
    )
    logger.info(
        f"Chat store ready at {store._db_path}; serving on "
        f"http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    set_event_router(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Bubbles API",
    description="Realtime chat backend: chats, messages, typing indicators and read receipts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
