"""Parley Backend Application.

This is the main entry point for the Parley chat service: real-time
one-to-one and group messaging with presence, typing indicators,
attachments and delivery/read receipts.

Modules:
    - chat: WebSocket gateway, chat core, chats and messages REST API
    - store: DuckDB-backed users, chats, messages and receipts
    - files: attachment upload/download
    - auth: gateway-forwarded identity and user registration
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley.auth.router import router as users_router
from parley.chat.chats_router import router as chats_router
from parley.chat.manager import manager
from parley.chat.messages_router import router as messages_router
from parley.chat.router import router as chat_router
from parley.config import get_config
from parley.files.router import router as files_router
from parley.files.service import BlobStorageService
from parley.store.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every HTTP request; httpx/httpcore (TestClient) log
# every connection.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in parley.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = ChatStore.get_instance(config.storage.db_path)
    BlobStorageService.get_instance(
        upload_dir=config.storage.upload_dir,
        db_path=config.storage.blob_db_path,
        max_file_size_bytes=config.storage.max_file_size_bytes,
    )
    manager.start(store)
    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    manager.shutdown()
    BlobStorageService.reset_instance()
    ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Parley API",
    description="Real-time chat sessions and message delivery",
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

# Register all routers
app.include_router(chat_router)
app.include_router(chats_router)
app.include_router(messages_router)
app.include_router(files_router)
app.include_router(users_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of live connections.
    """
    return {"status": "ok", "connections": manager.rooms.connection_count}
