"""Shared test fixtures and configuration for backend tests."""
import pytest
import pytest_asyncio

from parley.auth.service import set_auth_oracle
from parley.chat.manager import manager
from parley.config import AppConfig, StorageSettings, reset_config, set_config
from parley.files.service import BlobStorageService
from parley.store.service import ChatStore


class FakeWebSocket:
    """Stand-in for a Starlette WebSocket that records outbound events."""

    def __init__(self) -> None:
        self.sent = []
        self.accepted = False

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: dict) -> None:
        self.sent.append(message)

    def events(self, event_type: str) -> list:
        return [m for m in self.sent if m.get("type") == event_type]


class BrokenWebSocket(FakeWebSocket):
    """A socket whose peer has gone away: every send fails."""

    async def send_json(self, message: dict) -> None:
        raise RuntimeError("connection closed")


@pytest.fixture(autouse=True)
def isolated_services(tmp_path):
    """Use in-memory DuckDB and a temp upload dir for each test.

    Prevents tests from opening the file-based parley.duckdb, which can
    block if a dev server is running concurrently (DuckDB file lock).
    """
    config = AppConfig(
        storage=StorageSettings(
            db_path=":memory:",
            blob_db_path=":memory:",
            upload_dir=str(tmp_path / "uploads"),
        )
    )
    set_config(config)
    set_auth_oracle(None)

    ChatStore.reset_instance()
    BlobStorageService.reset_instance()
    store = ChatStore.get_instance(db_path=":memory:")
    BlobStorageService.get_instance(upload_dir=config.storage.upload_dir, db_path=":memory:")
    manager.start(store)

    yield config

    manager.shutdown()
    BlobStorageService.reset_instance()
    ChatStore.reset_instance()
    set_auth_oracle(None)
    reset_config()


@pytest.fixture
def store() -> ChatStore:
    return ChatStore.get_instance()


@pytest.fixture
def core():
    return manager


@pytest_asyncio.fixture
async def alice(store):
    return await store.create_user("alice", email="alice@example.com")


@pytest_asyncio.fixture
async def bob(store):
    return await store.create_user("bob", email="bob@example.com")


@pytest_asyncio.fixture
async def carol(store):
    return await store.create_user("carol", email="carol@example.com")


@pytest_asyncio.fixture
async def direct_chat(store, alice, bob):
    chat, _ = await store.create_direct_chat(alice.id, bob.id)
    return chat


@pytest.fixture
def make_socket():
    """Factory for recording sockets: ``make_socket()`` or ``make_socket(broken=True)``."""
    def _make(broken: bool = False) -> FakeWebSocket:
        return BrokenWebSocket() if broken else FakeWebSocket()
    return _make
