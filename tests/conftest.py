"""
Pytest Configuration and Fixtures

This file contains shared fixtures and configuration for all tests.
External collaborators (identity directory, blob store, notification
sink, video token issuer) are replaced with mocks for every test.
"""

import os
from typing import AsyncGenerator, Callable, Dict
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before importing app
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["IDENTITY_SIGNING_KEY"] = "test-signing-key"
os.environ["VIDEO_SERVER_SECRET"] = "test-video-secret"
os.environ["VIDEO_APP_ID"] = "test-app"
os.environ.pop("PRESENCE_BUS_URL", None)
os.environ.pop("REDIS_URL", None)

from main import app
from core.database import Base, get_db
from core.security import create_access_token
from services.attachment_service import attachment_service
from services.chat_locks import chat_locks
from services.chat_service import chat_service
from services.inbox_cache import inbox_cache
from services.presence_service import presence_registry
from services.realtime_gateway import realtime_gateway
from integrations.identity_client import identity_client
from middleware.rate_limit import limiter


# Test database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# User ids with this prefix do not exist in the identity directory
MISSING_USER_PREFIX = "missing-"


# ===========================================
# Database Fixtures
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """
    Fresh in-memory database per test. Every session shares the single
    connection, so a second session sees what the first one committed.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    previous = attachment_service.session_factory
    attachment_service.session_factory = factory

    yield factory

    attachment_service.session_factory = previous
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.
    """
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test client with overridden database dependency.
    """

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


# ===========================================
# Process State
# ===========================================

@pytest_asyncio.fixture(autouse=True)
async def reset_chat_state():
    """Per-process registries start empty for every test."""
    limiter.reset()
    yield
    inbox_cache.clear()
    presence_registry.reset()
    await realtime_gateway.reset()
    chat_locks.reset()
    attachment_service.reset()
    identity_client.clear_cache()


@pytest.fixture
def chat_events():
    """Domain events published by the chat store during the test."""
    events = []

    async def capture(event):
        events.append(event)

    chat_service.add_listener(capture)
    yield events
    chat_service.remove_listener(capture)


# ===========================================
# Authentication Fixtures
# ===========================================

@pytest.fixture
def make_user() -> Callable[..., Dict[str, str]]:
    """
    Factory fixture to create user data.
    """
    def _make_user(name: str = None, email: str = None) -> dict:
        from faker import Faker
        fake = Faker()

        return {
            "id": str(uuid4()),
            "name": name or fake.name(),
            "email": email or fake.email(),
        }

    return _make_user


@pytest.fixture
def alice(make_user) -> dict:
    return make_user(name="Alice")


@pytest.fixture
def bob(make_user) -> dict:
    return make_user(name="Bob")


@pytest.fixture
def carol(make_user) -> dict:
    return make_user(name="Carol")


@pytest.fixture
def auth_headers_for() -> Callable[[dict], Dict[str, str]]:
    """
    Create authentication headers with a test JWT token.
    """
    def _headers(user: dict) -> dict:
        token = create_access_token(data=user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def auth_headers(alice, auth_headers_for) -> dict:
    return auth_headers_for(alice)


# ===========================================
# Mock Fixtures
# ===========================================

@pytest.fixture(autouse=True)
def mock_identity(mocker):
    """
    Identity directory: every user exists except ids starting with
    MISSING_USER_PREFIX.
    """
    async def lookup(user_id):
        user_id = str(user_id)
        if user_id.startswith(MISSING_USER_PREFIX):
            return None
        return {
            "id": user_id,
            "displayName": f"User {user_id[:8]}",
            "avatarUrl": None,
        }

    return mocker.patch(
        "integrations.identity_client.identity_client.get_user",
        side_effect=lookup,
    )


@pytest.fixture(autouse=True)
def mock_blob_store(mocker):
    """
    Blob store: uploads succeed with a unique publicId, destroys succeed.
    """
    async def upload(content, file_name, content_type, chat_id, folder="files"):
        public_id = f"chat/{chat_id}/{folder}/{uuid4()}"
        return {
            "url": f"https://blobs.test/{public_id}",
            "publicId": public_id,
            "bytes": len(content),
            "width": None,
            "height": None,
            "format": None,
        }

    mock = mocker.MagicMock()
    mock.upload = mocker.patch(
        "integrations.blob_store.blob_store.upload", side_effect=upload,
    )
    mock.destroy = mocker.patch(
        "integrations.blob_store.blob_store.destroy", new_callable=mocker.AsyncMock,
    )
    mock.open_download = mocker.patch(
        "integrations.blob_store.blob_store.open_download", new_callable=mocker.AsyncMock,
    )
    mock.open_download.return_value = FakeBlobDownload(b"file-bytes")
    return mock


@pytest.fixture(autouse=True)
def mock_notify(mocker):
    """
    Notification sink: accepts every batch.
    """
    return mocker.patch(
        "integrations.notify.notify_client.notify_client.send_bulk",
        new_callable=mocker.AsyncMock,
        return_value={"created": 1},
    )


@pytest.fixture(autouse=True)
def mock_video_tokens(mocker):
    """
    Video token issuer: returns a deterministic token per (user, room).
    """
    async def issue(user_id, room_id, ttl_seconds=None):
        return {
            "token": f"token-{user_id}-{room_id}",
            "appID": "test-app",
            "userID": user_id,
            "roomID": room_id,
            "expiresIn": 3600,
        }

    return mocker.patch(
        "services.video_token_service.video_token_service.issue",
        side_effect=issue,
    )


# ===========================================
# Utility Fixtures
# ===========================================

class FakeBlobDownload:
    """Stands in for an open upstream response."""

    def __init__(self, body: bytes, chunk_size: int = 4):
        self.body = body
        self.chunk_size = chunk_size
        self.closed = False

    @property
    def content_length(self):
        return str(len(self.body))

    async def iter_bytes(self):
        try:
            for i in range(0, len(self.body), self.chunk_size):
                yield self.body[i:i + self.chunk_size]
        finally:
            self.closed = True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def blob_download():
    """Build a fake upstream response from bytes."""
    return FakeBlobDownload


@pytest.fixture
def sample_image() -> bytes:
    """
    1x1 transparent PNG.
    """
    return (
        b'\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01'
        b'\x08\x06\x00\x00\x00\x1f\x15\xc4\x89\x00\x00\x00\nIDATx\x9cc\x00'
        b'\x01\x00\x00\x05\x00\x01\r\n-\xb4\x00\x00\x00\x00IEND\xaeB`\x82'
    )


@pytest_asyncio.fixture
async def personal_chat(db_session, alice, bob):
    """Personal chat between alice and bob."""
    return await chat_service.open_or_find_personal_chat(db_session, alice["id"], bob["id"])


@pytest_asyncio.fixture
async def group_chat(db_session, alice, bob, carol):
    """Group chat created by alice with bob and carol."""
    return await chat_service.create_group_chat(
        db_session, alice["id"], "Study group", [bob["id"], carol["id"]],
    )
