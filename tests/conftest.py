"""Pytest configuration and fixtures."""

import io
import random
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tracelens_service.api.auth import create_access_token
from tracelens_service.core.config import Settings
from tracelens_service.db.image_store import ImageRecordStore
from tracelens_service.db.models import Base, ImageRecord, User
from tracelens_service.db.session import get_db
from tracelens_service.faces.detector import MockFaceDetector
from tracelens_service.main import create_app
from tracelens_service.storage import AsyncFileStorage, LocalFileStorage

# Use SQLite for tests (no external dependencies)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_JWT_SECRET = "test-secret-key"


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Clear settings cache before and after each test so environment changes are picked up."""
    from tracelens_service.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def use_test_settings(monkeypatch, tmp_path: Path):
    """Point environment-derived settings at test-safe locations.

    Ensures nothing a test triggers through ``get_settings()`` writes into the
    working directory or talks to a real database.
    """
    monkeypatch.setenv("DATABASE_URL", TEST_DATABASE_URL)
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "env-uploads"))
    monkeypatch.setenv("JWT_SECRET_KEY", TEST_JWT_SECRET)
    monkeypatch.setenv("FACE_DETECTOR_PROVIDER", "mock")
    yield


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings instance used by the app and services under test."""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        UPLOAD_DIR=str(tmp_path / "uploads"),
        JWT_SECRET_KEY=TEST_JWT_SECRET,
        MOCK_DETECTOR_SEED=42,
    )


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine with SQLite in-memory."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session with transaction rollback.

    Each test gets a fresh session that rolls back after the test,
    ensuring test isolation.
    """
    async_session = async_sessionmaker(db_engine, expire_on_commit=False)

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def local_storage(test_settings: Settings) -> LocalFileStorage:
    return LocalFileStorage(test_settings.upload_dir)


@pytest.fixture
def storage(local_storage: LocalFileStorage) -> AsyncFileStorage:
    return AsyncFileStorage(local_storage)


@pytest.fixture
def mock_detector() -> MockFaceDetector:
    """Mock detector with a fixed seed for reproducible faces."""
    return MockFaceDetector(rng=random.Random(42))


@pytest.fixture
def image_store(db_session: AsyncSession) -> ImageRecordStore:
    return ImageRecordStore(db_session)


async def _create_user(db_session: AsyncSession, email: str) -> User:
    user = User(email=email, is_verified=True)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def owner(db_session: AsyncSession) -> User:
    """The user most tests act as."""
    return await _create_user(db_session, "owner@example.com")


@pytest.fixture
async def other_owner(db_session: AsyncSession) -> User:
    """A second user whose images must stay invisible to ``owner``."""
    return await _create_user(db_session, "someone-else@example.com")


@pytest.fixture
def image_bytes_factory() -> Callable[..., bytes]:
    """Factory fixture producing encoded image bytes.

    Example:
        def test_something(image_bytes_factory):
            content = image_bytes_factory(width=800, height=600, fmt="PNG")
    """

    def _create(width: int = 64, height: int = 48, fmt: str = "JPEG") -> bytes:
        img = Image.new("RGB", (width, height), color=(120, 160, 200))
        buffer = io.BytesIO()
        img.save(buffer, format=fmt)
        return buffer.getvalue()

    return _create


@pytest.fixture
def temp_image_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory fixture for creating temporary test images on disk.

    Example:
        def test_something(temp_image_factory):
            image_path = temp_image_factory("test.jpg", width=100, height=100)
    """

    def _create_image(filename: str = "test.jpg", width: int = 10, height: int = 10) -> Path:
        # Create RGB image with gradient pattern
        img = Image.new("RGB", (width, height))
        pixels = img.load()

        # Simple gradient pattern for visual variety
        if pixels is not None:
            for x in range(width):
                for y in range(height):
                    r = int((x / width) * 255)
                    g = int((y / height) * 255)
                    pixels[x, y] = (r, g, 128)

        image_path = tmp_path / filename
        img.save(image_path)
        return image_path

    return _create_image


@pytest.fixture
def stored_image_factory(
    image_store: ImageRecordStore,
    local_storage: LocalFileStorage,
    image_bytes_factory: Callable[..., bytes],
) -> Callable[..., Awaitable[ImageRecord]]:
    """Factory fixture that writes an image to storage and registers its record.

    Example:
        async def test_something(stored_image_factory, owner):
            record = await stored_image_factory(owner.id, width=800, height=600)
    """

    async def _create(
        owner_id: int,
        original_name: str = "photo.jpg",
        width: int = 64,
        height: int = 48,
        record_dimensions: bool = True,
    ) -> ImageRecord:
        content = image_bytes_factory(width=width, height=height)
        stored = local_storage.save(content, original_name)
        return await image_store.create(
            owner_id=owner_id,
            filename=stored.filename,
            original_name=original_name,
            path=stored.path,
            size=stored.size,
            mime_type="image/jpeg",
            width=width if record_dimensions else None,
            height=height if record_dimensions else None,
        )

    return _create


@pytest.fixture
def failing_writes(db_session: AsyncSession) -> Callable[[str, str], Awaitable[None]]:
    """Factory fixture making INSERT or UPDATE of one image_records row fail in SQLite.

    Installs a trigger that aborts the statement, so the failure comes from the
    database itself and goes through the real rollback path.

    Example:
        async def test_something(failing_writes):
            await failing_writes("INSERT", "broken.jpg")
    """
    installed: list[str] = []

    async def _install(operation: str, original_name: str) -> None:
        row = "NEW" if operation == "INSERT" else "OLD"
        trigger = f"fail_{operation.lower()}_{len(installed)}"
        quoted = original_name.replace("'", "''")
        await db_session.execute(
            text(
                f"CREATE TRIGGER {trigger} BEFORE {operation} ON image_records "
                f"WHEN {row}.original_name = '{quoted}' "
                "BEGIN SELECT RAISE(ABORT, 'write rejected by test trigger'); END"
            )
        )
        await db_session.commit()
        installed.append(trigger)

    return _install


@pytest.fixture
def auth_headers(test_settings: Settings) -> Callable[[User], dict[str, str]]:
    """Build an Authorization header for a user."""

    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(user.id, test_settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def test_client(
    db_session: AsyncSession,
    test_settings: Settings,
    mock_detector: MockFaceDetector,
    storage: AsyncFileStorage,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client for FastAPI application with dependency overrides.

    Overrides:
        - get_db: Uses test database session (SQLite in-memory)
        - detector and storage on app.state: seeded mock detector, tmp_path storage

    Yields:
        AsyncClient for making test requests
    """
    app = create_app(settings=test_settings, detector=mock_detector, storage=storage)

    # Override dependencies to use test fixtures
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    # Create test client
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    # Clear overrides after test
    app.dependency_overrides.clear()
