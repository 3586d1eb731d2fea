"""Pytest configuration and fixtures."""

import asyncio
import os
from collections.abc import AsyncGenerator

# Settings are read at import time, so the environment has to be ready first
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clarity.api.deps import create_access_token
from clarity.config import get_settings
from clarity.db.base import Base
from clarity.db.models import Brain, Stream, User
from clarity.db.session import get_db
from clarity.exceptions import ProcessingError
from clarity.main import app
from clarity.services.card_factory import CardFactory
from clarity.services.file_pipeline import FileUploadPipeline
from clarity.services.generation import CardGenerator
from clarity.services.job_handlers import register_handlers
from clarity.services.job_queue import JobQueue
from clarity.services.ledger import PositionLedger


# =============================================================================
# FAKES
# =============================================================================


class MemoryDocumentStore:
    """Document store keeping bytes in a dict."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.objects[key] = data

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise ProcessingError(f"Failed to read stored file: {key}") from None

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class FakeMessageStream:
    def __init__(self, chunks: list[str]):
        self.chunks = chunks

    async def __aenter__(self) -> "FakeMessageStream":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    @property
    def text_stream(self):
        async def generate():
            for chunk in self.chunks:
                yield chunk

        return generate()


class FakeMessages:
    def __init__(self, chunks: list[str]):
        self.chunks = chunks
        self.calls: list[dict] = []

    def stream(self, **kwargs) -> FakeMessageStream:
        self.calls.append(kwargs)
        return FakeMessageStream(self.chunks)


class FakeAnthropic:
    """Stands in for AsyncAnthropic: messages.stream() yields fixed chunks."""

    def __init__(self, chunks: tuple[str, ...] = ("Generated", " card", " text")):
        self.messages = FakeMessages(list(chunks))


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test, shared by every session the test opens."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'clarity.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# =============================================================================
# DATA
# =============================================================================
# Created in their own sessions so the returned objects are detached and
# unaffected by rollbacks in the session under test.


@pytest.fixture
async def user(session_factory) -> User:
    async with session_factory() as session:
        user = User(email="ada@example.com", name="Ada", storage_quota=10 * 1024 * 1024)
        session.add(user)
        await session.commit()
    return user


@pytest.fixture
async def brain(session_factory, user) -> Brain:
    async with session_factory() as session:
        brain = Brain(user_id=user.id, name="Research")
        session.add(brain)
        await session.commit()
    return brain


@pytest.fixture
async def stream(session_factory, brain) -> Stream:
    async with session_factory() as session:
        stream = Stream(brain_id=brain.id, name="Reading list")
        session.add(stream)
        await session.commit()
    return stream


@pytest.fixture
def ledger() -> PositionLedger:
    return PositionLedger()


@pytest.fixture
def cards(ledger) -> CardFactory:
    return CardFactory(ledger=ledger)


@pytest.fixture
def make_card(session_factory, cards, brain):
    """Create saved cards; returns their ids."""

    async def make(title: str, content: str | None = None, brain_id=None):
        async with session_factory() as session:
            card = await cards.create_saved(session, brain_id or brain.id, title, content or f"About {title}")
        return card.id

    return make


# =============================================================================
# SERVICES
# =============================================================================


@pytest.fixture
def document_store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def pipeline(document_store) -> FileUploadPipeline:
    return FileUploadPipeline(document_store, settings=get_settings())


@pytest.fixture
async def job_queue(session_factory, pipeline) -> AsyncGenerator[JobQueue, None]:
    """A started queue with the production handlers and no retry delay."""
    queue = JobQueue(session_factory, max_retries=3, job_timeout=10, retry_delay=0)
    register_handlers(queue, pipeline)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def wait_for_job():
    """Poll a queue until the job reaches a terminal state."""

    async def wait(queue: JobQueue, job_id, timeout: float = 5.0):
        async def poll():
            while True:
                job = await queue.get_status(job_id)
                if job is not None and job.is_terminal:
                    return job
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(poll(), timeout)

    return wait


@pytest.fixture
def fake_anthropic() -> FakeAnthropic:
    return FakeAnthropic()


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
async def client(session_factory, job_queue, pipeline, fake_anthropic) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ASGITransport does not run the lifespan, so wire app.state by hand
    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = session_factory
    app.state.job_queue = job_queue
    app.state.upload_pipeline = pipeline
    app.state.card_generator = CardGenerator(client=fake_anthropic)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
