"""Shared fixtures: in-memory SQLite store, recording queue, fake Redis cache."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.layer import cache_layer
from taskboard.models import Task, TaskStatus


class RecordingQueue:
    """In-memory JobSubmitter that keeps every batch and dedups by key."""

    def __init__(self):
        self.batches = []
        self.keys = set()
        self.fail_with: Exception | None = None

    async def submit_batch(self, jobs):
        if self.fail_with is not None:
            raise self.fail_with
        self.batches.append(list(jobs))
        accepted = []
        for job in jobs:
            accepted.append(job.key not in self.keys)
            self.keys.add(job.key)
        return accepted

    async def submit(self, job):
        (accepted,) = await self.submit_batch([job])
        return accepted

    @property
    def jobs(self):
        return [job for batch in self.batches for job in batch]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest_asyncio.fixture(autouse=True)
async def cache():
    await cache_layer.init_cache(redis=fakeredis.aioredis.FakeRedis(decode_responses=True))
    yield cache_layer
    await cache_layer.close()


@pytest.fixture
def add_task(session_factory):
    async def _add(title: str, *, status=TaskStatus.PENDING, due_date=None, **fields) -> Task:
        async with session_factory() as session:
            task = Task(title=title, status=status, due_date=due_date, **fields)
            session.add(task)
            await session.commit()
            await session.refresh(task)
            return task

    return _add


@pytest.fixture
def load_task(session_factory):
    async def _load(task_id: int) -> Task | None:
        async with session_factory() as session:
            return await session.get(Task, task_id)

    return _load


@pytest_asyncio.fixture
async def client(session_factory, queue) -> AsyncGenerator[AsyncClient, None]:
    from taskboard.database import get_db
    from taskboard.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.task_queue = queue

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": "user-1", "X-User-Role": "user"},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.task_queue = None
