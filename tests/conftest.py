"""Shared fixtures: SQLite-backed sessions, in-memory queues and seed data."""

from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from harvester.db.models import (
    Base,
    Execution,
    ExecutionLog,
    ExecutionStatus,
    Retailer,
    Source,
    SourceKind,
    SourceType,
)
from harvester.queue.base import JobQueue, QueuedJob, Queues
from harvester.queue.jobs import FETCH_QUEUE


class MemoryQueue(JobQueue):
    """In-process queue with the same identity rules as the Redis queue.

    Delays are recorded but not enforced; a delayed job is immediately
    reservable so tests can drive it by hand.
    """

    def __init__(self, name: str):
        super().__init__(name)
        self.jobs: dict[str, QueuedJob] = {}
        self.ready: list[str] = []
        self.delays: dict[str, float] = {}
        self.completed: set[str] = set()
        self.failed: dict[str, str] = {}
        self.retain_completed = name != FETCH_QUEUE

    async def add(self, job_id: str, payload: dict[str, Any], delay_seconds: float = 0) -> bool:
        if job_id in self.jobs or job_id in self.completed:
            return False
        self.jobs[job_id] = QueuedJob(id=job_id, queue=self.name, payload=payload)
        self.delays[job_id] = delay_seconds
        self.ready.append(job_id)
        return True

    async def reserve(self) -> Optional[QueuedJob]:
        if not self.ready:
            return None
        return self.jobs[self.ready.pop(0)]

    async def complete(self, job: QueuedJob) -> None:
        self.jobs.pop(job.id, None)
        if self.retain_completed:
            self.completed.add(job.id)

    async def retry(self, job: QueuedJob, delay_seconds: float, error: str) -> None:
        job.attempts += 1
        job.last_error = error
        self.delays[job.id] = delay_seconds
        self.ready.append(job.id)

    async def fail(self, job: QueuedJob, error: str) -> None:
        self.jobs.pop(job.id, None)
        self.failed[job.id] = error

    async def in_flight(self, job_id: str) -> bool:
        return job_id in self.jobs

    def payloads(self) -> list[dict[str, Any]]:
        """Payloads of jobs waiting to be reserved, in order."""
        return [self.jobs[job_id].payload for job_id in self.ready]


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def queues() -> Queues:
    return Queues(MemoryQueue)


@pytest_asyncio.fixture
async def retailer(session_factory) -> Retailer:
    async with session_factory() as session:
        retailer = Retailer(name="Ammo Depot", website="https://ammodepot.example")
        session.add(retailer)
        await session.commit()
        return retailer


@pytest.fixture
def make_source(session_factory):
    """Factory for sources; defaults to a single-page JSON source."""

    async def _make(**overrides) -> Source:
        fields = {
            "name": "Ammo Depot",
            "url": "https://ammodepot.example/api/products",
            "source_type": SourceType.JSON.value,
            "source_kind": SourceKind.DIRECT.value,
        }
        fields.update(overrides)
        async with session_factory() as session:
            source = Source(**fields)
            session.add(source)
            await session.commit()
            return source

    return _make


@pytest_asyncio.fixture
async def source(make_source, retailer) -> Source:
    return await make_source(retailer_id=retailer.id)


@pytest.fixture
def make_execution(session_factory):
    async def _make(source_id: int) -> int:
        async with session_factory() as session:
            execution = Execution(source_id=source_id, status=ExecutionStatus.PENDING.value)
            session.add(execution)
            await session.commit()
            return execution.id

    return _make


@pytest.fixture
def execution_logs(session_factory):
    """Audit entries of an execution, oldest first."""

    async def _logs(execution_id: int) -> list[ExecutionLog]:
        async with session_factory() as session:
            result = await session.scalars(
                select(ExecutionLog)
                .where(ExecutionLog.execution_id == execution_id)
                .order_by(ExecutionLog.id)
            )
            return list(result)

    return _logs


@pytest.fixture
def get_execution(session_factory):
    async def _get(execution_id: int) -> Execution:
        async with session_factory() as session:
            return await session.get(Execution, execution_id)

    return _get
