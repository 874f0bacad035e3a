"""Pytest configuration and fixtures."""

import tempfile
from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
from ticketq.domain.models import Queue, Task, Ticket
from ticketq.infrastructure.config import QueueConfig
from ticketq.infrastructure.database import Database
from ticketq.services import (
    DependencyResolver,
    Dispatcher,
    QueueService,
    StatsService,
    TaskOrderingManager,
    TicketService,
)

PROJECT_ID = 1
OTHER_PROJECT_ID = 2


# Database fixtures
@pytest.fixture
def temp_db_path() -> Generator[Path, None, None]:
    """Create temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup, including WAL side files
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
async def memory_db() -> AsyncGenerator[Database, None]:
    """Create in-memory database for fast tests."""
    db = Database(Path(":memory:"))
    await db.initialize()
    yield db
    # Cleanup: close the shared connection for :memory: databases
    await db.close()


@pytest.fixture
async def file_db(temp_db_path: Path) -> AsyncGenerator[Database, None]:
    """Create file-based database for persistence and concurrency tests."""
    db = Database(temp_db_path)
    await db.initialize()
    yield db
    await db.close()


# Service fixtures
@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig()


@pytest.fixture
def resolver(memory_db: Database) -> DependencyResolver:
    return DependencyResolver(memory_db)


@pytest.fixture
def ordering(memory_db: Database, resolver: DependencyResolver) -> TaskOrderingManager:
    return TaskOrderingManager(memory_db, resolver)


@pytest.fixture
def ticket_service(memory_db: Database) -> TicketService:
    return TicketService(memory_db)


@pytest.fixture
def queue_service(memory_db: Database, queue_config: QueueConfig) -> QueueService:
    return QueueService(memory_db, queue_config)


@pytest.fixture
def dispatcher(
    memory_db: Database,
    resolver: DependencyResolver,
    ordering: TaskOrderingManager,
    queue_config: QueueConfig,
) -> Dispatcher:
    return Dispatcher(memory_db, resolver, ordering, queue_config)


@pytest.fixture
def stats_service(memory_db: Database, queue_config: QueueConfig) -> StatsService:
    return StatsService(memory_db, queue_config)


# Sample data fixtures
@pytest.fixture
async def ticket(ticket_service: TicketService) -> Ticket:
    """An open ticket in PROJECT_ID with no tasks."""
    return await ticket_service.create_ticket(PROJECT_ID, "Implement login")


@pytest.fixture
async def chain(ordering: TaskOrderingManager, ticket: Ticket) -> list[Task]:
    """Three tasks of ``ticket``: A, B depends on A, C depends on B."""
    a = await ordering.create_task(ticket.id, "A")
    b = await ordering.create_task(ticket.id, "B", dependencies=[a.id])
    c = await ordering.create_task(ticket.id, "C", dependencies=[b.id])
    return [a, b, c]


@pytest.fixture
async def queue(queue_service: QueueService) -> Queue:
    """An active queue in PROJECT_ID with max_parallel_items=1."""
    return await queue_service.create_queue(PROJECT_ID, "main")
