"""Entity store for tickets, tasks, queues and queue items on SQLite with WAL mode."""

import asyncio
import json
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

import aiosqlite
from aiosqlite import Connection
from pydantic import BaseModel

from ticketq.domain.models import (
    ItemType,
    Queue,
    QueueItem,
    QueueItemStatus,
    QueueLinkage,
    QueueUpdate,
    Task,
    TaskStatus,
    TaskUpdate,
    Ticket,
    TicketPriority,
    TicketStatus,
    TicketUpdate,
    utc_now_ms,
)
from ticketq.infrastructure.exceptions import ConflictError, StoreError
from ticketq.infrastructure.logger import get_logger

logger = get_logger(__name__)

_LINKAGE_COLUMNS = frozenset(QueueLinkage.model_fields)
_TICKET_UPDATE_COLUMNS = frozenset(TicketUpdate.model_fields) | _LINKAGE_COLUMNS
_TASK_UPDATE_COLUMNS = frozenset(TaskUpdate.model_fields) | _LINKAGE_COLUMNS
_QUEUE_UPDATE_COLUMNS = frozenset(QueueUpdate.model_fields)
_JSON_LIST_COLUMNS = frozenset({"dependencies", "tags"})

_LINKAGE_DDL = """
                queue_id INTEGER,
                queue_position INTEGER,
                queue_status TEXT,
                queue_priority INTEGER,
                queued_at INTEGER,
                queue_started_at INTEGER,
                queue_completed_at INTEGER,
                queue_agent_id TEXT,
                queue_error_message TEXT,"""

# Dispatch order: lower priority value first, then oldest, then lowest id
_DISPATCH_ORDER = "ORDER BY priority ASC, created_at ASC, id ASC"


@contextmanager
def _store_errors(action: str, entity: str | None = None, entity_id: Any = None) -> Iterator[None]:
    """Re-raise driver errors as StoreError carrying entity context."""
    try:
        yield
    except aiosqlite.Error as e:
        logger.error("store_error", action=action, entity=entity, entity_id=entity_id, error=str(e))
        raise StoreError(f"Failed to {action}: {e}", entity, entity_id) from e


def _is_unique_violation(error: BaseException | None) -> bool:
    # NOT NULL, CHECK and FOREIGN KEY failures stay StoreErrors
    return isinstance(error, aiosqlite.IntegrityError) and "UNIQUE constraint failed" in str(error)


class Database:
    """SQLite entity store with WAL mode and serialised write transactions.

    Every mutating method takes an optional ``conn``. When given, the write
    joins that connection's open transaction; otherwise the method runs in a
    transaction of its own.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._initialized = False
        self._shared_conn: Connection | None = None  # For :memory: databases
        self._write_lock = asyncio.Lock()

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    async def initialize(self) -> None:
        """Initialize database schema and settings."""
        if self._initialized:
            return

        if not self.is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with _store_errors("initialize schema"):
            async with self._get_connection() as conn:
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.execute("PRAGMA wal_autocheckpoint=1000")
                await self._create_tables(conn)
                await self._create_indexes(conn)
                await conn.commit()

        self._initialized = True
        logger.debug("database_initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection.

        Only needed for :memory: databases to clean up the shared connection.
        File-based databases close connections automatically.
        """
        if self._shared_conn is not None:
            await self._shared_conn.close()
            self._shared_conn = None
            self._initialized = False

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[Connection]:
        """Get database connection with proper settings.

        For :memory: databases, maintains a shared connection to preserve data
        across multiple operations. For file databases, creates a new connection
        each time.
        """
        if self.is_memory:
            if self._shared_conn is None:
                self._shared_conn = await aiosqlite.connect(":memory:")
                self._shared_conn.row_factory = aiosqlite.Row
                await self._shared_conn.execute("PRAGMA foreign_keys=ON")
            yield self._shared_conn
        else:
            async with aiosqlite.connect(str(self.db_path)) as conn:
                conn.row_factory = aiosqlite.Row
                # Both pragmas are per-connection in SQLite
                await conn.execute("PRAGMA foreign_keys=ON")
                await conn.execute("PRAGMA busy_timeout=5000")
                yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Connection]:
        """Run a block inside one write transaction.

        Writers are serialised in-process by an asyncio lock and across
        processes by ``BEGIN IMMEDIATE``. Commits on success, rolls back on
        any exception.
        """
        async with self._write_lock:
            async with self._get_connection() as conn:
                with _store_errors("begin transaction"):
                    await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    await conn.rollback()
                    raise
                with _store_errors("commit transaction"):
                    await conn.commit()

    @asynccontextmanager
    async def use_transaction(self, conn: Connection | None) -> AsyncIterator[Connection]:
        """Join the caller's transaction, or open a fresh one."""
        if conn is not None:
            yield conn
        else:
            async with self.transaction() as tx:
                yield tx

    @asynccontextmanager
    async def _reader(self, conn: Connection | None) -> AsyncIterator[Connection]:
        if conn is not None:
            yield conn
        else:
            async with self._get_connection() as own:
                yield own

    async def _create_tables(self, conn: Connection) -> None:
        """Create entity tables."""
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS tickets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                overview TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                priority TEXT NOT NULL DEFAULT 'normal',{_LINKAGE_DDL}
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                CHECK(status IN ('open', 'in_progress', 'closed')),
                CHECK(priority IN ('low', 'normal', 'high')),
                CHECK((queue_id IS NULL) = (queue_status IS NULL))
            )
            """
        )

        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ticket_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                order_index INTEGER NOT NULL,
                dependencies TEXT NOT NULL DEFAULT '[]',
                estimated_hours REAL,
                agent_id TEXT,
                tags TEXT NOT NULL DEFAULT '[]',{_LINKAGE_DDL}
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                FOREIGN KEY (ticket_id) REFERENCES tickets(id) ON DELETE CASCADE,
                CHECK(status IN ('pending', 'in_progress', 'completed', 'cancelled')),
                CHECK((queue_id IS NULL) = (queue_status IS NULL))
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queues (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                max_parallel_items INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                UNIQUE(project_id, name),
                CHECK(max_parallel_items >= 1)
            )
            """
        )

        # item_id is polymorphic (ticket or task), so only queue_id has a FK
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                queue_id INTEGER NOT NULL,
                item_type TEXT NOT NULL,
                item_id INTEGER NOT NULL,
                priority INTEGER NOT NULL DEFAULT 5,
                status TEXT NOT NULL DEFAULT 'queued',
                agent_id TEXT,
                error_message TEXT,
                started_at INTEGER,
                completed_at INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                FOREIGN KEY (queue_id) REFERENCES queues(id) ON DELETE CASCADE,
                CHECK(item_type IN ('ticket', 'task')),
                CHECK(status IN ('queued', 'in_progress', 'completed', 'failed', 'cancelled'))
            )
            """
        )

    async def _create_indexes(self, conn: Connection) -> None:
        """Create constraint and lookup indexes."""
        # Dense ordering: no two tasks of a ticket share an index
        await conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_ticket_order ON tasks(ticket_id, order_index)"
        )
        # Single active item per target per queue
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_items_active_target
            ON queue_items(queue_id, item_type, item_id)
            WHERE status IN ('queued', 'in_progress')
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_queue_items_dispatch
            ON queue_items(queue_id, status, priority, created_at, id)
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_items_target ON queue_items(item_type, item_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tickets_project ON tickets(project_id, status)"
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_tickets_queue ON tickets(queue_id)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_queue ON tasks(queue_id)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(agent_id)")

    # Helpers

    @staticmethod
    def _update_values(update: BaseModel, allowed: frozenset[str]) -> dict[str, Any]:
        """Explicitly-set fields of a partial update, restricted to known columns."""
        values = update.model_dump(mode="json", exclude_unset=True)
        unknown = set(values) - allowed
        if unknown:
            raise ValueError(f"{type(update).__name__} sets unknown columns: {sorted(unknown)}")
        for column in _JSON_LIST_COLUMNS & set(values):
            values[column] = json.dumps(values[column])
        return values

    async def _apply_update(
        self,
        conn: Connection,
        table: str,
        row_id: int,
        values: dict[str, Any],
    ) -> int:
        values = {**values, "updated_at": utc_now_ms()}
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = await conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [*values.values(), row_id],
        )
        return cursor.rowcount

    # Ticket operations

    async def insert_ticket(
        self,
        project_id: int,
        title: str,
        overview: str | None = None,
        status: TicketStatus = TicketStatus.OPEN,
        priority: TicketPriority = TicketPriority.NORMAL,
        conn: Connection | None = None,
    ) -> Ticket:
        """Insert a ticket and return it with its assigned id."""
        now = utc_now_ms()
        with _store_errors("insert ticket", "Ticket"):
            async with self.use_transaction(conn) as tx:
                cursor = await tx.execute(
                    """
                    INSERT INTO tickets (project_id, title, overview, status, priority,
                                         created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (project_id, title, overview, status.value, priority.value, now, now),
                )
                ticket_id = cursor.lastrowid
                assert ticket_id is not None
                ticket = await self.get_ticket(ticket_id, conn=tx)
        assert ticket is not None
        return ticket

    async def get_ticket(self, ticket_id: int, conn: Connection | None = None) -> Ticket | None:
        """Get ticket by id."""
        with _store_errors("get ticket", "Ticket", ticket_id):
            async with self._reader(conn) as c:
                cursor = await c.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,))
                row = await cursor.fetchone()
        return self._row_to_ticket(row) if row else None

    async def list_tickets(
        self,
        project_id: int,
        status: TicketStatus | None = None,
        priority: TicketPriority | None = None,
        conn: Connection | None = None,
    ) -> list[Ticket]:
        """List a project's tickets, newest first."""
        where_clauses = ["project_id = ?"]
        params: list[Any] = [project_id]
        if status:
            where_clauses.append("status = ?")
            params.append(status.value)
        if priority:
            where_clauses.append("priority = ?")
            params.append(priority.value)

        with _store_errors("list tickets", "Project", project_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    f"SELECT * FROM tickets WHERE {' AND '.join(where_clauses)} "
                    "ORDER BY created_at DESC, id DESC",
                    params,
                )
                rows = await cursor.fetchall()
        return [self._row_to_ticket(row) for row in rows]

    async def update_ticket(
        self,
        ticket_id: int,
        update: TicketUpdate | QueueLinkage,
        conn: Connection | None = None,
    ) -> Ticket | None:
        """Apply a partial update; returns None if the ticket does not exist."""
        values = self._update_values(update, _TICKET_UPDATE_COLUMNS)
        with _store_errors("update ticket", "Ticket", ticket_id):
            async with self.use_transaction(conn) as tx:
                if values:
                    await self._apply_update(tx, "tickets", ticket_id, values)
                return await self.get_ticket(ticket_id, conn=tx)

    async def delete_ticket(self, ticket_id: int, conn: Connection | None = None) -> bool:
        """Delete a ticket, its tasks, and every queue item referencing either."""
        with _store_errors("delete ticket", "Ticket", ticket_id):
            async with self.use_transaction(conn) as tx:
                await tx.execute(
                    """
                    DELETE FROM queue_items
                    WHERE (item_type = ? AND item_id = ?)
                       OR (item_type = ? AND item_id IN (SELECT id FROM tasks WHERE ticket_id = ?))
                    """,
                    (ItemType.TICKET.value, ticket_id, ItemType.TASK.value, ticket_id),
                )
                # tasks cascade through the foreign key
                cursor = await tx.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
                return cursor.rowcount > 0

    def _row_to_ticket(self, row: aiosqlite.Row) -> Ticket:
        """Convert database row to Ticket model."""
        row_dict = dict(row)
        return Ticket(
            id=row_dict["id"],
            project_id=row_dict["project_id"],
            title=row_dict["title"],
            overview=row_dict["overview"],
            status=TicketStatus(row_dict["status"]),
            priority=TicketPriority(row_dict["priority"]),
            created_at=row_dict["created_at"],
            updated_at=row_dict["updated_at"],
            **self._linkage_from_row(row_dict),
        )

    # Task operations

    async def insert_task(
        self,
        ticket_id: int,
        content: str,
        order_index: int,
        description: str | None = None,
        status: TaskStatus = TaskStatus.PENDING,
        dependencies: Sequence[int] = (),
        estimated_hours: float | None = None,
        agent_id: str | None = None,
        tags: Sequence[str] = (),
        conn: Connection | None = None,
    ) -> Task:
        """Insert a task at an already-free order_index."""
        now = utc_now_ms()
        with _store_errors("insert task", "Task"):
            async with self.use_transaction(conn) as tx:
                cursor = await tx.execute(
                    """
                    INSERT INTO tasks (ticket_id, content, description, status, order_index,
                                       dependencies, estimated_hours, agent_id, tags,
                                       created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        ticket_id,
                        content,
                        description,
                        status.value,
                        order_index,
                        json.dumps(list(dependencies)),
                        estimated_hours,
                        agent_id,
                        json.dumps(list(tags)),
                        now,
                        now,
                    ),
                )
                task_id = cursor.lastrowid
                assert task_id is not None
                task = await self.get_task(task_id, conn=tx)
        assert task is not None
        return task

    async def get_task(self, task_id: int, conn: Connection | None = None) -> Task | None:
        """Get task by id."""
        with _store_errors("get task", "Task", task_id):
            async with self._reader(conn) as c:
                cursor = await c.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
                row = await cursor.fetchone()
        return self._row_to_task(row) if row else None

    async def get_tasks(self, task_ids: Sequence[int], conn: Connection | None = None) -> list[Task]:
        """Get several tasks by id (missing ids are skipped)."""
        if not task_ids:
            return []
        placeholders = ",".join("?" for _ in task_ids)
        with _store_errors("get tasks", "Task", list(task_ids)):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    f"SELECT * FROM tasks WHERE id IN ({placeholders}) ORDER BY order_index",
                    list(task_ids),
                )
                rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks(self, ticket_id: int, conn: Connection | None = None) -> list[Task]:
        """List a ticket's tasks in order_index order."""
        with _store_errors("list tasks", "Ticket", ticket_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    "SELECT * FROM tasks WHERE ticket_id = ? ORDER BY order_index ASC",
                    (ticket_id,),
                )
                rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks_by_agent(self, agent_id: str, conn: Connection | None = None) -> list[Task]:
        with _store_errors("list tasks by agent", "Agent", agent_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    "SELECT * FROM tasks WHERE agent_id = ? ORDER BY ticket_id, order_index",
                    (agent_id,),
                )
                rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def search_tasks(
        self, term: str, ticket_id: int | None = None, conn: Connection | None = None
    ) -> list[Task]:
        """Case-insensitive substring search over task content."""
        where_sql = "content LIKE ? ESCAPE '\\'"
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        params: list[Any] = [f"%{escaped}%"]
        if ticket_id is not None:
            where_sql += " AND ticket_id = ?"
            params.append(ticket_id)
        with _store_errors("search tasks", "Ticket", ticket_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    f"SELECT * FROM tasks WHERE {where_sql} ORDER BY ticket_id, order_index",
                    params,
                )
                rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def update_task(
        self,
        task_id: int,
        update: TaskUpdate | QueueLinkage,
        conn: Connection | None = None,
    ) -> Task | None:
        """Apply a partial update; returns None if the task does not exist."""
        values = self._update_values(update, _TASK_UPDATE_COLUMNS)
        with _store_errors("update task", "Task", task_id):
            async with self.use_transaction(conn) as tx:
                if values:
                    await self._apply_update(tx, "tasks", task_id, values)
                return await self.get_task(task_id, conn=tx)

    async def set_task_order(
        self, ticket_id: int, ordered_task_ids: Sequence[int], conn: Connection | None = None
    ) -> None:
        """Assign order_index = position for every task id given.

        Written in two phases (temporary negative indexes, then final ones) so
        the unique (ticket_id, order_index) index never sees a duplicate.
        """
        now = utc_now_ms()
        with _store_errors("reorder tasks", "Ticket", ticket_id):
            async with self.use_transaction(conn) as tx:
                await tx.executemany(
                    "UPDATE tasks SET order_index = ? WHERE id = ? AND ticket_id = ?",
                    [(-(position + 1), task_id, ticket_id) for position, task_id in enumerate(ordered_task_ids)],
                )
                await tx.executemany(
                    "UPDATE tasks SET order_index = ?, updated_at = ? WHERE id = ? AND ticket_id = ?",
                    [(position, now, task_id, ticket_id) for position, task_id in enumerate(ordered_task_ids)],
                )

    async def delete_task(self, task_id: int, conn: Connection | None = None) -> bool:
        """Delete a task row and its queue items."""
        with _store_errors("delete task", "Task", task_id):
            async with self.use_transaction(conn) as tx:
                await tx.execute(
                    "DELETE FROM queue_items WHERE item_type = ? AND item_id = ?",
                    (ItemType.TASK.value, task_id),
                )
                cursor = await tx.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                return cursor.rowcount > 0

    def _row_to_task(self, row: aiosqlite.Row) -> Task:
        """Convert database row to Task model."""
        row_dict = dict(row)
        return Task(
            id=row_dict["id"],
            ticket_id=row_dict["ticket_id"],
            content=row_dict["content"],
            description=row_dict["description"],
            status=TaskStatus(row_dict["status"]),
            order_index=row_dict["order_index"],
            dependencies=json.loads(row_dict["dependencies"]) if row_dict["dependencies"] else [],
            estimated_hours=row_dict["estimated_hours"],
            agent_id=row_dict["agent_id"],
            tags=json.loads(row_dict["tags"]) if row_dict["tags"] else [],
            created_at=row_dict["created_at"],
            updated_at=row_dict["updated_at"],
            **self._linkage_from_row(row_dict),
        )

    @staticmethod
    def _linkage_from_row(row_dict: dict[str, Any]) -> dict[str, Any]:
        linkage = {column: row_dict[column] for column in _LINKAGE_COLUMNS}
        if linkage["queue_status"] is not None:
            linkage["queue_status"] = QueueItemStatus(linkage["queue_status"])
        return linkage

    async def update_linkage(
        self,
        item_type: ItemType,
        item_id: int,
        linkage: QueueLinkage,
        conn: Connection | None = None,
    ) -> None:
        """Write queue linkage fields onto the ticket or task a queue item wraps."""
        if item_type == ItemType.TICKET:
            await self.update_ticket(item_id, linkage, conn=conn)
        else:
            await self.update_task(item_id, linkage, conn=conn)

    async def clear_linkage_for_queue(self, queue_id: int, conn: Connection | None = None) -> int:
        """Detach every ticket and task linked to a queue."""
        assignments = ", ".join(f"{column} = NULL" for column in sorted(_LINKAGE_COLUMNS))
        now = utc_now_ms()
        with _store_errors("clear queue linkage", "Queue", queue_id):
            async with self.use_transaction(conn) as tx:
                cleared = 0
                for table in ("tickets", "tasks"):
                    cursor = await tx.execute(
                        f"UPDATE {table} SET {assignments}, updated_at = ? WHERE queue_id = ?",
                        (now, queue_id),
                    )
                    cleared += cursor.rowcount
                return cleared

    # Queue operations

    async def insert_queue(
        self,
        project_id: int,
        name: str,
        max_parallel_items: int,
        description: str | None = None,
        is_active: bool = True,
        conn: Connection | None = None,
    ) -> Queue:
        """Insert a queue; ConflictError if the name is taken in the project."""
        now = utc_now_ms()
        try:
            with _store_errors("insert queue", "Queue", name):
                async with self.use_transaction(conn) as tx:
                    cursor = await tx.execute(
                        """
                        INSERT INTO queues (project_id, name, description, is_active,
                                            max_parallel_items, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (project_id, name, description, int(is_active), max_parallel_items, now, now),
                    )
                    queue_id = cursor.lastrowid
                    assert queue_id is not None
                    queue = await self.get_queue(queue_id, conn=tx)
        except StoreError as e:
            if _is_unique_violation(e.__cause__):
                raise ConflictError(
                    f"Queue '{name}' already exists in project {project_id}"
                ) from e.__cause__
            raise
        assert queue is not None
        return queue

    async def get_queue(self, queue_id: int, conn: Connection | None = None) -> Queue | None:
        """Get queue by id."""
        with _store_errors("get queue", "Queue", queue_id):
            async with self._reader(conn) as c:
                cursor = await c.execute("SELECT * FROM queues WHERE id = ?", (queue_id,))
                row = await cursor.fetchone()
        return self._row_to_queue(row) if row else None

    async def list_queues(self, project_id: int, conn: Connection | None = None) -> list[Queue]:
        """List a project's queues, newest first."""
        with _store_errors("list queues", "Project", project_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    "SELECT * FROM queues WHERE project_id = ? ORDER BY created_at DESC, id DESC",
                    (project_id,),
                )
                rows = await cursor.fetchall()
        return [self._row_to_queue(row) for row in rows]

    async def update_queue(
        self, queue_id: int, update: QueueUpdate, conn: Connection | None = None
    ) -> Queue | None:
        """Apply a partial update; ConflictError if a rename collides."""
        values = self._update_values(update, _QUEUE_UPDATE_COLUMNS)
        if "is_active" in values:
            values["is_active"] = int(values["is_active"])
        try:
            with _store_errors("update queue", "Queue", queue_id):
                async with self.use_transaction(conn) as tx:
                    if values:
                        await self._apply_update(tx, "queues", queue_id, values)
                    return await self.get_queue(queue_id, conn=tx)
        except StoreError as e:
            if _is_unique_violation(e.__cause__):
                raise ConflictError(f"Queue name '{update.name}' is already in use") from e.__cause__
            raise

    async def delete_queue(self, queue_id: int, conn: Connection | None = None) -> bool:
        """Delete a queue; items cascade, linked tickets/tasks are detached."""
        with _store_errors("delete queue", "Queue", queue_id):
            async with self.use_transaction(conn) as tx:
                await self.clear_linkage_for_queue(queue_id, conn=tx)
                cursor = await tx.execute("DELETE FROM queues WHERE id = ?", (queue_id,))
                return cursor.rowcount > 0

    def _row_to_queue(self, row: aiosqlite.Row) -> Queue:
        """Convert database row to Queue model."""
        return Queue(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            max_parallel_items=row["max_parallel_items"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Queue item operations

    async def insert_queue_item(
        self,
        queue_id: int,
        item_type: ItemType,
        item_id: int,
        priority: int,
        conn: Connection | None = None,
    ) -> QueueItem:
        """Insert a queued item; ConflictError if the target already has an active item."""
        now = utc_now_ms()
        try:
            with _store_errors("insert queue item", "QueueItem", f"{item_type.value}:{item_id}"):
                async with self.use_transaction(conn) as tx:
                    cursor = await tx.execute(
                        """
                        INSERT INTO queue_items (queue_id, item_type, item_id, priority, status,
                                                 created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            queue_id,
                            item_type.value,
                            item_id,
                            priority,
                            QueueItemStatus.QUEUED.value,
                            now,
                            now,
                        ),
                    )
                    row_id = cursor.lastrowid
                    assert row_id is not None
                    item = await self.get_queue_item(row_id, conn=tx)
        except StoreError as e:
            if _is_unique_violation(e.__cause__):
                raise ConflictError(
                    f"{item_type.value} {item_id} already has an active item in queue {queue_id}"
                ) from e.__cause__
            raise
        assert item is not None
        return item

    async def get_queue_item(self, item_id: int, conn: Connection | None = None) -> QueueItem | None:
        """Get queue item by id."""
        with _store_errors("get queue item", "QueueItem", item_id):
            async with self._reader(conn) as c:
                cursor = await c.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,))
                row = await cursor.fetchone()
        return self._row_to_queue_item(row) if row else None

    async def list_queue_items(
        self,
        queue_id: int,
        statuses: Sequence[QueueItemStatus] | None = None,
        conn: Connection | None = None,
    ) -> list[QueueItem]:
        """List a queue's items in dispatch order."""
        where_sql = "queue_id = ?"
        params: list[Any] = [queue_id]
        if statuses:
            where_sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(status.value for status in statuses)
        with _store_errors("list queue items", "Queue", queue_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    f"SELECT * FROM queue_items WHERE {where_sql} {_DISPATCH_ORDER}", params
                )
                rows = await cursor.fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    async def list_items_for_target(
        self,
        item_type: ItemType,
        item_id: int,
        statuses: Sequence[QueueItemStatus] | None = None,
        conn: Connection | None = None,
    ) -> list[QueueItem]:
        """List queue items (in any queue) that wrap one ticket or task."""
        where_sql = "item_type = ? AND item_id = ?"
        params: list[Any] = [item_type.value, item_id]
        if statuses:
            where_sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(status.value for status in statuses)
        with _store_errors("list items for target", item_type.value, item_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    f"SELECT * FROM queue_items WHERE {where_sql} ORDER BY created_at ASC, id ASC",
                    params,
                )
                rows = await cursor.fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    async def count_items_by_status(
        self, queue_id: int, conn: Connection | None = None
    ) -> dict[QueueItemStatus, int]:
        """Per-status item counts for a queue (every status present, zero if none)."""
        counts = {status: 0 for status in QueueItemStatus}
        with _store_errors("count queue items", "Queue", queue_id):
            async with self._reader(conn) as c:
                cursor = await c.execute(
                    "SELECT status, COUNT(*) FROM queue_items WHERE queue_id = ? GROUP BY status",
                    (queue_id,),
                )
                rows = await cursor.fetchall()
        for row in rows:
            counts[QueueItemStatus(row[0])] = row[1]
        return counts

    async def transition_queue_item(
        self,
        item_id: int,
        from_status: QueueItemStatus,
        to_status: QueueItemStatus,
        agent_id: str | None = None,
        error_message: str | None = None,
        started_at: int | None = None,
        completed_at: int | None = None,
        conn: Connection | None = None,
    ) -> bool:
        """Conditionally move an item from one status to another.

        The update only applies while the row is still in ``from_status``.
        Returns False when another writer changed it first, which makes this
        the atomic claim primitive for dispatch.
        """
        values: dict[str, Any] = {"status": to_status.value}
        if agent_id is not None:
            values["agent_id"] = agent_id
        if error_message is not None:
            values["error_message"] = error_message
        if started_at is not None:
            values["started_at"] = started_at
        if completed_at is not None:
            values["completed_at"] = completed_at
        values["updated_at"] = utc_now_ms()

        assignments = ", ".join(f"{column} = ?" for column in values)
        with _store_errors("transition queue item", "QueueItem", item_id):
            async with self.use_transaction(conn) as tx:
                cursor = await tx.execute(
                    f"UPDATE queue_items SET {assignments} WHERE id = ? AND status = ?",
                    [*values.values(), item_id, from_status.value],
                )
                return cursor.rowcount == 1

    async def delete_queue_item(self, item_id: int, conn: Connection | None = None) -> bool:
        """Delete a queue item; False if it was already gone."""
        with _store_errors("delete queue item", "QueueItem", item_id):
            async with self.use_transaction(conn) as tx:
                cursor = await tx.execute("DELETE FROM queue_items WHERE id = ?", (item_id,))
                return cursor.rowcount > 0

    async def delete_queue_items(
        self,
        queue_id: int,
        statuses: Sequence[QueueItemStatus] | None = None,
        conn: Connection | None = None,
    ) -> int:
        """Delete a queue's items, optionally only those in the given statuses."""
        where_sql = "queue_id = ?"
        params: list[Any] = [queue_id]
        if statuses:
            where_sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(status.value for status in statuses)
        with _store_errors("delete queue items", "Queue", queue_id):
            async with self.use_transaction(conn) as tx:
                cursor = await tx.execute(f"DELETE FROM queue_items WHERE {where_sql}", params)
                return cursor.rowcount

    async def delete_terminal_items_before(
        self,
        cutoff_ms: int,
        statuses: Sequence[QueueItemStatus],
        project_id: int | None = None,
        conn: Connection | None = None,
    ) -> int:
        """Delete items in ``statuses`` that finished before ``cutoff_ms``.

        Items without completed_at are aged by created_at. ``project_id``
        limits the sweep to that project's queues.
        """
        where_sql = (
            f"status IN ({','.join('?' for _ in statuses)}) "
            "AND COALESCE(completed_at, created_at) < ?"
        )
        params: list[Any] = [status.value for status in statuses]
        params.append(cutoff_ms)
        if project_id is not None:
            where_sql += " AND queue_id IN (SELECT id FROM queues WHERE project_id = ?)"
            params.append(project_id)
        with _store_errors("delete old queue items", "Project", project_id):
            async with self.use_transaction(conn) as tx:
                cursor = await tx.execute(f"DELETE FROM queue_items WHERE {where_sql}", params)
                return cursor.rowcount

    def _row_to_queue_item(self, row: aiosqlite.Row) -> QueueItem:
        """Convert database row to QueueItem model."""
        return QueueItem(
            id=row["id"],
            queue_id=row["queue_id"],
            item_type=ItemType(row["item_type"]),
            item_id=row["item_id"],
            priority=row["priority"],
            status=QueueItemStatus(row["status"]),
            agent_id=row["agent_id"],
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
