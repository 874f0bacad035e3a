"""Task ordering service: creation, dense order_index maintenance, and task edits.

Every operation that changes more than one row runs in a single store
transaction, so readers never observe a partially renumbered ticket.
"""

from collections.abc import Sequence

from aiosqlite import Connection
from pydantic import ValidationError as PydanticValidationError

from ticketq.domain.models import Task, TaskStatus, TaskUpdate
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import NotFoundError, ValidationError
from ticketq.infrastructure.logger import get_logger
from ticketq.services.dependency_resolver import DependencyResolver

logger = get_logger(__name__)


class TaskOrderingManager:
    """Keeps each ticket's tasks densely ordered and their dependencies valid.

    Invariant: for a ticket with n tasks, order_index values are exactly
    0..n-1 after every operation.
    """

    def __init__(self, database: Database, dependency_resolver: DependencyResolver):
        """Initialize task ordering manager.

        Args:
            database: Database instance
            dependency_resolver: Resolver used to validate dependencies and gate completion
        """
        self.db = database
        self.resolver = dependency_resolver

    async def create_task(
        self,
        ticket_id: int,
        content: str,
        description: str | None = None,
        order_index: int | None = None,
        dependencies: Sequence[int] | None = None,
        estimated_hours: float | None = None,
        agent_id: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Task:
        """Create a task, appending it or inserting it at ``order_index``.

        Args:
            ticket_id: Owning ticket
            content: Task text
            description: Optional longer description
            order_index: Insert position in 0..n (n appends); omitted appends
            dependencies: Ids of sibling tasks that must complete first
            estimated_hours: Optional estimate
            agent_id: Optional assignee
            tags: Optional labels

        Returns:
            The created task

        Raises:
            NotFoundError: If the ticket does not exist
            ValidationError: On empty content, a bad index or invalid dependencies
        """
        if not content or not content.strip():
            raise ValidationError("Task content must not be empty")
        if estimated_hours is not None and estimated_hours < 0:
            raise ValidationError("estimated_hours must be >= 0")

        async with self.db.transaction() as tx:
            if await self.db.get_ticket(ticket_id, conn=tx) is None:
                raise NotFoundError("Ticket", ticket_id)

            siblings = await self.db.list_tasks(ticket_id, conn=tx)
            count = len(siblings)
            if order_index is not None and not 0 <= order_index <= count:
                raise ValidationError(
                    f"order_index {order_index} out of range 0..{count} for ticket {ticket_id}"
                )
            deps = self.resolver.validate_dependencies(None, dependencies or [], siblings)

            # Insert at the free tail slot, then rotate into place if needed
            task = await self.db.insert_task(
                ticket_id,
                content,
                order_index=count,
                description=description,
                dependencies=deps,
                estimated_hours=estimated_hours,
                agent_id=agent_id,
                tags=list(tags or []),
                conn=tx,
            )
            if order_index is not None and order_index < count:
                ordered = [t.id for t in siblings]
                ordered.insert(order_index, task.id)
                await self.db.set_task_order(ticket_id, ordered, conn=tx)
                refreshed = await self.db.get_task(task.id, conn=tx)
                assert refreshed is not None
                task = refreshed

        logger.info(
            "task_created", task_id=task.id, ticket_id=ticket_id, order_index=task.order_index
        )
        return task

    async def reorder(self, ticket_id: int, orders: Sequence[tuple[int, int]]) -> list[Task]:
        """Apply a complete permutation of the ticket's task positions.

        Args:
            ticket_id: Ticket whose tasks are reordered
            orders: (task_id, new_index) pairs covering every task exactly once

        Returns:
            The ticket's tasks in their new order

        Raises:
            NotFoundError: If the ticket does not exist
            ValidationError: If ``orders`` is not a permutation of 0..n-1 over the ticket's tasks
        """
        async with self.db.transaction() as tx:
            if await self.db.get_ticket(ticket_id, conn=tx) is None:
                raise NotFoundError("Ticket", ticket_id)

            tasks = await self.db.list_tasks(ticket_id, conn=tx)
            task_ids = [task_id for task_id, _ in orders]
            indexes = [index for _, index in orders]

            if len(set(task_ids)) != len(task_ids):
                raise ValidationError("Each task may appear only once in a reorder")
            if set(task_ids) != {task.id for task in tasks}:
                raise ValidationError(
                    f"Reorder must list every task of ticket {ticket_id} and no others"
                )
            if sorted(indexes) != list(range(len(tasks))):
                raise ValidationError(f"Reorder indexes must be exactly 0..{len(tasks) - 1}")

            ordered = [task_id for task_id, _ in sorted(orders, key=lambda pair: pair[1])]
            await self.db.set_task_order(ticket_id, ordered, conn=tx)
            result = await self.db.list_tasks(ticket_id, conn=tx)

        logger.info("tasks_reordered", ticket_id=ticket_id, order=ordered)
        return result

    async def move_to_position(
        self, task_id: int, new_index: int, ticket_id: int | None = None
    ) -> Task:
        """Move one task to ``new_index`` and renumber its siblings densely.

        Raises:
            NotFoundError: If the task does not exist
            ValidationError: If ``new_index`` is outside 0..n-1 or ``ticket_id`` does not own the task
        """
        async with self.db.transaction() as tx:
            task = await self.db.get_task(task_id, conn=tx)
            if task is None:
                raise NotFoundError("Task", task_id)
            if ticket_id is not None and task.ticket_id != ticket_id:
                raise ValidationError(f"Task {task_id} does not belong to ticket {ticket_id}")

            siblings = await self.db.list_tasks(task.ticket_id, conn=tx)
            if not 0 <= new_index < len(siblings):
                raise ValidationError(
                    f"Position {new_index} out of range 0..{len(siblings) - 1}"
                )

            if new_index != task.order_index:
                ordered = [t.id for t in siblings if t.id != task_id]
                ordered.insert(new_index, task_id)
                await self.db.set_task_order(task.ticket_id, ordered, conn=tx)

            moved = await self.db.get_task(task_id, conn=tx)

        assert moved is not None
        logger.info(
            "task_moved", task_id=task_id, from_index=task.order_index, to_index=new_index
        )
        return moved

    async def update_task(
        self, task_id: int, update: TaskUpdate | dict, conn: Connection | None = None
    ) -> Task:
        """Apply a partial task update.

        Dependency changes are validated against the ticket's graph. Marking a
        task completed is refused while any of its dependencies is incomplete.

        Args:
            task_id: Task to update
            update: Fields to change (only explicitly set fields are written),
                or a plain mapping validated into a TaskUpdate
            conn: Open transaction to join, if any

        Raises:
            NotFoundError: If the task does not exist
            ValidationError: On invalid fields or dependencies, or a blocked completion
        """
        if isinstance(update, dict):
            try:
                update = TaskUpdate.model_validate(update)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid task update: {e}") from e

        async with self.db.use_transaction(conn) as tx:
            task = await self.db.get_task(task_id, conn=tx)
            if task is None:
                raise NotFoundError("Task", task_id)

            siblings = await self.db.list_tasks(task.ticket_id, conn=tx)
            deps = task.dependencies
            if update.dependencies is not None:
                deps = self.resolver.validate_dependencies(task_id, update.dependencies, siblings)

            if update.status == TaskStatus.COMPLETED and task.status != TaskStatus.COMPLETED:
                by_id = {t.id: t for t in siblings}
                unmet = [
                    dep_id
                    for dep_id in deps
                    if dep_id in by_id and by_id[dep_id].status != TaskStatus.COMPLETED
                ]
                if unmet:
                    raise ValidationError(
                        f"Task {task_id} cannot be completed; dependencies incomplete: {unmet}"
                    )

            updated = await self.db.update_task(task_id, update, conn=tx)

        assert updated is not None
        logger.info(
            "task_updated", task_id=task_id, fields=sorted(update.model_fields_set)
        )
        return updated

    async def toggle_completion(self, task_id: int) -> Task:
        """Flip a task between completed and pending (completion is dependency-gated)."""
        task = await self.get_task(task_id)
        new_status = TaskStatus.PENDING if task.done else TaskStatus.COMPLETED
        return await self.update_task(task_id, TaskUpdate(status=new_status))

    async def delete_task(self, task_id: int) -> bool:
        """Delete a task; returns False if it was already gone.

        Siblings are compacted back to 0..n-1 and the id is stripped from
        their dependency lists in the same transaction.
        """
        async with self.db.transaction() as tx:
            task = await self.db.get_task(task_id, conn=tx)
            if task is None:
                return False

            await self.db.delete_task(task_id, conn=tx)
            remaining = await self.db.list_tasks(task.ticket_id, conn=tx)
            for sibling in remaining:
                if task_id in sibling.dependencies:
                    await self.db.update_task(
                        sibling.id,
                        TaskUpdate(dependencies=[d for d in sibling.dependencies if d != task_id]),
                        conn=tx,
                    )
            await self.db.set_task_order(task.ticket_id, [t.id for t in remaining], conn=tx)

        logger.info("task_deleted", task_id=task_id, ticket_id=task.ticket_id)
        return True

    async def get_task(self, task_id: int) -> Task:
        """Get task by id.

        Raises:
            NotFoundError: If the task does not exist
        """
        task = await self.db.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def list_tasks(self, ticket_id: int) -> list[Task]:
        """List a ticket's tasks in order_index order."""
        if await self.db.get_ticket(ticket_id) is None:
            raise NotFoundError("Ticket", ticket_id)
        return await self.db.list_tasks(ticket_id)

    async def list_tasks_by_agent(self, agent_id: str) -> list[Task]:
        return await self.db.list_tasks_by_agent(agent_id)

    async def search_tasks(self, term: str, ticket_id: int | None = None) -> list[Task]:
        return await self.db.search_tasks(term, ticket_id=ticket_id)
