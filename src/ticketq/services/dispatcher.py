"""Queue dispatcher: enqueueing, dependency-aware selection, claiming and item lifecycle.

Features:
- Enqueue tickets or tasks with project and duplicate checks
- Read-only peek of the next eligible item (priority, then age, then id)
- Atomic claim of the next eligible item for an agent
- Status transitions enforced by ALLOWED_TRANSITIONS, mirrored onto the
  wrapped ticket/task
- Requeue of failed or cancelled items, bulk enqueue/dequeue of a ticket with its tasks

Every read-modify-write sequence runs in one store transaction. Claims use a
conditional update on ``status = 'queued'`` so a lost race is observed as an
unaffected row rather than a double assignment.
"""

from aiosqlite import Connection

from ticketq.domain.models import (
    ACTIVE_ITEM_STATUSES,
    ItemType,
    QueueItem,
    QueueItemStatus,
    QueueLinkage,
    Task,
    TaskStatus,
    TaskUpdate,
    Ticket,
    utc_now_ms,
)
from ticketq.infrastructure.config import QueueConfig
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ticketq.infrastructure.logger import bound_context, get_logger
from ticketq.services.dependency_resolver import DependencyResolver
from ticketq.services.task_ordering import TaskOrderingManager

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[QueueItemStatus, frozenset[QueueItemStatus]] = {
    QueueItemStatus.QUEUED: frozenset({QueueItemStatus.IN_PROGRESS, QueueItemStatus.CANCELLED}),
    QueueItemStatus.IN_PROGRESS: frozenset(
        {QueueItemStatus.COMPLETED, QueueItemStatus.FAILED, QueueItemStatus.CANCELLED}
    ),
    QueueItemStatus.COMPLETED: frozenset(),
    QueueItemStatus.FAILED: frozenset(),
    QueueItemStatus.CANCELLED: frozenset(),
}

_REQUEUEABLE = frozenset({QueueItemStatus.FAILED, QueueItemStatus.CANCELLED})


class Dispatcher:
    """Moves queue items through their lifecycle.

    Selection order within a queue is priority ascending (lower value is
    more urgent), then created_at ascending, then id ascending. Task items
    are only eligible once every dependency of the task is completed.
    """

    def __init__(
        self,
        database: Database,
        dependency_resolver: DependencyResolver,
        task_ordering: TaskOrderingManager,
        queue_config: QueueConfig | None = None,
    ):
        """Initialize dispatcher.

        Args:
            database: Database instance
            dependency_resolver: Resolver for the task eligibility gate
            task_ordering: Used to complete a task when its queue item completes
            queue_config: Default priority for new items (default: QueueConfig())
        """
        self.db = database
        self.resolver = dependency_resolver
        self.ordering = task_ordering
        self.config = queue_config or QueueConfig()

    # Enqueue

    async def add_item(
        self,
        queue_id: int,
        item_type: ItemType | str,
        item_id: int,
        priority: int | None = None,
        conn: Connection | None = None,
    ) -> QueueItem:
        """Enqueue a ticket or task.

        Args:
            queue_id: Target queue (paused queues accept items; they just wait)
            item_type: "ticket" or "task"
            item_id: Id of the ticket or task
            priority: 0..10, lower is dispatched first (default from config)
            conn: Open transaction to join, if any

        Returns:
            The new queued item

        Raises:
            NotFoundError: If the queue or the target does not exist
            ValidationError: On an unsupported item type, bad priority, or a target from another project
            ConflictError: If the target already has an active item in this queue or is actively linked to another queue
        """
        item_type = self._coerce_item_type(item_type)
        if priority is None:
            priority = self.config.default_priority
        if not 0 <= priority <= 10:
            raise ValidationError(f"Priority must be between 0 and 10, got {priority}")

        async with self.db.use_transaction(conn) as tx:
            queue = await self.db.get_queue(queue_id, conn=tx)
            if queue is None:
                raise NotFoundError("Queue", queue_id)

            target = await self._get_target(item_type, item_id, tx)
            project_id = await self._target_project(target, tx)
            if project_id != queue.project_id:
                raise ValidationError(
                    f"{item_type.value} {item_id} belongs to project {project_id}, "
                    f"queue {queue_id} to project {queue.project_id}"
                )
            if target.is_actively_queued and target.queue_id != queue_id:
                raise ConflictError(
                    f"{item_type.value} {item_id} is already active in queue {target.queue_id}"
                )

            item = await self.db.insert_queue_item(queue_id, item_type, item_id, priority, conn=tx)
            active = await self.db.list_queue_items(
                queue_id, statuses=[QueueItemStatus.QUEUED, QueueItemStatus.IN_PROGRESS], conn=tx
            )
            await self.db.update_linkage(
                item_type,
                item_id,
                QueueLinkage(
                    queue_id=queue_id,
                    queue_position=len(active),
                    queue_status=QueueItemStatus.QUEUED,
                    queue_priority=priority,
                    queued_at=item.created_at,
                    queue_started_at=None,
                    queue_completed_at=None,
                    queue_agent_id=None,
                    queue_error_message=None,
                ),
                conn=tx,
            )

        logger.info(
            "queue_item_added",
            item_id=item.id,
            queue_id=queue_id,
            item_type=item_type.value,
            target_id=item_id,
            priority=priority,
        )
        return item

    async def enqueue_ticket_with_tasks(
        self, ticket_id: int, queue_id: int, priority: int | None = None
    ) -> list[QueueItem]:
        """Enqueue a ticket and each of its tasks that is neither completed nor cancelled.

        Targets that already have an active item in this queue are skipped.
        All-or-nothing: any failure rolls back every item added by the call.
        """
        async with self.db.transaction() as tx:
            if await self.db.get_ticket(ticket_id, conn=tx) is None:
                raise NotFoundError("Ticket", ticket_id)
            tasks = await self.db.list_tasks(ticket_id, conn=tx)

            targets = [(ItemType.TICKET, ticket_id)] + [
                (ItemType.TASK, task.id) for task in tasks if task.is_open
            ]
            items: list[QueueItem] = []
            for item_type, target_id in targets:
                existing = await self.db.list_items_for_target(
                    item_type, target_id, statuses=sorted(ACTIVE_ITEM_STATUSES), conn=tx
                )
                if any(existing_item.queue_id == queue_id for existing_item in existing):
                    continue
                items.append(await self.add_item(queue_id, item_type, target_id, priority, conn=tx))

        logger.info("ticket_enqueued_with_tasks", ticket_id=ticket_id, queue_id=queue_id, added=len(items))
        return items

    # Selection

    async def get_next_item(self, queue_id: int, conn: Connection | None = None) -> QueueItem | None:
        """Peek at the item that would be dispatched next; changes nothing.

        Returns None when the queue is paused, when its in-progress count has
        reached max_parallel_items, or when no queued item is eligible.

        Raises:
            NotFoundError: If the queue does not exist
        """
        queue = await self.db.get_queue(queue_id, conn=conn)
        if queue is None:
            raise NotFoundError("Queue", queue_id)
        if not queue.is_active:
            return None

        counts = await self.db.count_items_by_status(queue_id, conn=conn)
        if counts[QueueItemStatus.IN_PROGRESS] >= queue.max_parallel_items:
            return None

        for item in await self.db.list_queue_items(queue_id, statuses=[QueueItemStatus.QUEUED], conn=conn):
            if await self._is_eligible(item, conn):
                return item
        return None

    async def claim_next_item(self, queue_id: int, agent_id: str) -> QueueItem | None:
        """Select the next eligible item and move it to in_progress for ``agent_id``.

        Selection and claim happen in one transaction. If the conditional
        update finds the candidate no longer queued, the next candidate is tried.

        Returns:
            The claimed item, or None if nothing could be claimed
        """
        with bound_context(queue_id=queue_id, agent_id=agent_id):
            async with self.db.transaction() as tx:
                queue = await self.db.get_queue(queue_id, conn=tx)
                if queue is None:
                    raise NotFoundError("Queue", queue_id)
                if not queue.is_active:
                    logger.debug("claim_skipped_queue_paused")
                    return None

                counts = await self.db.count_items_by_status(queue_id, conn=tx)
                if counts[QueueItemStatus.IN_PROGRESS] >= queue.max_parallel_items:
                    logger.debug("claim_skipped_parallel_limit", limit=queue.max_parallel_items)
                    return None

                candidates = await self.db.list_queue_items(
                    queue_id, statuses=[QueueItemStatus.QUEUED], conn=tx
                )
                for candidate in candidates:
                    if not await self._is_eligible(candidate, tx):
                        continue
                    now = utc_now_ms()
                    claimed = await self.db.transition_queue_item(
                        candidate.id,
                        QueueItemStatus.QUEUED,
                        QueueItemStatus.IN_PROGRESS,
                        agent_id=agent_id,
                        started_at=now,
                        conn=tx,
                    )
                    if not claimed:
                        logger.debug("claim_lost", item_id=candidate.id)
                        continue
                    await self._mirror(
                        candidate,
                        QueueLinkage(
                            queue_status=QueueItemStatus.IN_PROGRESS,
                            queue_started_at=now,
                            queue_agent_id=agent_id,
                        ),
                        tx,
                    )
                    item = await self.db.get_queue_item(candidate.id, conn=tx)
                    logger.info("queue_item_claimed", item_id=candidate.id)
                    return item

        return None

    # Transitions

    async def update_item_status(
        self,
        item_id: int,
        new_status: QueueItemStatus | str,
        agent_id: str | None = None,
        error_message: str | None = None,
    ) -> QueueItem:
        """Move a queue item to ``new_status``.

        Entering in_progress re-checks the queue's parallel limit and stamps
        started_at. Entering a terminal state stamps completed_at. Completing
        a task item also completes the task, which fails while its
        dependencies are incomplete.

        Raises:
            NotFoundError: If the item does not exist
            ValidationError: On an unknown status, or a task completion blocked by dependencies
            InvalidTransitionError: If the transition is not allowed
        """
        try:
            new_status = QueueItemStatus(new_status)
        except ValueError as e:
            raise ValidationError(f"Unknown queue item status: {new_status}") from e

        with bound_context(item_id=item_id, agent_id=agent_id):
            async with self.db.transaction() as tx:
                item = await self.db.get_queue_item(item_id, conn=tx)
                if item is None:
                    raise NotFoundError("QueueItem", item_id)
                if new_status not in ALLOWED_TRANSITIONS[item.status]:
                    raise InvalidTransitionError(item_id, item.status.value, new_status.value)

                now = utc_now_ms()
                if new_status == QueueItemStatus.IN_PROGRESS:
                    queue = await self.db.get_queue(item.queue_id, conn=tx)
                    assert queue is not None
                    counts = await self.db.count_items_by_status(item.queue_id, conn=tx)
                    if counts[QueueItemStatus.IN_PROGRESS] >= queue.max_parallel_items:
                        raise InvalidTransitionError(
                            item_id,
                            item.status.value,
                            new_status.value,
                            reason=f"queue {queue.id} is at max_parallel_items={queue.max_parallel_items}",
                        )
                    changed = await self.db.transition_queue_item(
                        item_id, item.status, new_status, agent_id=agent_id, started_at=now, conn=tx
                    )
                    linkage = QueueLinkage(queue_status=new_status, queue_started_at=now)
                else:
                    if new_status == QueueItemStatus.COMPLETED and item.item_type == ItemType.TASK:
                        await self._complete_task(item.item_id, tx)
                    changed = await self.db.transition_queue_item(
                        item_id,
                        item.status,
                        new_status,
                        agent_id=agent_id,
                        error_message=error_message,
                        completed_at=now,
                        conn=tx,
                    )
                    linkage = QueueLinkage(queue_status=new_status, queue_completed_at=now)
                    if error_message is not None:
                        linkage.queue_error_message = error_message

                if not changed:
                    raise InvalidTransitionError(
                        item_id, item.status.value, new_status.value, reason="item changed concurrently"
                    )
                if agent_id is not None:
                    linkage.queue_agent_id = agent_id
                await self._mirror(item, linkage, tx)
                updated = await self.db.get_queue_item(item_id, conn=tx)

            logger.info(
                "queue_item_status_changed",
                from_status=item.status.value,
                to_status=new_status.value,
            )
        assert updated is not None
        return updated

    async def update_ticket_queue_status(
        self,
        ticket_id: int,
        new_status: QueueItemStatus | str,
        agent_id: str | None = None,
        error_message: str | None = None,
    ) -> QueueItem:
        """Transition the ticket's active queue item.

        Raises:
            NotFoundError: If the ticket does not exist or has no active item
        """
        item = await self._active_item_for_ticket(ticket_id)
        return await self.update_item_status(
            item.id, new_status, agent_id=agent_id, error_message=error_message
        )

    async def requeue_item(self, item_id: int, priority: int | None = None) -> QueueItem:
        """Create a new queued item for the target of a failed or cancelled item.

        The old item is kept unchanged as history.

        Raises:
            NotFoundError: If the item does not exist
            InvalidTransitionError: If the item is not failed or cancelled
        """
        async with self.db.transaction() as tx:
            item = await self.db.get_queue_item(item_id, conn=tx)
            if item is None:
                raise NotFoundError("QueueItem", item_id)
            if item.status not in _REQUEUEABLE:
                raise InvalidTransitionError(
                    item_id,
                    item.status.value,
                    QueueItemStatus.QUEUED.value,
                    reason="only failed or cancelled items can be requeued",
                )
            new_item = await self.add_item(
                item.queue_id,
                item.item_type,
                item.item_id,
                priority if priority is not None else item.priority,
                conn=tx,
            )
        logger.info("queue_item_requeued", item_id=item_id, new_item_id=new_item.id)
        return new_item

    # Removal

    async def remove_item(self, item_id: int) -> bool:
        """Delete a queue item; False if it was already gone.

        Removing an active item also detaches its ticket/task from the queue.
        """
        async with self.db.transaction() as tx:
            item = await self.db.get_queue_item(item_id, conn=tx)
            if item is None:
                return False
            await self.db.delete_queue_item(item_id, conn=tx)
            if item.is_active:
                await self._detach(item.item_type, item.item_id, item.queue_id, tx)
        logger.info("queue_item_removed", item_id=item_id, queue_id=item.queue_id)
        return True

    async def remove_from_queue(self, ticket_id: int) -> bool:
        """Delete the ticket's active items and clear its linkage fields.

        Returns:
            False if the ticket was not queued (so a repeated call returns False)

        Raises:
            NotFoundError: If the ticket does not exist
        """
        async with self.db.transaction() as tx:
            ticket = await self.db.get_ticket(ticket_id, conn=tx)
            if ticket is None:
                raise NotFoundError("Ticket", ticket_id)
            items = await self.db.list_items_for_target(
                ItemType.TICKET, ticket_id, statuses=sorted(ACTIVE_ITEM_STATUSES), conn=tx
            )
            for item in items:
                await self.db.delete_queue_item(item.id, conn=tx)
            if ticket.queue_id is None and not items:
                return False
            await self.db.update_ticket(ticket_id, QueueLinkage.cleared(), conn=tx)
        logger.info("ticket_removed_from_queue", ticket_id=ticket_id, removed=len(items))
        return True

    async def dequeue_ticket_with_tasks(self, ticket_id: int) -> int:
        """Remove the active items of a ticket and all of its tasks.

        Returns:
            Number of queue items deleted
        """
        async with self.db.transaction() as tx:
            if await self.db.get_ticket(ticket_id, conn=tx) is None:
                raise NotFoundError("Ticket", ticket_id)
            tasks = await self.db.list_tasks(ticket_id, conn=tx)

            removed = 0
            targets = [(ItemType.TICKET, ticket_id)] + [(ItemType.TASK, task.id) for task in tasks]
            for item_type, target_id in targets:
                items = await self.db.list_items_for_target(
                    item_type, target_id, statuses=sorted(ACTIVE_ITEM_STATUSES), conn=tx
                )
                for item in items:
                    await self.db.delete_queue_item(item.id, conn=tx)
                    await self._detach(item_type, target_id, item.queue_id, tx)
                    removed += 1

        logger.info("ticket_dequeued_with_tasks", ticket_id=ticket_id, removed=removed)
        return removed

    async def list_items(
        self, queue_id: int, status: QueueItemStatus | str | None = None
    ) -> list[QueueItem]:
        """List a queue's items in dispatch order, optionally filtered by status."""
        if await self.db.get_queue(queue_id) is None:
            raise NotFoundError("Queue", queue_id)
        try:
            statuses = [QueueItemStatus(status)] if status is not None else None
        except ValueError as e:
            raise ValidationError(f"Unknown queue item status: {status}") from e
        return await self.db.list_queue_items(queue_id, statuses=statuses)

    # Helpers

    @staticmethod
    def _coerce_item_type(item_type: ItemType | str) -> ItemType:
        try:
            return ItemType(item_type)
        except ValueError as e:
            raise ValidationError(f"Unsupported item type: {item_type}") from e

    async def _get_target(self, item_type: ItemType, item_id: int, conn: Connection) -> Ticket | Task:
        target: Ticket | Task | None
        if item_type == ItemType.TICKET:
            target = await self.db.get_ticket(item_id, conn=conn)
        else:
            target = await self.db.get_task(item_id, conn=conn)
        if target is None:
            raise NotFoundError(item_type.value.capitalize(), item_id)
        return target

    async def _target_project(self, target: Ticket | Task, conn: Connection) -> int:
        if isinstance(target, Ticket):
            return target.project_id
        ticket = await self.db.get_ticket(target.ticket_id, conn=conn)
        if ticket is None:
            raise NotFoundError("Ticket", target.ticket_id)
        return ticket.project_id

    async def _is_eligible(self, item: QueueItem, conn: Connection | None) -> bool:
        if item.item_type == ItemType.TICKET:
            return True
        return await self.resolver.are_dependencies_completed(item.item_id, conn=conn)

    async def _complete_task(self, task_id: int, conn: Connection) -> None:
        task = await self.db.get_task(task_id, conn=conn)
        if task is None:
            raise NotFoundError("Task", task_id)
        if task.status != TaskStatus.COMPLETED:
            await self.ordering.update_task(task_id, TaskUpdate(status=TaskStatus.COMPLETED), conn=conn)

    async def _mirror(self, item: QueueItem, linkage: QueueLinkage, conn: Connection) -> None:
        """Copy an item's new state onto its target, if the target still points at this queue."""
        target = await self._get_target(item.item_type, item.item_id, conn)
        if target.queue_id != item.queue_id:
            return
        await self.db.update_linkage(item.item_type, item.item_id, linkage, conn=conn)

    async def _detach(self, item_type: ItemType, item_id: int, queue_id: int, conn: Connection) -> None:
        target = await self._get_target(item_type, item_id, conn)
        if target.queue_id == queue_id:
            await self.db.update_linkage(item_type, item_id, QueueLinkage.cleared(), conn=conn)

    async def _active_item_for_ticket(self, ticket_id: int) -> QueueItem:
        if await self.db.get_ticket(ticket_id) is None:
            raise NotFoundError("Ticket", ticket_id)
        items = await self.db.list_items_for_target(
            ItemType.TICKET, ticket_id, statuses=sorted(ACTIVE_ITEM_STATUSES)
        )
        if not items:
            raise NotFoundError("Active queue item for ticket", ticket_id)
        return items[0]
