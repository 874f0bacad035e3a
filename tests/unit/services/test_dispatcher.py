"""Unit tests for Dispatcher."""

import pytest
from ticketq.domain.models import (
    ItemType,
    Queue,
    QueueItemStatus,
    QueueUpdate,
    Task,
    TaskStatus,
    Ticket,
)
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ticketq.services.dispatcher import ALLOWED_TRANSITIONS, Dispatcher
from ticketq.services.queue_service import QueueService
from ticketq.services.task_ordering import TaskOrderingManager


@pytest.mark.asyncio
class TestAddItem:
    """Test enqueueing."""

    async def test_add_stamps_linkage(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, ItemType.TICKET, ticket.id, priority=3)

        assert item.status == QueueItemStatus.QUEUED
        assert item.priority == 3
        linked = await memory_db.get_ticket(ticket.id)
        assert linked.queue_id == queue.id
        assert linked.queue_status == QueueItemStatus.QUEUED
        assert linked.queue_priority == 3
        assert linked.queued_at == item.created_at
        assert linked.queue_position == 1

    async def test_default_priority(self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        assert item.priority == 5

    async def test_duplicate_active_item_conflicts(
        self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket
    ) -> None:
        await dispatcher.add_item(queue.id, "ticket", ticket.id)
        with pytest.raises(ConflictError):
            await dispatcher.add_item(queue.id, "ticket", ticket.id)

    async def test_active_in_other_queue_conflicts(
        self, dispatcher: Dispatcher, queue_service: QueueService, queue: Queue, ticket: Ticket
    ) -> None:
        other = await queue_service.create_queue(queue.project_id, "other")
        await dispatcher.add_item(queue.id, "ticket", ticket.id)
        with pytest.raises(ConflictError):
            await dispatcher.add_item(other.id, "ticket", ticket.id)

    async def test_other_project_rejected(
        self, dispatcher: Dispatcher, queue_service: QueueService, ticket: Ticket
    ) -> None:
        foreign = await queue_service.create_queue(ticket.project_id + 1, "foreign")
        with pytest.raises(ValidationError):
            await dispatcher.add_item(foreign.id, "ticket", ticket.id)

    async def test_bad_inputs(self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket) -> None:
        with pytest.raises(ValidationError):
            await dispatcher.add_item(queue.id, "epic", ticket.id)
        with pytest.raises(ValidationError):
            await dispatcher.add_item(queue.id, "ticket", ticket.id, priority=11)
        with pytest.raises(NotFoundError):
            await dispatcher.add_item(999, "ticket", ticket.id)
        with pytest.raises(NotFoundError):
            await dispatcher.add_item(queue.id, "task", 999)

    async def test_paused_queue_accepts_items(
        self, dispatcher: Dispatcher, queue_service: QueueService, queue: Queue, ticket: Ticket
    ) -> None:
        await queue_service.pause_queue(queue.id)
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)

        assert item.status == QueueItemStatus.QUEUED
        assert await dispatcher.get_next_item(queue.id) is None


@pytest.mark.asyncio
class TestSelection:
    """Test get_next_item and claim_next_item."""

    async def test_priority_then_age(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue
    ) -> None:
        """Test lower priority values dispatch first, ties go to the oldest."""
        tickets = [await memory_db.insert_ticket(1, f"t{i}") for i in range(3)]
        await dispatcher.add_item(queue.id, "ticket", tickets[0].id, priority=7)
        older = await dispatcher.add_item(queue.id, "ticket", tickets[1].id, priority=1)
        await dispatcher.add_item(queue.id, "ticket", tickets[2].id, priority=1)

        nxt = await dispatcher.get_next_item(queue.id)
        assert nxt.id == older.id

    async def test_peek_does_not_claim(
        self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)

        assert (await dispatcher.get_next_item(queue.id)).id == item.id
        assert (await dispatcher.get_next_item(queue.id)).status == QueueItemStatus.QUEUED

    async def test_blocked_task_skipped(
        self, dispatcher: Dispatcher, queue: Queue, chain: list[Task]
    ) -> None:
        """Test a task with incomplete dependencies is not dispatched."""
        a, b, _ = chain
        await dispatcher.add_item(queue.id, "task", b.id, priority=0)
        a_item = await dispatcher.add_item(queue.id, "task", a.id, priority=9)

        assert (await dispatcher.get_next_item(queue.id)).id == a_item.id

    async def test_only_blocked_tasks_returns_none(
        self, dispatcher: Dispatcher, queue: Queue, chain: list[Task]
    ) -> None:
        await dispatcher.add_item(queue.id, "task", chain[2].id)
        assert await dispatcher.get_next_item(queue.id) is None

    async def test_parallel_limit(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue
    ) -> None:
        first = await memory_db.insert_ticket(1, "first")
        second = await memory_db.insert_ticket(1, "second")
        await dispatcher.add_item(queue.id, "ticket", first.id)
        await dispatcher.add_item(queue.id, "ticket", second.id)

        claimed = await dispatcher.claim_next_item(queue.id, "agent-1")
        assert claimed.status == QueueItemStatus.IN_PROGRESS
        assert claimed.agent_id == "agent-1"
        assert claimed.started_at is not None

        # max_parallel_items=1 is reached
        assert await dispatcher.get_next_item(queue.id) is None
        assert await dispatcher.claim_next_item(queue.id, "agent-2") is None

    async def test_claim_mirrors_linkage(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, ticket: Ticket
    ) -> None:
        await dispatcher.add_item(queue.id, "ticket", ticket.id)
        await dispatcher.claim_next_item(queue.id, "agent-1")

        linked = await memory_db.get_ticket(ticket.id)
        assert linked.queue_status == QueueItemStatus.IN_PROGRESS
        assert linked.queue_agent_id == "agent-1"
        assert linked.queue_started_at is not None

    async def test_claim_empty_queue(self, dispatcher: Dispatcher, queue: Queue) -> None:
        assert await dispatcher.claim_next_item(queue.id, "agent-1") is None

    async def test_missing_queue(self, dispatcher: Dispatcher) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.get_next_item(999)


def test_terminal_states_have_no_exits() -> None:
    for status in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED, QueueItemStatus.CANCELLED):
        assert ALLOWED_TRANSITIONS[status] == frozenset()


@pytest.mark.asyncio
class TestTransitions:
    """Test update_item_status and the transition table."""

    async def test_full_lifecycle(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        started = await dispatcher.update_item_status(item.id, "in_progress", agent_id="a1")
        finished = await dispatcher.update_item_status(item.id, QueueItemStatus.COMPLETED)

        assert started.started_at is not None
        assert finished.completed_at is not None
        assert finished.agent_id == "a1"
        linked = await memory_db.get_ticket(ticket.id)
        assert linked.queue_status == QueueItemStatus.COMPLETED
        assert linked.queue_completed_at == finished.completed_at

    async def test_failure_records_error(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        await dispatcher.update_item_status(item.id, "in_progress")
        failed = await dispatcher.update_item_status(item.id, "failed", error_message="timeout")

        assert failed.error_message == "timeout"
        assert (await memory_db.get_ticket(ticket.id)).queue_error_message == "timeout"

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ([], "completed"),
            ([], "failed"),
            ([], "queued"),
            (["in_progress"], "in_progress"),
            (["in_progress", "completed"], "in_progress"),
            (["cancelled"], "queued"),
        ],
    )
    async def test_disallowed_transitions(
        self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket, path: list[str], target: str
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        for step in path:
            await dispatcher.update_item_status(item.id, step)

        with pytest.raises(InvalidTransitionError):
            await dispatcher.update_item_status(item.id, target)

    async def test_start_respects_parallel_limit(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue
    ) -> None:
        first = await memory_db.insert_ticket(1, "first")
        second = await memory_db.insert_ticket(1, "second")
        a = await dispatcher.add_item(queue.id, "ticket", first.id)
        b = await dispatcher.add_item(queue.id, "ticket", second.id)
        await dispatcher.update_item_status(a.id, "in_progress")

        with pytest.raises(InvalidTransitionError):
            await dispatcher.update_item_status(b.id, "in_progress")

    async def test_completing_task_item_completes_task(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, chain: list[Task]
    ) -> None:
        a = chain[0]
        item = await dispatcher.add_item(queue.id, "task", a.id)
        await dispatcher.update_item_status(item.id, "in_progress")
        await dispatcher.update_item_status(item.id, "completed")

        assert (await memory_db.get_task(a.id)).status == TaskStatus.COMPLETED

    async def test_completing_blocked_task_item_rolls_back(
        self,
        dispatcher: Dispatcher,
        queue_service: QueueService,
        memory_db: Database,
        queue: Queue,
        chain: list[Task],
    ) -> None:
        """Test the dependency gate rejects completion and leaves the item in progress."""
        b = chain[1]
        await queue_service.update_queue(queue.id, QueueUpdate(max_parallel_items=2))
        item = await dispatcher.add_item(queue.id, "task", b.id)
        await dispatcher.update_item_status(item.id, "in_progress")

        with pytest.raises(ValidationError):
            await dispatcher.update_item_status(item.id, "completed")

        assert (await memory_db.get_queue_item(item.id)).status == QueueItemStatus.IN_PROGRESS
        assert (await memory_db.get_task(b.id)).status == TaskStatus.PENDING

    async def test_unknown_status(self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        with pytest.raises(ValidationError):
            await dispatcher.update_item_status(item.id, "paused")

    async def test_ticket_queue_status(
        self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        updated = await dispatcher.update_ticket_queue_status(ticket.id, "in_progress", agent_id="a1")

        assert updated.id == item.id
        assert updated.status == QueueItemStatus.IN_PROGRESS

    async def test_ticket_queue_status_without_item(
        self, dispatcher: Dispatcher, ticket: Ticket
    ) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.update_ticket_queue_status(ticket.id, "in_progress")


@pytest.mark.asyncio
class TestRequeueAndRemoval:
    """Test requeue, removal and bulk ticket operations."""

    async def test_requeue_failed_item(
        self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket
    ) -> None:
        """Test requeue creates a new item and keeps the failed one."""
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id, priority=4)
        await dispatcher.update_item_status(item.id, "in_progress")
        await dispatcher.update_item_status(item.id, "failed", error_message="boom")

        retry = await dispatcher.requeue_item(item.id)

        assert retry.id != item.id
        assert retry.status == QueueItemStatus.QUEUED
        assert retry.priority == 4
        statuses = {i.id: i.status for i in await dispatcher.list_items(queue.id)}
        assert statuses == {item.id: QueueItemStatus.FAILED, retry.id: QueueItemStatus.QUEUED}

    async def test_requeue_active_item_rejected(
        self, dispatcher: Dispatcher, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        with pytest.raises(InvalidTransitionError):
            await dispatcher.requeue_item(item.id)

    async def test_remove_item_is_idempotent(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)

        assert await dispatcher.remove_item(item.id) is True
        assert await dispatcher.remove_item(item.id) is False
        assert (await memory_db.get_ticket(ticket.id)).queue_id is None

    async def test_remove_from_queue(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue, ticket: Ticket
    ) -> None:
        await dispatcher.add_item(queue.id, "ticket", ticket.id)

        assert await dispatcher.remove_from_queue(ticket.id) is True
        assert await dispatcher.remove_from_queue(ticket.id) is False
        linked = await memory_db.get_ticket(ticket.id)
        assert linked.queue_id is None
        assert linked.queued_at is None

    async def test_enqueue_and_dequeue_ticket_with_tasks(
        self,
        dispatcher: Dispatcher,
        ordering: TaskOrderingManager,
        queue: Queue,
        ticket: Ticket,
        chain: list[Task],
    ) -> None:
        a, b, c = chain
        await ordering.toggle_completion(a.id)

        items = await dispatcher.enqueue_ticket_with_tasks(ticket.id, queue.id)
        assert [(i.item_type, i.item_id) for i in items] == [
            (ItemType.TICKET, ticket.id),
            (ItemType.TASK, b.id),
            (ItemType.TASK, c.id),
        ]

        # Second call skips everything already active
        assert await dispatcher.enqueue_ticket_with_tasks(ticket.id, queue.id) == []

        assert await dispatcher.dequeue_ticket_with_tasks(ticket.id) == 3
        assert await dispatcher.list_items(queue.id) == []

    async def test_list_items_filter(
        self, dispatcher: Dispatcher, memory_db: Database, queue: Queue
    ) -> None:
        first = await memory_db.insert_ticket(1, "first")
        second = await memory_db.insert_ticket(1, "second")
        a = await dispatcher.add_item(queue.id, "ticket", first.id)
        await dispatcher.add_item(queue.id, "ticket", second.id)
        await dispatcher.update_item_status(a.id, "cancelled")

        cancelled = await dispatcher.list_items(queue.id, status="cancelled")
        assert [i.id for i in cancelled] == [a.id]
