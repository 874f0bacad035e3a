"""Unit tests for StatsService."""

import pytest
from ticketq.domain.models import (
    QueueItemStatus,
    Queue,
    Task,
    TaskStatus,
    TaskUpdate,
    Ticket,
    TicketStatus,
    TicketUpdate,
    utc_now_ms,
)
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import NotFoundError
from ticketq.services.dispatcher import Dispatcher
from ticketq.services.queue_service import QueueService
from ticketq.services.stats_service import StatsService
from ticketq.services.task_ordering import TaskOrderingManager
from ticketq.services.ticket_service import TicketService


@pytest.mark.asyncio
class TestQueueStats:
    """Test per-status item counts."""

    async def test_counts_and_agents(
        self, stats_service: StatsService, dispatcher: Dispatcher, memory_db: Database, queue: Queue
    ) -> None:
        tickets = [await memory_db.insert_ticket(1, f"t{i}") for i in range(3)]
        items = [await dispatcher.add_item(queue.id, "ticket", t.id) for t in tickets]
        await dispatcher.update_item_status(items[0].id, "in_progress", agent_id="agent-7")
        await dispatcher.update_item_status(items[1].id, "cancelled")

        stats = await stats_service.get_queue_stats(queue.id)

        assert stats.total == 3
        assert stats.queued == 1
        assert stats.in_progress == 1
        assert stats.cancelled == 1
        assert stats.completed == 0
        assert stats.current_agents == ["agent-7"]

    async def test_empty_queue(self, stats_service: StatsService, queue: Queue) -> None:
        stats = await stats_service.get_queue_stats(queue.id)
        assert stats.total == 0
        assert stats.current_agents == []

    async def test_missing_queue(self, stats_service: StatsService) -> None:
        with pytest.raises(NotFoundError):
            await stats_service.get_queue_stats(999)


@pytest.mark.asyncio
class TestTicketStats:
    """Test task completion summaries."""

    async def test_completion_rounds_half_up(
        self, stats_service: StatsService, ordering: TaskOrderingManager, ticket: Ticket
    ) -> None:
        """Test 2 of 3 completed tasks reports 67 percent."""
        a = await ordering.create_task(ticket.id, "a", estimated_hours=1.5)
        b = await ordering.create_task(ticket.id, "b", estimated_hours=2.0)
        await ordering.create_task(ticket.id, "c")
        await ordering.update_task(a.id, TaskUpdate(status=TaskStatus.COMPLETED))
        await ordering.update_task(b.id, TaskUpdate(status=TaskStatus.COMPLETED))

        stats = await stats_service.get_ticket_stats(ticket.id)

        assert stats.total_tasks == 3
        assert stats.completed_tasks == 2
        assert stats.pending_tasks == 1
        assert stats.completion_percentage == 67
        assert stats.total_estimated_hours == pytest.approx(3.5)

    async def test_cancelled_counts_as_pending(
        self, stats_service: StatsService, ordering: TaskOrderingManager, ticket: Ticket
    ) -> None:
        task = await ordering.create_task(ticket.id, "dropped")
        await ordering.update_task(task.id, TaskUpdate(status=TaskStatus.CANCELLED))

        stats = await stats_service.get_task_stats(ticket.id)
        assert stats.pending_tasks == 1
        assert stats.completion_percentage == 0

    async def test_no_tasks(self, stats_service: StatsService, ticket: Ticket) -> None:
        stats = await stats_service.get_ticket_stats(ticket.id)
        assert stats.total_tasks == 0
        assert stats.completion_percentage == 0

    async def test_half_rounds_up(
        self, stats_service: StatsService, ordering: TaskOrderingManager, ticket: Ticket
    ) -> None:
        """Test 1 of 8 (12.5 percent) reports 13."""
        tasks = [await ordering.create_task(ticket.id, f"t{i}") for i in range(8)]
        await ordering.toggle_completion(tasks[0].id)

        assert (await stats_service.get_ticket_stats(ticket.id)).completion_percentage == 13

    async def test_missing_ticket(self, stats_service: StatsService) -> None:
        with pytest.raises(NotFoundError):
            await stats_service.get_ticket_stats(999)


@pytest.mark.asyncio
class TestProjectAndProcessingStats:
    """Test project summaries and throughput."""

    async def test_project_stats(self, stats_service: StatsService, ticket_service: TicketService) -> None:
        first = await ticket_service.create_ticket(1, "one")
        second = await ticket_service.create_ticket(1, "two")
        await ticket_service.create_ticket(1, "three")
        await ticket_service.create_ticket(2, "elsewhere")
        await ticket_service.update_ticket(first.id, TicketUpdate(status=TicketStatus.CLOSED))
        await ticket_service.update_ticket(second.id, TicketUpdate(status=TicketStatus.IN_PROGRESS))

        stats = await stats_service.get_project_stats(1)

        assert stats.total_tickets == 3
        assert stats.open_tickets == 1
        assert stats.in_progress_tickets == 1
        assert stats.closed_tickets == 1

    async def test_processing_stats(
        self, stats_service: StatsService, dispatcher: Dispatcher, memory_db: Database, queue: Queue
    ) -> None:
        tickets = [await memory_db.insert_ticket(1, f"t{i}") for i in range(3)]
        ok, bad, _ = [await dispatcher.add_item(queue.id, "ticket", t.id) for t in tickets]
        await dispatcher.update_item_status(ok.id, "in_progress")
        await dispatcher.update_item_status(ok.id, "completed")
        await dispatcher.update_item_status(bad.id, "in_progress")
        await dispatcher.update_item_status(bad.id, "failed", error_message="boom")

        stats = await stats_service.get_processing_stats(queue.id)
        finished = await memory_db.get_queue_item(ok.id)

        assert stats.total_items == 3
        assert stats.completed_items == 1
        assert stats.failed_items == 1
        assert stats.success_rate == pytest.approx(100 / 3)
        assert stats.total_processing_time_ms == finished.completed_at - finished.started_at
        assert stats.average_processing_time_ms == stats.total_processing_time_ms

    async def test_processing_window_excludes_items(
        self, stats_service: StatsService, dispatcher: Dispatcher, queue: Queue, ticket: Ticket
    ) -> None:
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)

        stats = await stats_service.get_processing_stats(queue.id, start_ms=item.created_at + 1)
        assert stats.total_items == 0
        assert stats.success_rate == 0.0

        stats = await stats_service.get_processing_stats(
            queue.id, start_ms=item.created_at, end_ms=item.created_at
        )
        assert stats.total_items == 1


@pytest.mark.asyncio
class TestQueueHealth:
    """Test the read-only health report."""

    async def test_healthy(self, stats_service: StatsService, queue: Queue) -> None:
        health = await stats_service.get_queue_health(queue.project_id)

        assert health.healthy is True
        assert health.issues == []
        assert health.total_queues == 1
        assert health.active_queues == 1

    async def test_stuck_item_reported_not_changed(
        self,
        stats_service: StatsService,
        dispatcher: Dispatcher,
        memory_db: Database,
        queue: Queue,
        ticket: Ticket,
    ) -> None:
        """Test an item in progress for two hours is flagged but left in progress."""
        item = await dispatcher.add_item(queue.id, "ticket", ticket.id)
        two_hours_ago = utc_now_ms() - 2 * 3600 * 1000
        assert await memory_db.transition_queue_item(
            item.id,
            QueueItemStatus.QUEUED,
            QueueItemStatus.IN_PROGRESS,
            agent_id="slow",
            started_at=two_hours_ago,
        )

        health = await stats_service.get_queue_health(queue.project_id)

        assert health.healthy is False
        assert health.stuck_items == 1
        assert "main" in health.issues[0]
        assert (await memory_db.get_queue_item(item.id)).status == QueueItemStatus.IN_PROGRESS

    async def test_paused_queue_with_backlog(
        self,
        stats_service: StatsService,
        dispatcher: Dispatcher,
        queue_service: QueueService,
        queue: Queue,
        chain: list[Task],
    ) -> None:
        await dispatcher.add_item(queue.id, "task", chain[0].id)
        await queue_service.pause_queue(queue.id)

        health = await stats_service.get_queue_health(queue.project_id)

        assert health.healthy is False
        assert health.active_queues == 0
        assert health.total_items == 1
        assert "paused" in health.issues[0]
