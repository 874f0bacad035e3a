"""Statistics computed from current rows.

Nothing here keeps counters; every figure is derived on demand from the
tickets, tasks and queue items in the store.
"""

import math

from ticketq.domain.models import (
    ProcessingStats,
    ProjectStats,
    QueueHealth,
    QueueItemStatus,
    QueueStats,
    TaskStats,
    TaskStatus,
    TicketStatus,
    utc_now_ms,
)
from ticketq.infrastructure.config import QueueConfig
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import NotFoundError
from ticketq.infrastructure.logger import get_logger

logger = get_logger(__name__)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


class StatsService:
    """Queue, ticket, project and throughput statistics plus queue health."""

    def __init__(self, database: Database, queue_config: QueueConfig | None = None):
        self.db = database
        self.config = queue_config or QueueConfig()

    async def get_queue_stats(self, queue_id: int) -> QueueStats:
        """Item counts per status and the agents currently holding items.

        Raises:
            NotFoundError: If the queue does not exist
        """
        if await self.db.get_queue(queue_id) is None:
            raise NotFoundError("Queue", queue_id)

        counts = await self.db.count_items_by_status(queue_id)
        in_progress = await self.db.list_queue_items(
            queue_id, statuses=[QueueItemStatus.IN_PROGRESS]
        )
        agents = sorted({item.agent_id for item in in_progress if item.agent_id})

        return QueueStats(
            queue_id=queue_id,
            total=sum(counts.values()),
            queued=counts[QueueItemStatus.QUEUED],
            in_progress=counts[QueueItemStatus.IN_PROGRESS],
            completed=counts[QueueItemStatus.COMPLETED],
            failed=counts[QueueItemStatus.FAILED],
            cancelled=counts[QueueItemStatus.CANCELLED],
            current_agents=agents,
        )

    async def get_ticket_stats(self, ticket_id: int) -> TaskStats:
        """Task completion summary for a ticket.

        ``completion_percentage`` is completed/total * 100 rounded half up,
        and 0 for a ticket without tasks. ``pending_tasks`` counts every task
        that is not completed.

        Raises:
            NotFoundError: If the ticket does not exist
        """
        if await self.db.get_ticket(ticket_id) is None:
            raise NotFoundError("Ticket", ticket_id)

        tasks = await self.db.list_tasks(ticket_id)
        total = len(tasks)
        completed = sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)
        hours = sum(task.estimated_hours or 0.0 for task in tasks)

        return TaskStats(
            ticket_id=ticket_id,
            total_tasks=total,
            completed_tasks=completed,
            pending_tasks=total - completed,
            total_estimated_hours=hours,
            completion_percentage=_round_half_up(completed / total * 100) if total else 0,
        )

    # Same figures, named from the task side
    get_task_stats = get_ticket_stats

    async def get_project_stats(self, project_id: int) -> ProjectStats:
        tickets = await self.db.list_tickets(project_id)
        return ProjectStats(
            project_id=project_id,
            total_tickets=len(tickets),
            open_tickets=sum(1 for t in tickets if t.status == TicketStatus.OPEN),
            in_progress_tickets=sum(1 for t in tickets if t.status == TicketStatus.IN_PROGRESS),
            closed_tickets=sum(1 for t in tickets if t.status == TicketStatus.CLOSED),
        )

    async def get_processing_stats(
        self, queue_id: int, start_ms: int | None = None, end_ms: int | None = None
    ) -> ProcessingStats:
        """Throughput for items created within [start_ms, end_ms] (inclusive, open-ended if None).

        success_rate is a percentage of all items in the window. Processing
        time is completed_at - started_at over completed items.
        """
        if await self.db.get_queue(queue_id) is None:
            raise NotFoundError("Queue", queue_id)

        items = [
            item
            for item in await self.db.list_queue_items(queue_id)
            if (start_ms is None or item.created_at >= start_ms)
            and (end_ms is None or item.created_at <= end_ms)
        ]
        completed = [item for item in items if item.status == QueueItemStatus.COMPLETED]
        failed = [item for item in items if item.status == QueueItemStatus.FAILED]
        total_time = sum(
            item.completed_at - item.started_at
            for item in completed
            if item.started_at is not None and item.completed_at is not None
        )

        return ProcessingStats(
            queue_id=queue_id,
            total_items=len(items),
            completed_items=len(completed),
            failed_items=len(failed),
            success_rate=len(completed) / len(items) * 100 if items else 0.0,
            average_processing_time_ms=total_time / len(completed) if completed else 0.0,
            total_processing_time_ms=total_time,
        )

    async def get_queue_health(self, project_id: int) -> QueueHealth:
        """Read-only health report over a project's queues.

        An item is stuck when it has been in_progress longer than
        ``stuck_item_threshold_seconds``. Stuck items are only reported;
        an operator has to cancel them.
        """
        queues = await self.db.list_queues(project_id)
        threshold_ms = self.config.stuck_item_threshold_seconds * 1000
        now = utc_now_ms()

        issues: list[str] = []
        total_items = 0
        stuck_total = 0
        for queue in queues:
            items = await self.db.list_queue_items(queue.id)
            total_items += len(items)
            stuck = [
                item
                for item in items
                if item.status == QueueItemStatus.IN_PROGRESS
                and item.started_at is not None
                and now - item.started_at > threshold_ms
            ]
            if stuck:
                stuck_total += len(stuck)
                issues.append(
                    f"Queue '{queue.name}' has {len(stuck)} item(s) in progress for more than "
                    f"{self.config.stuck_item_threshold_seconds}s"
                )
            queued = sum(1 for item in items if item.status == QueueItemStatus.QUEUED)
            if queued and not queue.is_active:
                issues.append(f"Queue '{queue.name}' is paused with {queued} queued item(s)")

        if stuck_total:
            logger.warning("stuck_queue_items", project_id=project_id, stuck_items=stuck_total)

        return QueueHealth(
            project_id=project_id,
            healthy=not issues,
            issues=issues,
            total_queues=len(queues),
            active_queues=sum(1 for queue in queues if queue.is_active),
            total_items=total_items,
            stuck_items=stuck_total,
        )
