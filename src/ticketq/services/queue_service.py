"""Queue management service."""

from pydantic import ValidationError as PydanticValidationError

from ticketq.domain.models import (
    TERMINAL_ITEM_STATUSES,
    Queue,
    QueueUpdate,
    QueueWithStats,
    utc_now_ms,
)
from ticketq.infrastructure.config import QueueConfig
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import NotFoundError, ValidationError
from ticketq.infrastructure.logger import get_logger
from ticketq.services.stats_service import StatsService

logger = get_logger(__name__)


class QueueService:
    """Creates and administers queues.

    Pausing a queue only stops dispatch; items already in progress keep
    their state and queued items keep waiting.
    """

    def __init__(self, database: Database, queue_config: QueueConfig | None = None):
        """Initialize queue service.

        Args:
            database: Database instance
            queue_config: Defaults for new queues (default: QueueConfig())
        """
        self.db = database
        self.config = queue_config or QueueConfig()
        self.stats = StatsService(database, self.config)

    async def create_queue(
        self,
        project_id: int,
        name: str,
        max_parallel_items: int | None = None,
        description: str | None = None,
    ) -> Queue:
        """Create an active queue.

        Raises:
            ValidationError: On an empty name or max_parallel_items < 1
            ConflictError: If the project already has a queue with this name
        """
        if not name or not name.strip():
            raise ValidationError("Queue name must not be empty")
        if max_parallel_items is None:
            max_parallel_items = self.config.default_max_parallel_items
        if max_parallel_items < 1:
            raise ValidationError("max_parallel_items must be >= 1")

        queue = await self.db.insert_queue(
            project_id, name, max_parallel_items, description=description
        )
        logger.info("queue_created", queue_id=queue.id, project_id=project_id, name=name)
        return queue

    async def get_queue(self, queue_id: int) -> Queue:
        queue = await self.db.get_queue(queue_id)
        if queue is None:
            raise NotFoundError("Queue", queue_id)
        return queue

    async def list_queues(self, project_id: int) -> list[Queue]:
        return await self.db.list_queues(project_id)

    async def list_queues_with_stats(self, project_id: int) -> list[QueueWithStats]:
        """List a project's queues, each paired with its current item counts."""
        queues = await self.db.list_queues(project_id)
        return [
            QueueWithStats(queue=queue, stats=await self.stats.get_queue_stats(queue.id))
            for queue in queues
        ]

    async def update_queue(self, queue_id: int, update: QueueUpdate | dict) -> Queue:
        """Apply a partial update; renames are checked for uniqueness by the store.

        Raises:
            NotFoundError: If the queue does not exist
            ValidationError: If a mapping update has unknown or invalid fields
            ConflictError: If the new name is taken in the project
        """
        if isinstance(update, dict):
            try:
                update = QueueUpdate.model_validate(update)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid queue update: {e}") from e
        queue = await self.db.update_queue(queue_id, update)
        if queue is None:
            raise NotFoundError("Queue", queue_id)
        logger.info("queue_updated", queue_id=queue_id, fields=sorted(update.model_fields_set))
        return queue

    async def pause_queue(self, queue_id: int) -> Queue:
        return await self.update_queue(queue_id, QueueUpdate(is_active=False))

    async def resume_queue(self, queue_id: int) -> Queue:
        return await self.update_queue(queue_id, QueueUpdate(is_active=True))

    async def delete_queue(self, queue_id: int) -> bool:
        """Delete a queue and its items, detaching linked tickets and tasks."""
        deleted = await self.db.delete_queue(queue_id)
        if deleted:
            logger.info("queue_deleted", queue_id=queue_id)
        return deleted

    async def clear_completed(self, queue_id: int) -> int:
        """Delete the queue's completed, failed and cancelled items.

        Linkage fields on the wrapped tickets/tasks are left as history.

        Returns:
            Number of items deleted
        """
        await self.get_queue(queue_id)
        removed = await self.db.delete_queue_items(queue_id, statuses=sorted(TERMINAL_ITEM_STATUSES))
        logger.info("queue_cleared", queue_id=queue_id, removed=removed)
        return removed

    async def cleanup_queue_data(
        self, project_id: int | None = None, max_age_ms: int | None = None
    ) -> int:
        """Delete completed, failed and cancelled items older than ``max_age_ms``.

        Args:
            project_id: Limit the sweep to this project's queues (default: all queues)
            max_age_ms: Retention window (default: queue.completed_item_max_age_seconds)

        Returns:
            Number of items deleted
        """
        if max_age_ms is None:
            max_age_ms = self.config.completed_item_max_age_seconds * 1000
        if max_age_ms < 0:
            raise ValidationError("max_age_ms must be >= 0")

        removed = await self.db.delete_terminal_items_before(
            utc_now_ms() - max_age_ms,
            sorted(TERMINAL_ITEM_STATUSES),
            project_id=project_id,
        )
        logger.info("queue_data_cleaned", project_id=project_id, max_age_ms=max_age_ms, removed=removed)
        return removed

    async def reset_queue(self, queue_id: int) -> int:
        """Delete every item of the queue and detach every linked ticket and task.

        Returns:
            Number of items deleted
        """
        async with self.db.transaction() as tx:
            if await self.db.get_queue(queue_id, conn=tx) is None:
                raise NotFoundError("Queue", queue_id)
            removed = await self.db.delete_queue_items(queue_id, conn=tx)
            await self.db.clear_linkage_for_queue(queue_id, conn=tx)
        logger.warning("queue_reset", queue_id=queue_id, removed=removed)
        return removed
