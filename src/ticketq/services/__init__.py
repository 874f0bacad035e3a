"""Service layer for tickets, task ordering, dependency resolution, queues and dispatch."""

from ticketq.services.dependency_resolver import CircularDependencyError, DependencyResolver
from ticketq.services.dispatcher import ALLOWED_TRANSITIONS, Dispatcher
from ticketq.services.queue_service import QueueService
from ticketq.services.stats_service import StatsService
from ticketq.services.task_ordering import TaskOrderingManager
from ticketq.services.ticket_service import TicketService

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CircularDependencyError",
    "DependencyResolver",
    "Dispatcher",
    "QueueService",
    "StatsService",
    "TaskOrderingManager",
    "TicketService",
]
