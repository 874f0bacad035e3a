"""Domain models for ticketq."""

from ticketq.domain.models import (
    ItemType,
    Queue,
    QueueItem,
    QueueItemStatus,
    Task,
    TaskStatus,
    Ticket,
    TicketStatus,
)

__all__ = [
    "ItemType",
    "Queue",
    "QueueItem",
    "QueueItemStatus",
    "Task",
    "TaskStatus",
    "Ticket",
    "TicketStatus",
]
