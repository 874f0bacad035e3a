"""Ticket CRUD service."""

from pydantic import ValidationError as PydanticValidationError

from ticketq.domain.models import (
    Ticket,
    TicketPriority,
    TicketStatus,
    TicketUpdate,
    TicketWithTasks,
)
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import NotFoundError, ValidationError
from ticketq.infrastructure.logger import get_logger

logger = get_logger(__name__)


class TicketService:
    """Service for creating, reading, updating and deleting tickets."""

    def __init__(self, database: Database):
        self.db = database

    async def create_ticket(
        self,
        project_id: int,
        title: str,
        overview: str | None = None,
        priority: TicketPriority | str = TicketPriority.NORMAL,
    ) -> Ticket:
        """Create a new open ticket.

        Raises:
            ValidationError: If the title is empty or the priority unknown
        """
        if not title or not title.strip():
            raise ValidationError("Ticket title must not be empty")
        try:
            priority = TicketPriority(priority)
        except ValueError as e:
            raise ValidationError(f"Unknown ticket priority: {priority}") from e

        ticket = await self.db.insert_ticket(project_id, title, overview=overview, priority=priority)
        logger.info("ticket_created", ticket_id=ticket.id, project_id=project_id)
        return ticket

    async def get_ticket(self, ticket_id: int) -> Ticket:
        ticket = await self.db.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket", ticket_id)
        return ticket

    async def get_ticket_with_tasks(self, ticket_id: int) -> TicketWithTasks:
        ticket = await self.get_ticket(ticket_id)
        tasks = await self.db.list_tasks(ticket_id)
        return TicketWithTasks(ticket=ticket, tasks=tasks)

    async def list_tickets(
        self,
        project_id: int,
        status: TicketStatus | str | None = None,
        priority: TicketPriority | str | None = None,
    ) -> list[Ticket]:
        try:
            status = TicketStatus(status) if status is not None else None
            priority = TicketPriority(priority) if priority is not None else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return await self.db.list_tickets(project_id, status=status, priority=priority)

    async def update_ticket(self, ticket_id: int, update: TicketUpdate | dict) -> Ticket:
        """Apply a partial update.

        Args:
            ticket_id: Ticket to update
            update: A TicketUpdate, or a plain mapping validated into one

        Raises:
            NotFoundError: If the ticket does not exist
            ValidationError: If the mapping has unknown or invalid fields
        """
        if isinstance(update, dict):
            try:
                update = TicketUpdate.model_validate(update)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid ticket update: {e}") from e

        ticket = await self.db.update_ticket(ticket_id, update)
        if ticket is None:
            raise NotFoundError("Ticket", ticket_id)
        logger.info("ticket_updated", ticket_id=ticket_id, fields=sorted(update.model_fields_set))
        return ticket

    async def delete_ticket(self, ticket_id: int) -> bool:
        """Delete a ticket with its tasks and queue items; False if already gone."""
        deleted = await self.db.delete_ticket(ticket_id)
        if deleted:
            logger.info("ticket_deleted", ticket_id=ticket_id)
        return deleted
