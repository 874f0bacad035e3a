"""Exception hierarchy for ticketq."""

from typing import Any


class TicketQError(Exception):
    """Base exception for all ticketq errors."""

    pass


class NotFoundError(TicketQError):
    """Referenced ticket, task, queue or queue item does not exist.

    Attributes:
        entity: Entity type name (e.g. "Task")
        entity_id: Id that was looked up
    """

    def __init__(self, entity: str, entity_id: Any):
        """Initialize not-found error.

        Args:
            entity: Entity type name
            entity_id: Missing id
        """
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(TicketQError):
    """Malformed input: bad dependency, bad index, unsupported item type."""

    pass


class ConflictError(TicketQError):
    """Duplicate queue name or duplicate active queue item."""

    pass


class InvalidTransitionError(TicketQError):
    """Disallowed queue item status change.

    Attributes:
        entity_id: Queue item id
        current: Status the item is in
        requested: Status that was requested
    """

    def __init__(self, entity_id: Any, current: str, requested: str, reason: str | None = None):
        """Initialize invalid transition error.

        Args:
            entity_id: Queue item id
            current: Current status value
            requested: Requested status value
            reason: Optional extra detail
        """
        message = f"Queue item {entity_id}: cannot transition {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.entity_id = entity_id
        self.current = current
        self.requested = requested


class StoreError(TicketQError):
    """Storage failure wrapped with the entity it concerned.

    Raw driver errors never leave the store; they are chained as __cause__.
    """

    def __init__(self, message: str, entity: str | None = None, entity_id: Any = None):
        """Initialize store error.

        Args:
            message: What the store was doing
            entity: Entity type name, if known
            entity_id: Entity id, if known
        """
        context = ""
        if entity is not None:
            context = f" [{entity}" + (f" {entity_id}" if entity_id is not None else "") + "]"
        super().__init__(f"{message}{context}")
        self.entity = entity
        self.entity_id = entity_id
