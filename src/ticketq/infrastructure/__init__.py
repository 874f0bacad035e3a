"""Infrastructure layer for ticketq."""

from ticketq.infrastructure.config import Config, ConfigManager, QueueConfig
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    TicketQError,
    ValidationError,
)
from ticketq.infrastructure.logger import bound_context, get_logger, setup_logging

__all__ = [
    "Config",
    "ConfigManager",
    "ConflictError",
    "Database",
    "InvalidTransitionError",
    "NotFoundError",
    "QueueConfig",
    "StoreError",
    "TicketQError",
    "ValidationError",
    "bound_context",
    "get_logger",
    "setup_logging",
]
