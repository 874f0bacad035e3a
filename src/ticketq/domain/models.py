"""Core domain models for ticketq."""

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


def utc_now_ms() -> int:
    """Return the current UTC time as integer epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class TicketStatus(str, Enum):
    """Ticket lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    """Ticket urgency labels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class TaskStatus(str, Enum):
    """Task lifecycle states.

    ``done`` is derived from this enum and never stored separately.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Tasks that still need work; availability is only computed for these
OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class QueueItemStatus(str, Enum):
    """QueueItem lifecycle states."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_ITEM_STATUSES = frozenset({QueueItemStatus.QUEUED, QueueItemStatus.IN_PROGRESS})
TERMINAL_ITEM_STATUSES = frozenset(
    {QueueItemStatus.COMPLETED, QueueItemStatus.FAILED, QueueItemStatus.CANCELLED}
)


class ItemType(str, Enum):
    """Kind of entity a QueueItem wraps."""

    TICKET = "ticket"
    TASK = "task"


class _LinkageFields(BaseModel):
    """Queue bookkeeping columns mirrored onto tickets and tasks."""

    queue_id: int | None = None
    queue_position: int | None = None
    queue_status: QueueItemStatus | None = None
    queue_priority: int | None = None
    queued_at: int | None = None
    queue_started_at: int | None = None
    queue_completed_at: int | None = None
    queue_agent_id: str | None = None
    queue_error_message: str | None = None


class QueueLinkage(_LinkageFields):
    """Partial update of the queue linkage columns.

    Only explicitly set fields are written.
    """

    @classmethod
    def cleared(cls) -> "QueueLinkage":
        """Linkage update that detaches an entity from its queue."""
        return cls(
            queue_id=None,
            queue_position=None,
            queue_status=None,
            queue_priority=None,
            queued_at=None,
            queue_started_at=None,
            queue_completed_at=None,
            queue_agent_id=None,
            queue_error_message=None,
        )


class _QueueLinked(_LinkageFields):
    """Queue linkage shared by Ticket and Task."""

    @model_validator(mode="after")
    def validate_queue_linkage(self) -> "_QueueLinked":
        """An entity is either fully enqueued or not enqueued at all."""
        if (self.queue_id is None) != (self.queue_status is None):
            raise ValueError("queue_id and queue_status must be set or cleared together")
        return self

    @property
    def is_actively_queued(self) -> bool:
        return self.queue_status in ACTIVE_ITEM_STATUSES


class Ticket(_QueueLinked):
    """Top-level unit of work belonging to a project."""

    id: int
    project_id: int
    title: str
    overview: str | None = None
    status: TicketStatus = TicketStatus.OPEN
    priority: TicketPriority = TicketPriority.NORMAL
    created_at: int = Field(default_factory=utc_now_ms)
    updated_at: int = Field(default_factory=utc_now_ms)

    model_config = ConfigDict()


class Task(_QueueLinked):
    """A step within a ticket.

    Attributes:
        order_index: Dense 0-based position within the ticket
        dependencies: Ids of tasks in the same ticket that must complete first
    """

    id: int
    ticket_id: int
    content: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    order_index: int = Field(default=0, ge=0)
    dependencies: list[int] = Field(default_factory=list)
    estimated_hours: float | None = Field(default=None, ge=0)
    agent_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=utc_now_ms)
    updated_at: int = Field(default_factory=utc_now_ms)

    model_config = ConfigDict()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def done(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES


class Queue(BaseModel):
    """Named, project-scoped container of QueueItems."""

    id: int
    project_id: int
    name: str
    description: str | None = None
    is_active: bool = True
    max_parallel_items: int = Field(default=1, ge=1)
    created_at: int = Field(default_factory=utc_now_ms)
    updated_at: int = Field(default_factory=utc_now_ms)

    model_config = ConfigDict()


class QueueItem(BaseModel):
    """An enqueued reference to a ticket or task.

    Lower ``priority`` values are dispatched first.
    """

    id: int
    queue_id: int
    item_type: ItemType
    item_id: int
    priority: int = Field(default=5, ge=0, le=10)
    status: QueueItemStatus = QueueItemStatus.QUEUED
    agent_id: str | None = None
    error_message: str | None = None
    started_at: int | None = None
    completed_at: int | None = None
    created_at: int = Field(default_factory=utc_now_ms)
    updated_at: int = Field(default_factory=utc_now_ms)

    model_config = ConfigDict()

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ITEM_STATUSES


class TicketWithTasks(BaseModel):
    """Ticket together with its tasks in order_index order."""

    ticket: Ticket
    tasks: list[Task] = Field(default_factory=list)


# Partial updates. Services pass model_dump(exclude_unset=True) to the store,
# so an explicit None clears a nullable column while omitted fields are untouched.


class _PartialUpdate(BaseModel):
    """Base for partial updates; fields in ``non_nullable`` may be omitted but never set to None."""

    non_nullable: ClassVar[frozenset[str]] = frozenset()

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def reject_null_required(self) -> "_PartialUpdate":
        nulled = sorted(
            field for field in self.non_nullable & self.model_fields_set if getattr(self, field) is None
        )
        if nulled:
            raise ValueError(f"{', '.join(nulled)} cannot be null")
        return self


class TicketUpdate(_PartialUpdate):
    """Caller-editable ticket fields."""

    non_nullable: ClassVar[frozenset[str]] = frozenset({"title", "status", "priority"})

    title: str | None = None
    overview: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("title must not be empty")
        return v


class TaskUpdate(_PartialUpdate):
    """Caller-editable task fields.

    ``order_index`` is deliberately absent; positions only change through
    the ordering operations.
    """

    non_nullable: ClassVar[frozenset[str]] = frozenset({"content", "status", "dependencies", "tags"})

    content: str | None = None
    description: str | None = None
    status: TaskStatus | None = None
    dependencies: list[int] | None = None
    estimated_hours: float | None = Field(default=None, ge=0)
    agent_id: str | None = None
    tags: list[str] | None = None

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("content must not be empty")
        return v

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: list[int] | None) -> list[int] | None:
        """Collapse repeated ids, keeping first-seen order."""
        if v is None:
            return None
        return list(dict.fromkeys(v))


class QueueUpdate(_PartialUpdate):
    """Caller-editable queue fields."""

    non_nullable: ClassVar[frozenset[str]] = frozenset({"name", "is_active", "max_parallel_items"})

    name: str | None = None
    description: str | None = None
    is_active: bool | None = None
    max_parallel_items: int | None = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("name must not be empty")
        return v


class QueueStats(BaseModel):
    """Item counts per status for a queue."""

    queue_id: int
    total: int = 0
    queued: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    current_agents: list[str] = Field(default_factory=list)


class QueueWithStats(BaseModel):
    """A queue together with its current item counts."""

    queue: Queue
    stats: QueueStats


class TaskStats(BaseModel):
    """Task completion summary for a ticket."""

    ticket_id: int
    total_tasks: int = 0
    completed_tasks: int = 0
    pending_tasks: int = 0
    total_estimated_hours: float = 0.0
    completion_percentage: int = 0


class ProjectStats(BaseModel):
    """Ticket counts per status for a project."""

    project_id: int
    total_tickets: int = 0
    open_tickets: int = 0
    in_progress_tickets: int = 0
    closed_tickets: int = 0


class ProcessingStats(BaseModel):
    """Throughput summary for a queue over an optional time window."""

    queue_id: int
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    success_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    total_processing_time_ms: int = 0


class QueueHealth(BaseModel):
    """Read-only health report for a project's queues."""

    project_id: int
    healthy: bool
    issues: list[str] = Field(default_factory=list)
    total_queues: int = 0
    active_queues: int = 0
    total_items: int = 0
    stuck_items: int = 0
