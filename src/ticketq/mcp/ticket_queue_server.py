"""MCP server exposing ticketq ticket, task and queue tools over stdio."""

import argparse
import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ticketq.infrastructure.config import ConfigManager, QueueConfig
from ticketq.infrastructure.database import Database
from ticketq.infrastructure.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from ticketq.infrastructure.logger import get_logger, setup_logging
from ticketq.services import (
    DependencyResolver,
    Dispatcher,
    QueueService,
    StatsService,
    TaskOrderingManager,
    TicketService,
)

logger = get_logger(__name__)

_Handler = Callable[[dict[str, Any]], Awaitable[Any]]

# Most specific first; CircularDependencyError reports as ValidationError
_ERROR_NAMES: list[tuple[type[Exception], str]] = [
    (NotFoundError, "NotFoundError"),
    (ValidationError, "ValidationError"),
    (ConflictError, "ConflictError"),
    (InvalidTransitionError, "InvalidTransitionError"),
    (StoreError, "StoreError"),
]

_ID = {"type": "integer"}
_PRIORITY = {"type": "integer", "minimum": 0, "maximum": 10, "description": "0 (most urgent) to 10"}
_ITEM_TYPE = {"type": "string", "enum": ["ticket", "task"]}
_ITEM_STATUS = {"type": "string", "enum": ["queued", "in_progress", "completed", "failed", "cancelled"]}


def _tool(tool_name: str, summary: str, required: list[str], **properties: Any) -> Tool:
    return Tool(
        name=tool_name,
        description=summary,
        inputSchema={"type": "object", "properties": properties, "required": required},
    )


TOOLS: list[Tool] = [
    _tool(
        "ticket_create",
        "Create a ticket in a project",
        ["project_id", "title"],
        project_id=_ID,
        title={"type": "string"},
        overview={"type": "string"},
        priority={"type": "string", "enum": ["low", "normal", "high"]},
    ),
    _tool("ticket_get", "Get a ticket with its ordered tasks", ["ticket_id"], ticket_id=_ID),
    _tool(
        "ticket_list",
        "List a project's tickets",
        ["project_id"],
        project_id=_ID,
        status={"type": "string", "enum": ["open", "in_progress", "closed"]},
    ),
    _tool(
        "ticket_update",
        "Update ticket fields (title, overview, status, priority)",
        ["ticket_id", "updates"],
        ticket_id=_ID,
        updates={"type": "object"},
    ),
    _tool("ticket_delete", "Delete a ticket with its tasks and queue items", ["ticket_id"], ticket_id=_ID),
    _tool("ticket_stats", "Task completion statistics for a ticket", ["ticket_id"], ticket_id=_ID),
    _tool(
        "task_create",
        "Create a task, appended or inserted at order_index",
        ["ticket_id", "content"],
        ticket_id=_ID,
        content={"type": "string"},
        description={"type": "string"},
        order_index={"type": "integer", "minimum": 0},
        dependencies={"type": "array", "items": _ID},
        estimated_hours={"type": "number", "minimum": 0},
        agent_id={"type": "string"},
        tags={"type": "array", "items": {"type": "string"}},
    ),
    _tool(
        "task_update",
        "Update task fields; completing a task requires its dependencies to be completed",
        ["task_id", "updates"],
        task_id=_ID,
        updates={"type": "object"},
    ),
    _tool("task_delete", "Delete a task and compact its siblings", ["task_id"], task_id=_ID),
    _tool(
        "task_move",
        "Move a task to a 0-based position within its ticket",
        ["task_id", "position"],
        task_id=_ID,
        position={"type": "integer", "minimum": 0},
        ticket_id=_ID,
    ),
    _tool(
        "task_reorder",
        "Apply a complete permutation of a ticket's task positions",
        ["ticket_id", "orders"],
        ticket_id=_ID,
        orders={
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"task_id": _ID, "order_index": {"type": "integer"}},
                "required": ["task_id", "order_index"],
            },
        },
    ),
    _tool("task_toggle", "Toggle a task between completed and pending", ["task_id"], task_id=_ID),
    _tool("task_available", "Open tasks whose dependencies are completed", ["ticket_id"], ticket_id=_ID),
    _tool("task_blocked", "Open tasks waiting on incomplete dependencies", ["ticket_id"], ticket_id=_ID),
    _tool(
        "task_execution_plan",
        "Open tasks grouped into batches that can run in parallel",
        ["ticket_id"],
        ticket_id=_ID,
    ),
    _tool(
        "queue_create",
        "Create a queue",
        ["project_id", "name"],
        project_id=_ID,
        name={"type": "string"},
        description={"type": "string"},
        max_parallel_items={"type": "integer", "minimum": 1},
    ),
    _tool(
        "queue_list",
        "List a project's queues, optionally with item counts",
        ["project_id"],
        project_id=_ID,
        include_stats={"type": "boolean"},
    ),
    _tool(
        "queue_update",
        "Update queue fields (name, description, is_active, max_parallel_items)",
        ["queue_id", "updates"],
        queue_id=_ID,
        updates={"type": "object"},
    ),
    _tool("queue_delete", "Delete a queue and its items", ["queue_id"], queue_id=_ID),
    _tool("queue_stats", "Item counts per status for a queue", ["queue_id"], queue_id=_ID),
    _tool("queue_health", "Health report for a project's queues", ["project_id"], project_id=_ID),
    _tool(
        "queue_cleanup",
        "Delete completed, failed and cancelled items older than max_age_ms",
        [],
        project_id=_ID,
        max_age_ms={"type": "integer", "minimum": 0},
    ),
    _tool(
        "queue_add_item",
        "Enqueue a ticket or task",
        ["queue_id", "item_type", "item_id"],
        queue_id=_ID,
        item_type=_ITEM_TYPE,
        item_id=_ID,
        priority=_PRIORITY,
    ),
    _tool(
        "queue_enqueue_ticket",
        "Enqueue a ticket and its unfinished tasks",
        ["queue_id", "ticket_id"],
        queue_id=_ID,
        ticket_id=_ID,
        priority=_PRIORITY,
    ),
    _tool(
        "queue_items",
        "List a queue's items in dispatch order",
        ["queue_id"],
        queue_id=_ID,
        status=_ITEM_STATUS,
    ),
    _tool("queue_next", "Peek at the next dispatchable item without claiming it", ["queue_id"], queue_id=_ID),
    _tool(
        "queue_claim",
        "Claim the next dispatchable item for an agent",
        ["queue_id", "agent_id"],
        queue_id=_ID,
        agent_id={"type": "string"},
    ),
    _tool(
        "queue_update_item_status",
        "Transition a queue item (queued -> in_progress -> completed/failed/cancelled)",
        ["item_id", "status"],
        item_id=_ID,
        status=_ITEM_STATUS,
        agent_id={"type": "string"},
        error_message={"type": "string"},
    ),
    _tool(
        "queue_requeue_item",
        "Create a new queued item from a failed or cancelled one",
        ["item_id"],
        item_id=_ID,
        priority=_PRIORITY,
    ),
    _tool("queue_remove_item", "Remove a queue item", ["item_id"], item_id=_ID),
    _tool(
        "queue_remove_ticket",
        "Remove a ticket and its tasks from every queue",
        ["ticket_id"],
        ticket_id=_ID,
    ),
]


def _serialize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


class TicketQueueServer:
    """MCP server for ticketq.

    Exposes tools for:
    - Ticket CRUD and completion statistics
    - Task creation, ordering and dependency queries
    - Queue administration, enqueueing, claiming and status transitions
    """

    def __init__(self, db_path: Path, queue_config: QueueConfig | None = None) -> None:
        """Initialize server.

        Args:
            db_path: Path to SQLite database
            queue_config: Queue defaults (default: QueueConfig())
        """
        self.db_path = db_path
        self.queue_config = queue_config or QueueConfig()
        self.db: Database | None = None
        self._handlers: dict[str, _Handler] = {}
        self.server = Server("ticketq")

        self._register_tools()

    def attach(self, database: Database) -> None:
        """Wire services onto an initialized database."""
        self.db = database
        resolver = DependencyResolver(database)
        self.dependency_resolver = resolver
        self.task_ordering = TaskOrderingManager(database, resolver)
        self.ticket_service = TicketService(database)
        self.queue_service = QueueService(database, self.queue_config)
        self.dispatcher = Dispatcher(database, resolver, self.task_ordering, self.queue_config)
        self.stats_service = StatsService(database, self.queue_config)

        self._handlers = {
            "ticket_create": self._handle_ticket_create,
            "ticket_get": lambda a: self.ticket_service.get_ticket_with_tasks(a["ticket_id"]),
            "ticket_list": self._handle_ticket_list,
            "ticket_update": self._handle_ticket_update,
            "ticket_delete": self._handle_ticket_delete,
            "ticket_stats": lambda a: self.stats_service.get_ticket_stats(a["ticket_id"]),
            "task_create": self._handle_task_create,
            "task_update": self._handle_task_update,
            "task_delete": self._handle_task_delete,
            "task_move": lambda a: self.task_ordering.move_to_position(
                a["task_id"], a["position"], ticket_id=a.get("ticket_id")
            ),
            "task_reorder": self._handle_task_reorder,
            "task_toggle": lambda a: self.task_ordering.toggle_completion(a["task_id"]),
            "task_available": lambda a: resolver.get_available_tasks(a["ticket_id"]),
            "task_blocked": lambda a: resolver.get_blocked_tasks(a["ticket_id"]),
            "task_execution_plan": self._handle_task_execution_plan,
            "queue_create": lambda a: self.queue_service.create_queue(
                a["project_id"],
                a["name"],
                max_parallel_items=a.get("max_parallel_items"),
                description=a.get("description"),
            ),
            "queue_list": self._handle_queue_list,
            "queue_update": self._handle_queue_update,
            "queue_delete": self._handle_queue_delete,
            "queue_stats": lambda a: self.stats_service.get_queue_stats(a["queue_id"]),
            "queue_health": lambda a: self.stats_service.get_queue_health(a["project_id"]),
            "queue_cleanup": self._handle_queue_cleanup,
            "queue_add_item": lambda a: self.dispatcher.add_item(
                a["queue_id"], a["item_type"], a["item_id"], priority=a.get("priority")
            ),
            "queue_enqueue_ticket": lambda a: self.dispatcher.enqueue_ticket_with_tasks(
                a["ticket_id"], a["queue_id"], priority=a.get("priority")
            ),
            "queue_items": lambda a: self.dispatcher.list_items(a["queue_id"], status=a.get("status")),
            "queue_next": self._handle_queue_next,
            "queue_claim": self._handle_queue_claim,
            "queue_update_item_status": lambda a: self.dispatcher.update_item_status(
                a["item_id"],
                a["status"],
                agent_id=a.get("agent_id"),
                error_message=a.get("error_message"),
            ),
            "queue_requeue_item": lambda a: self.dispatcher.requeue_item(
                a["item_id"], priority=a.get("priority")
            ),
            "queue_remove_item": self._handle_queue_remove_item,
            "queue_remove_ticket": self._handle_queue_remove_ticket,
        }

    def _register_tools(self) -> None:
        """Register all MCP tools."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """List available tools."""
            return TOOLS

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Handle tool calls."""
            result = await self.handle_tool(name, arguments)
            return [TextContent(type="text", text=json.dumps(result, default=str))]

    async def handle_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run one tool and return its JSON-ready result or an error payload."""
        if self.db is None:
            return {"error": "InternalError", "message": "Database not initialized"}

        handler = self._handlers.get(name)
        if handler is None:
            return {"error": "UnknownTool", "message": f"Unknown tool: {name}"}

        try:
            result = await handler(arguments)
        except KeyError as e:
            return {"error": "ValidationError", "message": f"Missing required argument: {e.args[0]}"}
        except PydanticValidationError as e:
            return {"error": "ValidationError", "message": str(e)}
        except Exception as e:
            for error_type, error_name in _ERROR_NAMES:
                if isinstance(e, error_type):
                    logger.info("mcp_tool_rejected", tool=name, error=error_name, message=str(e))
                    return {"error": error_name, "message": str(e)}
            logger.error("mcp_tool_error", tool=name, error=str(e), exc_info=True)
            return {"error": "InternalError", "message": str(e), "tool": name}

        if isinstance(result, dict):
            return result
        return {"result": _serialize(result)}

    async def _handle_ticket_create(self, arguments: dict[str, Any]) -> Any:
        return await self.ticket_service.create_ticket(
            arguments["project_id"],
            arguments["title"],
            overview=arguments.get("overview"),
            priority=arguments.get("priority", "normal"),
        )

    async def _handle_ticket_list(self, arguments: dict[str, Any]) -> dict[str, Any]:
        tickets = await self.ticket_service.list_tickets(
            arguments["project_id"], status=arguments.get("status")
        )
        return {"tickets": _serialize(tickets), "count": len(tickets)}

    async def _handle_ticket_update(self, arguments: dict[str, Any]) -> Any:
        return await self.ticket_service.update_ticket(arguments["ticket_id"], dict(arguments["updates"]))

    async def _handle_ticket_delete(self, arguments: dict[str, Any]) -> dict[str, Any]:
        deleted = await self.ticket_service.delete_ticket(arguments["ticket_id"])
        return {"deleted": deleted, "ticket_id": arguments["ticket_id"]}

    async def _handle_task_create(self, arguments: dict[str, Any]) -> Any:
        return await self.task_ordering.create_task(
            arguments["ticket_id"],
            arguments["content"],
            description=arguments.get("description"),
            order_index=arguments.get("order_index"),
            dependencies=arguments.get("dependencies"),
            estimated_hours=arguments.get("estimated_hours"),
            agent_id=arguments.get("agent_id"),
            tags=arguments.get("tags"),
        )

    async def _handle_task_update(self, arguments: dict[str, Any]) -> Any:
        return await self.task_ordering.update_task(arguments["task_id"], dict(arguments["updates"]))

    async def _handle_task_delete(self, arguments: dict[str, Any]) -> dict[str, Any]:
        deleted = await self.task_ordering.delete_task(arguments["task_id"])
        return {"deleted": deleted, "task_id": arguments["task_id"]}

    async def _handle_task_reorder(self, arguments: dict[str, Any]) -> Any:
        orders = [(entry["task_id"], entry["order_index"]) for entry in arguments["orders"]]
        return await self.task_ordering.reorder(arguments["ticket_id"], orders)

    async def _handle_task_execution_plan(self, arguments: dict[str, Any]) -> dict[str, Any]:
        batches = await self.dependency_resolver.get_execution_plan(arguments["ticket_id"])
        return {
            "ticket_id": arguments["ticket_id"],
            "batches": batches,
            "total_batches": len(batches),
            "max_parallelism": max((len(batch) for batch in batches), default=0),
        }

    async def _handle_queue_list(self, arguments: dict[str, Any]) -> Any:
        if arguments.get("include_stats"):
            return await self.queue_service.list_queues_with_stats(arguments["project_id"])
        return await self.queue_service.list_queues(arguments["project_id"])

    async def _handle_queue_cleanup(self, arguments: dict[str, Any]) -> dict[str, Any]:
        removed = await self.queue_service.cleanup_queue_data(
            project_id=arguments.get("project_id"), max_age_ms=arguments.get("max_age_ms")
        )
        return {"removed": removed}

    async def _handle_queue_update(self, arguments: dict[str, Any]) -> Any:
        return await self.queue_service.update_queue(arguments["queue_id"], dict(arguments["updates"]))

    async def _handle_queue_delete(self, arguments: dict[str, Any]) -> dict[str, Any]:
        deleted = await self.queue_service.delete_queue(arguments["queue_id"])
        return {"deleted": deleted, "queue_id": arguments["queue_id"]}

    async def _handle_queue_next(self, arguments: dict[str, Any]) -> dict[str, Any]:
        item = await self.dispatcher.get_next_item(arguments["queue_id"])
        return {"item": _serialize(item) if item else None}

    async def _handle_queue_claim(self, arguments: dict[str, Any]) -> dict[str, Any]:
        item = await self.dispatcher.claim_next_item(arguments["queue_id"], arguments["agent_id"])
        return {"item": _serialize(item) if item else None}

    async def _handle_queue_remove_item(self, arguments: dict[str, Any]) -> dict[str, Any]:
        removed = await self.dispatcher.remove_item(arguments["item_id"])
        return {"removed": removed, "item_id": arguments["item_id"]}

    async def _handle_queue_remove_ticket(self, arguments: dict[str, Any]) -> dict[str, Any]:
        removed = await self.dispatcher.dequeue_ticket_with_tasks(arguments["ticket_id"])
        return {"removed_items": removed, "ticket_id": arguments["ticket_id"]}

    async def run(self) -> None:
        """Run the MCP server."""
        database = Database(self.db_path)
        await database.initialize()
        self.attach(database)

        logger.info("ticketq_mcp_server_started", db_path=str(self.db_path))

        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream, write_stream, self.server.create_initialization_options()
                )
        finally:
            await database.close()


async def _main() -> None:
    parser = argparse.ArgumentParser(description="ticketq MCP server")
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="Path to SQLite database (default: from .ticketq config)",
    )
    args = parser.parse_args()

    config_manager = ConfigManager()
    config = config_manager.load_config()
    setup_logging(log_level=config.log_level, log_dir=config_manager.get_log_dir())

    db_path = args.db_path or config_manager.get_database_path()
    server = TicketQueueServer(db_path, config.queue)
    await server.run()


def main() -> None:
    """Console entry point."""
    asyncio.run(_main())


if __name__ == "__main__":
    main()
