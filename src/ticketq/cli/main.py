"""ticketq CLI - tickets, ordered tasks and dependency-aware work queues."""

import asyncio
import sys
from collections.abc import Coroutine
from datetime import datetime, timezone
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from ticketq import __version__
from ticketq.domain.models import ItemType, QueueItem, Task, TicketPriority, TicketStatus
from ticketq.infrastructure.exceptions import TicketQError

# Initialize Typer app
app = typer.Typer(
    name="ticketq",
    help="Dependency-aware ticket and task queue",
    no_args_is_help=True,
)

console = Console()

_STATUS_STYLES = {
    "pending": "yellow",
    "queued": "yellow",
    "in_progress": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "open": "yellow",
    "closed": "green",
}


# ===== Version =====
@app.command()
def version() -> None:
    """Show ticketq version."""
    console.print(f"[bold]ticketq[/bold] version [cyan]{__version__}[/cyan]")


# ===== Helper Functions =====
async def _get_services() -> dict[str, Any]:
    """Get initialized services backed by the configured database."""
    from ticketq.infrastructure import ConfigManager, Database, setup_logging
    from ticketq.services import (
        DependencyResolver,
        Dispatcher,
        QueueService,
        StatsService,
        TaskOrderingManager,
        TicketService,
    )

    config_manager = ConfigManager()
    config = config_manager.load_config()

    setup_logging(log_level=config.log_level, log_dir=config_manager.get_log_dir())

    database = Database(config_manager.get_database_path())
    await database.initialize()

    dependency_resolver = DependencyResolver(database)
    task_ordering = TaskOrderingManager(database, dependency_resolver)

    return {
        "database": database,
        "config_manager": config_manager,
        "dependency_resolver": dependency_resolver,
        "task_ordering": task_ordering,
        "ticket_service": TicketService(database),
        "queue_service": QueueService(database, config.queue),
        "dispatcher": Dispatcher(database, dependency_resolver, task_ordering, config.queue),
        "stats_service": StatsService(database, config.queue),
    }


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command body, turning domain errors into a red message and exit code 1."""
    try:
        asyncio.run(coro)
    except TicketQError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _fmt_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _task_table(title: str, tasks: list[Task]) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Content")
    table.add_column("Status")
    table.add_column("Depends on")
    table.add_column("Hours", justify="right")

    for task in tasks:
        table.add_row(
            str(task.order_index),
            str(task.id),
            task.content[:60],
            _styled(task.status.value),
            ", ".join(str(dep) for dep in task.dependencies) or "-",
            f"{task.estimated_hours:g}" if task.estimated_hours is not None else "-",
        )
    return table


def _print_item(item: QueueItem, heading: str) -> None:
    console.print(f"[bold]{heading}[/bold]")
    console.print(f"  Item:     [cyan]{item.id}[/cyan] ({item.item_type.value} {item.item_id})")
    console.print(f"  Status:   {_styled(item.status.value)}")
    console.print(f"  Priority: {item.priority}")
    if item.agent_id:
        console.print(f"  Agent:    {item.agent_id}")
    if item.error_message:
        console.print(f"  Error:    [red]{item.error_message}[/red]")


# ===== Ticket Commands =====
ticket_app = typer.Typer(help="Ticket management", no_args_is_help=True)
app.add_typer(ticket_app, name="ticket")


@ticket_app.command("create")
def ticket_create(
    project_id: int = typer.Argument(..., help="Project id"),
    title: str = typer.Argument(..., help="Ticket title"),
    overview: str | None = typer.Option(None, "--overview", "-o", help="Longer description"),
    priority: TicketPriority = typer.Option(TicketPriority.NORMAL, "--priority", "-p", help="Priority"),
) -> None:
    """Create a ticket."""

    async def _create() -> None:
        services = await _get_services()
        ticket = await services["ticket_service"].create_ticket(
            project_id, title, overview=overview, priority=priority
        )
        console.print(f"[green]✓[/green] Ticket created: [cyan]{ticket.id}[/cyan] {ticket.title}")

    _run(_create())


@ticket_app.command("list")
def ticket_list(
    project_id: int = typer.Argument(..., help="Project id"),
    status: TicketStatus | None = typer.Option(None, "--status", "-s", help="Filter by status"),
) -> None:
    """List a project's tickets."""

    async def _list() -> None:
        services = await _get_services()
        tickets = await services["ticket_service"].list_tickets(project_id, status=status)

        if not tickets:
            console.print("[dim]No tickets[/dim]")
            return

        table = Table(title=f"Tickets (project {project_id})")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Priority")
        table.add_column("Queue")

        for ticket in tickets:
            queue = (
                f"{ticket.queue_id} ({ticket.queue_status.value})"
                if ticket.queue_id is not None and ticket.queue_status is not None
                else "-"
            )
            table.add_row(
                str(ticket.id),
                ticket.title[:50],
                _styled(ticket.status.value),
                ticket.priority.value,
                queue,
            )

        console.print(table)

    _run(_list())


@ticket_app.command("show")
def ticket_show(ticket_id: int = typer.Argument(..., help="Ticket id")) -> None:
    """Show a ticket and its tasks."""

    async def _show() -> None:
        services = await _get_services()
        detail = await services["ticket_service"].get_ticket_with_tasks(ticket_id)
        ticket = detail.ticket

        console.print(f"[bold]Ticket {ticket.id}:[/bold] {ticket.title}")
        console.print(f"  Project:  {ticket.project_id}")
        console.print(f"  Status:   {_styled(ticket.status.value)}")
        console.print(f"  Priority: {ticket.priority.value}")
        console.print(f"  Created:  {_fmt_ms(ticket.created_at)}")
        if ticket.overview:
            console.print(f"\n{ticket.overview}")
        if ticket.queue_id is not None and ticket.queue_status is not None:
            console.print(
                f"  Queue:    {ticket.queue_id} ({_styled(ticket.queue_status.value)}, "
                f"queued {_fmt_ms(ticket.queued_at)})"
            )

        if detail.tasks:
            console.print(_task_table("Tasks", detail.tasks))
        else:
            console.print("[dim]No tasks[/dim]")

    _run(_show())


@ticket_app.command("stats")
def ticket_stats(ticket_id: int = typer.Argument(..., help="Ticket id")) -> None:
    """Show task completion statistics for a ticket."""

    async def _stats() -> None:
        services = await _get_services()
        stats = await services["stats_service"].get_ticket_stats(ticket_id)

        console.print(f"[bold]Ticket {ticket_id} progress[/bold]")
        console.print(f"  Tasks:      {stats.completed_tasks}/{stats.total_tasks} completed")
        console.print(f"  Pending:    {stats.pending_tasks}")
        console.print(f"  Estimated:  {stats.total_estimated_hours:g}h")
        console.print(f"  Completion: [cyan]{stats.completion_percentage}%[/cyan]")

    _run(_stats())


# ===== Task Commands =====
task_app = typer.Typer(help="Task ordering and dependencies", no_args_is_help=True)
app.add_typer(task_app, name="task")


@task_app.command("add")
def task_add(
    ticket_id: int = typer.Argument(..., help="Ticket id"),
    content: str = typer.Argument(..., help="Task content"),
    position: int | None = typer.Option(None, "--position", help="Insert at this index (default: append)"),
    depends_on: list[int] = typer.Option([], "--depends-on", "-d", help="Task id this task depends on (repeatable)"),
    hours: float | None = typer.Option(None, "--hours", help="Estimated hours"),
    agent: str | None = typer.Option(None, "--agent", help="Assigned agent"),
) -> None:
    """Add a task to a ticket."""

    async def _add() -> None:
        services = await _get_services()
        task = await services["task_ordering"].create_task(
            ticket_id,
            content,
            order_index=position,
            dependencies=depends_on,
            estimated_hours=hours,
            agent_id=agent,
        )
        console.print(
            f"[green]✓[/green] Task created: [cyan]{task.id}[/cyan] at position {task.order_index}"
        )
        if task.dependencies:
            console.print(f"  Depends on: {', '.join(str(dep) for dep in task.dependencies)}")

    _run(_add())


@task_app.command("done")
def task_done(task_id: int = typer.Argument(..., help="Task id")) -> None:
    """Toggle a task between completed and pending."""

    async def _done() -> None:
        services = await _get_services()
        task = await services["task_ordering"].toggle_completion(task_id)
        mark = "[green]✓[/green]" if task.done else "[yellow]↺[/yellow]"
        console.print(f"{mark} Task {task.id} is now {_styled(task.status.value)}")

    _run(_done())


@task_app.command("move")
def task_move(
    task_id: int = typer.Argument(..., help="Task id"),
    position: int = typer.Argument(..., help="New 0-based position"),
) -> None:
    """Move a task to a new position within its ticket."""

    async def _move() -> None:
        services = await _get_services()
        task = await services["task_ordering"].move_to_position(task_id, position)
        console.print(f"[green]✓[/green] Task {task.id} moved to position {task.order_index}")

    _run(_move())


@task_app.command("available")
def task_available(ticket_id: int = typer.Argument(..., help="Ticket id")) -> None:
    """List open tasks whose dependencies are all completed."""

    async def _available() -> None:
        services = await _get_services()
        tasks = await services["dependency_resolver"].get_available_tasks(ticket_id)
        if not tasks:
            console.print("[dim]No available tasks[/dim]")
            return
        console.print(_task_table(f"Available tasks (ticket {ticket_id})", tasks))

    _run(_available())


@task_app.command("blocked")
def task_blocked(ticket_id: int = typer.Argument(..., help="Ticket id")) -> None:
    """List open tasks waiting on incomplete dependencies."""

    async def _blocked() -> None:
        services = await _get_services()
        tasks = await services["dependency_resolver"].get_blocked_tasks(ticket_id)
        if not tasks:
            console.print("[dim]No blocked tasks[/dim]")
            return
        console.print(_task_table(f"Blocked tasks (ticket {ticket_id})", tasks))

    _run(_blocked())


# ===== Queue Commands =====
queue_app = typer.Typer(help="Queues and dispatch", no_args_is_help=True)
app.add_typer(queue_app, name="queue")


@queue_app.command("create")
def queue_create(
    project_id: int = typer.Argument(..., help="Project id"),
    name: str = typer.Argument(..., help="Queue name (unique per project)"),
    max_parallel: int | None = typer.Option(None, "--max-parallel", "-m", help="Max items in progress at once"),
    description: str | None = typer.Option(None, "--description", help="Queue description"),
) -> None:
    """Create a queue."""

    async def _create() -> None:
        services = await _get_services()
        queue = await services["queue_service"].create_queue(
            project_id, name, max_parallel_items=max_parallel, description=description
        )
        console.print(
            f"[green]✓[/green] Queue created: [cyan]{queue.id}[/cyan] {queue.name} "
            f"(max parallel {queue.max_parallel_items})"
        )

    _run(_create())


@queue_app.command("list")
def queue_list(project_id: int = typer.Argument(..., help="Project id")) -> None:
    """List a project's queues with item counts."""

    async def _list() -> None:
        services = await _get_services()
        entries = await services["queue_service"].list_queues_with_stats(project_id)

        if not entries:
            console.print("[dim]No queues[/dim]")
            return

        table = Table(title=f"Queues (project {project_id})")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("State")
        table.add_column("Max parallel", justify="right")
        table.add_column("Queued", justify="right")
        table.add_column("In progress", justify="right")
        table.add_column("Done", justify="right")

        for entry in entries:
            queue, stats = entry.queue, entry.stats
            table.add_row(
                str(queue.id),
                queue.name,
                "[green]active[/green]" if queue.is_active else "[yellow]paused[/yellow]",
                str(queue.max_parallel_items),
                str(stats.queued),
                str(stats.in_progress),
                str(stats.completed),
            )

        console.print(table)

    _run(_list())


@queue_app.command("add")
def queue_add(
    queue_id: int = typer.Argument(..., help="Queue id"),
    item_type: ItemType = typer.Argument(..., help="ticket or task"),
    item_id: int = typer.Argument(..., help="Ticket or task id"),
    priority: int | None = typer.Option(None, "--priority", "-p", min=0, max=10, help="0 (most urgent) to 10"),
) -> None:
    """Enqueue a ticket or task."""

    async def _add() -> None:
        services = await _get_services()
        item = await services["dispatcher"].add_item(queue_id, item_type, item_id, priority=priority)
        console.print(
            f"[green]✓[/green] Enqueued {item.item_type.value} {item.item_id} "
            f"as item [cyan]{item.id}[/cyan] (priority {item.priority})"
        )

    _run(_add())


@queue_app.command("next")
def queue_next(
    queue_id: int = typer.Argument(..., help="Queue id"),
    agent: str | None = typer.Option(None, "--agent", "-a", help="Claim the item for this agent"),
) -> None:
    """Show the next dispatchable item, or claim it with --agent."""

    async def _next() -> None:
        services = await _get_services()
        dispatcher = services["dispatcher"]
        if agent:
            item = await dispatcher.claim_next_item(queue_id, agent)
        else:
            item = await dispatcher.get_next_item(queue_id)

        if item is None:
            console.print("[dim]Nothing to dispatch[/dim]")
            return
        _print_item(item, "Claimed item" if agent else "Next item")

    _run(_next())


@queue_app.command("status")
def queue_status(
    item_id: int = typer.Argument(..., help="Queue item id"),
    status: str = typer.Argument(..., help="in_progress, completed, failed or cancelled"),
    agent: str | None = typer.Option(None, "--agent", "-a", help="Agent performing the change"),
    error: str | None = typer.Option(None, "--error", "-e", help="Error message (for failed)"),
) -> None:
    """Transition a queue item."""

    async def _status() -> None:
        services = await _get_services()
        item = await services["dispatcher"].update_item_status(
            item_id, status, agent_id=agent, error_message=error
        )
        console.print(f"[green]✓[/green] Item {item.id} is now {_styled(item.status.value)}")

    _run(_status())


@queue_app.command("stats")
def queue_stats(queue_id: int = typer.Argument(..., help="Queue id")) -> None:
    """Show item counts and throughput for a queue."""

    async def _stats() -> None:
        services = await _get_services()
        stats = await services["stats_service"].get_queue_stats(queue_id)
        processing = await services["stats_service"].get_processing_stats(queue_id)

        table = Table(title=f"Queue {queue_id}")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Total", str(stats.total))
        table.add_row("Queued", str(stats.queued))
        table.add_row("In progress", str(stats.in_progress))
        table.add_row("Completed", str(stats.completed))
        table.add_row("Failed", str(stats.failed))
        table.add_row("Cancelled", str(stats.cancelled))
        table.add_row("Success rate", f"{processing.success_rate:.1f}%")
        table.add_row("Avg processing", f"{processing.average_processing_time_ms / 1000:.1f}s")
        console.print(table)

        if stats.current_agents:
            console.print(f"Agents: {', '.join(stats.current_agents)}")

    _run(_stats())


@queue_app.command("health")
def queue_health(project_id: int = typer.Argument(..., help="Project id")) -> None:
    """Report stuck items and paused queues for a project."""

    async def _health() -> None:
        services = await _get_services()
        health = await services["stats_service"].get_queue_health(project_id)

        if health.healthy:
            console.print("[green]✓ Queues healthy[/green]")
        else:
            console.print("[red]✗ Queue issues found[/red]")
            for issue in health.issues:
                console.print(f"  - {issue}")
        console.print(
            f"Queues: {health.active_queues}/{health.total_queues} active, "
            f"items: {health.total_items}, stuck: {health.stuck_items}"
        )

    _run(_health())


@queue_app.command("remove")
def queue_remove(item_id: int = typer.Argument(..., help="Queue item id")) -> None:
    """Remove a queue item."""

    async def _remove() -> None:
        services = await _get_services()
        removed = await services["dispatcher"].remove_item(item_id)
        if removed:
            console.print(f"[green]✓[/green] Removed item {item_id}")
        else:
            console.print(f"[yellow]Item {item_id} was not in any queue[/yellow]")

    _run(_remove())


@queue_app.command("cleanup")
def queue_cleanup(
    project_id: int | None = typer.Option(None, "--project", "-p", help="Only this project's queues"),
    max_age_hours: float | None = typer.Option(
        None, "--max-age-hours", help="Keep finished items younger than this (default from config)"
    ),
) -> None:
    """Delete finished queue items older than the retention window."""

    async def _cleanup() -> None:
        services = await _get_services()
        max_age_ms = None if max_age_hours is None else int(max_age_hours * 3600 * 1000)
        removed = await services["queue_service"].cleanup_queue_data(
            project_id=project_id, max_age_ms=max_age_ms
        )
        console.print(f"[green]✓[/green] Removed {removed} finished item(s)")

    _run(_cleanup())


# ===== Main Entry Point =====
def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
