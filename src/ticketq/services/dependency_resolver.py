"""Dependency resolution for tasks within a ticket.

This module implements the graph algorithms used by ordering and dispatch:
- Availability (all dependencies completed) and blocked-task queries
- Dependency validation with cycle detection using DFS
- Topological sorting using Kahn's algorithm
- Execution plans grouped into parallel batches

Dependencies never cross ticket boundaries, so every graph here is the
graph of a single ticket. Availability is computed from current task rows
on every call; nothing is cached.
"""

from collections import defaultdict, deque
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from aiosqlite import Connection

from ticketq.domain.models import Task, TaskStatus
from ticketq.infrastructure.exceptions import NotFoundError, ValidationError
from ticketq.infrastructure.logger import get_logger

if TYPE_CHECKING:
    from ticketq.infrastructure.database import Database

logger = get_logger(__name__)


class CircularDependencyError(ValidationError):
    """Raised when a dependency set would create a cycle (or a self-dependency)."""

    def __init__(self, message: str, cycle: list[int] | None = None):
        super().__init__(message)
        self.cycle = cycle or []


def _unmet(task: Task, by_id: dict[int, Task]) -> list[int]:
    """Dependency ids of ``task`` that are not completed.

    Ids with no matching task (already deleted) do not block.
    """
    return [
        dep_id
        for dep_id in task.dependencies
        if dep_id in by_id and by_id[dep_id].status != TaskStatus.COMPLETED
    ]


class DependencyResolver:
    """Handles dependency graph operations and validation for a ticket's tasks.

    This service provides:
    - Availability checks used by the dispatcher's eligibility gate
    - Available/blocked partitions of a ticket's open tasks
    - Validation of proposed dependency lists before they are stored
    - Topological execution orders and parallel batches for planning
    """

    def __init__(self, database: "Database"):
        """Initialize dependency resolver.

        Args:
            database: Database instance for reading task rows
        """
        self.db = database

    async def are_dependencies_completed(self, task_id: int, conn: Connection | None = None) -> bool:
        """Check whether every dependency of a task is completed.

        Args:
            task_id: Task to check
            conn: Open transaction to read through, if any

        Returns:
            True if the task has no dependencies or all of them are completed

        Raises:
            NotFoundError: If the task does not exist
        """
        task = await self.db.get_task(task_id, conn=conn)
        if task is None:
            raise NotFoundError("Task", task_id)
        if not task.dependencies:
            return True

        deps = await self.db.get_tasks(task.dependencies, conn=conn)
        return not _unmet(task, {dep.id: dep for dep in deps})

    async def get_unmet_dependencies(self, task_id: int, conn: Connection | None = None) -> list[int]:
        """Ids of a task's dependencies that are not completed yet."""
        task = await self.db.get_task(task_id, conn=conn)
        if task is None:
            raise NotFoundError("Task", task_id)
        deps = await self.db.get_tasks(task.dependencies, conn=conn)
        return _unmet(task, {dep.id: dep for dep in deps})

    async def get_available_tasks(self, ticket_id: int, conn: Connection | None = None) -> list[Task]:
        """Open tasks whose dependencies are all completed, in order_index order."""
        available, _ = await self._partition(ticket_id, conn)
        return available

    async def get_blocked_tasks(self, ticket_id: int, conn: Connection | None = None) -> list[Task]:
        """Open tasks with at least one incomplete dependency, in order_index order."""
        _, blocked = await self._partition(ticket_id, conn)
        return blocked

    async def get_tasks_with_dependencies(
        self, ticket_id: int, conn: Connection | None = None
    ) -> list[Task]:
        """Tasks that declare at least one dependency."""
        tasks = await self.db.list_tasks(ticket_id, conn=conn)
        return [task for task in tasks if task.dependencies]

    async def _partition(
        self, ticket_id: int, conn: Connection | None
    ) -> tuple[list[Task], list[Task]]:
        # list_tasks returns rows in order_index order, so both lists keep it
        tasks = await self.db.list_tasks(ticket_id, conn=conn)
        by_id = {task.id: task for task in tasks}

        available: list[Task] = []
        blocked: list[Task] = []
        for task in tasks:
            if not task.is_open:
                continue
            if _unmet(task, by_id):
                blocked.append(task)
            else:
                available.append(task)
        return available, blocked

    def validate_dependencies(
        self,
        task_id: int | None,
        dependencies: Sequence[int],
        siblings: Iterable[Task],
    ) -> list[int]:
        """Validate a proposed dependency list against the ticket's tasks.

        The proposed edges are applied to the current graph and searched with
        DFS; any cycle back to a visited node on the current path is rejected.

        Args:
            task_id: Task receiving the dependencies (None for a task not yet created)
            dependencies: Proposed dependency ids
            siblings: Every existing task of the same ticket

        Returns:
            The dependency ids with duplicates removed, first-seen order kept

        Raises:
            CircularDependencyError: On a self-dependency or a cycle
            ValidationError: If an id is not a task of the same ticket

        Performance:
            O(V + E) where V = number of tasks, E = number of dependencies
        """
        deduped = list(dict.fromkeys(dependencies))
        if task_id is not None and task_id in deduped:
            raise CircularDependencyError(
                f"Self-dependency not allowed: task {task_id} cannot depend on itself",
                cycle=[task_id, task_id],
            )

        graph: dict[int, list[int]] = {task.id: list(task.dependencies) for task in siblings}
        foreign = [dep_id for dep_id in deduped if dep_id not in graph]
        if foreign:
            raise ValidationError(f"Dependencies must be tasks of the same ticket: {foreign}")

        if task_id is None:
            # Nothing can depend on a task that does not exist yet
            return deduped

        graph[task_id] = deduped

        visited: set[int] = set()
        rec_stack: set[int] = set()
        path: list[int] = []

        def dfs(node: int) -> list[int] | None:
            if node in rec_stack:
                return path[path.index(node) :] + [node]
            if node in visited:
                return None

            visited.add(node)
            rec_stack.add(node)
            path.append(node)
            for neighbor in graph.get(node, []):
                cycle = dfs(neighbor)
                if cycle:
                    return cycle
            path.pop()
            rec_stack.remove(node)
            return None

        cycle = dfs(task_id)
        if cycle:
            logger.warning("circular_dependency_rejected", task_id=task_id, cycle=cycle)
            raise CircularDependencyError(
                f"Circular dependency detected: {' -> '.join(str(n) for n in cycle)}",
                cycle=cycle,
            )
        return deduped

    async def get_execution_order(self, ticket_id: int, conn: Connection | None = None) -> list[int]:
        """Return a topological order of the ticket's tasks using Kahn's algorithm.

        Ties are broken by order_index, so a ticket without dependencies comes
        back in its stored order.

        Raises:
            CircularDependencyError: If the stored graph contains a cycle
        """
        tasks = await self.db.list_tasks(ticket_id, conn=conn)
        return [task.id for batch in self._batches(tasks) for task in batch]

    async def get_execution_plan(
        self, ticket_id: int, conn: Connection | None = None
    ) -> list[list[int]]:
        """Group the ticket's open tasks into batches that can run in parallel.

        Batch N holds tasks whose open dependencies all sit in batches before N.
        Completed dependencies are already satisfied and impose no ordering.
        Tasks waiting, directly or transitively, on a cancelled task can never
        become available and are left out of the plan.
        """
        tasks = await self.db.list_tasks(ticket_id, conn=conn)
        stranded = {task.id for task in tasks if task.status == TaskStatus.CANCELLED}
        open_tasks = [task for task in tasks if task.is_open]

        changed = True
        while changed:
            changed = False
            for task in open_tasks:
                if task.id not in stranded and stranded.intersection(task.dependencies):
                    stranded.add(task.id)
                    changed = True

        plannable = [task for task in open_tasks if task.id not in stranded]
        return [[task.id for task in batch] for batch in self._batches(plannable)]

    def _batches(self, tasks: list[Task]) -> list[list[Task]]:
        """Kahn's algorithm, level by level, over the given tasks only."""
        by_id = {task.id: task for task in tasks}
        dependents: dict[int, list[int]] = defaultdict(list)
        in_degree: dict[int, int] = {task.id: 0 for task in tasks}

        for task in tasks:
            for dep_id in task.dependencies:
                if dep_id in by_id:
                    dependents[dep_id].append(task.id)
                    in_degree[task.id] += 1

        ready = deque(task.id for task in tasks if in_degree[task.id] == 0)
        batches: list[list[Task]] = []
        processed = 0

        while ready:
            level = sorted((by_id[task_id] for task_id in ready), key=lambda t: t.order_index)
            ready.clear()
            batches.append(level)
            processed += len(level)
            for task in level:
                for dependent in dependents[task.id]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.append(dependent)

        if processed != len(tasks):
            unprocessed = sorted(task_id for task_id, degree in in_degree.items() if degree > 0)
            raise CircularDependencyError(
                f"Cannot create execution order: circular dependencies detected. "
                f"Unprocessed tasks: {unprocessed}"
            )
        return batches
