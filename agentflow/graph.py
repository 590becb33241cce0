"""
Workflow graph model.

A workflow is an ordered set of task definitions. Dependency edges are not
stored separately; they are always derived from each task's dependency list,
pointing from the dependency to the dependent ("forward" direction).
"""

import uuid
from typing import Any, Iterator

from .models import Task


class Workflow:
    """
    A directed graph of tasks.

    Task order is insertion order and is significant: it drives source order
    for layout and the tie-break between equally ranked ready tasks.
    """

    def __init__(
        self,
        tasks: list[Task] | None = None,
        workflow_id: str | None = None,
        name: str = "",
        description: str = "",
    ):
        """
        Initialize the workflow.

        Args:
            tasks: Task definitions, in submission order.
            workflow_id: Identifier. Auto-generated if None.
            name: Human readable name.
            description: Free text description.

        Raises:
            ValueError: If two tasks share an id.
        """
        self.id = workflow_id or str(uuid.uuid4())[:8]
        self.name = name or self.id
        self.description = description
        self._tasks: dict[str, Task] = {}
        for task in tasks or []:
            self.add_task(task)

    def add_task(self, task: Task) -> None:
        if task.id in self._tasks:
            raise ValueError(f"Duplicate task id: {task.id}")
        self._tasks[task.id] = task

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    @property
    def task_ids(self) -> list[str]:
        return list(self._tasks)

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def sources(self) -> list[str]:
        """Ids of tasks without dependencies, in insertion order."""
        return [t.id for t in self._tasks.values() if not t.dependencies]

    def edges(self) -> list[tuple[str, str]]:
        """
        Derived (dependency, dependent) pairs.

        Edges whose dependency does not exist in the workflow are included;
        the validator reports them as dangling.
        """
        return [(dep, t.id) for t in self._tasks.values() for dep in t.dependencies]

    def dependents(self) -> dict[str, list[str]]:
        """
        Forward adjacency: task id -> ids of tasks that depend on it.

        Only resolvable edges are included. Lists follow insertion order of
        the dependent tasks.
        """
        adjacency: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        for task in self._tasks.values():
            for dep in task.dependencies:
                if dep in adjacency and task.id not in adjacency[dep]:
                    adjacency[dep].append(task.id)
        return adjacency

    def copy(self) -> "Workflow":
        """Shallow copy sharing the task objects."""
        return Workflow(list(self._tasks.values()), self.id, self.name, self.description)

    def to_dict(self) -> dict[str, Any]:
        """Export for the presentation layer, including derived edges."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tasks": [t.to_dict() for t in self._tasks.values()],
            "edges": [
                {"id": f"{source}-{target}", "source": source, "target": target}
                for source, target in self.edges()
            ],
            "estimated_duration_ms": sum(t.estimated_duration_ms or 0 for t in self._tasks.values()),
        }


def workflow_from_dict(data: dict[str, Any]) -> Workflow:
    """
    Build a workflow from a JSON-style dictionary.

    Expected shape::

        {"id": "wf1", "name": "...", "tasks": [{"id": "A", "type": "testing", ...}]}

    Raises:
        ValueError: If a task definition is invalid or ids collide.
    """
    tasks = [Task.from_dict(item) for item in data.get("tasks") or []]
    return Workflow(
        tasks,
        workflow_id=data.get("id"),
        name=data.get("name", ""),
        description=data.get("description", ""),
    )
