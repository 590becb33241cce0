"""
Structural validation of workflow graphs.

All checks are pure functions over a Workflow and build their own local
visited sets. Errors are collected rather than short-circuited so a caller
sees every problem with a submission at once:

1. At least one source task (no dependencies) exists.
2. Every dependency resolves to a task in the same workflow.
3. Every task is reachable from a source along dependency edges.
4. The graph contains no cycles.

The cycle check runs over every task, not just those reachable from a
source, because a cycle can sit entirely inside an unreachable subgraph.
"""

from collections import deque
from enum import Enum
from typing import NamedTuple

from .graph import Workflow


class ValidationResult(NamedTuple):
    """Outcome of validate(); unpacks as (ok, errors)."""
    ok: bool
    errors: tuple[str, ...]


class _Color(Enum):
    UNVISITED = 0
    VISITING = 1
    VISITED = 2


def find_missing_sources(workflow: Workflow) -> list[str]:
    if workflow.sources():
        return []
    return ["Workflow has no source tasks (every task has at least one dependency)"]


def find_dangling_dependencies(workflow: Workflow) -> list[str]:
    errors = []
    for task in workflow:
        for dep in task.dependencies:
            if dep not in workflow:
                errors.append(f"Dangling dependency: task {task.id} depends on unknown task {dep}")
    return errors


def find_unreachable(workflow: Workflow) -> list[str]:
    """Breadth-first traversal from all sources; report what was never visited."""
    adjacency = workflow.dependents()
    visited: set[str] = set()
    queue = deque(workflow.sources())
    while queue:
        node = queue.popleft()
        if node in visited:
            continue
        visited.add(node)
        queue.extend(child for child in adjacency[node] if child not in visited)

    return [f"Unreachable task: {task_id}" for task_id in workflow.task_ids if task_id not in visited]


def find_cycles(workflow: Workflow) -> list[str]:
    """
    Three-color depth-first search over every task.

    A cycle is reported at the task that was re-entered while still being
    visited; that task always lies on the cycle. Iterative, so deep graphs
    do not hit the recursion limit.
    """
    adjacency = workflow.dependents()
    color = {task_id: _Color.UNVISITED for task_id in adjacency}
    reported: set[str] = set()
    errors = []

    for root in adjacency:
        if color[root] is not _Color.UNVISITED:
            continue
        color[root] = _Color.VISITING
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node] = _Color.VISITED
                stack.pop()
            elif color[child] is _Color.VISITING:
                if child not in reported:
                    reported.add(child)
                    errors.append(f"Cycle detected at task: {child}")
            elif color[child] is _Color.UNVISITED:
                color[child] = _Color.VISITING
                stack.append((child, iter(adjacency[child])))

    return errors


def validate(workflow: Workflow) -> ValidationResult:
    """
    Validate a workflow before it is accepted for scheduling.

    Args:
        workflow: The workflow to check.

    Returns:
        ValidationResult with ok=False and the full error list when any check fails.
    """
    if len(workflow) == 0:
        return ValidationResult(False, ("Workflow must have at least one task",))

    errors = find_missing_sources(workflow)
    has_source = not errors
    errors += find_dangling_dependencies(workflow)
    # Without a source every task is unreachable; the missing-source error covers it.
    if has_source:
        errors += find_unreachable(workflow)
    errors += find_cycles(workflow)

    return ValidationResult(not errors, tuple(errors))
