"""
Presentation layout for workflow graphs.

Positions are advisory and only consumed by renderers; the scheduler never
reads them.
"""

from collections import deque
from dataclasses import dataclass
from typing import NamedTuple

from .graph import Workflow


class Position(NamedTuple):
    x: float
    y: float


@dataclass(frozen=True)
class LayoutConfig:
    """Spacing for auto_layout()."""
    center_x: float = 100.0
    horizontal_spacing: float = 250.0
    vertical_spacing: float = 150.0


def assign_levels(workflow: Workflow) -> list[list[str]]:
    """
    Breadth-first level assignment from all sources (level 0).

    A task's level is the level at which it is first visited; later
    discoveries are ignored. Within a level, tasks keep discovery order.
    Tasks never reached (only possible for invalid graphs) are placed on
    one extra level below the rest so that they never overlap.
    """
    adjacency = workflow.dependents()
    levels: list[list[str]] = []
    visited: set[str] = set()
    queue = deque((source, 0) for source in workflow.sources())

    while queue:
        node, level = queue.popleft()
        if node in visited:
            continue
        visited.add(node)
        if len(levels) <= level:
            levels.append([])
        levels[level].append(node)
        for child in adjacency[node]:
            if child not in visited:
                queue.append((child, level + 1))

    stragglers = [task_id for task_id in workflow.task_ids if task_id not in visited]
    if stragglers:
        levels.append(stragglers)
    return levels


def auto_layout(workflow: Workflow, config: LayoutConfig | None = None) -> dict[str, Position]:
    """
    Compute a 2-D position for every task.

    Node i of n on a level gets x = center_x - ((n-1)*s)/2 + i*s and
    y = level * vertical_spacing.

    Args:
        workflow: Workflow to lay out.
        config: Spacing options. Uses defaults if None.

    Returns:
        Mapping of task id to Position.
    """
    config = config or LayoutConfig()
    spacing = config.horizontal_spacing
    positions: dict[str, Position] = {}

    for level, nodes in enumerate(assign_levels(workflow)):
        left = config.center_x - ((len(nodes) - 1) * spacing) / 2
        for index, node in enumerate(nodes):
            positions[node] = Position(left + index * spacing, level * config.vertical_spacing)

    return positions
