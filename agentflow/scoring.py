"""
Assignment scoring: how suitable is an agent for a task right now.

Score formula (all weights are module constants):

- Base: the agent's base priority (1-10).
- Overload: an agent at or over capacity is never a candidate. An agent at
  or over OVERLOAD_THRESHOLD of its capacity loses OVERLOAD_PENALTY points.
- Capability: CAPABILITY_BONUS points when the task type maps to a
  capability the agent declares.
- Final score is clamped to [MIN_SCORE, MAX_SCORE].

Ties are broken by agent registration order, first registered wins.
"""

from typing import Mapping

from .models import Agent, Capability, Task, TaskType

OVERLOAD_THRESHOLD = 0.8
OVERLOAD_PENALTY = 2
CAPABILITY_BONUS = 3
MIN_SCORE = 1
MAX_SCORE = 10

# Every task type must appear here; None means "no capability bonus".
TASK_CAPABILITIES: dict[TaskType, Capability | None] = {
    TaskType.CODE_GENERATION: Capability.CODE_GENERATION,
    TaskType.CODE_REVIEW: Capability.CODE_REVIEW,
    TaskType.TESTING: Capability.TESTING,
    TaskType.DOCUMENTATION: Capability.DOCUMENTATION,
    TaskType.DEPLOYMENT: Capability.DEPLOYMENT,
    TaskType.ANALYSIS: None,
    TaskType.OPTIMIZATION: Capability.OPTIMIZATION,
    TaskType.DEBUGGING: Capability.DEBUGGING,
    TaskType.REFACTORING: None,
}


def _check_capability_table(table: Mapping[TaskType, Capability | None]) -> None:
    missing = [t.value for t in TaskType if t not in table]
    if missing:
        raise RuntimeError(f"Task types without a capability mapping: {', '.join(missing)}")


_check_capability_table(TASK_CAPABILITIES)


def required_capability(task_type: TaskType) -> Capability | None:
    return TASK_CAPABILITIES[task_type]


def is_eligible(agent: Agent, load: Mapping[str, int]) -> bool:
    """An agent is a candidate only while it has a free slot."""
    return load.get(agent.id, 0) < agent.capacity


def score(agent: Agent, task: Task, load: Mapping[str, int]) -> int:
    """
    Suitability of an agent for a task.

    The caller is expected to have filtered out full agents with
    is_eligible(); a full agent still gets a number here but must never be
    selected.

    Args:
        agent: Candidate agent.
        task: Task to place.
        load: Running task count per agent id.

    Returns:
        Integer score between MIN_SCORE and MAX_SCORE.
    """
    value = agent.base_priority

    if load.get(agent.id, 0) >= OVERLOAD_THRESHOLD * agent.capacity:
        value -= OVERLOAD_PENALTY

    capability = required_capability(task.type)
    if capability is not None and agent.has_capability(capability):
        value += CAPABILITY_BONUS

    return max(MIN_SCORE, min(MAX_SCORE, value))


def find_best_agent(
    task: Task,
    candidates: list[Agent],
    load: Mapping[str, int],
) -> Agent | None:
    """
    Pick the highest scoring eligible agent.

    Args:
        task: Task to place.
        candidates: Agents in registration order.
        load: Running task count per agent id.

    Returns:
        The chosen agent, or None when every agent is full.
    """
    best: Agent | None = None
    best_score = MIN_SCORE - 1
    for agent in candidates:
        if not is_eligible(agent, load):
            continue
        value = score(agent, task, load)
        # Strictly greater keeps the earlier-registered agent on ties.
        if value > best_score:
            best, best_score = agent, value
    return best
