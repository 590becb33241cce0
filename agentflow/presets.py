"""
Default agent profiles and task duration estimates.
"""

import json
from enum import Enum
from typing import Any

from .models import Agent, Capability, TaskType, coerce_task_type


class AgentType(Enum):
    """Specialist profiles an agent can be created from."""
    ORCHESTRATOR = "orchestrator"
    FRONTEND_ARCHITECT = "frontend-architect"
    BACKEND_ARCHITECT = "backend-architect"
    DATABASE_SPECIALIST = "database-specialist"
    DEVOPS_SPECIALIST = "devops-specialist"
    UI_UX = "ui-ux"
    TEST_ARCHITECT = "test-architect"
    DOCUMENTOR = "documentor"
    EVALUATOR = "evaluator"
    STRUCTURE_UPDATER = "structure-updater"


C = Capability

AGENT_PROFILES: dict[AgentType, dict[str, Any]] = {
    AgentType.ORCHESTRATOR: {
        "name": "Orchestrator",
        "capabilities": [C.WORKFLOW_MANAGEMENT, C.ARCHITECTURE_DESIGN, C.CODE_REVIEW, C.MONITORING],
        "capacity": 10,
        "base_priority": 10,
    },
    AgentType.FRONTEND_ARCHITECT: {
        "name": "Frontend Architect",
        "capabilities": [C.CODE_GENERATION, C.UI_DESIGN, C.OPTIMIZATION, C.TESTING],
        "capacity": 5,
        "base_priority": 8,
    },
    AgentType.BACKEND_ARCHITECT: {
        "name": "Backend Architect",
        "capabilities": [C.CODE_GENERATION, C.API_DESIGN, C.DATABASE_DESIGN, C.OPTIMIZATION],
        "capacity": 5,
        "base_priority": 8,
    },
    AgentType.DATABASE_SPECIALIST: {
        "name": "Database Specialist",
        "capabilities": [C.DATABASE_DESIGN, C.OPTIMIZATION, C.MONITORING, C.CODE_GENERATION],
        "capacity": 3,
        "base_priority": 7,
    },
    AgentType.DEVOPS_SPECIALIST: {
        "name": "DevOps Specialist",
        "capabilities": [C.DEPLOYMENT, C.MONITORING, C.OPTIMIZATION, C.ARCHITECTURE_DESIGN],
        "capacity": 3,
        "base_priority": 6,
    },
    AgentType.UI_UX: {
        "name": "UI/UX Designer",
        "capabilities": [C.UI_DESIGN, C.CODE_GENERATION, C.OPTIMIZATION, C.TESTING],
        "capacity": 4,
        "base_priority": 7,
    },
    AgentType.TEST_ARCHITECT: {
        "name": "Test Architect",
        "capabilities": [C.TESTING, C.CODE_GENERATION, C.CODE_REVIEW, C.MONITORING],
        "capacity": 5,
        "base_priority": 6,
    },
    AgentType.DOCUMENTOR: {
        "name": "Documentor",
        "capabilities": [C.DOCUMENTATION, C.CODE_REVIEW, C.CODE_GENERATION],
        "capacity": 3,
        "base_priority": 5,
    },
    AgentType.EVALUATOR: {
        "name": "Evaluator",
        "capabilities": [C.CODE_REVIEW, C.OPTIMIZATION, C.MONITORING, C.DEBUGGING],
        "capacity": 4,
        "base_priority": 6,
    },
    AgentType.STRUCTURE_UPDATER: {
        "name": "Structure Updater",
        "capabilities": [C.CODE_GENERATION, C.ARCHITECTURE_DESIGN, C.OPTIMIZATION],
        "capacity": 2,
        "base_priority": 4,
    },
}

BASE_DURATIONS_MS: dict[TaskType, int] = {
    TaskType.CODE_GENERATION: 120_000,
    TaskType.CODE_REVIEW: 60_000,
    TaskType.TESTING: 180_000,
    TaskType.DOCUMENTATION: 90_000,
    TaskType.DEPLOYMENT: 300_000,
    TaskType.ANALYSIS: 120_000,
    TaskType.OPTIMIZATION: 240_000,
    TaskType.DEBUGGING: 180_000,
    TaskType.REFACTORING: 300_000,
}

# Lower is faster
AGENT_EFFICIENCY: dict[AgentType, float] = {
    AgentType.ORCHESTRATOR: 1.2,
    AgentType.FRONTEND_ARCHITECT: 1.0,
    AgentType.BACKEND_ARCHITECT: 1.0,
    AgentType.DATABASE_SPECIALIST: 0.9,
    AgentType.DEVOPS_SPECIALIST: 1.1,
    AgentType.UI_UX: 1.1,
    AgentType.TEST_ARCHITECT: 0.8,
    AgentType.DOCUMENTOR: 0.9,
    AgentType.EVALUATOR: 0.7,
    AgentType.STRUCTURE_UPDATER: 1.3,
}

MIN_COMPLEXITY = 0.5
MAX_COMPLEXITY = 3.0
COMPLEXITY_CHARS = 1000


def create_default_agent(agent_type: AgentType | str, agent_id: str | None = None) -> Agent:
    """
    Build an agent from one of the built-in profiles.

    Args:
        agent_type: Profile to use.
        agent_id: Agent id. Defaults to the profile name (e.g. "test-architect").

    Returns:
        A new Agent record.
    """
    agent_type = AgentType(agent_type)
    profile = AGENT_PROFILES[agent_type]
    return Agent(
        id=agent_id or agent_type.value,
        capabilities=frozenset(c.value for c in profile["capabilities"]),
        capacity=profile["capacity"],
        base_priority=profile["base_priority"],
        name=profile["name"],
        agent_type=agent_type.value,
    )


def estimate_task_duration(
    task_type: TaskType | str,
    payload: dict[str, Any] | None = None,
    agent_type: AgentType | str | None = None,
) -> int:
    """
    Rough duration estimate in milliseconds.

    The base duration of the task type is scaled by payload size (the JSON
    length divided by 1000, clamped to 0.5-3) and by the efficiency factor
    of the agent profile expected to run it.
    """
    duration = float(BASE_DURATIONS_MS[coerce_task_type(task_type)])

    if payload:
        size = len(json.dumps(payload, default=str))
        duration *= min(MAX_COMPLEXITY, max(MIN_COMPLEXITY, size / COMPLEXITY_CHARS))

    if agent_type is not None:
        duration *= AGENT_EFFICIENCY[AgentType(agent_type)]

    return round(duration)
