"""
Core data model: agents, tasks and the enums that describe them.

Agents are immutable records; re-registering an agent replaces the record.
Tasks are mutable, but only the Scheduler changes their status.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

MIN_BASE_PRIORITY = 1
MAX_BASE_PRIORITY = 10


class TaskType(Enum):
    """Kinds of work a task can describe."""
    CODE_GENERATION = "code-generation"
    CODE_REVIEW = "code-review"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    DEPLOYMENT = "deployment"
    ANALYSIS = "analysis"
    OPTIMIZATION = "optimization"
    DEBUGGING = "debugging"
    REFACTORING = "refactoring"


class Capability(Enum):
    """Capabilities an agent can declare."""
    CODE_GENERATION = "code-generation"
    CODE_REVIEW = "code-review"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    DEPLOYMENT = "deployment"
    MONITORING = "monitoring"
    OPTIMIZATION = "optimization"
    DEBUGGING = "debugging"
    ARCHITECTURE_DESIGN = "architecture-design"
    UI_DESIGN = "ui-design"
    DATABASE_DESIGN = "database-design"
    API_DESIGN = "api-design"
    WORKFLOW_MANAGEMENT = "workflow-management"


class TaskPriority(Enum):
    """Priority levels for tasks. Higher value is dispatched first."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class TaskStatus(Enum):
    """Status values for tasks."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


def coerce_task_type(value: TaskType | str) -> TaskType:
    """Accept a TaskType or its string value."""
    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(value)
    except ValueError:
        raise ValueError(f"Unknown task type: {value!r}") from None


def coerce_priority(value: TaskPriority | str | int) -> TaskPriority:
    """Accept a TaskPriority, its name ("high") or its numeric value."""
    if isinstance(value, TaskPriority):
        return value
    if isinstance(value, str):
        try:
            return TaskPriority[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value!r}") from None
    return TaskPriority(value)


@dataclass(frozen=True)
class Agent:
    """
    A worker able to execute tasks.

    The number of tasks an agent is currently running is not a
    field here: it is derived from the scheduler's in-flight tasks on demand.

    Attributes:
        id: Unique agent identifier.
        capabilities: Capability names the agent declares.
        capacity: Maximum number of tasks the agent may run concurrently.
        base_priority: Scoring base in the range 1-10.
        name: Human readable label.
        agent_type: Optional profile name (see agentflow.presets).
    """
    id: str
    capabilities: frozenset[str] = field(default_factory=frozenset)
    capacity: int = 1
    base_priority: int = 5
    name: str = ""
    agent_type: str | None = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Agent ID is required")
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")
        if not MIN_BASE_PRIORITY <= self.base_priority <= MAX_BASE_PRIORITY:
            raise ValueError(
                f"base_priority must be between {MIN_BASE_PRIORITY} and {MAX_BASE_PRIORITY}"
            )
        # Normalize capabilities given as a list or as Capability members.
        normalized = frozenset(
            c.value if isinstance(c, Capability) else str(c) for c in self.capabilities
        )
        object.__setattr__(self, "capabilities", normalized)
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def has_capability(self, capability: Capability | str) -> bool:
        value = capability.value if isinstance(capability, Capability) else capability
        return value in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "agent_type": self.agent_type,
            "capabilities": sorted(self.capabilities),
            "capacity": self.capacity,
            "base_priority": self.base_priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        """
        Build an agent from a JSON-style dictionary.

        Raises:
            ValueError: If a field is missing or out of range, or capabilities is not a list.
        """
        capabilities = data.get("capabilities") or []
        if not isinstance(capabilities, (list, tuple, set, frozenset)):
            raise ValueError("capabilities must be a list of capability names")
        return cls(
            id=data.get("id", ""),
            capabilities=frozenset(capabilities),
            capacity=int(data.get("capacity", 1)),
            base_priority=int(data.get("base_priority", 5)),
            name=data.get("name", ""),
            agent_type=data.get("agent_type"),
        )


@dataclass
class Task:
    """
    A unit of work inside a workflow.

    Attributes:
        id: Unique task identifier.
        type: Task type, used for capability matching.
        priority: Dispatch priority class.
        dependencies: Ids of tasks that must complete first, in declared order.
        estimated_duration_ms: Advisory duration estimate; never enforced.
        title: Short label for presentation.
        description: Longer free text.
        payload: Opaque input handed to the worker backend.
        status: Current lifecycle status.
        assigned_agent: Agent running the task, set when it starts running.
        result: Result payload once completed.
        error: Error message once failed.
        progress: Last reported progress percentage.
        workflow_id: Workflow the task was submitted with.
        created_at: Wall-clock creation time.
        started_at: Scheduler clock reading when the task started running.
        completed_at: Scheduler clock reading at the terminal transition.
        cancel_requested: Set while a running task waits for the backend to acknowledge cancellation.
    """
    id: str
    type: TaskType
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[str] = field(default_factory=list)
    estimated_duration_ms: int | None = None
    title: str = ""
    description: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent: str | None = None
    result: Any = None
    error: str | None = None
    progress: int = 0
    workflow_id: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    cancel_requested: bool = False

    def __post_init__(self):
        if not self.id:
            raise ValueError("Task ID is required")
        self.type = coerce_task_type(self.type)
        self.priority = coerce_priority(self.priority)
        self.dependencies = list(self.dependencies)
        if not self.title:
            self.title = self.id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority.name.lower(),
            "dependencies": list(self.dependencies),
            "estimated_duration_ms": self.estimated_duration_ms,
            "title": self.title,
            "description": self.description,
            "payload": self.payload,
            "status": self.status.value,
            "assigned_agent": self.assigned_agent,
            "result": self.result,
            "error": self.error,
            "progress": self.progress,
            "workflow_id": self.workflow_id,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "cancel_requested": self.cancel_requested,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Build a fresh (pending) task definition from a JSON-style dictionary."""
        estimate = data.get("estimated_duration_ms")
        return cls(
            id=data.get("id", ""),
            type=data.get("type", ""),
            priority=data.get("priority", TaskPriority.MEDIUM),
            dependencies=list(data.get("dependencies") or []),
            estimated_duration_ms=int(estimate) if estimate is not None else None,
            title=data.get("title", ""),
            description=data.get("description", ""),
            payload=dict(data.get("payload") or {}),
        )
