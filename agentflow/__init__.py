"""
AgentFlow - dependency-aware task scheduling across specialized agents.

ARCHITECTURE DOCUMENTATION
==========================

AgentFlow takes a workflow of interdependent tasks and runs it on a pool of
agents, each with declared capabilities and a bounded number of concurrent
slots. Key components, leaf first:

1. GRAPH
--------
- Workflow: ordered tasks; dependency edges are derived from each task's
  dependency list, never stored twice
- validate(): source, dangling-dependency, reachability and cycle checks,
  reporting every problem at once
- auto_layout(): BFS level layout for renderers; never read by scheduling

2. AGENTS
---------
- AgentRegistry: registration-ordered store of agent records
- Scorer: base priority, overload penalty, capability bonus; full agents are
  never candidates
- Presets: built-in specialist profiles and duration estimates

3. SCHEDULING
-------------
- Scheduler: single writer of task state behind one lock, with an inbox for
  worker reports arriving from any thread
- Priority dispatch (CRITICAL > HIGH > MEDIUM > LOW, then submission order)
- Cascading cancellation of dependents on failure or explicit cancel

4. EXECUTION
------------
- ThreadPoolBackend: in-process handlers on a ThreadPoolExecutor
- HttpWorkerBackend: remote worker service over HTTP

5. TELEMETRY
------------
- MetricsAggregator: per-agent success/failure/duration counters and a
  0-100 performance score
- Load gauge and queue status read models for the presentation layer

See agentflow/scheduler.py for the concurrency model.
"""

from .backends import HttpWorkerBackend, TaskContext, ThreadPoolBackend, WorkerBackend, create_backend
from .config import EngineConfig
from .errors import (
    AgentBusyError,
    AgentFlowError,
    AgentNotFoundError,
    TaskNotFoundError,
    WorkerBackendError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .graph import Workflow, workflow_from_dict
from .layout import LayoutConfig, Position, auto_layout
from .metrics import MetricsAggregator, Outcome, PerformanceRecord
from .models import Agent, Capability, Task, TaskPriority, TaskStatus, TaskType
from .presets import AgentType, create_default_agent, estimate_task_duration
from .registry import AgentRegistry
from .scheduler import Scheduler
from .scoring import TASK_CAPABILITIES, find_best_agent, score
from .validator import ValidationResult, validate

__all__ = [
    # Model
    "Agent",
    "Capability",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "Workflow",
    "workflow_from_dict",
    # Graph
    "ValidationResult",
    "validate",
    "LayoutConfig",
    "Position",
    "auto_layout",
    # Agents
    "AgentRegistry",
    "AgentType",
    "TASK_CAPABILITIES",
    "create_default_agent",
    "estimate_task_duration",
    "find_best_agent",
    "score",
    # Scheduling
    "Scheduler",
    "MetricsAggregator",
    "Outcome",
    "PerformanceRecord",
    # Execution
    "WorkerBackend",
    "ThreadPoolBackend",
    "HttpWorkerBackend",
    "TaskContext",
    "create_backend",
    # Configuration and errors
    "EngineConfig",
    "AgentFlowError",
    "AgentBusyError",
    "AgentNotFoundError",
    "TaskNotFoundError",
    "WorkerBackendError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
]
