"""
Scheduler - dependency-ordered, capacity-bounded dispatch of workflow tasks.

CONCURRENCY MODEL
=================

The scheduler is the single writer of task state. Every status change and
every assignment decision happens while holding one re-entrant lock, so two
dispatch passes can never double-assign a task or overfill an agent.

Worker reports (completion, failure, cancellation acknowledgements,
progress) may arrive from any thread. They are put on an inbox queue and
the reporting thread then "settles" the scheduler: it takes the lock and
applies queued events and dispatch passes until nothing is left. A report
made re-entrantly from inside a backend call (start_task during a dispatch
pass, or cancel_task during a cancellation cascade) is only queued; it is
applied on the same thread once the current decision completes.

Only decisions are serialized. Actual work runs concurrently in the worker
backend.

TASK LIFECYCLE
==============

    pending -> ready -> running -> completed | failed
    pending | ready -> cancelled          (cascade or explicit cancel)
    running -> cancelled                  (after the backend acknowledges)

- Submit: validated workflows only; tasks without dependencies start ready.
- Dispatch pass: ready tasks in priority order (critical first, then
  submission order) are offered to find_best_agent(); tasks that find no
  free agent stay ready until the next pass. This is backpressure, not an
  error, and a pass never waits for capacity.
- Completion: dependents whose dependencies are all completed become ready.
- Failure: every transitive dependent is cancelled, depth-first. Running
  dependents are asked to stop through the backend and keep their capacity
  slot until it acknowledges.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable

from .backends import WorkerBackend, create_backend
from .config import EngineConfig
from .errors import (
    TaskNotFoundError,
    WorkerBackendError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .graph import Workflow
from .layout import LayoutConfig, Position, auto_layout
from .metrics import MetricsAggregator, Outcome
from .models import Agent, Task, TaskStatus
from .presets import estimate_task_duration
from .registry import AgentRegistry
from .scoring import find_best_agent
from .validator import validate

logger = logging.getLogger(__name__)

# Queue pressure is measured against this many ready tasks per capacity slot
QUEUE_PRESSURE_FACTOR = 5


class EventKind(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PROGRESS = "progress"


@dataclass(frozen=True)
class TaskEvent:
    """A worker report waiting in the scheduler inbox."""
    kind: EventKind
    task_id: str
    payload: Any = None


class Scheduler:
    """
    Owns task state, assigns ready tasks to agents and reacts to worker reports.

    Example Usage:
        scheduler = Scheduler(backend=ThreadPoolBackend())
        scheduler.register_agent(Agent("dev", {"testing"}, capacity=2))
        scheduler.submit(Workflow([Task("A", "testing"), Task("B", "testing", dependencies=["A"])]))
    """

    def __init__(
        self,
        backend: WorkerBackend | None = None,
        registry: AgentRegistry | None = None,
        metrics: MetricsAggregator | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the scheduler.

        Args:
            backend: Executes tasks. Built from config if None.
            registry: Agent store. A fresh one if None.
            metrics: Performance aggregator. A fresh one if None.
            config: Engine configuration. Uses defaults if None.
            clock: Monotonic seconds, used for task durations.
        """
        self.config = config or EngineConfig()
        self.registry = registry or AgentRegistry()
        self.metrics = metrics or MetricsAggregator()
        self.backend = backend or create_backend(self.config)
        self.backend.attach(self)
        self._clock = clock

        self._tasks: dict[str, Task] = {}
        self._sequence: dict[str, int] = {}
        self._workflows: dict[str, Workflow] = {}

        self._lock = threading.RLock()
        self._inbox: Queue[TaskEvent] = Queue()
        self._settling = False
        self._dispatch_requested = False

        for agent in self.registry.list_agents():
            self.metrics.track(agent.id)

    # =============================
    # SUBMISSION
    # =============================

    def submit(self, workflow: Workflow) -> str:
        """
        Accept a workflow for execution.

        Args:
            workflow: The workflow to run. Its task objects are copied; the
                caller's definitions are never mutated.

        Returns:
            The workflow id.

        Raises:
            WorkflowValidationError: With every structural error found.
        """
        errors = list(validate(workflow).errors)

        with self._lock:
            if workflow.id in self._workflows:
                errors.append(f"Workflow already submitted: {workflow.id}")
            errors += [f"Task id already scheduled: {t.id}" for t in workflow if t.id in self._tasks]
            if errors:
                logger.warning(f"Workflow {workflow.id} rejected: {len(errors)} error(s)")
                raise WorkflowValidationError(errors)

            owned = Workflow(
                [self._fresh_copy(task, workflow.id) for task in workflow],
                workflow.id,
                workflow.name,
                workflow.description,
            )
            self._workflows[owned.id] = owned
            for task in owned:
                self._insert(task)
                if not task.dependencies:
                    self._transition(task, TaskStatus.READY)
            self._dispatch_requested = True

        logger.info(f"Workflow {workflow.id} submitted with {len(workflow)} task(s)")
        self._settle()
        return workflow.id

    def add_task(self, workflow_id: str, task: Task) -> None:
        """
        Add a task to an already submitted workflow.

        The enlarged workflow is re-validated. The new task starts ready when
        all of its dependencies are completed, cancelled when any of them
        failed or was cancelled, and pending otherwise.

        Raises:
            WorkflowNotFoundError: If the workflow was never submitted.
            WorkflowValidationError: If the enlarged workflow is invalid.
        """
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            if task.id in self._tasks:
                raise WorkflowValidationError([f"Task id already scheduled: {task.id}"])

            owned = self._fresh_copy(task, workflow_id)
            candidate = workflow.copy()
            candidate.add_task(owned)
            result = validate(candidate)
            if not result.ok:
                raise WorkflowValidationError(result.errors)

            workflow.add_task(owned)
            self._insert(owned)
            dep_statuses = [self._tasks[dep].status for dep in owned.dependencies]
            if any(s in (TaskStatus.FAILED, TaskStatus.CANCELLED) for s in dep_statuses):
                self._transition(owned, TaskStatus.CANCELLED)
            elif all(s is TaskStatus.COMPLETED for s in dep_statuses):
                self._transition(owned, TaskStatus.READY)
            self._dispatch_requested = True

        logger.info(f"Task {task.id} added to workflow {workflow_id}")
        self._settle()

    def _fresh_copy(self, task: Task, workflow_id: str) -> Task:
        estimate = task.estimated_duration_ms
        if estimate is None:
            estimate = estimate_task_duration(task.type, task.payload)
        return replace(
            task,
            estimated_duration_ms=estimate,
            dependencies=list(task.dependencies),
            payload=dict(task.payload),
            status=TaskStatus.PENDING,
            assigned_agent=None,
            result=None,
            error=None,
            progress=0,
            workflow_id=workflow_id,
            started_at=None,
            completed_at=None,
            cancel_requested=False,
        )

    def _insert(self, task: Task) -> None:
        self._sequence[task.id] = len(self._sequence)
        self._tasks[task.id] = task

    # =============================
    # AGENTS
    # =============================

    def register_agent(self, agent: Agent) -> None:
        """Register (or replace) an agent and try to give it work."""
        with self._lock:
            self.registry.register(agent)
            self.metrics.track(agent.id)
            self._dispatch_requested = True
        self._settle()

    def deregister_agent(self, agent_id: str, force: bool = False) -> Agent:
        """
        Remove an agent.

        Args:
            agent_id: ID of the agent.
            force: Cancel the agent's running tasks (and their dependents)
                instead of refusing.

        Returns:
            The removed agent record.

        Raises:
            AgentNotFoundError: If the agent is not registered.
            AgentBusyError: If the agent has running tasks and force is False.
        """
        with self._lock:
            running = [
                t for t in self._tasks.values()
                if t.status is TaskStatus.RUNNING and t.assigned_agent == agent_id
            ]
            agent = self.registry.deregister(agent_id, in_flight=len(running), force=force)
            with self._deferred_reports():
                for task in running:
                    logger.warning(f"Force-cancelling task {task.id} of deregistered agent {agent_id}")
                    self._cancel_cascade(task.id)
                    # Nobody is left to acknowledge for this agent.
                    if task.status is TaskStatus.RUNNING:
                        self._transition(task, TaskStatus.CANCELLED)
            self._dispatch_requested = True
        self._settle()
        return agent

    # =============================
    # WORKER REPORTS
    # =============================

    def report_completion(self, task_id: str, result: Any = None) -> None:
        """Worker callback: the task finished successfully."""
        self._post(TaskEvent(EventKind.COMPLETED, task_id, result))

    def report_failure(self, task_id: str, error: str) -> None:
        """
        Worker callback: the task failed.

        The failure is recorded on the task and cascades to its dependents;
        it is never raised to the caller.
        """
        self._post(TaskEvent(EventKind.FAILED, task_id, str(error)))

    def report_cancelled(self, task_id: str) -> None:
        """Worker callback: the backend stopped the task."""
        self._post(TaskEvent(EventKind.CANCELLED, task_id))

    def report_progress(self, task_id: str, progress: int) -> None:
        """
        Worker callback: percentage of work done.

        Raises:
            ValueError: If progress is outside 0-100.
        """
        progress = int(progress)
        if not 0 <= progress <= 100:
            raise ValueError("progress must be between 0 and 100")
        self._post(TaskEvent(EventKind.PROGRESS, task_id, progress))

    def _post(self, event: TaskEvent) -> None:
        self._inbox.put(event)
        self._settle()

    def _settle(self) -> None:
        """Apply queued events and pending dispatch passes until quiescent."""
        with self._lock:
            if self._settling:
                return
            self._settling = True
            try:
                while True:
                    try:
                        event = self._inbox.get_nowait()
                    except Empty:
                        if not self._dispatch_requested:
                            break
                        self._dispatch_requested = False
                        self._dispatch_pass()
                        continue
                    self._apply(event)
            finally:
                self._settling = False

    @contextmanager
    def _deferred_reports(self):
        """
        Queue reports made re-entrantly from backend calls outside the settle loop.

        The caller holds the lock and must call _settle() after the block.
        """
        previous = self._settling
        self._settling = True
        try:
            yield
        finally:
            self._settling = previous

    def _apply(self, event: TaskEvent) -> None:
        task = self._tasks.get(event.task_id)
        if task is None:
            logger.warning(f"Ignoring {event.kind.value} report for unknown task {event.task_id}")
            return

        if event.kind is EventKind.PROGRESS:
            if task.status is TaskStatus.RUNNING:
                task.progress = event.payload
            return

        if task.status is not TaskStatus.RUNNING:
            logger.warning(
                f"Ignoring {event.kind.value} report for task {task.id} in status {task.status.value}"
            )
            return

        if event.kind is EventKind.CANCELLED or task.cancel_requested:
            # Any report for a task being cancelled counts as the acknowledgement.
            self._transition(task, TaskStatus.CANCELLED)
            self._cancel_cascade(task.id)
        elif event.kind is EventKind.COMPLETED:
            self._complete(task, event.payload)
        else:
            self._fail(task, event.payload)
        self._dispatch_requested = True

    def _duration_ms(self, task: Task) -> float:
        if task.started_at is None:
            return 0.0
        return (self._clock() - task.started_at) * 1000

    def _complete(self, task: Task, result: Any) -> None:
        task.result = result
        task.progress = 100
        self._transition(task, TaskStatus.COMPLETED)
        self.metrics.record(task.assigned_agent, Outcome.COMPLETED, self._duration_ms(task))

        for dependent_id in self._dependents_of(task.id):
            dependent = self._tasks[dependent_id]
            if dependent.status is not TaskStatus.PENDING:
                continue
            if all(self._tasks[dep].status is TaskStatus.COMPLETED for dep in dependent.dependencies):
                self._transition(dependent, TaskStatus.READY)

    def _fail(self, task: Task, error: str) -> None:
        task.error = error
        self._transition(task, TaskStatus.FAILED)
        self.metrics.record(task.assigned_agent, Outcome.FAILED, self._duration_ms(task))
        self._cancel_cascade(task.id)
        self._dispatch_requested = True

    # =============================
    # CANCELLATION
    # =============================

    def cancel(self, task_id: str) -> None:
        """
        Cancel a task and everything that transitively depends on it.

        Takes the same cascading path as a failure but records no metric.
        Cancelling a task that is already terminal is a no-op.

        Raises:
            TaskNotFoundError: If the task is unknown.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status.is_terminal:
                return
            logger.info(f"Cancelling task {task_id}")
            with self._deferred_reports():
                self._cancel_cascade(task_id)
            self._dispatch_requested = True
        self._settle()

    def _cancel_cascade(self, root_id: str) -> None:
        """Depth-first cancellation of root_id and its transitive dependents."""
        seen: set[str] = set()
        stack = [root_id]
        while stack:
            task_id = stack.pop()
            if task_id in seen:
                continue
            seen.add(task_id)
            self._cancel_one(self._tasks[task_id])
            stack.extend(reversed(self._dependents_of(task_id)))

    def _cancel_one(self, task: Task) -> None:
        if task.status.is_terminal:
            return
        if task.status is not TaskStatus.RUNNING:
            self._transition(task, TaskStatus.CANCELLED)
            return
        if task.cancel_requested:
            return

        task.cancel_requested = True
        logger.warning(f"Requesting cancellation of running task {task.id} on agent {task.assigned_agent}")
        try:
            acknowledged = self.backend.cancel_task(task.assigned_agent, self._snapshot(task))
        except WorkerBackendError as e:
            logger.warning(f"Backend could not cancel task {task.id}: {e}")
            acknowledged = False
        if acknowledged and task.status is TaskStatus.RUNNING:
            self._transition(task, TaskStatus.CANCELLED)

    # =============================
    # DISPATCH
    # =============================

    def _dispatch_pass(self) -> None:
        """Offer every ready task, highest priority first, to the free agents."""
        agents = self.registry.list_agents()
        if not agents:
            return
        load = self._load_snapshot()
        for task in self._ready_in_order():
            agent = find_best_agent(task, agents, load)
            if agent is None:
                continue
            load[agent.id] = load.get(agent.id, 0) + 1
            self._start(task, agent)

    def _ready_in_order(self) -> list[Task]:
        ready = [t for t in self._tasks.values() if t.status is TaskStatus.READY]
        ready.sort(key=lambda t: (-t.priority.value, self._sequence[t.id]))
        return ready

    def _start(self, task: Task, agent: Agent) -> None:
        task.assigned_agent = agent.id
        task.started_at = self._clock()
        task.progress = 0
        self._transition(task, TaskStatus.RUNNING)
        try:
            self.backend.start_task(agent, self._snapshot(task))
        except WorkerBackendError as e:
            logger.error(f"Backend refused task {task.id} on agent {agent.id}: {e}")
            self._fail(task, str(e))

    def _snapshot(self, task: Task) -> Task:
        return replace(task, dependencies=list(task.dependencies), payload=dict(task.payload))

    def _transition(self, task: Task, status: TaskStatus) -> None:
        logger.debug(f"Task {task.id}: {task.status.value} -> {status.value}")
        task.status = status
        if status.is_terminal:
            task.completed_at = self._clock()

    def _dependents_of(self, task_id: str) -> list[str]:
        return [t.id for t in self._tasks.values() if task_id in t.dependencies]

    def _load_snapshot(self) -> dict[str, int]:
        load = {agent.id: 0 for agent in self.registry.list_agents()}
        for task in self._tasks.values():
            if task.status is TaskStatus.RUNNING and task.assigned_agent is not None:
                load[task.assigned_agent] = load.get(task.assigned_agent, 0) + 1
        return load

    # =============================
    # READ MODELS
    # =============================

    def load_snapshot(self) -> dict[str, int]:
        """Running task count per registered agent."""
        with self._lock:
            return self._load_snapshot()

    def get_task(self, task_id: str) -> Task:
        """
        A copy of the task's current state.

        Raises:
            TaskNotFoundError: If the task is unknown.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return self._snapshot(task)

    def task_statuses(self, workflow_id: str | None = None) -> dict[str, TaskStatus]:
        with self._lock:
            return {
                t.id: t.status
                for t in self._tasks.values()
                if workflow_id is None or t.workflow_id == workflow_id
            }

    def get_workflow(self, workflow_id: str) -> Workflow:
        """
        A copy of a submitted workflow with current task states.

        Raises:
            WorkflowNotFoundError: If the workflow was never submitted.
        """
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            return Workflow(
                [self._snapshot(t) for t in workflow],
                workflow.id,
                workflow.name,
                workflow.description,
            )

    def workflow_ids(self) -> list[str]:
        with self._lock:
            return list(self._workflows)

    def layout(self, workflow_id: str) -> dict[str, Position]:
        """Presentation positions for a submitted workflow."""
        config = LayoutConfig(
            center_x=self.config.layout_center_x,
            horizontal_spacing=self.config.layout_horizontal_spacing,
            vertical_spacing=self.config.layout_vertical_spacing,
        )
        return auto_layout(self.get_workflow(workflow_id), config)

    def workflow_state(self, workflow_id: str) -> dict[str, Any]:
        """
        Everything a renderer needs for one workflow.

        Returns:
            Dictionary with tasks, derived edges, layout positions and
            per-status counts.
        """
        workflow = self.get_workflow(workflow_id)
        positions = self.layout(workflow_id)
        counts = {status.value: 0 for status in TaskStatus}
        for task in workflow:
            counts[task.status.value] += 1
        total = len(workflow)

        state = workflow.to_dict()
        state["layout"] = {task_id: {"x": p.x, "y": p.y} for task_id, p in positions.items()}
        state["counts"] = counts
        state["progress_percent"] = round(counts[TaskStatus.COMPLETED.value] / total * 100, 1) if total else 0.0
        state["finished"] = all(TaskStatus(s).is_terminal for s, n in counts.items() if n)
        return state

    def get_agent_overview(self) -> list[dict[str, Any]]:
        """Registered agents with live load and performance score."""
        with self._lock:
            load = self._load_snapshot()
            agents = self.registry.list_agents()
        overview = []
        for agent in agents:
            entry = agent.to_dict()
            entry["load"] = load.get(agent.id, 0)
            entry["available_slots"] = agent.capacity - entry["load"]
            entry["performance_score"] = self.metrics.score(agent.id)
            overview.append(entry)
        return overview

    def get_queue_status(self) -> dict[str, Any]:
        """Ready tasks in dispatch order plus running tasks."""
        with self._lock:
            ready = [
                {"task_id": t.id, "type": t.type.value, "priority": t.priority.name.lower()}
                for t in self._ready_in_order()
            ]
            running = [
                {"task_id": t.id, "agent_id": t.assigned_agent, "progress": t.progress}
                for t in self._tasks.values()
                if t.status is TaskStatus.RUNNING
            ]
        return {
            "queue_length": len(ready),
            "ready": ready,
            "running": running,
        }

    def get_load_metrics(self) -> dict[str, Any]:
        """
        Load gauge for the whole engine.

        Returns:
            Dictionary with a 0-100 load score, its level and the raw counts.
        """
        with self._lock:
            load = self._load_snapshot()
            agents = self.registry.list_agents()
            counts = {status.value: 0 for status in TaskStatus}
            for task in self._tasks.values():
                counts[task.status.value] += 1

        total_capacity = sum(agent.capacity for agent in agents)
        running = sum(load.values())
        ready = counts[TaskStatus.READY.value]

        if total_capacity == 0:
            utilization = 0.0
            queue_pressure = 100.0 if ready > 0 else 0.0
        else:
            utilization = min(100.0, running / total_capacity * 100)
            queue_pressure = min(100.0, ready / (total_capacity * QUEUE_PRESSURE_FACTOR) * 100)

        # Combined load score (weighted average)
        load_score = utilization * 0.6 + queue_pressure * 0.4

        if load_score >= 80:
            level = "critical"
        elif load_score >= 60:
            level = "high"
        elif load_score >= 30:
            level = "moderate"
        else:
            level = "low"

        return {
            "load_gauge": {"score": round(load_score, 1), "level": level},
            "metrics": {
                "agent_utilization": round(utilization, 1),
                "queue_pressure": round(queue_pressure, 1),
                "total_agents": len(agents),
                "total_capacity": total_capacity,
                "running_tasks": running,
                "tasks_by_status": counts,
            },
            "timestamp": time.time(),
        }

    def shutdown(self) -> None:
        """Release backend resources."""
        self.backend.shutdown()
        logger.info("Scheduler shutdown complete")
