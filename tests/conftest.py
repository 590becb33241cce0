"""
Shared fixtures for the AgentFlow test-suite.
"""

import pytest

from agentflow import (
    Agent,
    Capability,
    MetricsAggregator,
    Scheduler,
    Task,
    WorkerBackend,
    WorkerBackendError,
    Workflow,
)


class FakeClock:
    """Manually advanced clock, usable wherever a time callable is expected."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingBackend(WorkerBackend):
    """
    Backend that starts nothing and records what it was asked to do.

    Attributes:
        started: (agent_id, task_id) pairs in start order.
        cancelled: (agent_id, task_id) cancellation requests.
        ack_cancel: Value returned from cancel_task().
        refuse: Task ids whose start raises WorkerBackendError.
        load_at_start: Agent load observed by the scheduler at each start.
    """

    def __init__(self):
        super().__init__()
        self.started: list[tuple[str, str]] = []
        self.cancelled: list[tuple[str, str]] = []
        self.ack_cancel = False
        self.refuse: set[str] = set()
        self.load_at_start: list[tuple[str, int, int]] = []

    def start_task(self, agent, task):
        if task.id in self.refuse:
            raise WorkerBackendError(f"refused {task.id}")
        self.started.append((agent.id, task.id))
        load = self.scheduler.load_snapshot()
        self.load_at_start.append((agent.id, load[agent.id], agent.capacity))

    def cancel_task(self, agent_id, task):
        self.cancelled.append((agent_id, task.id))
        return self.ack_cancel

    def started_ids(self) -> list[str]:
        return [task_id for _, task_id in self.started]


class SynchronousBackend(WorkerBackend):
    """Completes every task from inside start_task()."""

    def start_task(self, agent, task):
        self.scheduler.report_completion(task.id, {"done_by": agent.id})

    def cancel_task(self, agent_id, task):
        return True


ALL_CAPABILITIES = frozenset(c.value for c in Capability)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def scheduler(backend, clock):
    """Scheduler wired to a recording backend and a fake clock."""
    return Scheduler(backend=backend, metrics=MetricsAggregator(clock=clock), clock=clock)


@pytest.fixture
def sync_backend():
    return SynchronousBackend()


@pytest.fixture
def make_agent():
    """Factory for agents that match every task type by default."""
    def factory(agent_id, capacity=1, base_priority=5, capabilities=ALL_CAPABILITIES):
        return Agent(
            id=agent_id,
            capabilities=frozenset(capabilities),
            capacity=capacity,
            base_priority=base_priority,
        )
    return factory


@pytest.fixture
def make_workflow():
    """Factory building a workflow from {task_id: [dependencies]} in order."""
    def factory(spec, task_type="testing", workflow_id=None, priorities=None):
        priorities = priorities or {}
        tasks = [
            Task(
                id=task_id,
                type=task_type,
                dependencies=deps,
                priority=priorities.get(task_id, "medium"),
            )
            for task_id, deps in spec.items()
        ]
        return Workflow(tasks, workflow_id=workflow_id)
    return factory
