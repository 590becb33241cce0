"""
Exception types raised by the AgentFlow engine.

Execution failures of individual tasks are never raised; they are recorded
on the task itself. Only caller mistakes and structural problems surface
as exceptions.
"""


class AgentFlowError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(AgentFlowError):
    """
    Raised when a workflow fails structural validation.

    Attributes:
        errors: Every problem found, in the order the validator reported them.
    """

    def __init__(self, errors: list[str] | tuple[str, ...]):
        self.errors = list(errors)
        super().__init__(f"Workflow rejected with {len(self.errors)} error(s): " + "; ".join(self.errors))


class AgentNotFoundError(AgentFlowError, KeyError):
    """Raised when an agent id is not registered."""

    def __str__(self) -> str:
        return f"Agent not found: {self.args[0]}"


class TaskNotFoundError(AgentFlowError, KeyError):
    """Raised when a task id is unknown to the scheduler."""

    def __str__(self) -> str:
        return f"Task not found: {self.args[0]}"


class WorkflowNotFoundError(AgentFlowError, KeyError):
    """Raised when a workflow id is unknown to the scheduler."""

    def __str__(self) -> str:
        return f"Workflow not found: {self.args[0]}"


class AgentBusyError(AgentFlowError):
    """Raised when deregistering an agent that still has in-flight tasks."""

    def __init__(self, agent_id: str, in_flight: int):
        self.agent_id = agent_id
        self.in_flight = in_flight
        super().__init__(
            f"Agent {agent_id} has {in_flight} in-flight task(s); use force=True to cancel them"
        )


class WorkerBackendError(AgentFlowError):
    """Raised by a worker backend that cannot start or cancel a task."""
