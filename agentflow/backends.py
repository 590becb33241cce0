"""
Worker execution backends.

The scheduler only decides *who* runs a task; a backend actually runs it.
The contract:

- start_task(agent, task): begin work, or raise WorkerBackendError.
- cancel_task(agent_id, task): ask running work to stop. Returns True when
  the cancellation is already acknowledged, False when the acknowledgement
  will arrive later through report_cancelled() (or a late completion/failure).

Results flow back through the scheduler's entry points, which may be called
from any thread:

- report_completion(task_id, result)
- report_failure(task_id, error)
- report_cancelled(task_id)
- report_progress(task_id, progress)

Two implementations are provided:

A) ThreadPoolBackend
   - In-process handlers per task type on a ThreadPoolExecutor
   - Handlers receive the task payload and a TaskContext
   - Exceptions raised by a handler become task failures

B) HttpWorkerBackend
   - Hands tasks to a remote worker service with requests
   - The remote service reports back through the HTTP callback endpoints
     of api.app
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import requests

from .config import EngineConfig
from .errors import WorkerBackendError
from .models import Agent, Task, TaskType

if TYPE_CHECKING:
    from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class WorkerBackend(ABC):
    """Capability contract between the scheduler and whatever executes tasks."""

    def __init__(self):
        self._scheduler: "Scheduler | None" = None

    def attach(self, scheduler: "Scheduler") -> None:
        """Called once by the scheduler that will receive this backend's reports."""
        self._scheduler = scheduler

    @property
    def scheduler(self) -> "Scheduler":
        if self._scheduler is None:
            raise RuntimeError("Backend is not attached to a scheduler")
        return self._scheduler

    @abstractmethod
    def start_task(self, agent: Agent, task: Task) -> None:
        """
        Begin executing a task on an agent.

        Raises:
            WorkerBackendError: If the task could not be started.
        """

    @abstractmethod
    def cancel_task(self, agent_id: str, task: Task) -> bool:
        """Request cancellation; return True if already acknowledged."""

    def shutdown(self) -> None:
        """Release resources. Default: nothing to release."""


# ============================================================================
# IN-PROCESS BACKEND
# ============================================================================

@dataclass
class TaskContext:
    """
    What a handler knows about the task it is running.

    Attributes:
        task_id: Identifier of the running task.
        agent_id: Agent the task was assigned to.
        task_type: Type of the task.
        report_progress: Callable taking a 0-100 percentage.
    """
    task_id: str
    agent_id: str
    task_type: TaskType
    report_progress: Callable[[int], None]


Handler = Callable[[dict[str, Any], TaskContext], Any]


class ThreadPoolBackend(WorkerBackend):
    """
    Runs registered handlers on a thread pool.

    Example Usage:
        backend = ThreadPoolBackend(EngineConfig(thread_workers=4))
        backend.register_handler(TaskType.TESTING, run_tests)
        scheduler = Scheduler(backend=backend)
    """

    def __init__(self, config: EngineConfig | None = None):
        super().__init__()
        self.config = config or EngineConfig()
        self._handlers: dict[TaskType, Handler] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._active: dict[str, Future] = {}
        self._active_lock = threading.Lock()
        self._shutdown = False

    def _get_executor(self) -> ThreadPoolExecutor:
        """
        Get or create the thread pool executor.

        Uses double-checked locking for thread-safe lazy initialization.
        """
        if self._executor is None:
            with self._executor_lock:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self.config.thread_workers,
                        thread_name_prefix="agentflow_worker",
                    )
        return self._executor

    def register_handler(self, task_type: TaskType | str, handler: Handler) -> None:
        """
        Register the callable that performs tasks of one type.

        Args:
            task_type: Task type the handler processes.
            handler: Called as handler(payload, context); its return value
                becomes the task result.
        """
        self._handlers[TaskType(task_type)] = handler

    def _default_handler(self, payload: dict[str, Any], context: TaskContext) -> dict[str, Any]:
        return {"message": f"Task {context.task_type.value} processed", "payload": payload}

    def _wrap_task(self, agent_id: str, task: Task) -> Callable[[], None]:
        """
        Wrap a handler call so its outcome is reported to the scheduler.

        Returns a callable that:
        1. Executes the handler
        2. Catches exceptions
        3. Reports completion or failure
        """
        scheduler = self.scheduler
        handler = self._handlers.get(task.type, self._default_handler)
        context = TaskContext(
            task_id=task.id,
            agent_id=agent_id,
            task_type=task.type,
            report_progress=lambda progress: scheduler.report_progress(task.id, progress),
        )

        def wrapped() -> None:
            try:
                result = handler(dict(task.payload), context)
            except Exception as e:
                logger.error(f"Task {task.id} failed on agent {agent_id}: {e}")
                scheduler.report_failure(task.id, str(e))
                return
            scheduler.report_completion(task.id, result)

        return wrapped

    def start_task(self, agent: Agent, task: Task) -> None:
        if self._shutdown:
            raise WorkerBackendError("Backend is shut down")

        future = self._get_executor().submit(self._wrap_task(agent.id, task))
        with self._active_lock:
            self._active[task.id] = future

        def on_complete(f):
            with self._active_lock:
                self._active.pop(task.id, None)

        future.add_done_callback(on_complete)

    def cancel_task(self, agent_id: str, task: Task) -> bool:
        """
        Cancel a task that has not started on a pool thread yet.

        Handlers already running cannot be interrupted; their eventual
        report serves as the acknowledgement.
        """
        with self._active_lock:
            future = self._active.get(task.id)
        if future is None:
            return True
        return future.cancel()

    def get_active_tasks(self) -> list[str]:
        with self._active_lock:
            return list(self._active)

    def shutdown(self, wait: bool = True) -> None:
        self._shutdown = True
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("ThreadPoolBackend shutdown complete")


# ============================================================================
# REMOTE BACKEND
# ============================================================================

class HttpWorkerBackend(WorkerBackend):
    """
    Delegates execution to a remote worker service.

    The service receives ``POST {endpoint}/tasks`` with the agent id and the
    task, and ``DELETE {endpoint}/tasks/<task_id>`` for cancellation. It
    reports results by calling the AgentFlow HTTP callback endpoints.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            endpoint: Base URL of the worker service.
            api_key: Bearer token. Falls back to AGENTFLOW_WORKER_API_KEY.
            timeout: Request timeout in seconds.
        """
        super().__init__()
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key or os.environ.get("AGENTFLOW_WORKER_API_KEY")
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def start_task(self, agent: Agent, task: Task) -> None:
        payload = {"agent_id": agent.id, "task": task.to_dict()}
        try:
            response = requests.post(
                f"{self.endpoint}/tasks",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout:
            raise WorkerBackendError(f"Starting task {task.id} timed out") from None
        except requests.exceptions.RequestException as e:
            raise WorkerBackendError(f"Starting task {task.id} failed: {e}") from e

    def cancel_task(self, agent_id: str, task: Task) -> bool:
        try:
            response = requests.delete(
                f"{self.endpoint}/tasks/{task.id}",
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            # The service may still acknowledge later via report_cancelled().
            logger.warning(f"Cancellation request for task {task.id} failed: {e}")
            return False

        try:
            data = response.json()
        except ValueError:
            return False
        return bool(data.get("cancelled", False))


def create_backend(config: EngineConfig) -> WorkerBackend:
    """Choose the remote backend when an endpoint is configured."""
    if config.worker_endpoint:
        return HttpWorkerBackend(config.worker_endpoint, timeout=config.worker_timeout)
    return ThreadPoolBackend(config)
