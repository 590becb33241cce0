"""
Tests for the Scheduler class.
"""

import logging
import threading
import time

import pytest

from agentflow import (
    AgentBusyError,
    AgentNotFoundError,
    MetricsAggregator,
    Scheduler,
    Task,
    TaskNotFoundError,
    TaskStatus,
    WorkerBackend,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

PENDING = TaskStatus.PENDING
READY = TaskStatus.READY
RUNNING = TaskStatus.RUNNING
COMPLETED = TaskStatus.COMPLETED
FAILED = TaskStatus.FAILED
CANCELLED = TaskStatus.CANCELLED


def status(scheduler, task_id):
    return scheduler.get_task(task_id).status


class InlineAckBackend(WorkerBackend):
    """Reports the cancellation from inside cancel_task() and also acknowledges it."""

    def __init__(self):
        super().__init__()
        self.status_during_cancel = []

    def start_task(self, agent, task):
        pass

    def cancel_task(self, agent_id, task):
        self.scheduler.report_cancelled(task.id)
        self.status_during_cancel.append(self.scheduler.get_task(task.id).status)
        return True


class TestSubmission:
    """Tests for submit()."""

    def test_sources_become_ready(self, scheduler, make_workflow):
        """Test that only tasks without dependencies start ready."""
        scheduler.submit(make_workflow({"A": [], "B": [], "C": ["A", "B"]}))
        assert scheduler.task_statuses() == {"A": READY, "B": READY, "C": PENDING}

    def test_invalid_workflow_rejected_with_all_errors(self, scheduler, make_workflow):
        """Test that nothing is scheduled from an invalid workflow."""
        workflow = make_workflow({"A": [], "B": ["ghost"], "X": ["Y"], "Y": ["X"]})
        with pytest.raises(WorkflowValidationError) as exc_info:
            scheduler.submit(workflow)
        assert len(exc_info.value.errors) >= 4
        assert scheduler.workflow_ids() == []
        assert scheduler.task_statuses() == {}

    def test_duplicate_workflow_id(self, scheduler, make_workflow):
        """Test that a workflow id can only be submitted once."""
        scheduler.submit(make_workflow({"A": []}, workflow_id="wf"))
        with pytest.raises(WorkflowValidationError, match="Workflow already submitted: wf"):
            scheduler.submit(make_workflow({"B": []}, workflow_id="wf"))

    def test_task_ids_unique_across_workflows(self, scheduler, make_workflow):
        """Test that a task id already scheduled is rejected."""
        scheduler.submit(make_workflow({"A": []}))
        with pytest.raises(WorkflowValidationError, match="Task id already scheduled: A"):
            scheduler.submit(make_workflow({"A": []}))

    def test_caller_definitions_untouched(self, scheduler, make_agent, make_workflow):
        """Test that the submitted task objects are copied."""
        scheduler.register_agent(make_agent("dev"))
        workflow = make_workflow({"A": []})
        scheduler.submit(workflow)
        assert status(scheduler, "A") is RUNNING
        assert workflow.get("A").status is PENDING
        assert workflow.get("A").assigned_agent is None

    def test_missing_estimate_filled(self, scheduler, make_workflow):
        """Test that tasks without an estimate get one."""
        scheduler.submit(make_workflow({"A": []}))
        assert scheduler.get_task("A").estimated_duration_ms == 180_000

    def test_get_task_returns_copy(self, scheduler, make_workflow):
        """Test that snapshots cannot change scheduler state."""
        scheduler.submit(make_workflow({"A": []}))
        snapshot = scheduler.get_task("A")
        snapshot.status = COMPLETED
        assert status(scheduler, "A") is READY

    def test_unknown_task(self, scheduler):
        """Test looking up a task that was never submitted."""
        with pytest.raises(TaskNotFoundError):
            scheduler.get_task("ghost")


class TestDispatch:
    """Tests for assignment and ordering."""

    def test_dependencies_gate_execution(self, scheduler, backend, make_agent, make_workflow):
        """Test that a task waits for every dependency to complete."""
        scheduler.register_agent(make_agent("dev", capacity=1))
        scheduler.submit(make_workflow({"A": [], "B": [], "C": ["A", "B"]}))

        # Capacity 1: A and B never run together
        assert backend.started_ids() == ["A"]
        assert status(scheduler, "B") is READY

        scheduler.report_completion("A")
        assert backend.started_ids() == ["A", "B"]
        assert status(scheduler, "C") is PENDING

        scheduler.report_completion("B")
        assert backend.started_ids() == ["A", "B", "C"]
        assert status(scheduler, "C") is RUNNING

    def test_priority_order(self, scheduler, backend, make_agent, make_workflow):
        """Test that critical tasks go first, then submission order."""
        priorities = {"L": "low", "M1": "medium", "C": "critical", "H": "high", "M2": "medium"}
        scheduler.submit(make_workflow({t: [] for t in priorities}, priorities=priorities))
        scheduler.register_agent(make_agent("dev", capacity=1))

        while len(backend.started) < len(priorities):
            scheduler.report_completion(backend.started_ids()[-1])

        assert backend.started_ids() == ["C", "H", "M1", "M2", "L"]

    def test_no_agents_leaves_tasks_ready(self, scheduler, backend, make_workflow):
        """Test that a pass without agents is not an error."""
        scheduler.submit(make_workflow({"A": []}))
        assert backend.started == []
        assert status(scheduler, "A") is READY

    def test_capacity_never_exceeded(self, scheduler, backend, make_agent, make_workflow):
        """Test the running count against capacities of 2 and 1."""
        scheduler.register_agent(make_agent("big", capacity=2))
        scheduler.register_agent(make_agent("small", capacity=1))
        scheduler.submit(make_workflow({f"t{i}": [] for i in range(5)}))

        assert backend.started == [("big", "t0"), ("big", "t1"), ("small", "t2")]
        assert scheduler.load_snapshot() == {"big": 2, "small": 1}
        statuses = scheduler.task_statuses()
        assert list(statuses.values()).count(RUNNING) == 3
        assert list(statuses.values()).count(READY) == 2

        scheduler.report_completion("t0")
        assert backend.started[-1] == ("big", "t3")
        assert scheduler.load_snapshot() == {"big": 2, "small": 1}

    def test_capability_match_preferred(self, scheduler, backend, make_agent, make_workflow):
        """Test that the agent with the matching capability is chosen."""
        scheduler.register_agent(make_agent("writer", capabilities={"documentation"}))
        scheduler.register_agent(make_agent("tester", capabilities={"testing"}))
        scheduler.submit(make_workflow({"A": []}, task_type="testing"))
        assert backend.started == [("tester", "A")]

    def test_new_agent_picks_up_waiting_work(self, scheduler, backend, make_agent, make_workflow):
        """Test that registering an agent triggers a dispatch pass."""
        scheduler.submit(make_workflow({"A": [], "B": []}))
        scheduler.register_agent(make_agent("dev", capacity=2))
        assert sorted(backend.started_ids()) == ["A", "B"]

    def test_backend_refusal_is_failure(self, scheduler, backend, make_agent, make_workflow):
        """Test that a start error fails the task and cascades."""
        backend.refuse.add("A")
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"]}))

        task = scheduler.get_task("A")
        assert task.status is FAILED
        assert task.error == "refused A"
        assert status(scheduler, "B") is CANCELLED
        assert scheduler.metrics.get("dev").failed == 1
        assert scheduler.load_snapshot() == {"dev": 0}


class TestReports:
    """Tests for worker reports."""

    def test_completion_records_result_and_duration(self, scheduler, clock, make_agent, make_workflow):
        """Test result, progress and the duration metric."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}))
        clock.advance(2)
        scheduler.report_completion("A", {"ok": True})

        task = scheduler.get_task("A")
        assert task.status is COMPLETED
        assert task.result == {"ok": True}
        assert task.progress == 100
        assert task.completed_at == clock.now

        record = scheduler.metrics.get("dev")
        assert record.completed == 1
        assert record.total_duration_ms == 2000

    def test_failure_cascades(self, scheduler, backend, make_agent, make_workflow):
        """Test that every dependent is cancelled and none ever runs."""
        scheduler.register_agent(make_agent("dev", capacity=3))
        scheduler.submit(make_workflow({"A": [], "B": ["A"], "C": ["A"], "D": ["B"]}))
        scheduler.report_failure("A", "boom")

        assert scheduler.get_task("A").error == "boom"
        assert scheduler.task_statuses() == {"A": FAILED, "B": CANCELLED, "C": CANCELLED, "D": CANCELLED}
        assert backend.started_ids() == ["A"]
        assert scheduler.metrics.get("dev").failed == 1

    def test_failure_spares_unrelated_tasks(self, scheduler, make_agent, make_workflow):
        """Test that only transitive dependents are cancelled."""
        scheduler.register_agent(make_agent("dev", capacity=2))
        scheduler.submit(make_workflow({"A": [], "X": [], "B": ["A"], "Y": ["X"]}))
        scheduler.report_failure("A", "boom")
        assert status(scheduler, "B") is CANCELLED
        assert status(scheduler, "X") is RUNNING
        assert status(scheduler, "Y") is PENDING

    def test_progress(self, scheduler, make_agent, make_workflow):
        """Test progress updates on a running task."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}))
        scheduler.report_progress("A", 40)
        assert scheduler.get_task("A").progress == 40

        with pytest.raises(ValueError):
            scheduler.report_progress("A", 120)

    def test_unknown_task_report_ignored(self, scheduler):
        """Test that reports for unknown tasks do not raise."""
        scheduler.report_completion("ghost")
        scheduler.report_failure("ghost", "x")
        assert scheduler.task_statuses() == {}

    def test_report_for_non_running_task_ignored(self, scheduler, make_workflow):
        """Test that a stray completion cannot skip a task past running."""
        scheduler.submit(make_workflow({"A": [], "B": ["A"]}))
        scheduler.report_completion("B")
        scheduler.report_completion("A")
        assert scheduler.task_statuses() == {"A": READY, "B": PENDING}

    def test_synchronous_backend_reentrancy(self, sync_backend, clock, make_agent, make_workflow):
        """Test that completions reported from inside start_task are applied."""
        scheduler = Scheduler(backend=sync_backend, metrics=MetricsAggregator(clock=clock), clock=clock)
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"], "C": ["B"]}))

        assert scheduler.task_statuses() == {"A": COMPLETED, "B": COMPLETED, "C": COMPLETED}
        assert scheduler.get_task("C").result == {"done_by": "dev"}
        assert scheduler.metrics.get("dev").completed == 3

    def test_concurrent_reports_respect_capacity(self, scheduler, backend, make_agent, make_workflow):
        """Test that reports from many threads never overfill an agent."""
        scheduler.register_agent(make_agent("big", capacity=3))
        scheduler.register_agent(make_agent("small", capacity=1))
        spec = {f"t{i}": [] for i in range(20)}
        spec.update({f"d{i}": [f"t{i}"] for i in range(20)})
        scheduler.submit(make_workflow(spec))

        def worker():
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                statuses = scheduler.task_statuses()
                if all(s is COMPLETED for s in statuses.values()):
                    return
                for task_id, s in statuses.items():
                    if s is RUNNING:
                        scheduler.report_completion(task_id)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(s is COMPLETED for s in scheduler.task_statuses().values())
        assert len(backend.started) == 40
        assert all(load <= capacity for _, load, capacity in backend.load_at_start)
        total = sum(scheduler.metrics.get(a).completed for a in ("big", "small"))
        assert total == 40


class TestCancellation:
    """Tests for cancel() and acknowledgements."""

    def test_cancel_pending_cascades(self, scheduler, make_workflow):
        """Test that cancelling a task cancels its dependents."""
        scheduler.submit(make_workflow({"A": [], "B": ["A"], "C": ["B"], "D": []}))
        scheduler.cancel("A")
        assert scheduler.task_statuses() == {"A": CANCELLED, "B": CANCELLED, "C": CANCELLED, "D": READY}

    def test_cancel_is_idempotent(self, scheduler, make_workflow):
        """Test that cancelling twice changes nothing."""
        scheduler.submit(make_workflow({"A": [], "B": ["A"]}))
        scheduler.cancel("B")
        first = scheduler.get_task("B").completed_at
        scheduler.cancel("B")
        assert status(scheduler, "B") is CANCELLED
        assert scheduler.get_task("B").completed_at == first
        assert status(scheduler, "A") is READY

    def test_cancel_completed_is_noop(self, scheduler, make_agent, make_workflow):
        """Test that a terminal task keeps its status."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}))
        scheduler.report_completion("A")
        scheduler.cancel("A")
        assert status(scheduler, "A") is COMPLETED

    def test_cancel_unknown(self, scheduler):
        """Test cancelling an unknown task."""
        with pytest.raises(TaskNotFoundError):
            scheduler.cancel("ghost")

    def test_running_task_waits_for_ack(self, scheduler, backend, make_agent, make_workflow):
        """Test that a running task keeps its slot until the backend confirms."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"], "X": []}))
        scheduler.cancel("A")

        assert backend.cancelled == [("dev", "A")]
        assert status(scheduler, "A") is RUNNING
        assert scheduler.get_task("A").cancel_requested is True
        assert status(scheduler, "B") is CANCELLED
        assert backend.started_ids() == ["A"]

        scheduler.report_cancelled("A")
        assert status(scheduler, "A") is CANCELLED
        assert backend.started_ids() == ["A", "X"]

    def test_immediate_ack(self, scheduler, backend, make_agent, make_workflow):
        """Test a backend that acknowledges cancellation synchronously."""
        backend.ack_cancel = True
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "X": []}))
        scheduler.cancel("A")
        assert status(scheduler, "A") is CANCELLED
        assert backend.started_ids() == ["A", "X"]

    def test_late_completion_counts_as_ack(self, scheduler, make_agent, make_workflow):
        """Test that a completion after a cancel request ends as cancelled."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}))
        scheduler.cancel("A")
        scheduler.report_completion("A", "late")

        task = scheduler.get_task("A")
        assert task.status is CANCELLED
        assert task.result is None
        assert scheduler.metrics.get("dev").total_tasks == 0

    def test_report_from_inside_cancel_is_deferred(self, clock, make_agent, make_workflow, caplog):
        """Test that an acknowledgement sent during cancel_task() waits for the cascade."""
        backend = InlineAckBackend()
        scheduler = Scheduler(backend=backend, metrics=MetricsAggregator(clock=clock), clock=clock)
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"], "X": []}))

        with caplog.at_level(logging.DEBUG, logger="agentflow.scheduler"):
            scheduler.cancel("A")

        assert backend.status_during_cancel == [RUNNING]
        assert scheduler.task_statuses() == {"A": CANCELLED, "B": CANCELLED, "X": RUNNING}
        assert "Task A: running -> cancelled" in caplog.text
        assert "cancelled -> cancelled" not in caplog.text

    def test_report_from_inside_forced_deregistration(self, clock, make_agent, make_workflow, caplog):
        """Test that forced deregistration also defers acknowledgements."""
        backend = InlineAckBackend()
        scheduler = Scheduler(backend=backend, metrics=MetricsAggregator(clock=clock), clock=clock)
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"]}))

        with caplog.at_level(logging.DEBUG, logger="agentflow.scheduler"):
            scheduler.deregister_agent("dev", force=True)

        assert backend.status_during_cancel == [RUNNING]
        assert scheduler.task_statuses() == {"A": CANCELLED, "B": CANCELLED}
        assert "cancelled -> cancelled" not in caplog.text


class TestAgents:
    """Tests for agent registration through the scheduler."""

    def test_deregister_busy_refused(self, scheduler, make_agent, make_workflow):
        """Test that an agent with running work cannot be removed."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}))
        with pytest.raises(AgentBusyError):
            scheduler.deregister_agent("dev")
        assert status(scheduler, "A") is RUNNING

    def test_deregister_forced(self, scheduler, backend, make_agent, make_workflow):
        """Test that force cancels the agent's running tasks and dependents."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"], "X": []}))
        scheduler.deregister_agent("dev", force=True)

        assert scheduler.task_statuses() == {"A": CANCELLED, "B": CANCELLED, "X": READY}
        assert backend.cancelled == [("dev", "A")]
        assert scheduler.load_snapshot() == {}

        # A late report from the removed agent is ignored
        scheduler.report_completion("A")
        assert status(scheduler, "A") is CANCELLED

    def test_deregister_unknown(self, scheduler):
        """Test removing an unknown agent."""
        with pytest.raises(AgentNotFoundError):
            scheduler.deregister_agent("ghost")

    def test_deregister_idle(self, scheduler, make_agent):
        """Test removing an idle agent."""
        scheduler.register_agent(make_agent("dev"))
        assert scheduler.deregister_agent("dev").id == "dev"
        assert scheduler.get_agent_overview() == []


class TestAddTask:
    """Tests for add_task()."""

    def test_added_after_completed_dependency_runs(self, scheduler, backend, make_agent, make_workflow):
        """Test that a task whose dependencies are done is dispatched."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}, workflow_id="wf"))
        scheduler.report_completion("A")
        scheduler.add_task("wf", Task(id="B", type="testing", dependencies=["A"]))
        assert status(scheduler, "B") is RUNNING
        assert scheduler.get_task("B").workflow_id == "wf"

    def test_added_after_failed_dependency_cancelled(self, scheduler, make_agent, make_workflow):
        """Test that a task depending on a failed task is cancelled at once."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}, workflow_id="wf"))
        scheduler.report_failure("A", "boom")
        scheduler.add_task("wf", Task(id="B", type="testing", dependencies=["A"]))
        assert status(scheduler, "B") is CANCELLED

    def test_added_with_open_dependency_pending(self, scheduler, make_workflow):
        """Test that a task with unfinished dependencies waits."""
        scheduler.submit(make_workflow({"A": []}, workflow_id="wf"))
        scheduler.add_task("wf", Task(id="B", type="testing", dependencies=["A"]))
        assert status(scheduler, "B") is PENDING
        assert scheduler.get_workflow("wf").task_ids == ["A", "B"]

    def test_invalid_addition_rejected(self, scheduler, make_workflow):
        """Test that the enlarged workflow is validated."""
        scheduler.submit(make_workflow({"A": []}, workflow_id="wf"))
        with pytest.raises(WorkflowValidationError, match="ghost"):
            scheduler.add_task("wf", Task(id="B", type="testing", dependencies=["ghost"]))
        assert scheduler.get_workflow("wf").task_ids == ["A"]

    def test_unknown_workflow(self, scheduler):
        """Test adding to a workflow that was never submitted."""
        with pytest.raises(WorkflowNotFoundError):
            scheduler.add_task("nope", Task(id="B", type="testing"))


class TestReadModels:
    """Tests for state views used by the presentation layer."""

    def test_workflow_state(self, scheduler, make_agent, make_workflow):
        """Test counts, progress and layout in the workflow state."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": [], "B": ["A"]}, workflow_id="wf"))
        scheduler.report_completion("A")

        state = scheduler.workflow_state("wf")
        assert state["counts"]["completed"] == 1
        assert state["counts"]["running"] == 1
        assert state["progress_percent"] == 50.0
        assert state["finished"] is False
        assert state["layout"]["A"] == {"x": 100.0, "y": 0.0}
        assert state["layout"]["B"] == {"x": 100.0, "y": 150.0}
        assert state["edges"] == [{"id": "A-B", "source": "A", "target": "B"}]

        scheduler.report_completion("B")
        assert scheduler.workflow_state("wf")["finished"] is True

    def test_unknown_workflow(self, scheduler):
        """Test reading a workflow that was never submitted."""
        with pytest.raises(WorkflowNotFoundError):
            scheduler.workflow_state("nope")

    def test_queue_status(self, scheduler, make_agent, make_workflow):
        """Test ready tasks in dispatch order and running tasks."""
        scheduler.register_agent(make_agent("dev"))
        priorities = {"A": "low", "B": "low", "C": "high"}
        scheduler.submit(make_workflow({t: [] for t in priorities}, priorities=priorities))

        queue = scheduler.get_queue_status()
        assert queue["queue_length"] == 2
        assert [entry["task_id"] for entry in queue["ready"]] == ["A", "B"]
        assert queue["running"] == [{"task_id": "C", "agent_id": "dev", "progress": 0}]

    def test_load_metrics(self, scheduler, make_agent, make_workflow):
        """Test the engine load gauge."""
        scheduler.register_agent(make_agent("dev"))
        scheduler.submit(make_workflow({"A": []}))

        load = scheduler.get_load_metrics()
        assert load["metrics"]["agent_utilization"] == 100.0
        assert load["metrics"]["running_tasks"] == 1
        assert load["load_gauge"] == {"score": 60.0, "level": "high"}

    def test_load_metrics_without_agents(self, scheduler, make_workflow):
        """Test that ready work with no capacity is full queue pressure."""
        scheduler.submit(make_workflow({"A": []}))
        load = scheduler.get_load_metrics()
        assert load["metrics"]["queue_pressure"] == 100.0
        assert load["load_gauge"]["level"] == "moderate"

    def test_agent_overview(self, scheduler, make_agent, make_workflow):
        """Test live load and free slots per agent."""
        scheduler.register_agent(make_agent("dev", capacity=3))
        scheduler.submit(make_workflow({"A": []}))
        (entry,) = scheduler.get_agent_overview()
        assert entry["id"] == "dev"
        assert entry["load"] == 1
        assert entry["available_slots"] == 2
        assert entry["performance_score"] == 60.0
