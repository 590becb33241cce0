"""
Per-agent performance accounting.

The aggregator is the only writer of PerformanceRecord objects. The
scheduler feeds it exactly one record() call per task that reaches
completed or failed; everyone else reads copies.

Performance score (0-100):

    0.4 * success_rate                                (0-40)
    + max(0, 20 - avg_duration_seconds * 0.1)        (execution time, 0-20)
    + min(20, log(total_tasks + 1) * 3)               (volume)
    + min(20, uptime_seconds * 0.02)                  (uptime)

success_rate is 100 for an agent with no recorded tasks so that unused
agents are not penalized.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from .errors import AgentNotFoundError

logger = logging.getLogger(__name__)

SUCCESS_WEIGHT = 0.4
COMPONENT_MAX = 20.0
DURATION_PENALTY_PER_SECOND = 0.1
VOLUME_WEIGHT = 3.0
UPTIME_WEIGHT = 0.02
MAX_LATENCY_SAMPLES = 1000

# Thresholds for performance_report() recommendations
LOW_SUCCESS_RATE = 80.0
SLOW_AVERAGE_MS = 300_000
LOW_UPTIME_PERCENT = 90.0
INACTIVE_AFTER_SECONDS = 24 * 60 * 60


class Outcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PerformanceRecord:
    """
    Accumulated counters for one agent.

    Attributes:
        agent_id: Agent the record belongs to.
        total_tasks: Completed plus failed.
        completed: Tasks that completed.
        failed: Tasks that failed.
        total_duration_ms: Cumulative execution time.
        first_seen: Clock reading when the agent was first tracked.
        last_active: Clock reading of the last recorded outcome.
        latencies_ms: Most recent durations, for percentiles.
    """
    agent_id: str
    total_tasks: int = 0
    completed: int = 0
    failed: int = 0
    total_duration_ms: float = 0.0
    first_seen: float = 0.0
    last_active: float | None = None
    latencies_ms: list[float] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.failed
        if finished == 0:
            return 100.0
        return self.completed / finished * 100

    @property
    def average_duration_ms(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.total_duration_ms / self.total_tasks

    def percentile(self, p: float) -> float:
        """Latency percentile (0-100) over the retained samples."""
        if not self.latencies_ms:
            return 0.0
        ordered = sorted(self.latencies_ms)
        idx = min(int(len(ordered) * p / 100), len(ordered) - 1)
        return ordered[idx]


class MetricsAggregator:
    """Thread-safe collector of per-agent performance records."""

    def __init__(self, clock: Callable[[], float] = time.time):
        """
        Args:
            clock: Returns the current time in seconds. Injectable for tests.
        """
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, PerformanceRecord] = {}

    def _ensure(self, agent_id: str) -> PerformanceRecord:
        # caller holds the lock
        record = self._records.get(agent_id)
        if record is None:
            record = PerformanceRecord(agent_id=agent_id, first_seen=self._clock())
            self._records[agent_id] = record
        return record

    def track(self, agent_id: str) -> None:
        """Start the uptime clock for an agent; no-op if already tracked."""
        with self._lock:
            self._ensure(agent_id)

    def record(self, agent_id: str, outcome: Outcome | str, duration_ms: float) -> None:
        """
        Record one terminal task outcome.

        Args:
            agent_id: Agent that ran the task.
            outcome: Outcome.COMPLETED or Outcome.FAILED (or their values).
            duration_ms: Execution time in milliseconds.
        """
        outcome = Outcome(outcome)
        duration_ms = max(0.0, float(duration_ms))
        with self._lock:
            record = self._ensure(agent_id)
            record.total_tasks += 1
            record.total_duration_ms += duration_ms
            if outcome is Outcome.COMPLETED:
                record.completed += 1
            else:
                record.failed += 1
            record.last_active = self._clock()

            record.latencies_ms.append(duration_ms)
            if len(record.latencies_ms) > MAX_LATENCY_SAMPLES:
                record.latencies_ms.pop(0)

        logger.debug(f"Recorded {outcome.value} for agent {agent_id} ({duration_ms:.0f} ms)")

    def get(self, agent_id: str) -> PerformanceRecord | None:
        """A copy of the agent's record, or None if never tracked."""
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                return None
            return replace(record, latencies_ms=list(record.latencies_ms))

    def _uptime_seconds(self, record: PerformanceRecord) -> float:
        return max(0.0, self._clock() - record.first_seen)

    def _score(self, record: PerformanceRecord) -> float:
        duration_penalty = record.average_duration_ms / 1000 * DURATION_PENALTY_PER_SECOND
        value = (
            SUCCESS_WEIGHT * record.success_rate
            + max(0.0, COMPONENT_MAX - duration_penalty)
            + min(COMPONENT_MAX, math.log(record.total_tasks + 1) * VOLUME_WEIGHT)
            + min(COMPONENT_MAX, self._uptime_seconds(record) * UPTIME_WEIGHT)
        )
        return round(min(100.0, max(0.0, value)), 2)

    def score(self, agent_id: str) -> float:
        """
        Normalized performance score for an agent.

        An agent that was never tracked is scored as a fresh record.

        Returns:
            Score between 0 and 100 (higher is better).
        """
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                record = PerformanceRecord(agent_id=agent_id, first_seen=self._clock())
            return self._score(record)

    def scores(self) -> dict[str, float]:
        with self._lock:
            return {agent_id: self._score(r) for agent_id, r in self._records.items()}

    def performance_report(self, agent_id: str) -> dict[str, Any]:
        """
        Summary, details and recommendations for one agent.

        Raises:
            AgentNotFoundError: If the agent was never tracked.
        """
        with self._lock:
            record = self._records.get(agent_id)
            if record is None:
                raise AgentNotFoundError(agent_id)
            performance_score = self._score(record)
            uptime_seconds = self._uptime_seconds(record)
            now = self._clock()
            details = {
                "performance_score": performance_score,
                "success_rate": round(record.success_rate, 2),
                "average_execution_ms": round(record.average_duration_ms, 2),
                "p50_execution_ms": round(record.percentile(50), 2),
                "p95_execution_ms": round(record.percentile(95), 2),
                "total_tasks": record.total_tasks,
                "completed_tasks": record.completed,
                "failed_tasks": record.failed,
                "uptime_seconds": round(uptime_seconds, 2),
                "last_active": record.last_active,
            }

        uptime_percent = min(COMPONENT_MAX, uptime_seconds * UPTIME_WEIGHT) / COMPONENT_MAX * 100
        recommendations = []
        if details["success_rate"] < LOW_SUCCESS_RATE:
            recommendations.append("Consider reviewing agent configuration or reducing task complexity")
        if details["average_execution_ms"] > SLOW_AVERAGE_MS:
            recommendations.append("Tasks are taking longer than expected. Consider splitting complex tasks")
        if uptime_percent < LOW_UPTIME_PERCENT:
            recommendations.append("Agent has low uptime. Check for configuration or resource issues")
        last_active = details["last_active"]
        if last_active is None or now - last_active > INACTIVE_AFTER_SECONDS:
            recommendations.append("Agent has been inactive recently. Consider adjusting task assignment")

        return {
            "agent_id": agent_id,
            "summary": (
                f"Agent {agent_id} has a performance score of {performance_score} with "
                f"{details['success_rate']}% success rate over {details['total_tasks']} tasks."
            ),
            "details": details,
            "recommendations": recommendations,
        }
