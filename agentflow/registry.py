"""
Agent registry: the store of available workers.

Holds capability and capacity records only. Live load is owned by the
scheduler and passed in where needed; no scoring or scheduling happens here.
"""

import logging
import threading

from .errors import AgentBusyError, AgentNotFoundError
from .models import Agent

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Thread-safe, registration-ordered store of agents.

    Registration order is preserved across re-registration and is used by
    the scorer to break ties deterministically.
    """

    def __init__(self):
        self._agents: dict[str, Agent] = {}
        self._lock = threading.Lock()

    def register(self, agent: Agent) -> bool:
        """
        Register an agent, replacing any existing record with the same id.

        Args:
            agent: The agent record.

        Returns:
            True if the agent is new, False if an existing record was replaced.
        """
        with self._lock:
            is_new = agent.id not in self._agents
            self._agents[agent.id] = agent

        if is_new:
            logger.info(f"Agent {agent.id} registered (capacity={agent.capacity}, priority={agent.base_priority})")
        else:
            logger.info(f"Agent {agent.id} re-registered; record replaced")
        return is_new

    def deregister(self, agent_id: str, in_flight: int, force: bool = False) -> Agent:
        """
        Remove an agent.

        Args:
            agent_id: ID of the agent to remove.
            in_flight: Number of tasks the agent is currently running.
            force: Remove even if in_flight > 0. The caller is responsible
                for cancelling those tasks.

        Returns:
            The removed agent record.

        Raises:
            AgentNotFoundError: If the agent is not registered.
            AgentBusyError: If the agent has in-flight tasks and force is False.
        """
        with self._lock:
            if agent_id not in self._agents:
                raise AgentNotFoundError(agent_id)
            if in_flight > 0 and not force:
                raise AgentBusyError(agent_id, in_flight)
            agent = self._agents.pop(agent_id)

        logger.info(f"Agent {agent_id} deregistered")
        return agent

    def get(self, agent_id: str) -> Agent:
        """
        Look up an agent.

        Raises:
            AgentNotFoundError: If the agent is not registered.
        """
        with self._lock:
            try:
                return self._agents[agent_id]
            except KeyError:
                raise AgentNotFoundError(agent_id) from None

    def list_agents(self) -> list[Agent]:
        """All agents in registration order."""
        with self._lock:
            return list(self._agents.values())

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._agents

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)
