"""Name → agent lookup table."""

from __future__ import annotations

import logging
import threading

from agent_loop.agents.base import Agent
from agent_loop.errors import AgentNotFoundError

logger = logging.getLogger(__name__)


class AgentRegistry:
    """In-memory registry; registering a name again replaces the previous agent."""

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._lock = threading.Lock()

    def register(self, agent: Agent) -> None:
        with self._lock:
            if agent.name in self._agents:
                logger.info("Replacing registered agent %s", agent.name)
            self._agents[agent.name] = agent

    def get(self, name: str) -> Agent:
        with self._lock:
            agent = self._agents.get(name)
        if agent is None:
            raise AgentNotFoundError(name)
        return agent

    def list(self) -> list[Agent]:
        with self._lock:
            return list(self._agents.values())

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._agents
