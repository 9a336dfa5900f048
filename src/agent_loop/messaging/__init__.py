"""Typed agent-to-agent messaging over the durable job queue."""

from agent_loop.messaging.bus import AgentMessageBus
from agent_loop.messaging.models import BROADCAST, AgentMessage, BusMetrics, MessageType

__all__ = ["BROADCAST", "AgentMessage", "AgentMessageBus", "BusMetrics", "MessageType"]
