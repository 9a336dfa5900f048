"""Typed messages exchanged between agents over the bus."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

BROADCAST = "broadcast"

AGENT_NAMES = ("design_spec", "workflow_designer", "content_strategist", "orchestrator")

AGENT_EVENT_TYPES = (
    "agent.started",
    "agent.completed",
    "agent.failed",
    "agent.progress",
    "task.created",
    "task.assigned",
    "task.completed",
    "task.failed",
)


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    EVENT = "event"


@dataclass(slots=True)
class AgentMessage:
    """One bus message.

    ``correlation_id`` links a response to its request. Requests carry
    ``action``/``payload``; responses carry ``success``/``result``/``error``;
    notifications and events carry ``event``/``data``.
    """

    id: str
    type: MessageType
    sender: str
    to: str
    timestamp: int
    correlation_id: str | None = None
    action: str | None = None
    payload: Any = None
    timeout_ms: int | None = None
    success: bool | None = None
    result: Any = None
    error: dict[str, str] | None = None
    event: str | None = None
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        raw: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "from": self.sender,
            "to": self.to,
            "timestamp": self.timestamp,
        }
        optional = {
            "correlation_id": self.correlation_id,
            "action": self.action,
            "payload": self.payload,
            "timeout_ms": self.timeout_ms,
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "event": self.event,
            "data": self.data,
        }
        raw.update({key: value for key, value in optional.items() if value is not None})
        return raw

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentMessage:
        message_id = raw.get("id")
        sender = raw.get("from")
        to = raw.get("to")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("message.id must be a non-empty string")
        if not isinstance(sender, str) or not isinstance(to, str):
            raise TypeError("message.from and message.to must be strings")
        error = raw.get("error")
        if error is not None and not isinstance(error, dict):
            raise TypeError("message.error must be an object")
        return cls(
            id=message_id,
            type=MessageType(raw.get("type")),
            sender=sender,
            to=to,
            timestamp=int(raw.get("timestamp", 0)),
            correlation_id=raw.get("correlation_id"),
            action=raw.get("action"),
            payload=raw.get("payload"),
            timeout_ms=raw.get("timeout_ms"),
            success=raw.get("success"),
            result=raw.get("result"),
            error=error,
            event=raw.get("event"),
            data=raw.get("data"),
        )


MessageHandler = Callable[[AgentMessage], Any]
MessageFilter = Callable[[AgentMessage], bool]


@dataclass(slots=True)
class Subscription:
    handler: MessageHandler
    message_filter: MessageFilter | None = None
    priority: int = 0

    def accepts(self, message: AgentMessage) -> bool:
        return self.message_filter is None or self.message_filter(message)


@dataclass(slots=True)
class BusMetrics:
    waiting: int
    active: int
    completed: int
    failed: int
    pending_requests: int
