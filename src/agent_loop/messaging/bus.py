"""Agent message bus with request/response correlation over the durable job queue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from agent_loop.errors import RequestFailedError, RequestTimeoutError, ValidationFailedError
from agent_loop.jobs.models import AGENT_MESSAGES_QUEUE, JobStatus, JobView
from agent_loop.jobs.queue import JobQueue
from agent_loop.jobs.worker import QueueWorker, WorkerRunSummary
from agent_loop.messaging.models import (
    BROADCAST,
    AgentMessage,
    BusMetrics,
    MessageFilter,
    MessageHandler,
    MessageType,
    Subscription,
)
from agent_loop.storage.common import utc_now

logger = logging.getLogger(__name__)

MESSAGE_JOB = "message"
DEFAULT_SENDER = "orchestrator"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


@dataclass(slots=True)
class _PendingRequest:
    future: Future[AgentMessage]
    timer: threading.Timer
    timeout_seconds: float


class AgentMessageBus:
    """Typed agent-to-agent messaging.

    Messages travel through the ``agent-messages`` queue, so delivery is
    at-least-once and in enqueue order. Delivery happens when the bus worker
    drains the queue, either via ``drain()`` or the background thread from
    ``start()``. A request's pending entry is removed when its response
    arrives, when it times out or when the caller cancels the future.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        worker_id: str,
        default_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        poll_interval_seconds: float = 0.2,
        default_sender: str = DEFAULT_SENDER,
    ) -> None:
        self.queue = queue
        self.default_timeout_seconds = default_timeout_seconds
        self.default_sender = default_sender
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._pending: dict[str, _PendingRequest] = {}
        self._worker = QueueWorker(
            queue=queue,
            queue_name=AGENT_MESSAGES_QUEUE,
            handlers={MESSAGE_JOB: self._handle_job},
            worker_id=f"{worker_id}:bus",
            concurrency=1,
            poll_interval_seconds=poll_interval_seconds,
        )
        self._thread: threading.Thread | None = None

    # Sending

    def request(
        self,
        to: str,
        action: str,
        payload: Any = None,
        *,
        timeout_seconds: float | None = None,
        sender: str | None = None,
    ) -> Future[AgentMessage]:
        """Send a request; the future resolves with the correlated response.

        The future fails with ``RequestTimeoutError`` when no response arrives
        in time, and with ``RequestFailedError`` on an unsuccessful response.
        """

        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
        if timeout <= 0:
            raise ValidationFailedError("Request timeout must be > 0")

        request_id = str(uuid4())
        message = AgentMessage(
            id=request_id,
            type=MessageType.REQUEST,
            sender=sender or self.default_sender,
            to=to,
            timestamp=_now_ms(),
            correlation_id=request_id,
            action=action,
            payload=payload,
            timeout_ms=int(timeout * 1000),
        )

        future: Future[AgentMessage] = Future()
        timer = threading.Timer(timeout, self._expire, args=(request_id,))
        timer.daemon = True
        with self._lock:
            self._pending[request_id] = _PendingRequest(
                future=future,
                timer=timer,
                timeout_seconds=timeout,
            )
        future.add_done_callback(lambda done: self._forget_cancelled(request_id, done))
        timer.start()

        try:
            self._enqueue(message)
        except Exception:
            self._discard(request_id)
            raise
        return future

    def respond(
        self,
        request: AgentMessage,
        *,
        success: bool,
        result: Any = None,
        error: dict[str, str] | None = None,
    ) -> AgentMessage:
        message = AgentMessage(
            id=str(uuid4()),
            type=MessageType.RESPONSE,
            sender=request.to,
            to=request.sender,
            timestamp=_now_ms(),
            correlation_id=request.correlation_id or request.id,
            success=success,
            result=result,
            error=error,
        )
        self._enqueue(message)
        return message

    def notify(self, to: str, event: str, data: Any = None, *, sender: str | None = None) -> AgentMessage:
        message = AgentMessage(
            id=str(uuid4()),
            type=MessageType.NOTIFICATION,
            sender=sender or self.default_sender,
            to=to,
            timestamp=_now_ms(),
            event=event,
            data=data,
        )
        self._enqueue(message)
        return message

    def emit_event(self, event: str, data: Any = None, *, sender: str | None = None) -> AgentMessage:
        message = AgentMessage(
            id=str(uuid4()),
            type=MessageType.EVENT,
            sender=sender or self.default_sender,
            to=BROADCAST,
            timestamp=_now_ms(),
            event=event,
            data=data,
        )
        self._enqueue(message)
        return message

    # Receiving

    def subscribe(
        self,
        target: str,
        handler: MessageHandler,
        *,
        message_filter: MessageFilter | None = None,
        priority: int = 0,
    ) -> Callable[[], None]:
        """Register ``handler`` for an agent name or ``broadcast``; returns an unsubscribe callable."""

        key = _target_key(target)
        subscription = Subscription(handler=handler, message_filter=message_filter, priority=priority)
        with self._lock:
            self._subscriptions.setdefault(key, []).append(subscription)
        logger.info("Subscribed to %s messages: priority=%d", key, priority)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._subscriptions.get(key, [])
                if subscription in handlers:
                    handlers.remove(subscription)

        return _unsubscribe

    def deliver(self, message: AgentMessage) -> None:
        """Fan a message out to subscribers, then settle a matching pending request."""

        with self._lock:
            subscriptions = sorted(
                self._subscriptions.get(_target_key(message.to), []),
                key=lambda item: item.priority,
                reverse=True,
            )
        for subscription in subscriptions:
            try:
                if not subscription.accepts(message):
                    continue
                subscription.handler(message)
            except Exception:
                logger.exception("Message handler failed: message_id=%s to=%s", message.id, message.to)

        if message.type == MessageType.RESPONSE and message.correlation_id:
            self._settle_response(message)

    # Worker control

    def drain(self, *, max_messages: int | None = None) -> WorkerRunSummary:
        """Deliver queued messages on the calling thread until the queue is idle."""

        self._worker.resume()
        return self._worker.run_loop(max_jobs=max_messages, max_idle_polls=1)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._worker.resume()
        self._thread = threading.Thread(
            target=self._worker.run_loop,
            kwargs={"max_idle_polls": None},
            name="agent-message-bus",
            daemon=True,
        )
        self._thread.start()
        logger.info("Agent message bus worker started")

    def stop(self, timeout_seconds: float = 5.0) -> None:
        self._worker.request_stop()
        if self._thread is not None:
            self._thread.join(timeout_seconds)
            self._thread = None
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            entry.timer.cancel()
            entry.future.cancel()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def metrics(self) -> BusMetrics:
        stats = self.queue.stats(AGENT_MESSAGES_QUEUE)
        return BusMetrics(
            waiting=stats.count(JobStatus.QUEUED),
            active=stats.count(JobStatus.RUNNING),
            completed=stats.count(JobStatus.SUCCEEDED),
            failed=stats.count(JobStatus.FAILED),
            pending_requests=self.pending_count,
        )

    def _enqueue(self, message: AgentMessage) -> None:
        self.queue.enqueue(AGENT_MESSAGES_QUEUE, MESSAGE_JOB, message.to_dict())
        logger.debug(
            "Queued %s message %s: %s -> %s",
            message.type.value,
            message.id,
            message.sender,
            message.to,
        )

    def _handle_job(self, job: JobView) -> None:
        self.deliver(AgentMessage.from_dict(job.payload))

    def _settle_response(self, message: AgentMessage) -> None:
        correlation_id = message.correlation_id or ""
        with self._lock:
            entry = self._pending.pop(correlation_id, None)
        if entry is None:
            logger.debug("Dropping response with unknown correlation id %s", correlation_id)
            return
        entry.timer.cancel()
        if message.success:
            _set_result(entry.future, message)
        else:
            error_message = (message.error or {}).get("message") or "Request failed"
            _set_exception(
                entry.future,
                RequestFailedError(
                    error_message,
                    details={"correlation_id": correlation_id, "error": message.error or {}},
                ),
            )

    def _expire(self, request_id: str) -> None:
        with self._lock:
            entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        logger.warning("Request %s timed out after %.1fs", request_id, entry.timeout_seconds)
        _set_exception(entry.future, RequestTimeoutError(request_id, entry.timeout_seconds))

    def _discard(self, request_id: str) -> None:
        with self._lock:
            entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()

    def _forget_cancelled(self, request_id: str, future: Future[AgentMessage]) -> None:
        if future.cancelled():
            self._discard(request_id)


def _target_key(target: str) -> str:
    return BROADCAST if target == BROADCAST else f"agent:{target}"


def _now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def _set_result(future: Future[AgentMessage], message: AgentMessage) -> None:
    try:
        future.set_result(message)
    except InvalidStateError:
        logger.debug("Response arrived for an already settled request")


def _set_exception(future: Future[AgentMessage], error: Exception) -> None:
    try:
        future.set_exception(error)
    except InvalidStateError:
        logger.debug("Request already settled: %s", error)
