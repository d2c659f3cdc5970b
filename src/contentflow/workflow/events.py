"""Workflow lifecycle events and their fan-out to notification gateways.

Delivery is fire-and-forget: a slow or failing gateway never blocks or fails
the engine. Gateways may be sync or async callables/objects; async deliveries
run as background tasks that ``drain()`` can await (tests, shutdown).

Streaming consumers subscribe with ``subscribe()`` and receive events on an
``asyncio.Queue``; the API event stream is built on this.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger("contentflow.workflow.events")

_QUEUE_MAXSIZE = 1000


class EventType(str, enum.Enum):
    """Lifecycle events published by the orchestrator."""

    WORKFLOW_REGISTERED = "workflow_registered"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"

    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_RETRYING = "stage_retrying"

    HUMAN_REVIEW_REQUIRED = "human_review_required"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_ESCALATED = "approval_escalated"


class WorkflowEvent(BaseModel):
    """A single lifecycle event."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    workflow_id: str | None = None
    execution_id: str | None = None
    stage_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_sse_data(self) -> str:
        """Format for Server-Sent Events."""
        payload: dict[str, Any] = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        for key in ("workflow_id", "execution_id", "stage_id"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        if self.data:
            payload["data"] = self.data
        return json.dumps(payload, default=str)


@runtime_checkable
class NotificationGateway(Protocol):
    """Receives lifecycle events for downstream delivery (email, SMS, dashboard)."""

    def notify(self, event: WorkflowEvent) -> Any:
        """Deliver an event. May be sync or async."""
        ...


class EventPublisher:
    """Fans events out to registered gateways and queue subscribers."""

    def __init__(self) -> None:
        self._gateways: list[Any] = []
        self._subscribers: list[asyncio.Queue[WorkflowEvent]] = []
        self._pending: set[asyncio.Task] = set()

    def add_gateway(self, gateway: Any) -> None:
        """Register a gateway: an object with ``notify(event)`` or a plain callable."""
        self._gateways.append(gateway)

    def subscribe(self) -> asyncio.Queue[WorkflowEvent]:
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue(maxsize=_QUEUE_MAXSIZE)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[WorkflowEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event_type: EventType, **fields: Any) -> WorkflowEvent:
        """Build and publish an event. Never raises on delivery failures."""
        event = WorkflowEvent(event_type=event_type, **fields)
        logger.debug(
            "Event %s (execution=%s, stage=%s)",
            event_type.value,
            event.execution_id,
            event.stage_id,
        )

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event subscriber queue full, dropping %s", event_type.value)

        for gateway in self._gateways:
            self._deliver(gateway, event)
        return event

    async def drain(self) -> None:
        """Wait until every in-flight async delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _deliver(self, gateway: Any, event: WorkflowEvent) -> None:
        notify = getattr(gateway, "notify", gateway)
        try:
            result = notify(event)
        except Exception:
            logger.exception("Notification gateway %r failed on %s", gateway, event.event_type.value)
            return

        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Published outside an event loop (e.g. registration at import time)
            logger.debug("No running loop; dropping async delivery of %s", event.event_type.value)
            if inspect.iscoroutine(result):
                result.close()
            return

        task = loop.create_task(self._await_delivery(gateway, result, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _await_delivery(gateway: Any, awaitable: Any, event: WorkflowEvent) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Notification gateway %r failed on %s", gateway, event.event_type.value)
