from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Optional, Protocol

from toolgate.logging import get_logger
from toolgate.storage.models import LifecycleEvent

logger = get_logger(__name__)

EXECUTION_REQUESTED = "execution.requested"
EXECUTION_APPROVED = "execution.approved"
EXECUTION_REJECTED = "execution.rejected"
EXECUTION_STARTED = "execution.started"
EXECUTION_PROGRESS = "execution.progress"
EXECUTION_COMPLETED = "execution.completed"
EXECUTION_FAILED = "execution.failed"
EXECUTION_CANCELLED = "execution.cancelled"
APPROVAL_REQUIRED = "approval.required"
APPROVAL_ESCALATED = "approval.escalated"
APPROVAL_TIMEOUT = "approval.timeout"

EVENT_TYPES = frozenset(
    {
        EXECUTION_REQUESTED,
        EXECUTION_APPROVED,
        EXECUTION_REJECTED,
        EXECUTION_STARTED,
        EXECUTION_PROGRESS,
        EXECUTION_COMPLETED,
        EXECUTION_FAILED,
        EXECUTION_CANCELLED,
        APPROVAL_REQUIRED,
        APPROVAL_ESCALATED,
        APPROVAL_TIMEOUT,
    }
)

DEFAULT_QUEUE_SIZE = 256


class EventNotifier(Protocol):
    def emit(
        self, event_type: str, payload: Dict[str, Any], *, user_id: Optional[str] = None
    ) -> None: ...


class Subscription:
    """One subscriber's bounded queue of lifecycle events.

    ``user_id`` limits delivery to events about that user; None receives
    everything (admin consoles, tests).
    """

    def __init__(self, bus: "EventBus", user_id: Optional[str], maxsize: int) -> None:
        self._bus = bus
        self.user_id = user_id
        self.queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def accepts(self, event: LifecycleEvent) -> bool:
        return self.user_id is None or event.user_id == self.user_id

    def offer(self, event: LifecycleEvent) -> None:
        if self.queue.full():
            # Slow consumer: drop the oldest event rather than block the emitter
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning("event_subscriber_overflow", user_id=self.user_id, dropped=self.dropped)
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> LifecycleEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def drain(self) -> List[LifecycleEvent]:
        events: List[LifecycleEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> LifecycleEvent:
        return await self.queue.get()


class EventBus:
    """Typed publish/subscribe channel between the registries and transports.

    ``emit`` only enqueues onto subscriber queues, so publishing never waits
    on delivery.
    """

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, user_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, user_id, self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def emit(
        self, event_type: str, payload: Dict[str, Any], *, user_id: Optional[str] = None
    ) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type {event_type!r}")
        event = LifecycleEvent(type=event_type, payload=payload, user_id=user_id)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            if subscription.accepts(event):
                subscription.offer(event)
        logger.debug("event_emitted", event_type=event_type, subscribers=len(subscribers))
