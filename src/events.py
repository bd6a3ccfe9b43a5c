"""
Event Streaming - In-memory pub/sub for object events.

The object store publishes an event for every write. The controller turns
them into reconcile requests; the HTTP API streams them to watchers as
Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

EventFilter = Callable[["ObjectEvent"], bool]


def _json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def utc_timestamp() -> str:
    """Current time as an RFC 3339 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class EventType(Enum):
    """Types of object events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"


@dataclass
class ObjectEvent:
    """
    A change to a stored object.

    ``obj`` is the object after the change, or the last stored version for
    DELETED. ``old_obj`` is the previous version for MODIFIED.
    """

    event_type: EventType
    obj: Dict[str, Any]
    timestamp: str
    old_obj: Optional[Dict[str, Any]] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.obj.get("metadata") or {}

    @property
    def api_version(self) -> str:
        return self.obj.get("apiVersion", "")

    @property
    def kind(self) -> str:
        return self.obj.get("kind", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    def to_sse(self) -> str:
        """Format the event as one SSE message (event and data lines)."""
        data = {
            "event_type": self.event_type.value,
            "api_version": self.api_version,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "object": self.obj,
            "timestamp": self.timestamp,
        }
        payload = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {payload}\n\n"

    @classmethod
    def from_object(
        cls,
        event_type: EventType,
        obj: Dict[str, Any],
        old_obj: Optional[Dict[str, Any]] = None,
    ) -> "ObjectEvent":
        return cls(
            event_type=event_type,
            obj=obj,
            old_obj=old_obj,
            timestamp=utc_timestamp(),
        )


class EventSubscription:
    """
    Async iterator over the events of one subscriber.

    Events rejected by the filter are skipped; a ``None`` sentinel in the
    queue ends iteration.
    """

    def __init__(self, queue: asyncio.Queue, filter_fn: Optional[EventFilter] = None):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ObjectEvent]:
        return self

    async def __anext__(self) -> ObjectEvent:
        while True:
            event = await self._queue.get()
            if event is None:
                raise StopAsyncIteration
            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus with one bounded queue per subscriber.

    Publishing never blocks the store: when a subscriber's queue is full the
    event is dropped for that subscriber and the controller's periodic resync
    picks up what was missed.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ObjectEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for {event.kind} "
                    f"{event.name} (subscriber {subscriber_id}): queue full"
                )

    async def subscribe(
        self, filter_fn: Optional[EventFilter] = None
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events, optionally only those accepted by ``filter_fn``.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and end its subscription.

        When the queue is full the oldest pending event is discarded to make
        room for the end-of-stream sentinel.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)
        if queue is None:
            return

        if queue.full():
            queue.get_nowait()
        queue.put_nowait(None)
        logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
