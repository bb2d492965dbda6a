"""
Watch Events - In-memory pub/sub for object change notifications.

Change notifications carry object identity only. Consumers never trust a
payload; they re-fetch the object. Notifications may be duplicated or
coalesced, so subscribers must be idempotent.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from objects import ObjectKey

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


# Database trigger operation -> watch event type
_OPERATION_TO_EVENT = {
    "INSERT": EventType.ADDED,
    "UPDATE": EventType.MODIFIED,
    "DELETE": EventType.DELETED,
}


@dataclass
class ObjectEvent:
    """Event emitted when a stored object changes."""

    event_type: EventType
    key: ObjectKey
    resource_version: str
    timestamp: str

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "event_type": self.event_type.value,
            "kind": self.key.kind,
            "namespace": self.key.namespace,
            "name": self.key.name,
            "resource_version": self.resource_version,
            "timestamp": self.timestamp,
        }
        return f"event: {self.event_type.value}\ndata: {json.dumps(data)}\n\n"

    @classmethod
    def from_notification(cls, payload: str) -> "ObjectEvent":
        """
        Create an event from an ``object_events`` notification payload.

        Args:
            payload: JSON payload emitted by the database trigger.

        Returns:
            A new ObjectEvent instance.

        Raises:
            ValueError: If the payload is malformed.
        """
        try:
            data: Dict[str, Any] = json.loads(payload)
            event_type = _OPERATION_TO_EVENT[data["operation"]]
            key = ObjectKey(data["kind"], data["namespace"], data["name"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed object event payload: {payload!r}") from e

        return cls(
            event_type=event_type,
            key=key,
            resource_version=str(data.get("resource_version", "")),
            timestamp=_timestamp(),
        )


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ObjectEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ObjectEvent"]:
        return self

    async def __anext__(self) -> "ObjectEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for watch events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. A full queue drops the event for that subscriber; the
    controller's periodic resync re-delivers every identity eventually.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ObjectEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event {event.event_type.value} {event.key} "
                    f"for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ObjectEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.

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
        Remove a subscriber and terminate its subscription iterator.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
