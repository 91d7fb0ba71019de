"""
Publish/subscribe channel for catalog change events.

Each subscription owns a bounded asyncio queue bound to the event loop it was
created on. ``publish`` never waits: it hands the event to every queue and
moves on, scheduling the hand-off on the subscriber's loop when called from
another thread (sync FastAPI handlers run in a worker pool).
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

BOOK_ADDED = "bookAdded"
BOOK_UPDATED = "bookUpdated"
BOOK_DELETED = "bookDeleted"
BOOKS_IMPORTED = "booksImported"

EVENT_KINDS = (BOOK_ADDED, BOOK_UPDATED, BOOK_DELETED, BOOKS_IMPORTED)


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    data: Any = None

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.kind, "data": self.data}


@dataclass(eq=False)
class Subscription:
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    dropped: int = field(default=0)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def _offer(self, event: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Subscriber queue full, dropping %s event", event.kind)


class ChangeNotifier:
    """Fan-out of change events to currently registered subscribers."""

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        """Register a listener on the running event loop."""
        subscription = Subscription(
            queue=asyncio.Queue(maxsize=self.queue_size),
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscriber registered (%d total)", self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        logger.debug("Subscriber removed (%d total)", self.subscriber_count)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """Offer the event to every subscriber. Returns how many were targeted."""
        with self._lock:
            targets = list(self._subscriptions)

        try:
            current: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        for subscription in targets:
            if subscription.loop is current:
                subscription._offer(event)
                continue
            try:
                subscription.loop.call_soon_threadsafe(subscription._offer, event)
            except RuntimeError:
                # Loop already closed; the listener is gone
                self.unsubscribe(subscription)

        logger.debug("Published %s to %d subscribers", event.kind, len(targets))
        return len(targets)
