"""
Change notifications for the analytics state.

The dashboard may poll ``/api/crop-analysis`` or subscribe to changes; the
core does not impose a refresh cadence. ``publish`` is safe to call from
worker threads: events are handed to each subscriber's event loop.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


class Subscription:
    """A subscriber's bounded event queue, bound to one event loop."""

    def __init__(self, notifier: "ChangeNotifier", loop: asyncio.AbstractEventLoop, max_queue: int):
        self._notifier = notifier
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)

    def _offer(self, event: Event):
        if self.queue.full():
            # slow consumer: drop the oldest event
            self.queue.get_nowait()
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Event:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self):
        self._notifier.unsubscribe(self)


class ChangeNotifier:
    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Callable[[Event], None]] = []

    def subscribe(self) -> Subscription:
        """Create a subscription; must be called from a running event loop."""
        subscription = Subscription(self, asyncio.get_running_loop(), self.max_queue)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_listener(self, listener: Callable[[Event], None]) -> Callable[[], None]:
        """Register a synchronous callback; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions) + len(self._listeners)

    def publish(self, event: Event):
        with self._lock:
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)

        for subscription in subscriptions:
            if subscription.loop.is_closed():
                self.unsubscribe(subscription)
                continue
            subscription.loop.call_soon_threadsafe(subscription._offer, event)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Change listener failed for {event.get('type')}: {e}")
