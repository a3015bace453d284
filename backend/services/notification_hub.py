# services/notification_hub.py
import asyncio
import logging
from typing import Dict, Optional
from uuid import uuid4

from models.events import Event

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One listener on one session's event stream.

    Events are buffered in a bounded queue. When the queue is full the oldest
    buffered event is dropped so the publisher never waits on this listener.
    """

    def __init__(self, hub: "NotificationHub", token: str, queue_size: int):
        self.id = uuid4().hex
        self.token = token
        self.dropped = 0
        self.closed = False
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def _offer(self, item) -> bool:
        dropped = False
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            dropped = True
        self._queue.put_nowait(item)
        return dropped

    def deliver(self, event: Event):
        if self.closed:
            return
        if self._offer(event):
            logger.debug(f"Subscriber {self.id} on {self.token} is lagging, dropped oldest event")

    def _end(self):
        if not self.closed:
            self.closed = True
            self._offer(_CLOSED)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None once the subscription is closed"""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Leave the marker for any other reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self):
        self._hub.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class NotificationHub:
    """Fan-out of transfer events to every subscriber of a session token"""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Dict[str, Subscription]] = {}

    def subscribe(self, token: str) -> Subscription:
        subscription = Subscription(self, token, self.queue_size)
        self._subscribers.setdefault(token, {})[subscription.id] = subscription
        logger.info(f"Subscriber {subscription.id} joined session {token}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        subscribers = self._subscribers.get(subscription.token)
        removed = subscribers is not None and subscribers.pop(subscription.id, None) is not None
        if subscribers is not None and not subscribers:
            del self._subscribers[subscription.token]
        subscription._end()
        if removed:
            logger.info(f"Subscriber {subscription.id} left session {subscription.token}")
        return removed

    def publish(self, token: str, event: Event) -> int:
        """Queue ``event`` for every subscriber of ``token``; never blocks"""
        subscribers = self._subscribers.get(token)
        if not subscribers:
            return 0
        for subscription in list(subscribers.values()):
            subscription.deliver(event)
        logger.debug(f"Published {event.type} to {len(subscribers)} subscribers of {token}")
        return len(subscribers)

    def close_session(self, token: str) -> int:
        subscribers = self._subscribers.pop(token, {})
        for subscription in subscribers.values():
            subscription._end()
        return len(subscribers)

    def subscriber_count(self, token: Optional[str] = None) -> int:
        if token is not None:
            return len(self._subscribers.get(token, {}))
        return sum(len(subs) for subs in self._subscribers.values())
