"""In-process publish/subscribe fan-out of persisted messages.

Every message written through :class:`PublishingMessageStore` is published to
subscribers of its conversation, whether a customer, a shopkeeper or the
auto-responder wrote it. Publishing may happen on a worker thread (store work
runs off the event loop); delivery is handed to the loop the subscriber was
created on.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional, Set

from . import schemas
from .repository import MessageStore

logger = logging.getLogger(__name__)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """Queue of messages for one conversation listener."""

    def __init__(self, bus: "MessageBus", conversation_id: int, maxsize: int = 100) -> None:
        self.conversation_id = conversation_id
        self._bus = bus
        self._queue: asyncio.Queue[Optional[schemas.Message]] = asyncio.Queue(maxsize=maxsize)
        self._loop = _running_loop()
        self.closed = False

    def deliver(self, message: schemas.Message) -> None:
        if self._loop is None or _running_loop() is self._loop:
            self._put(message)
            return
        try:
            self._loop.call_soon_threadsafe(self._put, message)
        except RuntimeError:
            logger.debug(
                "Event loop closed; message %s not delivered on conversation %s",
                message.id,
                self.conversation_id,
            )

    def _put(self, message: schemas.Message) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Dropping message %s for slow subscriber on conversation %s",
                message.id,
                self.conversation_id,
            )

    async def get(self) -> Optional[schemas.Message]:
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def __aiter__(self) -> AsyncIterator[schemas.Message]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message


class MessageBus:
    def __init__(self) -> None:
        self._subscribers: Dict[int, Set[Subscription]] = defaultdict(set)
        self._guard = threading.Lock()

    def subscribe(self, conversation_id: int) -> Subscription:
        subscription = Subscription(self, conversation_id)
        with self._guard:
            self._subscribers[conversation_id].add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._guard:
            listeners = self._subscribers.get(subscription.conversation_id)
            if not listeners:
                return
            listeners.discard(subscription)
            if not listeners:
                del self._subscribers[subscription.conversation_id]

    def publish(self, message: schemas.Message) -> int:
        """Deliver ``message`` to every listener; returns the listener count."""
        with self._guard:
            listeners = list(self._subscribers.get(message.conversation_id, ()))
        for subscription in listeners:
            subscription.deliver(message)
        return len(listeners)

    def subscriber_count(self, conversation_id: int) -> int:
        with self._guard:
            return len(self._subscribers.get(conversation_id, ()))


message_bus = MessageBus()


class PublishingMessageStore(MessageStore):
    """Wrap a :class:`MessageStore` so inserts are published on the bus.

    With ``defer=True`` messages are held until :meth:`flush`, letting the
    caller publish only after its transaction committed.
    """

    def __init__(self, inner: MessageStore, bus: MessageBus, *, defer: bool = False) -> None:
        self._inner = inner
        self._bus = bus
        self._defer = defer
        self._pending: List[schemas.Message] = []

    def insert(self, conversation_id, sender_id, content, message_type) -> schemas.Message:
        message = self._inner.insert(conversation_id, sender_id, content, message_type)
        if self._defer:
            self._pending.append(message)
        else:
            self._bus.publish(message)
        return message

    def get(self, message_id) -> Optional[schemas.Message]:
        return self._inner.get(message_id)

    def list_since(self, conversation_id, cursor=None) -> List[schemas.Message]:
        return self._inner.list_since(conversation_id, cursor)

    def update_flags(self, message_id, *, is_read=None, is_answered=None):
        return self._inner.update_flags(message_id, is_read=is_read, is_answered=is_answered)

    def flush(self) -> int:
        pending, self._pending = self._pending, []
        for message in pending:
            self._bus.publish(message)
        return len(pending)

    def discard(self) -> None:
        self._pending.clear()
