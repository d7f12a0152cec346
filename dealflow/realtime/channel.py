from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from dealflow.core.events import InProcessEventBus, InternalEvent, event_bus
from dealflow.crm.schemas import ChangeNotification


logger = logging.getLogger("dealflow.realtime")


class Subscription:
    """Async iterator over the notifications of one dataset, in arrival order."""

    def __init__(self, dataset: str, on_close: Callable[[Subscription], None] | None = None) -> None:
        self.dataset = dataset
        self._queue: asyncio.Queue[ChangeNotification | None] = asyncio.Queue()
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, notification: ChangeNotification) -> None:
        if self._closed:
            return
        self._queue.put_nowait(notification)

    def task_done(self) -> None:
        self._queue.task_done()

    async def drain(self) -> None:
        await self._queue.join()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeNotification:
        notification = await self._queue.get()
        if notification is None:
            self._queue.task_done()
            raise StopAsyncIteration
        return notification


class PushChannel(Protocol):
    def subscribe(self, dataset: str) -> Subscription: ...

    def publish(self, notification: ChangeNotification) -> None: ...


def channel_event_name(dataset: str) -> str:
    return f"realtime.{dataset}"


class InProcessPushChannel:
    """Push channel delivering notifications through the in-process event bus."""

    def __init__(self, bus: InProcessEventBus | None = None) -> None:
        self._bus = bus or event_bus
        self._handlers: dict[int, Callable[[InternalEvent], None]] = {}

    def subscribe(self, dataset: str) -> Subscription:
        subscription = Subscription(dataset, on_close=self._unsubscribe)

        def handler(event: InternalEvent) -> None:
            subscription.deliver(event.payload["notification"])

        self._handlers[id(subscription)] = handler
        self._bus.subscribe(channel_event_name(dataset), handler)
        logger.debug("push.subscribed", extra={"dataset": dataset})
        return subscription

    def publish(self, notification: ChangeNotification) -> None:
        self._bus.publish(channel_event_name(notification.dataset), {"notification": notification})

    def _unsubscribe(self, subscription: Subscription) -> None:
        handler = self._handlers.pop(id(subscription), None)
        if handler is not None:
            self._bus.unsubscribe(channel_event_name(subscription.dataset), handler)
            logger.debug("push.unsubscribed", extra={"dataset": subscription.dataset})
