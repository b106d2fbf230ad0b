"""Multi-subscriber broadcast channel for streaming runtime events."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Any, AsyncIterator, Generic, TypeVar

__all__ = ["BroadcastChannel", "Subscription"]

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")

_END = object()


@dataclass(slots=True, frozen=True)
class _Failure:
    error: BaseException


@dataclass(slots=True)
class _Slot:
    """Delivery state for one subscriber: its queue and the loop that drains it."""

    queue: asyncio.Queue[Any]
    loop: asyncio.AbstractEventLoop

    def deliver(self, item: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self.queue.put_nowait(item)
            return
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, item)
        except RuntimeError:
            LOGGER.debug("Dropping broadcast item for a subscriber whose loop is closed")


class BroadcastChannel(Generic[T]):
    """One event source, many independent lazy subscribers.

    Every subscriber owns an unbounded queue, so ``send`` and ``finish`` never
    wait on consumers and may be called from any thread. The subscriber table
    is only touched under ``self._lock``; an element reaches exactly the
    subscribers registered when it was sent.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._slots: dict[int, _Slot] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._slots)

    def subscribe(self, *, loop: asyncio.AbstractEventLoop | None = None) -> "Subscription[T]":
        """Register a new subscriber bound to ``loop`` (default: the running loop)."""

        slot = _Slot(queue=asyncio.Queue(), loop=loop or asyncio.get_running_loop())
        with self._lock:
            subscription_id = next(self._ids)
            self._slots[subscription_id] = slot
        return Subscription(self, subscription_id, slot)

    def send(self, element: T) -> None:
        with self._lock:
            for slot in list(self._slots.values()):
                slot.deliver(element)

    def finish(self, error: BaseException | None = None) -> None:
        """End every current subscription, optionally with ``error``.

        The channel stays usable; later subscribers start a new sequence.
        """

        marker: Any = _END if error is None else _Failure(error)
        with self._lock:
            slots = list(self._slots.values())
            self._slots.clear()
            for slot in slots:
                slot.deliver(marker)

    def _remove(self, subscription_id: int) -> bool:
        with self._lock:
            return self._slots.pop(subscription_id, None) is not None

    def __del__(self) -> None:
        slots = getattr(self, "_slots", None)
        if not slots:
            return
        for slot in list(slots.values()):
            slot.deliver(_END)
        slots.clear()


class Subscription(Generic[T]):
    """Async iterator over the elements sent to a :class:`BroadcastChannel`.

    Holds only a weak reference to its channel and finds its own table entry
    by id when cancelling.
    """

    def __init__(self, channel: BroadcastChannel[T], subscription_id: int, slot: _Slot) -> None:
        self.id = subscription_id
        self._channel_ref = weakref.ref(channel)
        self._slot = slot
        self._cancelled = False
        self._finished = False

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._finished)

    def cancel(self) -> None:
        """Stop receiving elements; safe to call repeatedly and from any thread."""

        if self._cancelled:
            return
        self._cancelled = True
        channel = self._channel_ref()
        if channel is not None:
            channel._remove(self.id)
        # Wake a consumer that is currently waiting on the queue.
        self._slot.deliver(_END)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if not self.active:
            raise StopAsyncIteration
        try:
            item = await self._slot.queue.get()
        except asyncio.CancelledError:
            self.cancel()
            raise
        if self._cancelled or item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.cancel()

    def __del__(self) -> None:
        channel_ref = getattr(self, "_channel_ref", None)
        channel = channel_ref() if channel_ref is not None else None
        if channel is not None:
            channel._remove(self.id)
