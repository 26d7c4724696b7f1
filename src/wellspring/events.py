"""Status change fan-out for knowledge items."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Union

from .models import KnowledgeStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StatusEvent:
    item_id: str
    owner_id: str
    old_status: KnowledgeStatus | None
    new_status: KnowledgeStatus
    detail: str | None
    last_updated: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "detail": self.detail,
            "last_updated": self.last_updated,
        }


Observer = Callable[[StatusEvent], Union[None, Awaitable[None]]]


class StatusNotifier:
    """Deliver every ``StatusEvent`` to all subscribed observers.

    Observers may be plain callables or coroutine functions. Coroutine
    observers are scheduled on the running loop, so ``publish`` never
    blocks the caller. An observer that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._observers: list[Observer] = []
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            observers = list(self._observers)
        logger.debug(
            "status.publish item=%s owner=%s %s->%s",
            event.item_id,
            event.owner_id,
            event.old_status.value if event.old_status else None,
            event.new_status.value,
        )
        for observer in observers:
            try:
                result = observer(event)
            except Exception:
                logger.exception("status.observer.failed observer=%r item=%s", observer, event.item_id)
                continue
            if inspect.isawaitable(result):
                self._schedule(observer, result, event)

    def _schedule(self, observer: Observer, awaitable: Awaitable[None], event: StatusEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("status.observer.skipped observer=%r reason=no-running-loop", observer)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _run() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("status.observer.failed observer=%r item=%s", observer, event.item_id)

        task = loop.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled coroutine observers to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending))


class ActivityFeed:
    """Bounded per-owner history of recent status events."""

    def __init__(self, *, max_entries: int = 50) -> None:
        self._max_entries = max(1, max_entries)
        self._entries: dict[str, Deque[StatusEvent]] = {}
        self._lock = threading.Lock()

    def __call__(self, event: StatusEvent) -> None:
        key = (event.item_id, event.new_status, event.last_updated)
        with self._lock:
            entries = self._entries.setdefault(event.owner_id, deque(maxlen=self._max_entries))
            if any((e.item_id, e.new_status, e.last_updated) == key for e in entries):
                return
            entries.append(event)

    def recent(self, owner_id: str, *, limit: int | None = None) -> list[StatusEvent]:
        """Return events newest first."""

        with self._lock:
            events = list(self._entries.get(owner_id, ()))
        events.reverse()
        if limit is not None:
            events = events[: max(limit, 0)]
        return events

    def clear(self, owner_id: str) -> None:
        with self._lock:
            self._entries.pop(owner_id, None)


class EventStream:
    """Queue-backed broadcaster feeding live subscribers (server-sent events)."""

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: list[tuple[str | None, asyncio.Queue[StatusEvent]]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __call__(self, event: StatusEvent) -> None:
        for owner_id, queue in list(self._subscribers):
            if owner_id is not None and owner_id != event.owner_id:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("status.stream.drop owner=%s item=%s", event.owner_id, event.item_id)

    def open(self, owner_id: str | None = None) -> asyncio.Queue[StatusEvent]:
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.append((owner_id, queue))
        return queue

    def close(self, queue: asyncio.Queue[StatusEvent]) -> None:
        self._subscribers = [entry for entry in self._subscribers if entry[1] is not queue]

    async def listen(self, owner_id: str | None = None) -> AsyncIterator[StatusEvent]:
        queue = self.open(owner_id)
        try:
            while True:
                yield await queue.get()
        finally:
            self.close(queue)


__all__ = ["StatusEvent", "StatusNotifier", "ActivityFeed", "EventStream", "Observer"]
