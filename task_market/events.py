from __future__ import annotations

import queue
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from task_market.logs import get_logger
from task_market.schemas import EventType, LiveEvent

log = get_logger("events")


class Subscription:
    """One live observer. Closing it removes it from the bus."""

    def __init__(self, bus: EventBus, client_id: str, *, max_pending: int) -> None:
        self._bus = bus
        self.client_id = client_id
        self._queue: queue.Queue[LiveEvent] = queue.Queue(maxsize=max_pending)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: LiveEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: float | None = None) -> LiveEvent | None:
        if self.closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[LiveEvent]:
        out: list[LiveEvent] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._bus._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """Fan-out of live events to subscribers.

    ``publish`` assigns a sequence number and delivers under one lock, so every
    subscriber sees events in the same order they were published.
    """

    def __init__(self, *, max_pending: int = 1000) -> None:
        self._lock = threading.Lock()
        self._subs: dict[str, Subscription] = {}
        self._seq = 0
        self._max_pending = int(max_pending)

    def subscribe(self, client_id: str | None = None) -> Subscription:
        cid = client_id or uuid.uuid4().hex
        with self._lock:
            previous = self._subs.get(cid)
            sub = Subscription(self, cid, max_pending=self._max_pending)
            self._subs[cid] = sub
        if previous is not None:
            # Same client reconnected; the old stream is dead.
            previous._closed.set()
        return sub

    def unsubscribe(self, client_id: str) -> None:
        with self._lock:
            sub = self._subs.pop(client_id, None)
        if sub is not None:
            sub._closed.set()

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if self._subs.get(sub.client_id) is sub:
                del self._subs[sub.client_id]

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(
        self,
        event_type: EventType,
        *,
        task_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> LiveEvent:
        with self._lock:
            self._seq += 1
            event = LiveEvent(
                seq=self._seq,
                type=event_type,
                task_id=task_id,
                ts=datetime.now(tz=UTC),
                data=data or {},
            )
            dropped: list[str] = []
            for cid, sub in self._subs.items():
                if not sub._offer(event):
                    dropped.append(cid)
            for cid in dropped:
                # Closed, or too far behind to keep an ordered stream.
                self._subs[cid]._closed.set()
                del self._subs[cid]
        for cid in dropped:
            log.warning("dropped subscriber client_id=%s", cid)
        return event
