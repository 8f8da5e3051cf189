from __future__ import annotations

import random
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from restarter.src.metrics import METRICS


class WorkQueue:
    """Deduplicating work queue with delayed and rate-limited requeue.

    Guarantees:
        - An item is queued at most once, however many times it is added.
        - An item is handed to at most one worker at a time. Adding an item
          while it is being processed marks it dirty; it is queued again when
          :meth:`done` is called, so the newer event is never lost.
        - :meth:`add_after` keeps the earliest due time per item.
        - :meth:`add_rate_limited` applies per-item exponential backoff with
          jitter, capped at ``max_delay``; :meth:`forget` resets it.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: dict[Hashable, float] = {}
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _publish_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._publish_depth()
        self._cond.notify()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self.clock() + delay
            existing = self._waiting.get(item)
            if existing is None or due_at < existing:
                self._waiting[item] = due_at
            self._cond.notify()

    def add_rate_limited(self, item: Hashable) -> float:
        """Requeue *item* after its next backoff delay and return that delay."""
        with self._cond:
            attempt = self._failures.get(item, 0) + 1
            self._failures[item] = attempt
        delay = min(self.max_delay, self.base_delay * float(2 ** min(attempt - 1, 30)))
        delay = min(self.max_delay, delay * (0.5 + random.random()))  # noqa: S311
        self.add_after(item, delay)
        return delay

    def failures(self, item: Hashable) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed items into the queue; return seconds until the next one."""
        if not self._waiting:
            return None
        now = self.clock()
        for item, due_at in list(self._waiting.items()):
            if due_at <= now:
                del self._waiting[item]
                self._add_locked(item)
        if not self._waiting:
            return None
        return max(0.0, min(self._waiting.values()) - now)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until an item is available; ``None`` on timeout or shutdown."""
        end = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    self._publish_depth()
                    return item
                if self._shutting_down:
                    return None
                wait = next_due
                if end is not None:
                    remaining = end - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._publish_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()
