from __future__ import annotations

import threading
from unittest.mock import patch

from restarter.src.workqueue import WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_add_deduplicates_queued_items() -> None:
    queue = WorkQueue()
    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_item_added_while_processing_is_requeued_on_done() -> None:
    queue = WorkQueue()
    queue.add("a")
    item = queue.get(timeout=0)

    queue.add("a")
    # Never handed to a second worker while the first still holds it.
    assert queue.get(timeout=0) is None

    queue.done(item)
    assert queue.get(timeout=0) == "a"


def test_add_after_waits_for_due_time_and_keeps_earliest() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    queue.add_after("a", 30)
    queue.add_after("a", 10)

    assert queue.get(timeout=0) is None
    clock.now += 10
    assert queue.get(timeout=0) == "a"


def test_rate_limited_delay_grows_and_is_capped() -> None:
    queue = WorkQueue(base_delay=1.0, max_delay=8.0, clock=FakeClock())

    with patch("restarter.src.workqueue.random.random", return_value=0.5):
        delays = [queue.add_rate_limited("a") for _ in range(6)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert queue.failures("a") == 6

    queue.forget("a")
    assert queue.failures("a") == 0


def test_shut_down_releases_blocked_getters() -> None:
    queue = WorkQueue()
    results: list[object] = []
    getter = threading.Thread(target=lambda: results.append(queue.get(timeout=5)))
    getter.start()

    queue.shut_down()
    getter.join(timeout=2)

    assert not getter.is_alive()
    assert results == [None]
    queue.add("late")
    assert len(queue) == 0
