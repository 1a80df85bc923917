"""
Bounded worker pool shared by the upload and download paths.

A fixed number of threads drain a queue of pending items. Every item's
outcome is collected instead of raised, so one failing file never aborts the
rest. A CancelToken stops queued items from starting; in-flight items run to
completion.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from queue import Empty, SimpleQueue
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

from template_storage.types import ProgressCallback

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation signal threaded through long-running work."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TaskOutcome(Generic[T]):
    item: T
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class ProgressTracker:
    """
    Thread-safe progress reporter.

    Callbacks only ever observe a non-decreasing percentage, whatever order
    workers finish in.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._lock = threading.Lock()
        self._last = 0

    @property
    def last(self) -> int:
        return self._last

    def report(self, percent: float) -> None:
        value = max(0, min(100, int(round(percent))))
        with self._lock:
            if value < self._last:
                return
            self._last = value
            if self._callback:
                self._callback(value)


class Counter:
    def __init__(self):
        self._lock = threading.Lock()
        self.value = 0

    def increment(self) -> int:
        with self._lock:
            self.value += 1
            return self.value


def run_bounded(
    items: Iterable[T],
    func: Callable[[T], Any],
    *,
    workers: int = 4,
    cancel: Optional[CancelToken] = None,
    on_done: Optional[Callable[[TaskOutcome[T]], None]] = None,
) -> list[TaskOutcome[T]]:
    """
    Apply ``func`` to every item with at most ``workers`` calls in flight.

    Outcomes are returned in input order. Items not started because of
    cancellation come back with ``skipped=True``.
    """
    pending = list(items)
    outcomes: list[Optional[TaskOutcome[T]]] = [None] * len(pending)
    queue: SimpleQueue = SimpleQueue()
    for index, item in enumerate(pending):
        queue.put((index, item))

    def drain() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except Empty:
                return
            if cancel is not None and cancel.cancelled:
                outcome = TaskOutcome(item=item, skipped=True)
            else:
                try:
                    outcome = TaskOutcome(item=item, value=func(item))
                except Exception as exc:
                    outcome = TaskOutcome(item=item, error=exc)
            outcomes[index] = outcome
            if on_done:
                on_done(outcome)

    worker_count = max(1, min(workers, len(pending)))
    if not pending:
        return []
    with ThreadPoolExecutor(max_workers=worker_count) as executor:
        futures = [executor.submit(drain) for _ in range(worker_count)]
        for future in futures:
            future.result()

    return [outcome for outcome in outcomes if outcome is not None]
