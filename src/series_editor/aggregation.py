"""Parent recomputation from additive children.

A parent's value at each of its grid times is the sum of its children's
values looked up with :func:`find_closest_point_value`.  Requests arriving
faster than the guard interval are coalesced into one pending slot per
parent and applied later, in arrival order, through a scheduler.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from contextlib import nullcontext
from typing import Callable, Protocol

import numpy as np

from series_editor.grid import find_closest_point_values
from series_editor.repository import SeriesRepository
from series_editor.series import Series, TimePoint, from_arrays, to_arrays

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> None: ...


class CooperativeScheduler:
    """Deferred callbacks run by the host loop via :meth:`run_due`."""

    def __init__(self, clock: Clock = time.monotonic):
        self.clock = clock
        self._queue: list[tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> None:
        heapq.heappush(self._queue, (self.clock() + delay, next(self._seq), callback))

    @property
    def pending(self) -> int:
        return len(self._queue)

    def run_due(self) -> int:
        """Run every callback whose due time has passed.  Returns the count."""
        ran = 0
        while self._queue and self._queue[0][0] <= self.clock():
            _, _, callback = heapq.heappop(self._queue)
            callback()
            ran += 1
        return ran

    def cancel_all(self) -> int:
        dropped = len(self._queue)
        self._queue.clear()
        return dropped


class ThreadingScheduler:
    """Runs each callback on a daemon :class:`threading.Timer`.

    Timers are tracked until they fire so :meth:`cancel_all` can stop
    the ones still waiting.
    """

    def __init__(self) -> None:
        self._timers: set[threading.Timer] = set()
        self._guard = threading.Lock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> None:
        def fire() -> None:
            with self._guard:
                self._timers.discard(timer)
            callback()

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._guard:
            self._timers.add(timer)
        timer.start()

    @property
    def pending(self) -> int:
        with self._guard:
            return len(self._timers)

    def cancel_all(self) -> int:
        with self._guard:
            timers, self._timers = self._timers, set()
        for timer in timers:
            timer.cancel()
        return len(timers)


def sum_children(
    parent: Series,
    children: list[Series],
    overrides: dict[str, list[TimePoint]] | None = None,
    threshold: float = 0.01,
) -> list[TimePoint]:
    """Parent points with values replaced by the sum of its children.

    *overrides* substitutes not-yet-committed data for the given child ids.
    """
    overrides = overrides or {}
    times, _ = to_arrays(parent.data)
    total = np.zeros(len(times))
    for child in children:
        data = overrides.get(child.id, child.data)
        total += find_closest_point_values(data, times, threshold)
    return from_arrays(times, total)


class ParentAggregator:
    """Keeps every parent equal to the sum of its children.

    Parameters
    ----------
    repository : SeriesRepository
        Source of parents and children.
    scheduler : Scheduler
        Runs deferred retries.
    interval : float
        Guard interval in seconds between applied propagations to the
        same parent.
    clock : callable
        Monotonic time source.
    lock : context manager, optional
        Held while a deferred retry runs.
    """

    def __init__(
        self,
        repository: SeriesRepository,
        scheduler: Scheduler | None = None,
        interval: float = 0.025,
        clock: Clock = time.monotonic,
        threshold: float = 0.01,
        lock=None,
    ):
        self.repository = repository
        self.clock = clock
        self.scheduler = scheduler or CooperativeScheduler(clock)
        self.interval = interval
        self.threshold = threshold
        self._lock = lock if lock is not None else nullcontext()
        self._last_applied: dict[str, float] = {}
        self._pending: dict[str, dict[str, list[TimePoint] | None]] = {}
        self._active: set[str] = set()

    @property
    def pending_parents(self) -> list[str]:
        return list(self._pending)

    def propagate(
        self,
        child_id: str,
        child_data: list[TimePoint] | None = None,
        immediate: bool = False,
    ) -> Series | None:
        """Recompute the parent of *child_id*.

        Returns the updated parent, or None when the child is a root, the
        parent is missing, or the request was deferred.  *immediate*
        bypasses the guard interval after draining any pending requests
        for the same parent.
        """
        child = self.repository.get(child_id)
        if child is None or child.parent_id is None:
            return None
        parent_id = child.parent_id
        if self.repository.get(parent_id) is None:
            return None

        request = {child_id: child_data}

        if immediate:
            queued = self._pending.pop(parent_id, {})
            queued.pop(child_id, None)
            queued.update(request)
            return self._apply(parent_id, queued)

        if parent_id in self._pending:
            slot = self._pending[parent_id]
            slot.pop(child_id, None)
            slot.update(request)
            logger.debug("Coalesced propagation %s -> %s", child_id, parent_id)
            return None

        last = self._last_applied.get(parent_id)
        if last is not None and self.clock() - last < self.interval:
            self._pending[parent_id] = request
            self.scheduler.call_later(self.interval, lambda: self._retry(parent_id))
            logger.debug("Deferred propagation %s -> %s", child_id, parent_id)
            return None

        return self._apply(parent_id, request)

    def _retry(self, parent_id: str) -> None:
        with self._lock:
            if parent_id not in self._pending:
                return
            last = self._last_applied.get(parent_id)
            if last is not None and self.clock() - last < self.interval:
                self.scheduler.call_later(self.interval, lambda: self._retry(parent_id))
                return
            self._apply(parent_id, self._pending.pop(parent_id))

    def flush(self) -> list[str]:
        """Apply every pending request now, ignoring the guard interval."""
        applied = []
        while self._pending:
            parent_id = next(iter(self._pending))
            if self._apply(parent_id, self._pending.pop(parent_id)) is not None:
                applied.append(parent_id)
        return applied

    def _apply(
        self, parent_id: str, requests: dict[str, list[TimePoint] | None]
    ) -> Series | None:
        parent = self.repository.get(parent_id)
        if parent is None or parent_id in self._active:
            return None

        overrides = {cid: data for cid, data in requests.items() if data is not None}
        children = self.repository.children_of(parent_id)
        self.repository.set_data(
            parent_id, sum_children(parent, children, overrides, self.threshold)
        )
        self._last_applied[parent_id] = self.clock()
        logger.debug("Recomputed %s from %d children", parent_id, len(children))

        if parent.parent_id is not None:
            self._active.add(parent_id)
            try:
                self.propagate(parent_id, immediate=True)
            finally:
                self._active.discard(parent_id)
        return parent
