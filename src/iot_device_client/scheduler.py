"""
Timer-driven tasks run on the event-processing thread.

Tasks never get a thread of their own: the supervisor loop asks ``time_until_next()``
for its poll timeout and calls ``run_due()`` after each network iteration.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class TaskHandle:
    task_id: int
    name: str
    interval_s: float
    repeat: bool
    action: Callable[[], None] = field(repr=False)
    cancelled: bool = False
    runs: int = 0

    @property
    def active(self) -> bool:
        return not self.cancelled


class TaskScheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        # (deadline, task_id, handle); cancelled entries are dropped lazily
        self._queue: list[tuple[float, int, TaskHandle]] = []
        self._running: Optional[TaskHandle] = None

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if h.active)

    def schedule(
        self,
        interval_s: float,
        action: Callable[[], None],
        *,
        repeat: bool = True,
        name: Optional[str] = None,
    ) -> TaskHandle:
        """Run ``action`` after ``interval_s`` seconds, and every ``interval_s`` if ``repeat``."""
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        task_id = next(self._ids)
        handle = TaskHandle(
            task_id=task_id,
            name=name or getattr(action, "__name__", "task"),
            interval_s=interval_s,
            repeat=repeat,
            action=action,
        )
        heapq.heappush(self._queue, (self._clock() + interval_s, task_id, handle))
        logger.debug("Scheduled task %s every %.1fs (repeat=%s)", handle.name, interval_s, repeat)
        return handle

    def cancel(self, handle: Optional[TaskHandle]) -> None:
        """Cancel a task. Cancelling twice, or cancelling None, is a no-op."""
        if handle is None or handle.cancelled:
            return
        handle.cancelled = True
        logger.debug("Cancelled task %s", handle.name)

    def cancel_all(self) -> None:
        # the task currently running is already off the queue
        self.cancel(self._running)
        for _, _, handle in self._queue:
            self.cancel(handle)
        self._queue.clear()

    def time_until_next(self) -> Optional[float]:
        self._drop_cancelled()
        if not self._queue:
            return None
        return max(0.0, self._queue[0][0] - self._clock())

    def run_due(self) -> int:
        """Run every task whose deadline has passed. Returns the number of actions run."""
        ran = 0
        now = self._clock()
        while self._queue and self._queue[0][0] <= now:
            deadline, task_id, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue

            handle.runs += 1
            ran += 1
            self._running = handle
            try:
                handle.action()
            except Exception:
                logger.exception("Scheduled task %s failed", handle.name)
            finally:
                self._running = None

            # the action may have cancelled its own handle
            if handle.repeat and not handle.cancelled:
                next_deadline = deadline + handle.interval_s
                if next_deadline <= now:
                    # late loop: skip missed runs instead of bursting
                    next_deadline = now + handle.interval_s
                heapq.heappush(self._queue, (next_deadline, task_id, handle))
            elif not handle.repeat:
                handle.cancelled = True
        return ran

    def _drop_cancelled(self) -> None:
        while self._queue and self._queue[0][2].cancelled:
            heapq.heappop(self._queue)
