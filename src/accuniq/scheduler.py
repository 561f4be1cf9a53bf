"""Cancellable delayed callbacks.

Scheduler runs callbacks on threading.Timer threads.  TimerSlot holds
at most one pending task of a given kind: scheduling a new one cancels
the old, and a task that was superseded or cancelled never runs, even
if its timer thread has already woken up.

Example:
    >>> from accuniq.scheduler import Scheduler, TimerSlot
    >>> slot = TimerSlot(Scheduler(), "reconnect")
    >>> slot.schedule(3.0, lambda: None)
    >>> slot.pending
    True
    >>> slot.cancel()
    >>> slot.pending
    False
"""

import logging
import threading
from typing import Callable

log = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for one delayed callback.  cancel() is idempotent."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self._callback = callback
        self._cancelled = False
        self._done = False
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    @property
    def active(self) -> bool:
        """True until the task has run or been cancelled."""
        return not (self._cancelled or self._done)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            timer = self._timer
        if timer is not None:
            timer.cancel()

    def run(self) -> None:
        """Run the callback unless cancelled; never runs twice."""
        with self._lock:
            if self._cancelled or self._done:
                return
            self._done = True
        self._callback()

    def start_timer(self) -> None:
        """Arm a daemon threading.Timer that calls run() after ``delay``."""
        with self._lock:
            if self._timer is not None or self._cancelled:
                return
            self._timer = threading.Timer(self.delay, self.run)
            self._timer.daemon = True
            self._timer.start()


class Scheduler:
    """Runs delayed callbacks on daemon timer threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(delay, callback)
        task.start_timer()
        return task


class TimerSlot:
    """At most one pending task of a kind; newer supersedes older.

    Args:
        scheduler: Object with ``call_later(delay, callback)``.
        name: Label used in log messages.
    """

    def __init__(self, scheduler, name: str):
        self._scheduler = scheduler
        self.name = name
        self._task: ScheduledTask | None = None
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        task = self._task
        return task is not None and task.active

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        """Cancel any pending task, then schedule *callback* after *delay* s."""
        with self._lock:
            if self._task is not None:
                self._task.cancel()
            holder: list[ScheduledTask] = []

            def fire() -> None:
                with self._lock:
                    if not holder or self._task is not holder[0]:
                        return
                    self._task = None
                callback()

            task = self._scheduler.call_later(delay, fire)
            holder.append(task)
            self._task = task
        log.debug("%s scheduled in %.1fs", self.name, delay)

    def cancel(self) -> None:
        """Cancel the pending task, if any."""
        with self._lock:
            task, self._task = self._task, None
        if task is not None and task.active:
            task.cancel()
            log.debug("%s cancelled", self.name)
