"""Typed publish/subscribe channels.

Each event kind gets its own Channel.  Publishing calls every
subscriber synchronously, in subscription order, on the publisher's
thread; there is no queueing and no backpressure.

Example:
    >>> from accuniq.events import Channel
    >>> seen = []
    >>> ch = Channel("demo")
    >>> unsubscribe = ch.subscribe(seen.append)
    >>> ch.publish(1)
    >>> unsubscribe()
    >>> ch.publish(2)
    >>> seen
    [1]
"""

import logging
import threading
from typing import Callable, Generic, TypeVar

from accuniq.device import DeviceInfo
from accuniq.measurement import MeasurementResult
from accuniq.state import DeviceState

log = logging.getLogger(__name__)

T = TypeVar("T")


class Channel(Generic[T]):
    """Broadcast channel for one event type.

    A subscriber that raises is logged and skipped; the remaining
    subscribers still receive the event.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register *callback*; return a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        """Remove *callback* if present."""
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, value: T) -> None:
        """Deliver *value* to every current subscriber."""
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                log.exception("subscriber failed on channel %s", self.name)

    def __len__(self) -> int:
        return len(self._subscribers)


class Events:
    """The controller's outbound event channels."""

    def __init__(self):
        self.device_info: Channel[DeviceInfo] = Channel("device_info")
        self.state: Channel[DeviceState] = Channel("state")
        self.measurement: Channel[MeasurementResult] = Channel("measurement")
        self.connection: Channel[bool] = Channel("connection")
        self.log: Channel[str] = Channel("log")
