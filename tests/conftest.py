"""Shared test doubles for accuniq tests."""

from accuniq.events import Channel
from accuniq.preferences import LastDevice
from accuniq.scheduler import ScheduledTask
from accuniq.simulator import build_measurement_payload, frame_safe_packet


def make_packet(command: str, text: str = "") -> bytes:
    """Build a valid packet whose BCC the framer can delimit."""
    return frame_safe_packet(command, text)


def make_measurement_packet(values: dict[int, str] | None = None) -> bytes:
    """Build an ``M`` packet from field values by offset."""
    return make_packet("M", build_measurement_payload(values))


class FakeTransport:
    """Test double for Transport: canned connect results, records sends."""

    def __init__(self, candidates=None, connect_results=None):
        """Initialize with candidate handles and per-call connect results.

        Once *connect_results* is exhausted, every connect succeeds.
        """
        self.received = Channel("received")
        self.closed = Channel("closed")
        self._candidates = list(candidates or [])
        self._results = list(connect_results or [])
        self.connects = []
        self.sent = []
        self.disconnects = 0
        self.closed_calls = 0
        self.send_ok = True
        self.connected = None

    def candidates(self):
        return list(self._candidates)

    def connect(self, handle) -> bool:
        """Record the attempt and return the next canned result."""
        self.connects.append(handle)
        ok = self._results.pop(0) if self._results else True
        self.connected = handle if ok else None
        return ok

    def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = None

    def send(self, data: bytes) -> bool:
        """Record *data*; return ``send_ok``."""
        self.sent.append(data)
        return self.send_ok

    def close(self) -> None:
        self.closed_calls += 1

    def feed(self, data: bytes) -> None:
        """Deliver *data* as if the device had sent it."""
        self.received.publish(data)

    def drop(self, reason: str = "Connection closed") -> None:
        """Report an unexpected link loss."""
        self.connected = None
        self.closed.publish(reason)


class LoopbackTransport(FakeTransport):
    """FakeTransport whose sends are answered by an AnalyzerSimulator."""

    def __init__(self, simulator, candidates=None):
        super().__init__(candidates)
        self.simulator = simulator

    def send(self, data: bytes) -> bool:
        self.sent.append(data)
        for reply in self.simulator.handle(data):
            self.received.publish(reply)
        return True


class FakeScheduler:
    """Test double for Scheduler: tasks run only when the test says so."""

    def __init__(self):
        self.tasks = []

    def call_later(self, delay: float, callback) -> ScheduledTask:
        task = ScheduledTask(delay, callback)
        self.tasks.append(task)
        return task

    def pending(self, delay: float | None = None) -> list[ScheduledTask]:
        """Return active tasks, optionally only those with *delay*."""
        return [
            t for t in self.tasks
            if t.active and (delay is None or t.delay == delay)
        ]

    def run_pending(self) -> int:
        """Run every task active right now; return how many ran."""
        ready = self.pending()
        for task in ready:
            task.run()
        return len(ready)


class MemoryPreferences:
    """Dict-backed stand-in for Preferences with the same interface."""

    def __init__(self, auto_connect=None):
        self.auto = auto_connect
        self.last = None
        self.fails = 0

    def auto_connect_enabled(self):
        return self.auto

    def set_auto_connect_enabled(self, enabled: bool) -> None:
        self.auto = enabled

    def save_last_device(self, device_id, device_type, device_name) -> None:
        self.last = LastDevice(device_id, device_type, device_name, "")
        self.fails = 0

    def last_device(self):
        return self.last

    def clear_last_device(self) -> None:
        self.last = None
        self.fails = 0

    def fail_count(self) -> int:
        return self.fails

    def increment_fail_count(self) -> int:
        self.fails += 1
        return self.fails

    def reset_fail_count(self) -> None:
        self.fails = 0
