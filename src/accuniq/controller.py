"""Connection lifecycle controller for the analyzer.

Owns one transport session at a time.  Incoming bytes are framed,
echoes of our own last packet are dropped, and each packet is
dispatched by command letter:

- ``I``: device identity, published on ``events.device_info``
- ``K``: serial number, attached to the current identity
- ``A``: status byte, tracked; CompleteDisplay schedules an ``M`` request
- ``M``: measurement, decoded and published on ``events.measurement``
- ``B``: member-info ACK/NAK, logged

The device pushes status and results on its own, so nothing is polled
after connecting.

An unexpected disconnect schedules a reconnect.  auto_connect() tries
the remembered device, then the first transport candidate that looks
like the analyzer's HC-05 module, then retries on a fixed interval up
to a bounded number of times.

Every timer is a TimerSlot: scheduling one cancels the previous task of
the same kind.

Example:
    >>> controller = Controller(Transport(), Preferences("prefs.db"))
    >>> controller.events.measurement.subscribe(storage.insert)
    >>> controller.start()
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from accuniq import protocol
from accuniq.config import (
    AUTO_CONNECT_RETRY_INTERVAL_S,
    MAX_AUTO_CONNECT_RETRIES,
    MAX_LAST_DEVICE_FAILURES,
    MEASUREMENT_REQUEST_DELAY_S,
    RECONNECT_DELAY_S,
)
from accuniq.device import DeviceInfo, MemberInfo
from accuniq.events import Events
from accuniq.framer import FrameDecoder
from accuniq.measurement import decode_measurement, fmt_measurement
from accuniq.protocol import ProtocolError, hexdump, packet_command, packet_data
from accuniq.scheduler import Scheduler, TimerSlot
from accuniq.state import DeviceState, StateTracker
from accuniq.transport import DeviceHandle, handle_from_record, is_likely_module

log = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    AUTO_CONNECTING = "auto_connecting"


@dataclass
class ConnectionRecord:
    """The live session: which device, and what we last sent it."""

    handle: DeviceHandle
    last_sent: bytes | None = None
    # Set when the link dropped before connect() finished.
    lost: str | None = None


class Controller:
    """Connects to the analyzer and turns its byte stream into events.

    Args:
        transport: Object with ``connect(handle)``, ``disconnect()``,
            ``send(data)``, ``candidates()`` and ``received`` / ``closed``
            channels.
        preferences: Object with the Preferences interface.
        scheduler: Object with ``call_later(delay, callback)``;
            defaults to a threading.Timer based Scheduler.
        events: Events bundle to publish on; a new one by default.
        auto_connect_default: Flag value used when none is stored yet.
    """

    def __init__(
        self,
        transport,
        preferences,
        scheduler=None,
        events: Events | None = None,
        *,
        auto_connect_default: bool = True,
        reconnect_delay: float = RECONNECT_DELAY_S,
        retry_interval: float = AUTO_CONNECT_RETRY_INTERVAL_S,
        max_retries: int = MAX_AUTO_CONNECT_RETRIES,
        measurement_delay: float = MEASUREMENT_REQUEST_DELAY_S,
        max_device_failures: int = MAX_LAST_DEVICE_FAILURES,
    ):
        self._transport = transport
        self._prefs = preferences
        scheduler = scheduler if scheduler is not None else Scheduler()
        self.events = events if events is not None else Events()

        self._auto_connect_default = auto_connect_default
        self._reconnect_delay = reconnect_delay
        self._retry_interval = retry_interval
        self._max_retries = max_retries
        self._measurement_delay = measurement_delay
        self._max_device_failures = max_device_failures

        # Guards the mutable state below against reader and timer threads.
        self._lock = threading.RLock()
        self._decoder = FrameDecoder()
        self._tracker = StateTracker()
        self._state = ConnectionState.DISCONNECTED
        self._record: ConnectionRecord | None = None
        # Session being opened; receives data before connect() returns.
        self._pending: ConnectionRecord | None = None
        # Bumped by every connect and disconnect; a connect that sees it
        # move while the transport was opening has been superseded.
        self._generation = 0
        self._device_info: DeviceInfo | None = None
        self._manual_disconnect = False
        # None until loaded from preferences.
        self._auto_enabled: bool | None = None
        self._auto_connecting = False
        self._reconnecting = False
        self._retry_count = 0

        self._reconnect_slot = TimerSlot(scheduler, "reconnect")
        self._retry_slot = TimerSlot(scheduler, "auto-connect retry")
        self._measurement_slot = TimerSlot(scheduler, "measurement request")

        self._handlers = {
            protocol.CMD_DEVICE_VERSION: self._handle_device_version,
            protocol.CMD_SERIAL_NUMBER: self._handle_serial_number,
            protocol.CMD_DEVICE_STATE: self._handle_device_state,
            protocol.CMD_MEASUREMENT: self._handle_measurement,
            protocol.CMD_MEMBER_INFO: self._handle_member_ack,
        }

        transport.received.subscribe(self._on_data)
        transport.closed.subscribe(self._on_transport_closed)

    # -- properties -------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._record is not None

    @property
    def handle(self) -> DeviceHandle | None:
        record = self._record
        return record.handle if record is not None else None

    @property
    def device_info(self) -> DeviceInfo | None:
        return self._device_info

    @property
    def device_state(self) -> DeviceState:
        return self._tracker.state

    @property
    def was_manual_disconnect(self) -> bool:
        return self._manual_disconnect

    @property
    def auto_connect_enabled(self) -> bool:
        return self._load_auto_flag()

    @property
    def retry_count(self) -> int:
        return self._retry_count

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        """Load the auto-connect flag and, if set, try to connect."""
        if self._load_auto_flag():
            self.auto_connect()

    def _load_auto_flag(self) -> bool:
        """Return the auto-connect flag, reading preferences on first use.

        When nothing is stored yet the default is used and persisted.
        """
        with self._lock:
            if self._auto_enabled is not None:
                return self._auto_enabled
        enabled = self._prefs.auto_connect_enabled()
        if enabled is None:
            enabled = self._auto_connect_default
            self._prefs.set_auto_connect_enabled(enabled)
            self._note("Auto-connect %s by default", _on_off(enabled))
        with self._lock:
            if self._auto_enabled is None:
                self._auto_enabled = enabled
            return self._auto_enabled

    def close(self) -> None:
        """Cancel all timers, disconnect, and release the transport."""
        self._measurement_slot.cancel()
        self.disconnect(manual=True)
        self._transport.close()

    def connect(self, handle: DeviceHandle) -> bool:
        """Open a session to *handle*, replacing any existing one.

        Pending reconnect and auto-connect retries are cancelled.  A
        connect still in progress is superseded: it closes whatever it
        opened and returns False.  On success the device is remembered
        and ``True`` is published on ``events.connection``.
        """
        return self._connect(handle) is True

    def _connect(self, handle: DeviceHandle, auto: bool = False) -> bool | None:
        """Connect to *handle*; None means a later connect or disconnect won."""
        with self._lock:
            self._generation += 1
            generation = self._generation
            if self._record is not None:
                self._end_session()
            self._decoder.reset()
            self._pending = ConnectionRecord(handle)
            if not auto:
                self._reconnect_slot.cancel()
                self._retry_slot.cancel()
                self._retry_count = 0
                self._set_state(ConnectionState.CONNECTING)

        self._note("Connecting to %s", handle.label)
        ok = self._transport.connect(handle)

        with self._lock:
            superseded = generation != self._generation
            if superseded:
                # Nobody else owns the link this attempt may have opened.
                orphaned = ok and self._record is None and self._pending is None
            else:
                record, self._pending = self._pending, None
                if ok:
                    self._record = record
                    self._manual_disconnect = False
                    self._retry_count = 0
                    self._retry_slot.cancel()
                    self._reconnect_slot.cancel()
                    self._set_state(ConnectionState.CONNECTED)
                elif self._state is ConnectionState.CONNECTING:
                    self._set_state(ConnectionState.DISCONNECTED)

        if superseded:
            if orphaned:
                self._transport.disconnect()
            self._note("Connection to %s abandoned", handle.label)
            return None
        if not ok:
            self._note("Connection to %s failed", handle.label,
                       level=logging.WARNING)
            return False

        self._prefs.save_last_device(handle.device_id, handle.kind, handle.label)
        self._note("Connected to %s, waiting for device data", handle.label)
        self.events.connection.publish(True)
        if record.lost is not None:
            self._on_transport_closed(record.lost)
        return True

    def disconnect(self, manual: bool = True) -> None:
        """Tear down the session, or abandon a connect in progress.

        Args:
            manual: True when the user asked for it.  A non-manual
                disconnect schedules an automatic reconnect if
                auto-connect is enabled.
        """
        with self._lock:
            self._generation += 1
            self._pending = None
            self._manual_disconnect = manual
            had_session = self._record is not None
            self._end_session()
            if manual:
                self._reconnect_slot.cancel()
                self._retry_slot.cancel()
                self._retry_count = 0
                self._reconnecting = False
            if had_session or manual:
                self._set_state(ConnectionState.DISCONNECTED)

        self._transport.disconnect()
        if not had_session:
            return

        self._note("Disconnected" if manual else "Disconnected (connection lost)")
        self.events.connection.publish(False)
        if not manual and self._load_auto_flag():
            self._schedule_reconnect()

    def _end_session(self) -> None:
        """Forget everything learned during the session.  Caller holds the lock."""
        self._record = None
        self._device_info = None
        self._tracker.reset()
        self._decoder.reset()
        self._measurement_slot.cancel()

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            log.debug("connection state %s -> %s", self._state.value, state.value)
            self._state = state

    def _on_transport_closed(self, reason: str) -> None:
        with self._lock:
            if self._record is None:
                if self._pending is not None:
                    self._pending.lost = reason
                return
        self._note("Connection lost: %s", reason, level=logging.WARNING)
        self.disconnect(manual=False)

    # -- auto-connect -------------------------------------------------------------

    def set_auto_connect_enabled(self, enabled: bool) -> None:
        """Persist the flag; enabling connects now if disconnected."""
        with self._lock:
            self._auto_enabled = enabled
            if not enabled:
                self._reconnect_slot.cancel()
                self._retry_slot.cancel()
                self._retry_count = 0
        self._prefs.set_auto_connect_enabled(enabled)
        self._note("Auto-connect %s", _on_off(enabled))
        if enabled and not self.is_connected:
            self.auto_connect()

    def toggle_auto_connect(self) -> bool:
        """Flip the auto-connect flag; return the new value."""
        enabled = not self._load_auto_flag()
        self.set_auto_connect_enabled(enabled)
        return enabled

    def auto_connect(self) -> bool:
        """Try to reach a device without user input.

        Priority: the remembered device, then the first candidate whose
        name looks like the analyzer module.  If both fail a retry is
        scheduled, up to ``max_retries`` in a row.

        A manual connect or disconnect issued meanwhile wins: the attempt
        stops without counting a failure or scheduling a retry.

        Returns:
            bool: True if connected when this returns.
        """
        enabled = self._load_auto_flag()
        with self._lock:
            if not enabled or self._record is not None:
                self._retry_count = 0
                return self._record is not None
            if self._auto_connecting or self._pending is not None:
                return False
            self._auto_connecting = True
            if self._state is ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.AUTO_CONNECTING)

        self._note("[Auto-Connect] Starting auto-connect attempt")
        try:
            candidates = self._transport.candidates()
            result = self._connect_last_device(candidates)
            if result is False:
                result = self._connect_candidate(candidates)
            if result is None:
                self._note("[Auto-Connect] Stopped: another connect or disconnect took over")
                return self.is_connected
            if result:
                return True
            self._note("[Auto-Connect] No suitable device found or connection failed")
            self._schedule_retry()
            return False
        finally:
            with self._lock:
                self._auto_connecting = False
                if (self._record is None and self._pending is None
                        and self._state in (ConnectionState.AUTO_CONNECTING,
                                            ConnectionState.RECONNECTING)):
                    self._set_state(ConnectionState.DISCONNECTED)

    def _connect_last_device(self, candidates: list[DeviceHandle]) -> bool | None:
        last = self._prefs.last_device()
        if last is None:
            return False

        handle = next(
            (h for h in candidates
             if h.kind == last.device_type and h.device_id == last.device_id),
            None,
        )
        if handle is None:
            try:
                handle = handle_from_record(
                    last.device_type, last.device_id, last.device_name,
                )
            except ValueError as exc:
                self._note("[Auto-Connect] Forgetting last device: %s", exc,
                           level=logging.WARNING)
                self._prefs.clear_last_device()
                return False

        self._note("[Auto-Connect] Trying last device %s (%s)",
                   last.device_name, last.device_id)
        result = self._connect(handle, auto=True)
        if result is not False:
            return result

        failures = self._prefs.increment_fail_count()
        if failures >= self._max_device_failures:
            self._note(
                "[Auto-Connect] Clearing last device after %d failed attempts",
                failures,
            )
            self._prefs.clear_last_device()
        return False

    def _connect_candidate(self, candidates: list[DeviceHandle]) -> bool | None:
        modules = [h for h in candidates if is_likely_module(h.name)]
        if not modules:
            self._note("[Auto-Connect] No HC-05 module found")
            return False
        self._note("[Auto-Connect] Found %d module(s), trying %s",
                   len(modules), modules[0].label)
        return self._connect(modules[0], auto=True)

    def _schedule_retry(self) -> None:
        with self._lock:
            if self._retry_count >= self._max_retries:
                self._retry_count = 0
                stop = True
            else:
                self._retry_count += 1
                count = self._retry_count
                self._retry_slot.schedule(self._retry_interval, self._retry_auto_connect)
                stop = False

        if stop:
            self._note("[Auto-Connect] Max retries (%d) reached, stopping auto-connect",
                       self._max_retries)
        else:
            self._note("[Auto-Connect] Scheduling retry %d/%d in %.0f seconds",
                       count, self._max_retries, self._retry_interval)

    def _retry_auto_connect(self) -> None:
        if not self.is_connected and self._auto_enabled:
            self.auto_connect()

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._reconnecting:
                return
            self._reconnect_slot.schedule(self._reconnect_delay, self._auto_reconnect)
        self._note("Connection lost, reconnecting in %.0f seconds", self._reconnect_delay)

    def _auto_reconnect(self) -> None:
        with self._lock:
            if self._reconnecting or self._record is not None or not self._auto_enabled:
                return
            self._reconnecting = True
            self._set_state(ConnectionState.RECONNECTING)
        try:
            self.auto_connect()
        finally:
            with self._lock:
                self._reconnecting = False

    # -- outgoing commands --------------------------------------------------------

    def send_member_info(self, member: MemberInfo) -> bool:
        """Send member details (``B``) ahead of a measurement."""
        packet = protocol.transmit_member_info(member.to_data_string())
        return self._send_packet(packet, "Member Info - %s" % member.name)

    def request_measurement(self) -> bool:
        return self._send_packet(protocol.request_measurement(), "Request Measurement")

    def sync_time(self, now: datetime | None = None) -> bool:
        """Set the device clock to *now* (default: local time)."""
        packet = protocol.transmit_time(now or datetime.now())
        return self._send_packet(packet, "Sync Time")

    def request_device_version(self) -> bool:
        return self._send_packet(protocol.request_device_version(), "Request Device Version")

    def request_device_state(self) -> bool:
        return self._send_packet(protocol.request_device_state(), "Request Device State")

    def request_serial_number(self) -> bool:
        return self._send_packet(protocol.request_serial_number(), "Request Serial Number")

    def _send_packet(self, packet: bytes, description: str) -> bool:
        with self._lock:
            if self._record is None:
                log.debug("%s skipped: not connected", description)
                return False
            # Remembered before writing so an immediate echo is recognised.
            self._record.last_sent = packet

        if not self._transport.send(packet):
            self._note("Send failed: %s", description, level=logging.WARNING)
            return False
        self._note("Sent: %s", description)
        return True

    # -- incoming packets ---------------------------------------------------------

    def _on_data(self, data: bytes) -> None:
        with self._lock:
            if self._record is None and self._pending is None:
                return
            log.debug("received %d bytes: %s", len(data), hexdump(data))
            for packet in self._decoder.feed_data(data):
                record = self._record or self._pending
                if record is None:
                    break
                if packet == record.last_sent:
                    log.debug("ignoring echo: %s", hexdump(packet))
                    continue
                self._dispatch(packet)

    def _dispatch(self, packet: bytes) -> None:
        command = packet_command(packet)
        if command is None:
            return
        data = packet_data(packet)
        log.debug("packet %s: %s", command, hexdump(packet))

        handler = self._handlers.get(command)
        if handler is None:
            if data:
                self._note("Unknown command %r with data: %s", command, data)
            else:
                self._note("Unknown command %r (no data)", command)
            return
        handler(packet, data)

    def _handle_device_version(self, packet: bytes, data: str | None) -> None:
        if data is None:
            return
        try:
            info = DeviceInfo.from_string(data)
        except ProtocolError as exc:
            self._note("Error parsing device info: %s", exc, level=logging.WARNING)
            return
        self._device_info = info
        self._note("Device identified: %s", info)
        self.events.device_info.publish(info)

    def _handle_serial_number(self, packet: bytes, data: str | None) -> None:
        if data is None or self._device_info is None:
            log.debug("serial number %r ignored: no device info yet", data)
            return
        self._device_info.attach_serial(data)
        self._note("Serial number: %s", data)
        self.events.device_info.publish(self._device_info)

    def _handle_device_state(self, packet: bytes, data: str | None) -> None:
        status = packet[2]
        change = self._tracker.update(status)
        log.debug("state byte 0x%02X -> %s", status, self._tracker.state.display_name)
        if change is None:
            return

        self._note("State changed to: %s", change.current.display_name)
        self.events.state.publish(change.current)
        if change.requests_measurement:
            self._measurement_slot.schedule(
                self._measurement_delay, self.request_measurement,
            )

    def _handle_measurement(self, packet: bytes, data: str | None) -> None:
        result = decode_measurement(packet)
        self._note("Measurement: %s", fmt_measurement(result))
        self.events.measurement.publish(result)

    def _handle_member_ack(self, packet: bytes, data: str | None) -> None:
        self._note("Member info ACK/NAK received: %s", data or "(no data)")

    # -- logging ------------------------------------------------------------------

    def _note(self, msg: str, *args, level: int = logging.INFO) -> None:
        """Log *msg* and publish it, timestamped, on ``events.log``."""
        log.log(level, msg, *args)
        text = msg % args if args else msg
        stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self.events.log.publish("[%s] %s" % (stamp, text))


def _on_off(enabled: bool) -> str:
    return "enabled" if enabled else "disabled"
