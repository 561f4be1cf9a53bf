"""Byte transport to the analyzer's Bluetooth Classic serial module.

Two kinds of device handle are supported, resolved once per connect:

- SerialDevice: a serial port opened with pyserial.  Covers RFCOMM
  ports bound with ``rfcomm bind`` (``/dev/rfcomm0``) and USB adapters.
- BluetoothDevice: a Bluetooth address dialled directly over an RFCOMM
  stream socket (Linux ``AF_BLUETOOTH``).

Transport owns at most one live link.  A reader thread publishes each
received chunk on ``received``; a read error or end-of-stream publishes
the reason on ``closed``.  Discovery and pairing are left to the OS.

Example:
    >>> from accuniq.transport import Transport, SerialDevice
    >>> transport = Transport(9600)
    >>> transport.received.subscribe(print)
    >>> transport.connect(SerialDevice("/dev/rfcomm0", "HC-05"))
    True
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import ClassVar

import serial
from serial.tools import list_ports

from accuniq.config import (
    CONNECT_ATTEMPTS,
    CONNECT_TIMEOUT_S,
    DEFAULT_BAUDRATE,
    READ_TIMEOUT_S,
)
from accuniq.events import Channel

log = logging.getLogger(__name__)

_MODULE_NAMES = ("hc-05", "hc05", "accuniq")


@dataclass(frozen=True)
class SerialDevice:
    """A serial port, e.g. ``/dev/rfcomm0`` or ``COM5``."""

    kind: ClassVar[str] = "serial"

    port: str
    name: str = ""

    @property
    def device_id(self) -> str:
        return self.port

    @property
    def label(self) -> str:
        return self.name or self.port


@dataclass(frozen=True)
class BluetoothDevice:
    """A paired Bluetooth Classic device reached over RFCOMM."""

    kind: ClassVar[str] = "bluetooth"

    address: str
    name: str = ""
    channel: int = 1

    @property
    def device_id(self) -> str:
        return self.address

    @property
    def label(self) -> str:
        return self.name or self.address


DeviceHandle = SerialDevice | BluetoothDevice


def is_likely_module(name: str | None) -> bool:
    """True if *name* looks like the analyzer's HC-05 serial module.

    Example:
        >>> is_likely_module("HC-05-USB"), is_likely_module("Headset")
        (True, False)
    """
    lowered = (name or "").lower()
    return lowered.startswith("hc") or any(n in lowered for n in _MODULE_NAMES)


def handle_from_record(kind: str, device_id: str, name: str = "") -> DeviceHandle:
    """Rebuild a handle from a stored (type, id, name) record.

    Raises:
        ValueError: If *kind* is not ``"serial"`` or ``"bluetooth"``.
    """
    if kind == SerialDevice.kind:
        return SerialDevice(port=device_id, name=name)
    if kind == BluetoothDevice.kind:
        return BluetoothDevice(address=device_id, name=name)
    raise ValueError("unknown device type: %r" % kind)


def handle_from_config(entry: dict) -> DeviceHandle:
    """Build a handle from a validated ``[[devices]]`` config entry."""
    if entry["type"] == SerialDevice.kind:
        return SerialDevice(port=entry["port"], name=entry.get("name", ""))
    return BluetoothDevice(
        address=entry["address"], name=entry.get("name", ""),
        channel=entry.get("channel", 1),
    )


class SerialLink:
    """pyserial port with a short read timeout."""

    def __init__(self, port: str, baudrate: int):
        self._ser = serial.Serial(port, baudrate, timeout=READ_TIMEOUT_S)

    def read(self, size: int) -> bytes:
        """Return up to *size* bytes, or ``b""`` if none arrived in time."""
        return self._ser.read(size)

    def write(self, data: bytes) -> None:
        self._ser.write(data)
        self._ser.flush()

    def close(self) -> None:
        self._ser.close()


class RfcommLink:
    """RFCOMM stream socket to a Bluetooth address."""

    def __init__(self, address: str, channel: int, timeout_s: float):
        if not hasattr(socket, "AF_BLUETOOTH"):
            raise OSError("RFCOMM sockets are not supported on this platform")
        self._sock = socket.socket(
            socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM,
        )
        try:
            self._sock.settimeout(timeout_s)
            self._sock.connect((address, channel))
            self._sock.settimeout(READ_TIMEOUT_S)
        except OSError:
            self._sock.close()
            raise

    def read(self, size: int) -> bytes:
        """Return up to *size* bytes, or ``b""`` on timeout.

        Raises:
            ConnectionError: When the peer closes the stream.
        """
        try:
            data = self._sock.recv(size)
        except socket.timeout:
            return b""
        if not data:
            raise ConnectionError("Connection closed")
        return data

    def write(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        try:
            self._sock.close()
        except OSError:
            pass


class Transport:
    """Single-session byte transport with a background reader.

    Args:
        baudrate: Baud rate for serial handles.
        devices: Configured handles, listed first by candidates().
        attempts: Connect attempts per connect() call.
        connect_timeout: Seconds to wait for an RFCOMM connect.
    """

    _READ_CHUNK = 256

    def __init__(
        self,
        baudrate: int = DEFAULT_BAUDRATE,
        devices: list[DeviceHandle] | None = None,
        attempts: int = CONNECT_ATTEMPTS,
        connect_timeout: float = CONNECT_TIMEOUT_S,
    ):
        self._baudrate = baudrate
        self._devices = list(devices or [])
        self._attempts = max(1, attempts)
        self._connect_timeout = connect_timeout
        self._link = None
        self._stop: threading.Event | None = None
        self._reader: threading.Thread | None = None
        self._lock = threading.Lock()
        # Bumped by disconnect(); a connect that sees it move gives up.
        self._generation = 0
        self.received: Channel[bytes] = Channel("received")
        self.closed: Channel[str] = Channel("closed")

    @property
    def is_connected(self) -> bool:
        return self._link is not None

    def candidates(self) -> list[DeviceHandle]:
        """Configured devices first, then serial ports the OS reports."""
        handles: list[DeviceHandle] = list(self._devices)
        known = {h.device_id for h in handles}
        for port in sorted(list_ports.comports(), key=lambda p: p.device):
            if port.device in known:
                continue
            name = port.description if port.description != "n/a" else port.name
            handles.append(SerialDevice(port=port.device, name=name or ""))
        return handles

    def _open(self, handle: DeviceHandle):
        if isinstance(handle, BluetoothDevice):
            return RfcommLink(handle.address, handle.channel, self._connect_timeout)
        return SerialLink(handle.port, self._baudrate)

    def connect(self, handle: DeviceHandle) -> bool:
        """Open a link to *handle*, replacing any existing session.

        Retries with a linear backoff (1 s, 2 s, ...).  Returns True once
        the reader thread is running, False after the last failure.  A
        disconnect() or another connect() issued meanwhile abandons this
        attempt: whatever it opened is closed and False is returned.
        """
        self.disconnect()
        with self._lock:
            generation = self._generation

        for attempt in range(1, self._attempts + 1):
            if self._generation != generation:
                log.info("connect to %s abandoned", handle.label)
                return False
            try:
                link = self._open(handle)
            except OSError as exc:
                log.warning(
                    "connect to %s failed (attempt %d/%d): %s",
                    handle.label, attempt, self._attempts, exc,
                )
                if attempt < self._attempts:
                    time.sleep(1.0 * attempt)
                continue

            stop = threading.Event()
            reader = threading.Thread(
                target=self._read_loop, args=(link, stop),
                name="accuniq-reader", daemon=True,
            )
            with self._lock:
                current = self._generation == generation
                if current:
                    self._link = link
                    self._stop = stop
                    self._reader = reader
            if not current:
                log.info("connect to %s abandoned", handle.label)
                link.close()
                return False
            reader.start()
            log.info("connected to %s", handle.label)
            return True

        return False

    def disconnect(self) -> None:
        """Close the current link, if any.  Does not publish ``closed``."""
        with self._lock:
            self._generation += 1
            link, self._link = self._link, None
            stop, self._stop = self._stop, None
            reader, self._reader = self._reader, None
        if link is None:
            return
        stop.set()
        try:
            link.close()
        except OSError as exc:
            log.debug("close failed: %s", exc)
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)
        log.info("disconnected")

    def send(self, data: bytes) -> bool:
        """Write *data*; return False if there is no link or the write fails."""
        link = self._link
        if link is None:
            log.debug("send while not connected")
            return False
        try:
            link.write(data)
        except OSError as exc:
            log.warning("send failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self.disconnect()

    def _read_loop(self, link, stop: threading.Event) -> None:
        """Pump bytes from *link* until stopped or the link fails."""
        while not stop.is_set():
            try:
                data = link.read(self._READ_CHUNK)
            except OSError as exc:
                if stop.is_set():
                    return
                log.warning("read failed: %s", exc)
                if self._drop(link):
                    self.closed.publish(str(exc) or exc.__class__.__name__)
                return
            if data and not stop.is_set():
                self.received.publish(data)

    def _drop(self, link) -> bool:
        """Forget *link* after a read failure; False if already replaced."""
        with self._lock:
            if self._link is not link:
                return False
            self._link = None
            self._stop = None
            self._reader = None
        try:
            link.close()
        except OSError:
            pass
        return True
