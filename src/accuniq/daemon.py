"""Analyzer daemon -- keeps a connection up and stores every measurement.

Foreground loop driven by a TOML config file.  The controller connects
(or auto-connects) to the analyzer; each decoded result is written to
SQLite.  Shuts down cleanly on SIGINT or SIGTERM.

Example:
    Run from the command line::

        accuniq accuniq.toml -v
        accuniq accuniq.toml --device /dev/rfcomm0 --member 7,Kim,27,M,173
        accuniq accuniq.toml --list
"""

import argparse
import logging
import re
import signal
import threading
import time

from accuniq.config import SEND_SETTLE_S, load_config
from accuniq.controller import Controller
from accuniq.device import MemberInfo, parse_member
from accuniq.measurement import MeasurementResult
from accuniq.paths import resolve_config, resolve_db
from accuniq.preferences import Preferences
from accuniq.storage import MeasurementStorage
from accuniq.transport import (
    BluetoothDevice,
    DeviceHandle,
    SerialDevice,
    Transport,
    handle_from_config,
    is_likely_module,
)

_RETENTION_DAYS = 365

_BT_ADDRESS = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")

log = logging.getLogger(__name__)

_shutdown = threading.Event()


def _on_signal(signum: int, frame) -> None:
    """Set the module-level shutdown event on SIGINT/SIGTERM."""
    _shutdown.set()


def resolve_device(transport, device_id: str) -> DeviceHandle:
    """Find *device_id* among the transport's candidates.

    Unlisted ids are taken as a Bluetooth address when they look like
    one, otherwise as a serial port path.
    """
    for handle in transport.candidates():
        if handle.device_id == device_id:
            return handle
    if _BT_ADDRESS.match(device_id):
        return BluetoothDevice(address=device_id)
    return SerialDevice(port=device_id)


def list_devices(transport) -> int:
    """Print the transport's candidates; return how many there were."""
    handles = transport.candidates()
    for handle in handles:
        marker = "*" if is_likely_module(handle.name) else " "
        print("{} {:<10} {:<20} {}".format(
            marker, handle.kind, handle.device_id, handle.name,
        ))
    if not handles:
        print("no devices found")
    return len(handles)


def store_measurements(controller: Controller, storage) -> None:
    """Insert every published measurement into *storage*."""

    def on_measurement(result: MeasurementResult) -> None:
        handle = controller.handle
        storage.insert(result, handle.label if handle is not None else None)
        log.info(
            "stored measurement: weight=%.1f kg body_fat=%.1f%% bmi=%.1f",
            result.weight, result.body_fat_percent, result.bmi,
        )

    controller.events.measurement.subscribe(on_measurement)


def prepare_session(
    controller: Controller,
    member: MemberInfo | None,
    sync_time: bool,
    settle: float = SEND_SETTLE_S,
    sleep=time.sleep,
) -> None:
    """Send member info and/or the clock each time a connection comes up.

    The device acknowledges member info with a ``B`` reply; *settle*
    seconds pass before the time is sent so the two do not overlap.
    """

    def on_connection(connected: bool) -> None:
        if not connected:
            return
        if member is not None:
            controller.send_member_info(member)
            if sync_time:
                sleep(settle)
        if sync_time:
            controller.sync_time()

    if member is not None or sync_time:
        controller.events.connection.subscribe(on_connection)


def run(controller: Controller, shutdown: threading.Event,
        device: DeviceHandle | None = None) -> None:
    """Connect and serve until *shutdown* is set.

    An explicit *device* is connected first; auto-connect then covers
    the case where that fails or the link drops later.
    """
    if device is not None:
        controller.connect(device)
    controller.start()

    while not shutdown.is_set():
        shutdown.wait(1.0)


def main() -> None:
    """CLI entry point -- parse args, load config, run the daemon."""
    _shutdown.clear()

    parser = argparse.ArgumentParser(description="Accuniq body composition client")
    parser.add_argument("config", help="path to TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    parser.add_argument(
        "--device", metavar="ID",
        help="serial port or Bluetooth address to connect to",
    )
    parser.add_argument(
        "--member", metavar="ID,NAME,AGE,GENDER,HEIGHT", type=parse_member,
        help="member info sent on each connect",
    )
    parser.add_argument(
        "--sync-time", action="store_true",
        help="set the device clock on each connect",
    )
    parser.add_argument(
        "--list", action="store_true", help="list candidate devices and exit",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=level,
    )

    config_path = resolve_config(args.config)
    cfg = load_config(config_path)
    cfg["db"] = resolve_db(config_path, cfg["db"])

    transport = Transport(
        cfg["baudrate"], [handle_from_config(d) for d in cfg["devices"]],
    )
    if args.list:
        list_devices(transport)
        return

    storage = MeasurementStorage(cfg["db"])
    storage.purge(_RETENTION_DAYS)
    prefs = Preferences(cfg["db"])
    controller = Controller(
        transport, prefs,
        auto_connect_default=cfg["auto_connect"],
        reconnect_delay=cfg["reconnect_delay"],
        retry_interval=cfg["retry_interval"],
        max_retries=cfg["max_retries"],
        measurement_delay=cfg["measurement_delay"],
    )
    store_measurements(controller, storage)
    prepare_session(controller, args.member, args.sync_time)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    device = resolve_device(transport, args.device) if args.device else None
    log.info(
        "starting: baudrate=%d devices=%d db=%s auto_connect=%s",
        cfg["baudrate"], len(cfg["devices"]), cfg["db"], cfg["auto_connect"],
    )
    try:
        run(controller, _shutdown, device)
    finally:
        controller.close()
        prefs.close()
        storage.close()
        log.info("shutting down")


if __name__ == "__main__":
    main()
