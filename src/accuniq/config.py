"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.
Import individual names where needed.

Example:
    >>> from accuniq.config import load_config, RECONNECT_DELAY_S
    >>> cfg = load_config("accuniq.toml")
    >>> cfg["baudrate"]
    9600
"""

import tomllib

# Delay before reconnecting after an unexpected disconnect.
RECONNECT_DELAY_S = 3.0

# Auto-connect retry policy.
AUTO_CONNECT_RETRY_INTERVAL_S = 12.0
MAX_AUTO_CONNECT_RETRIES = 5

# Consecutive failures before the remembered device is forgotten.
MAX_LAST_DEVICE_FAILURES = 3

# Pause between the CompleteDisplay state and the automatic ``M`` request.
MEASUREMENT_REQUEST_DELAY_S = 0.5

# Transport tuning.
DEFAULT_BAUDRATE = 9600
CONNECT_TIMEOUT_S = 10.0
CONNECT_ATTEMPTS = 3
READ_TIMEOUT_S = 0.2

# Pause after a command the device acknowledges (member info), before
# sending the next one.
SEND_SETTLE_S = 0.5

_TIMING_KEYS = {
    "reconnect_delay": RECONNECT_DELAY_S,
    "retry_interval": AUTO_CONNECT_RETRY_INTERVAL_S,
    "max_retries": MAX_AUTO_CONNECT_RETRIES,
    "measurement_delay": MEASUREMENT_REQUEST_DELAY_S,
}

_DEVICE_TYPES = ("serial", "bluetooth")


def load_config(path: str) -> dict:
    """Read a TOML config file and validate it.

    Keys: ``db`` (str, required), ``auto_connect`` (bool, default true),
    ``[serial]`` with ``baudrate`` (int), ``[[devices]]`` entries and an
    optional ``[timing]`` table overriding ``reconnect_delay``,
    ``retry_interval``, ``max_retries`` and ``measurement_delay``.

    A device entry is ``type = "serial"`` with ``port``, or
    ``type = "bluetooth"`` with ``address`` and optional ``channel``;
    both accept an optional ``name``.

    Returns:
        dict: Flat settings with every timing key filled in.

    Raises:
        ValueError: If any key is missing or has the wrong type.
    """
    with open(path, "rb") as f:
        raw = tomllib.load(f)

    _require_str(raw, "db")

    auto_connect = raw.get("auto_connect", True)
    if not isinstance(auto_connect, bool):
        raise ValueError(
            "auto_connect must be bool, got %s" % type(auto_connect).__name__
        )

    result = {
        "db": raw["db"],
        "auto_connect": auto_connect,
        "baudrate": DEFAULT_BAUDRATE,
        "devices": [],
    }

    serial_section = raw.get("serial", {})
    if not isinstance(serial_section, dict):
        raise ValueError("[serial] must be a table")
    if "baudrate" in serial_section:
        _require_int(serial_section, "baudrate")
        result["baudrate"] = serial_section["baudrate"]

    devices = raw.get("devices", [])
    if not isinstance(devices, list):
        raise ValueError("devices must be an array of tables")
    for i, entry in enumerate(devices):
        result["devices"].append(_validate_device(i, entry))

    timing = raw.get("timing", {})
    if not isinstance(timing, dict):
        raise ValueError("[timing] must be a table")
    for key, default in _TIMING_KEYS.items():
        value = timing.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(
                "timing.%s must be a number, got %s" % (key, type(value).__name__)
            )
        if value < 0:
            raise ValueError("timing.%s must not be negative" % key)
        result[key] = value
    if not isinstance(result["max_retries"], int):
        raise ValueError("timing.max_retries must be int")

    return result


def _validate_device(index: int, entry: object) -> dict:
    """Validate one [[devices]] entry and return it normalised."""
    if not isinstance(entry, dict):
        raise ValueError("devices[%d] must be a table" % index)
    kind = entry.get("type")
    if kind not in _DEVICE_TYPES:
        raise ValueError(
            "devices[%d].type must be 'serial' or 'bluetooth', got %r"
            % (index, kind)
        )
    name = entry.get("name", "")
    if not isinstance(name, str):
        raise ValueError("devices[%d].name must be str" % index)

    if kind == "serial":
        _require_str(entry, "port")
        return {"type": kind, "port": entry["port"], "name": name}

    _require_str(entry, "address")
    channel = entry.get("channel", 1)
    if isinstance(channel, bool) or not isinstance(channel, int):
        raise ValueError("devices[%d].channel must be int" % index)
    return {
        "type": kind, "address": entry["address"], "name": name,
        "channel": channel,
    }


def _require_str(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (key, type(raw[key]).__name__))


def _require_int(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is an int."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if isinstance(raw[key], bool) or not isinstance(raw[key], int):
        raise ValueError("%s must be int, got %s" % (key, type(raw[key]).__name__))
