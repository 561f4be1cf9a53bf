"""SQLite key/value store for connection preferences.

Keeps the auto-connect flag, the last successfully connected device
and the count of consecutive auto-connect failures against it.
Every setter commits immediately.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

log = logging.getLogger(__name__)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS preferences (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);
"""

KEY_AUTO_CONNECT = "auto_connect_enabled"
KEY_LAST_DEVICE_ID = "last_device_id"
KEY_LAST_DEVICE_TYPE = "last_device_type"
KEY_LAST_DEVICE_NAME = "last_device_name"
KEY_LAST_CONNECTED = "last_connected_time"
KEY_FAIL_COUNT = "auto_connect_fail_count"

_LAST_DEVICE_KEYS = (
    KEY_LAST_DEVICE_ID,
    KEY_LAST_DEVICE_TYPE,
    KEY_LAST_DEVICE_NAME,
    KEY_LAST_CONNECTED,
)


@dataclass(frozen=True)
class LastDevice:
    """The most recently connected device."""

    device_id: str
    device_type: str
    device_name: str
    connected_at: str


class Preferences:
    """Persistent connection preferences.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str):
        """Open the database and ensure the schema exists."""
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        # Timer threads (retries, reconnects) write here too.
        self._lock = threading.Lock()

    def _get(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM preferences WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row is not None else None

    def _set(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT INTO preferences (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def _delete(self, *keys: str) -> None:
        self._conn.executemany(
            "DELETE FROM preferences WHERE key = ?", [(k,) for k in keys]
        )

    # -- auto-connect flag ----------------------------------------------------

    def auto_connect_enabled(self) -> bool | None:
        """Return the stored flag, or None if it was never set."""
        with self._lock:
            value = self._get(KEY_AUTO_CONNECT)
        if value is None:
            return None
        return value == "1"

    def set_auto_connect_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._set(KEY_AUTO_CONNECT, "1" if enabled else "0")
            self._conn.commit()

    # -- last device ------------------------------------------------------------

    def save_last_device(self, device_id: str, device_type: str,
                         device_name: str) -> None:
        """Remember a successful connection and reset the fail counter."""
        with self._lock:
            self._set(KEY_LAST_DEVICE_ID, device_id)
            self._set(KEY_LAST_DEVICE_TYPE, device_type)
            self._set(KEY_LAST_DEVICE_NAME, device_name)
            self._set(KEY_LAST_CONNECTED, datetime.now().isoformat())
            self._delete(KEY_FAIL_COUNT)
            self._conn.commit()

    def last_device(self) -> LastDevice | None:
        """Return the remembered device, or None."""
        with self._lock:
            device_id = self._get(KEY_LAST_DEVICE_ID)
            device_type = self._get(KEY_LAST_DEVICE_TYPE)
            device_name = self._get(KEY_LAST_DEVICE_NAME)
            connected_at = self._get(KEY_LAST_CONNECTED)
        if device_id is None or device_type is None:
            return None
        return LastDevice(
            device_id=device_id,
            device_type=device_type,
            device_name=device_name or "Unknown",
            connected_at=connected_at or "",
        )

    def clear_last_device(self) -> None:
        """Forget the remembered device and its fail counter."""
        with self._lock:
            self._delete(*_LAST_DEVICE_KEYS, KEY_FAIL_COUNT)
            self._conn.commit()
        log.info("cleared last device")

    # -- fail counter -----------------------------------------------------------

    def _fail_count(self) -> int:
        value = self._get(KEY_FAIL_COUNT)
        return int(value) if value is not None else 0

    def fail_count(self) -> int:
        with self._lock:
            return self._fail_count()

    def increment_fail_count(self) -> int:
        """Add one failure; return the new count."""
        with self._lock:
            count = self._fail_count() + 1
            self._set(KEY_FAIL_COUNT, str(count))
            self._conn.commit()
        return count

    def reset_fail_count(self) -> None:
        with self._lock:
            self._delete(KEY_FAIL_COUNT)
            self._conn.commit()

    def __enter__(self) -> "Preferences":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
