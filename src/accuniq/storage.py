"""SQLite storage for body-composition measurements.

One row per decoded ``M`` packet.  Timestamps are stored as Unix epoch
integers (seconds since 1970-01-01 00:00:00 UTC); gender and body type
are stored as their display text.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path

from accuniq.measurement import MeasurementResult

log = logging.getLogger(__name__)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS measurements (
    id                    INTEGER PRIMARY KEY,
    ts                    INTEGER NOT NULL,  -- Unix timestamp of capture
    device                TEXT,              -- device label, if known
    gender                TEXT NOT NULL,     -- Male / Female / Unknown
    age                   INTEGER NOT NULL,  -- years
    height                REAL NOT NULL,     -- cm
    weight                REAL NOT NULL,     -- kg
    body_fat_percent      REAL NOT NULL,     -- %
    body_fat_mass         REAL NOT NULL,     -- kg
    soft_lean_mass        REAL NOT NULL,     -- kg
    skeletal_muscle_mass  REAL NOT NULL,     -- kg
    body_water            REAL NOT NULL,     -- kg
    bmi                   REAL NOT NULL,
    bmr                   REAL NOT NULL,     -- kcal/day
    body_cell_mass        REAL NOT NULL,     -- kg
    biological_age        INTEGER NOT NULL,  -- years
    body_type             TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_measurements_ts ON measurements (ts);
"""

COLUMNS = (
    "ts", "device", "gender", "age", "height", "weight",
    "body_fat_percent", "body_fat_mass", "soft_lean_mass",
    "skeletal_muscle_mass", "body_water", "bmi", "bmr",
    "body_cell_mass", "biological_age", "body_type",
)

_INSERT = "INSERT INTO measurements ({}) VALUES ({})".format(
    ", ".join(COLUMNS), ", ".join("?" * len(COLUMNS)),
)

_FETCH_RECENT = """\
SELECT id, {} FROM measurements ORDER BY id DESC LIMIT ?""".format(
    ", ".join(COLUMNS)
)


class MeasurementStorage:
    """SQLite-backed storage for measurements.

    Opens (or creates) the database at *db_path*, creates the
    ``measurements`` table if absent, and enables WAL journaling so the
    panel can read while the daemon writes.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str):
        """Open the database and ensure the schema exists."""
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Inserts arrive on the transport reader thread.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    def insert(self, result: MeasurementResult, device: str | None = None) -> None:
        """Insert and commit one measurement row."""
        row = (
            int(result.measured_at.timestamp()),
            device,
            result.gender.value,
            result.age,
            result.height,
            result.weight,
            result.body_fat_percent,
            result.body_fat_mass,
            result.soft_lean_mass,
            result.skeletal_muscle_mass,
            result.body_water,
            result.bmi,
            result.bmr,
            result.body_cell_mass,
            result.biological_age,
            result.body_type.value,
        )
        with self._lock:
            self._conn.execute(_INSERT, row)
            self._conn.commit()

    def fetch(self, count: int) -> list[dict]:
        """Return the newest *count* measurements, newest first."""
        with self._lock:
            cursor = self._conn.execute(_FETCH_RECENT, (count,))
            return [dict(row) for row in cursor.fetchall()]

    def __enter__(self) -> "MeasurementStorage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def purge(self, days: int) -> int:
        """Delete measurements older than *days* days and vacuum.

        Returns the number of deleted rows.
        """
        cutoff = int(time.time()) - days * 86400
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM measurements WHERE ts < ?", (cutoff,)
            )
            deleted = cursor.rowcount
            self._conn.commit()
            if deleted > 0:
                self._conn.execute("VACUUM")
        if deleted > 0:
            log.info("purged %d measurements older than %d days", deleted, days)
        return deleted

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
