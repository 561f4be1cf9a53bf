"""Flask application serving stored measurements.

Read-only JSON and CSV API over the database the daemon writes.
Timestamps are Unix epoch seconds, as stored.

Example:
    $ ACCUNIQ_DB=data/accuniq.db flask --app accuniq.panel run
    $ curl http://localhost:5000/api/measurements/latest
"""

import csv
import io
import os
import sqlite3

from flask import Flask, Response, g, jsonify, request

from accuniq.paths import find_db
from accuniq.storage import COLUMNS

_DB_PATH = os.environ.get("ACCUNIQ_DB") or find_db("accuniq.db")

_DEFAULT_LIMIT = 20
_MAX_LIMIT = 1000

_SELECT = "SELECT id, {} FROM measurements".format(", ".join(COLUMNS))


def create_app(db_path: str) -> Flask:
    """Create and configure the Flask application.

    Args:
        db_path: Path to the SQLite database file.
    """
    app = Flask(__name__)
    app.config["ACCUNIQ_DB"] = db_path

    def _get_db() -> sqlite3.Connection:
        """Return a per-request database connection."""
        if "db" not in g:
            g.db = sqlite3.connect(app.config["ACCUNIQ_DB"])
            g.db.row_factory = sqlite3.Row
        return g.db

    @app.teardown_appcontext
    def _close_db(exc: BaseException | None) -> None:
        db = g.pop("db", None)
        if db is not None:
            db.close()

    @app.route("/api/measurements")
    def api_measurements() -> tuple:
        """Return the newest measurements, newest first.

        Query parameters:
            limit: Maximum rows (default 20, at most 1000).
        """
        limit = request.args.get("limit", _DEFAULT_LIMIT, type=int)
        if limit <= 0:
            return jsonify({"error": "limit must be positive"}), 400
        limit = min(limit, _MAX_LIMIT)

        rows = _get_db().execute(
            _SELECT + " ORDER BY ts DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return jsonify([dict(r) for r in rows]), 200

    @app.route("/api/measurements/latest")
    def api_latest() -> tuple:
        """Return the most recent measurement, or 404 if there is none."""
        row = _get_db().execute(
            _SELECT + " ORDER BY ts DESC, id DESC LIMIT 1"
        ).fetchone()
        if row is None:
            return jsonify({"error": "no measurements"}), 404
        return jsonify(dict(row)), 200

    @app.route("/api/export")
    def api_export() -> Response:
        """Export measurements as CSV, oldest first.

        Query parameters:
            start: Earliest Unix timestamp to include (optional).
            end: Latest Unix timestamp to include (optional).

        Example:
            GET /api/export?start=1717243200&end=1717329600
        """
        start = request.args.get("start", 0, type=int)
        end = request.args.get("end", type=int)
        if end is not None and end < start:
            return jsonify({"error": "end must not precede start"}), 400

        if end is None:
            rows = _get_db().execute(
                _SELECT + " WHERE ts >= ? ORDER BY ts, id", (start,)
            ).fetchall()
        else:
            rows = _get_db().execute(
                _SELECT + " WHERE ts >= ? AND ts <= ? ORDER BY ts, id",
                (start, end),
            ).fetchall()

        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(COLUMNS)
        for row in rows:
            writer.writerow([
                row[col] if row[col] is not None else "" for col in COLUMNS
            ])

        filename = "accuniq_{}_{}.csv".format(start, end if end is not None else "now")
        return Response(
            buf.getvalue(),
            mimetype="text/csv",
            headers={
                "Content-Disposition": 'attachment; filename="{}"'.format(
                    filename
                )
            },
        )

    return app


# Default app instance for `flask --app accuniq.panel run`
app = create_app(_DB_PATH)
