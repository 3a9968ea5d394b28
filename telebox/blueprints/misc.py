import os

import flask
from flask import Blueprint, request

from ..db import recent_events
from ..security import authorise

LOG_FILE_NAME = "Telebox.log"
MAX_SYSTEM_LOGS = 1000


def create_misc_blueprint(*, LOG_DIR, get_db_connection):
    bp = Blueprint("misc", __name__)
    log_path = os.path.join(LOG_DIR, LOG_FILE_NAME)

    def read_log():
        with open(log_path, encoding="utf-8", errors="replace") as f:
            return f.read()

    @bp.route("/log")
    @authorise
    def log():
        try:
            return read_log()
        except FileNotFoundError:
            return "Log file not found"

    @bp.route("/logs/stream")
    @authorise
    def logs_stream():
        """Tail of the log file; ``lines`` is a count or "all"."""
        try:
            lines = [line.rstrip() for line in read_log().splitlines() if line.strip()]
        except FileNotFoundError:
            return flask.jsonify({"lines": [], "error": "Log file not found"})
        except OSError as e:
            return flask.jsonify({"lines": [], "error": str(e)})

        wanted = request.args.get("lines", "500")
        if wanted != "all":
            try:
                count = int(wanted)
            except ValueError:
                count = None
            if count is not None:
                lines = lines[-count:] if count > 0 else []
        return flask.jsonify({"lines": lines, "total": len(lines)})

    @bp.route("/api/system-logs")
    @authorise
    def system_logs():
        limit = min(request.args.get("limit", 100, type=int), MAX_SYSTEM_LOGS)
        conn = get_db_connection()
        try:
            events = recent_events(conn, limit)
        finally:
            conn.close()
        return flask.jsonify({"success": True, "logs": events})

    @bp.route("/healthz")
    def healthz():
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        return flask.jsonify({"status": "ok"})

    return bp
