import time

from flask import Blueprint, jsonify, request

from ..exceptions import InvalidRequestError
from ..security import authorise
from ..services.epg import epg_summary, upcoming_programmes
from ..services.epg_cache import cache_entries, cleanup_epg_cache, rebuild_epg_cache
from .errors import register_error_handlers


def create_epg_blueprint(*, logger, getSettings, get_db_connection, job_manager):
    bp = Blueprint("epg", __name__)
    register_error_handlers(bp, logger)

    @bp.route("/api/epg/refresh", methods=["POST"])
    @authorise
    def refresh():
        status = job_manager.enqueue_epg_refresh(reason="manual")
        logger.info("EPG refresh requested (%s)", status)
        return jsonify({"success": True, "status": status})

    @bp.route("/api/epg/status", methods=["GET"])
    @authorise
    def status():
        conn = get_db_connection()
        try:
            summary = epg_summary(conn)
        finally:
            conn.close()
        return jsonify({"success": True, "job": job_manager.get_status("refresh_epg"), **summary})

    @bp.route("/api/epg", methods=["GET"])
    @authorise
    def guide():
        default_hours = getSettings().get("epg future hours", 24)
        hours = request.args.get("hours", default_hours, type=float)
        channel = (request.args.get("channel") or "").strip() or None
        conn = get_db_connection()
        try:
            programmes = upcoming_programmes(conn, time.time(), hours=hours, channel=channel)
        finally:
            conn.close()
        return jsonify({"success": True, "total": len(programmes), "programmes": programmes})

    @bp.route("/api/epg/cache", methods=["GET"])
    @authorise
    def cache():
        channel = (request.args.get("channel") or "").strip() or None
        conn = get_db_connection()
        try:
            entries = cache_entries(conn, channel)
        finally:
            conn.close()
        return jsonify({"success": True, "entries": entries})

    @bp.route("/api/epg/cache", methods=["POST"])
    @authorise
    def manage_cache():
        payload = request.get_json(silent=True) or {}
        action = payload.get("action") or "cleanup"
        now = time.time()
        conn = get_db_connection()
        try:
            if action == "cleanup":
                count = cleanup_epg_cache(conn, now)
                message = f"{count} expired cache entries removed"
            elif action == "refresh":
                count = rebuild_epg_cache(conn, now, getSettings().get("epg cache ttl hours", 6))
                message = f"{count} cache entries rebuilt"
            else:
                raise InvalidRequestError(f"Unknown cache action: {action}")
        finally:
            conn.close()
        logger.info(f"EPG cache {action}: {message}")
        return jsonify({"success": True, "action": action, "count": count, "message": message})

    return bp
