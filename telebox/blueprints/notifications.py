from flask import Blueprint, jsonify, request

from ..exceptions import InvalidRequestError
from ..security import authorise
from ..services.notifications import list_notifications, mark_read, set_favorite_team
from .errors import json_error, register_error_handlers


def create_notifications_blueprint(*, logger, get_db_connection, job_manager):
    bp = Blueprint("notifications", __name__)
    register_error_handlers(bp, logger)

    @bp.route("/api/notifications/teams/run", methods=["POST"])
    @authorise
    def run_team_notifications():
        status = job_manager.enqueue_team_notifications(reason="manual")
        return jsonify({"success": True, "status": status})

    @bp.route("/api/notifications/teams/status", methods=["GET"])
    @authorise
    def team_notifications_status():
        return jsonify({"success": True, "job": job_manager.get_status("notify_teams")})

    @bp.route("/api/notifications", methods=["GET"])
    @authorise
    def notifications():
        user_id = (request.args.get("user_id") or "").strip()
        if not user_id:
            raise InvalidRequestError("user_id is required")
        conn = get_db_connection()
        try:
            items = list_notifications(conn, user_id, request.args.get("status") or None)
        finally:
            conn.close()
        return jsonify({"success": True, "notifications": items})

    @bp.route("/api/notifications/<int:notification_id>/read", methods=["POST"])
    @authorise
    def read(notification_id):
        conn = get_db_connection()
        try:
            updated = mark_read(conn, notification_id)
        finally:
            conn.close()
        if not updated:
            return json_error("Notification not found", 404)
        return jsonify({"success": True})

    @bp.route("/api/profiles/<user_id>/team", methods=["PUT"])
    @authorise
    def favorite_team(user_id):
        payload = request.get_json(silent=True) or {}
        if "favorite_team" not in payload:
            raise InvalidRequestError("favorite_team is required")
        conn = get_db_connection()
        try:
            profile = set_favorite_team(
                conn,
                user_id,
                payload.get("favorite_team"),
                name=payload.get("name"),
                email=payload.get("email"),
            )
        finally:
            conn.close()
        logger.info(f"Favorite team updated for {user_id}")
        return jsonify({"success": True, "profile": profile})

    return bp
