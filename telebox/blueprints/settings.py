import logging

from flask import Blueprint, jsonify, request

from ..config import defaultSettings, getSettings, saveSettings
from ..exceptions import InvalidRequestError
from ..security import authorise
from .errors import register_error_handlers

logger = logging.getLogger("Telebox")


def create_settings_blueprint(enqueue_epg_refresh=None):
    bp = Blueprint("settings", __name__)
    register_error_handlers(bp, logger)

    @bp.route("/api/settings", methods=["GET"])
    @authorise
    def settings_data():
        return jsonify(getSettings())

    @bp.route("/api/settings", methods=["POST"])
    @authorise
    def save():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise InvalidRequestError("Settings must be a JSON object")

        settings = getSettings()
        previous_url = settings.get("epg xmltv url")
        for setting in defaultSettings:
            if setting in payload:
                settings[setting] = payload[setting]

        saveSettings(settings)
        logger.info("Settings saved!")

        saved = getSettings()
        if enqueue_epg_refresh and saved.get("epg xmltv url") and saved.get("epg xmltv url") != previous_url:
            enqueue_epg_refresh(reason="settings_changed")
        return jsonify({"success": True, "settings": saved})

    return bp
