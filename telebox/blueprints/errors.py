from flask import jsonify
from werkzeug.exceptions import HTTPException

from ..exceptions import TeleboxError


def json_error(message, status_code):
    return jsonify({"success": False, "error": message}), status_code


def register_error_handlers(bp, logger):
    """Turn errors raised by a blueprint's views into JSON error bodies."""

    @bp.errorhandler(TeleboxError)
    def handle_telebox_error(exc):
        logger.error("%s: %s", type(exc).__name__, exc.message)
        return json_error(exc.message, exc.status_code)

    @bp.errorhandler(Exception)
    def handle_unexpected_error(exc):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception("Unhandled error: %s", exc)
        return json_error(str(exc), 500)
