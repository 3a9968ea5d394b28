from flask import Blueprint, jsonify, request

from ..exceptions import InvalidRequestError
from ..security import authorise
from .errors import json_error, register_error_handlers


def create_enrichment_blueprint(*, logger, enrichment_worker, job_manager):
    bp = Blueprint("enrichment", __name__)
    register_error_handlers(bp, logger)

    @bp.route("/api/enrich", methods=["POST"])
    @authorise
    def enrich_content():
        payload = request.get_json(silent=True) or {}
        content_id = payload.get("contentId")
        if content_id in (None, ""):
            return json_error("contentId is required", 400)
        try:
            content_id = int(content_id)
        except (TypeError, ValueError):
            raise InvalidRequestError("contentId must be an integer") from None

        logger.info(f"Manual TMDB enrichment requested for content {content_id}")
        result = enrichment_worker.enrich_content(content_id)
        return jsonify({"success": True, **result})

    @bp.route("/api/enrich/run", methods=["POST"])
    @authorise
    def run_enrichment():
        status = job_manager.enqueue_enrichment(reason="manual")
        return jsonify({"success": True, "status": status})

    @bp.route("/api/enrich/status", methods=["GET"])
    @authorise
    def enrichment_status():
        return jsonify(
            {
                "success": True,
                "queue": enrichment_worker.queue_status(),
                "job": job_manager.get_status("enrich_pending"),
            }
        )

    return bp
