from flask import Blueprint, jsonify, request

from ..db import log_event
from ..exceptions import PlaylistFormatError, UploadTooLargeError
from ..security import authorise
from ..services.catalog import CatalogIngestor, browse_catalog, catalog_summary
from ..services.m3u import (
    build_catalog_document,
    catalog_stats,
    load_catalog_json,
    parse_chunk_payload,
    parse_m3u,
)
from .errors import register_error_handlers

PREVIEW_SIZE = 50
MAX_PAGE_SIZE = 500


def create_catalog_blueprint(*, logger, getSettings, get_db_connection, enqueue_enrichment=None):
    bp = Blueprint("catalog", __name__)
    register_error_handlers(bp, logger)

    def _check_size(size):
        max_mb = getSettings().get("max upload mb", 50)
        if max_mb and size > max_mb * 1024 * 1024:
            raise UploadTooLargeError(f"Upload exceeds {max_mb} MB")

    def _read_upload():
        """Raw bytes from a multipart ``file`` field or the request body."""
        if request.content_length:
            _check_size(request.content_length)
        upload = request.files.get("file")
        data = upload.read() if upload else request.get_data()
        _check_size(len(data))
        return data

    def _ingest(channels, import_uuid=None, metadata=None, finalize=True):
        settings = getSettings()
        conn = get_db_connection()
        try:
            result = CatalogIngestor(conn, settings, logger).ingest(
                channels, import_uuid=import_uuid, metadata=metadata, finalize=finalize
            )
        finally:
            conn.close()
        if result.enrichment_queued and enqueue_enrichment and settings.get("enrichment enabled", True):
            enqueue_enrichment(reason="catalog_import")
        return result

    @bp.route("/api/catalog/m3u", methods=["POST"])
    @authorise
    def import_m3u():
        if "file" in request.files:
            content = _read_upload().decode("utf-8", errors="replace")
        else:
            payload = request.get_json(silent=True) or {}
            content = payload.get("m3uContent") or ""
            _check_size(len(content.encode("utf-8")))
        if not content.strip():
            raise PlaylistFormatError("No M3U content provided")

        entries = parse_m3u(content)
        if not entries:
            raise PlaylistFormatError("No valid entries found in M3U content")
        logger.info(f"M3U upload parsed: {len(entries)} entries")

        document = build_catalog_document(entries)
        result = _ingest(document["channels"], metadata=document["metadata"])
        return jsonify(
            {
                **result.to_dict(),
                "catalog_stats": catalog_stats(document["channels"]),
                "metadata": document["metadata"],
                "preview": document["channels"][:PREVIEW_SIZE],
            }
        )

    @bp.route("/api/catalog/json", methods=["POST"])
    @authorise
    def import_json():
        document = load_catalog_json(_read_upload().decode("utf-8", errors="replace"))
        if not document["channels"]:
            raise PlaylistFormatError("Catalog contains no channels")
        result = _ingest(document["channels"], metadata=document["metadata"])
        return jsonify(result.to_dict())

    @bp.route("/api/catalog/chunk", methods=["POST"])
    @authorise
    def import_chunk():
        channels, metadata = parse_chunk_payload(_read_upload())
        if not channels:
            raise PlaylistFormatError("Chunk contains no channels")
        import_uuid = (request.args.get("import_uuid") or "").strip() or None
        result = _ingest(channels, import_uuid=import_uuid, metadata=metadata, finalize=False)
        return jsonify(result.to_dict())

    @bp.route("/api/catalog/imports/<import_uuid>/finalize", methods=["POST"])
    @authorise
    def finalize_import(import_uuid):
        conn = get_db_connection()
        try:
            cleaned = CatalogIngestor(conn, getSettings(), logger).finalize(import_uuid)
            log_event(
                "info",
                "Catalog import finalized",
                {"import_uuid": import_uuid, "cleaned": cleaned},
                conn=conn,
            )
        finally:
            conn.close()
        return jsonify({"success": True, "import_uuid": import_uuid, "cleaned": cleaned})

    @bp.route("/api/catalog", methods=["DELETE"])
    @authorise
    def clear_catalog():
        conn = get_db_connection()
        try:
            deleted = CatalogIngestor(conn, getSettings(), logger).clear()
        finally:
            conn.close()
        return jsonify({"success": True, "deleted": deleted, "message": "Catalog cleared"})

    @bp.route("/api/catalog", methods=["GET"])
    @authorise
    def list_catalog():
        limit = max(1, min(request.args.get("limit", 50, type=int), MAX_PAGE_SIZE))
        offset = max(request.args.get("offset", 0, type=int), 0)
        conn = get_db_connection()
        try:
            page = browse_catalog(
                conn,
                content_type=request.args.get("type") or None,
                quality=request.args.get("quality") or None,
                group=request.args.get("group") or None,
                query=request.args.get("q") or None,
                limit=limit,
                offset=offset,
            )
        finally:
            conn.close()
        return jsonify({"success": True, "limit": limit, "offset": offset, **page})

    @bp.route("/api/catalog/stats", methods=["GET"])
    @authorise
    def stats():
        conn = get_db_connection()
        try:
            summary = catalog_summary(conn)
        finally:
            conn.close()
        return jsonify({"success": True, **summary})

    return bp
