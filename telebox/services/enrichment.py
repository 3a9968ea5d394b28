"""TMDB enrichment worker.

Drains the ``tmdb_pending`` queue that catalog imports fill. Calls to TMDB are
spaced by a fixed throttle; a rejected token stops the current batch and the
polling loop waits for the next interval instead of hammering the API.
"""
import json
import logging
import threading
import time

from ..db import log_event, utcnow_iso
from ..exceptions import ContentNotFoundError, TMDBAuthError, TMDBError
from .classify import clean_title, extract_year
from .tmdb import TMDBClient, build_enrichment

logger = logging.getLogger("Telebox")

QUEUE_STATUSES = ("pending", "done", "not_found", "error")


def default_client_factory(settings):
    return TMDBClient(
        settings.get("tmdb token", ""),
        language=settings.get("tmdb language", "pt-BR"),
        timeout=settings.get("tmdb timeout", 10),
    )


class EnrichmentWorker:
    def __init__(
        self,
        *,
        get_db_connection,
        get_settings,
        logger=logger,
        client_factory=default_client_factory,
        sleep=time.sleep,
    ):
        self.get_db_connection = get_db_connection
        self.get_settings = get_settings
        self.logger = logger
        self.client_factory = client_factory
        self.sleep = sleep
        self._stop = threading.Event()
        self._batch_lock = threading.Lock()
        # Set once the worker has called TMDB, so later batches open with a throttle pause
        self._api_called = False

    def stop(self):
        self._stop.set()

    @property
    def stopped(self):
        return self._stop.is_set()

    def _search(self, client, name, media_type, throttle):
        title = clean_title(name) or name
        year = extract_year(name)
        result = client.search(title, media_type, year)
        if result is None and year:
            self.sleep(throttle)
            result = client.search(title, media_type)
        return result

    def enrich_one(self, conn, client, item, throttle=0.0):
        name, media_type = item["name"], item["type"]
        match = self._search(client, name, media_type, throttle)
        now = utcnow_iso()

        if match is None:
            conn.execute(
                """
                UPDATE tmdb_pending
                SET status = 'not_found', attempts = attempts + 1, processed_at = ?
                WHERE id = ?
                """,
                (now, item["id"]),
            )
            conn.commit()
            self.logger.info("TMDB: no match for %s '%s'", media_type, name)
            return "not_found"

        self.sleep(throttle)
        details = client.details(match["id"], media_type)
        data = build_enrichment(details)
        genres = json.dumps(data["genres"])

        conn.execute(
            """
            UPDATE catalog
            SET tmdb_id = ?, original_title = ?, description = ?, poster_url = ?,
                backdrop_url = ?, year = ?, rating = ?, genres = ?, updated_at = ?
            WHERE name = ? AND type = ?
            """,
            (
                data["tmdb_id"], data["original_title"], data["description"], data["poster_url"],
                data["backdrop_url"], data["year"], data["rating"], genres, now,
                name, media_type,
            ),
        )
        conn.execute(
            """
            INSERT INTO content (
                name, type, poster_url, genres, available, tmdb_id, original_title,
                description, backdrop_url, trailer_url, year, rating, country,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name, type) DO UPDATE SET
                poster_url = COALESCE(excluded.poster_url, content.poster_url),
                genres = excluded.genres,
                tmdb_id = excluded.tmdb_id,
                original_title = excluded.original_title,
                description = excluded.description,
                backdrop_url = excluded.backdrop_url,
                trailer_url = excluded.trailer_url,
                year = excluded.year,
                rating = excluded.rating,
                country = excluded.country,
                updated_at = excluded.updated_at
            """,
            (
                name, media_type, data["poster_url"], genres, data["tmdb_id"],
                data["original_title"], data["description"], data["backdrop_url"],
                data["trailer_url"], data["year"], data["rating"], data["country"],
                now, now,
            ),
        )
        content_id = conn.execute(
            "SELECT id FROM content WHERE name = ? AND type = ?", (name, media_type)
        ).fetchone()["id"]
        conn.execute(
            """
            UPDATE tmdb_pending
            SET status = 'done', content_id = ?, last_error = NULL, processed_at = ?
            WHERE id = ?
            """,
            (content_id, now, item["id"]),
        )
        conn.commit()
        self.logger.info("TMDB: enriched %s '%s' (tmdb id %s)", media_type, name, data["tmdb_id"])
        return "done"

    def _record_failure(self, conn, item, exc, max_attempts):
        attempts = (item["attempts"] or 0) + 1
        status = "error" if attempts >= max_attempts else "pending"
        conn.execute(
            "UPDATE tmdb_pending SET status = ?, attempts = ?, last_error = ?, processed_at = ? WHERE id = ?",
            (status, attempts, str(exc), utcnow_iso(), item["id"]),
        )
        conn.commit()
        self.logger.warning(
            "TMDB: failed to enrich '%s' (attempt %s/%s): %s", item["name"], attempts, max_attempts, exc
        )

    def process_batch(self, limit=None):
        settings = self.get_settings()
        limit = limit or settings.get("enrichment batch size", 20)
        max_attempts = max(1, settings.get("enrichment max attempts", 3))
        throttle = settings.get("tmdb throttle seconds", 0.3)
        counts = {"processed": 0, "done": 0, "not_found": 0, "errors": 0}

        with self._batch_lock:
            conn = self.get_db_connection()
            try:
                items = conn.execute(
                    """
                    SELECT id, name, type, attempts FROM tmdb_pending
                    WHERE status = 'pending' AND attempts < ?
                    ORDER BY id
                    LIMIT ?
                    """,
                    (max_attempts, int(limit)),
                ).fetchall()
                if not items:
                    return counts

                client = self.client_factory(settings)
                for item in items:
                    if self.stopped:
                        break
                    if self._api_called:
                        self.sleep(throttle)
                    try:
                        self._api_called = True
                        status = self.enrich_one(conn, client, item, throttle)
                    except TMDBAuthError:
                        raise
                    except TMDBError as e:
                        self._record_failure(conn, item, e, max_attempts)
                        counts["errors"] += 1
                    else:
                        counts[status] += 1
                    counts["processed"] += 1
            finally:
                conn.close()

        self.logger.info(
            "Enrichment batch: %s processed, %s enriched, %s not found, %s errors",
            counts["processed"], counts["done"], counts["not_found"], counts["errors"],
        )
        log_event("info", "Enrichment batch processed", counts)
        return counts

    def run_forever(self):
        self.logger.info("Enrichment worker started")
        while not self.stopped:
            settings = self.get_settings()
            poll = max(1, settings.get("enrichment poll seconds", 30))
            try:
                if not settings.get("enrichment enabled", True) or not settings.get("tmdb token"):
                    self.sleep(poll)
                    continue
                counts = self.process_batch(settings.get("enrichment batch size", 20))
                if not counts["processed"]:
                    self.sleep(poll)
            except TMDBAuthError as e:
                self.logger.error("Enrichment worker: %s; pausing until next poll", e)
                self.sleep(poll)
            except Exception as exc:
                self.logger.error("Enrichment worker error: %s", exc)
                self.sleep(300)
        self.logger.info("Enrichment worker stopped")

    def enrich_content(self, content_id):
        """Enrich a single content row immediately, bypassing the queue order."""
        settings = self.get_settings()
        conn = self.get_db_connection()
        try:
            row = conn.execute(
                "SELECT id, name, type FROM content WHERE id = ?", (content_id,)
            ).fetchone()
            if row is None:
                raise ContentNotFoundError(f"Content {content_id} not found")

            conn.execute(
                """
                INSERT OR IGNORE INTO tmdb_pending (name, type, status, attempts, created_at)
                VALUES (?, ?, 'pending', 0, ?)
                """,
                (row["name"], row["type"], utcnow_iso()),
            )
            conn.commit()
            item = conn.execute(
                "SELECT id, name, type, attempts FROM tmdb_pending WHERE name = ? AND type = ?",
                (row["name"], row["type"]),
            ).fetchone()

            client = self.client_factory(settings)
            status = self.enrich_one(conn, client, item, settings.get("tmdb throttle seconds", 0.3))
            content = dict(
                conn.execute("SELECT * FROM content WHERE id = ?", (content_id,)).fetchone()
            )
        finally:
            conn.close()

        content["genres"] = json.loads(content["genres"]) if content.get("genres") else []
        return {"status": status, "content": content}

    def queue_status(self):
        conn = self.get_db_connection()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM tmdb_pending GROUP BY status"
            ).fetchall()
        finally:
            conn.close()
        counts = {status: 0 for status in QUEUE_STATUSES}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts
