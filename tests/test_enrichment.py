import json
import logging

import pytest

from telebox.exceptions import ContentNotFoundError, TMDBAuthError, TMDBError
from telebox.services.enrichment import EnrichmentWorker

log = logging.getLogger("Telebox.tests")

MATRIX_DETAILS = {
    "id": 603,
    "original_title": "The Matrix",
    "overview": "Neo...",
    "poster_path": "/matrix.jpg",
    "release_date": "1999-03-30",
    "vote_average": 8.2,
    "genres": [{"name": "Ação"}],
}


def _queue(conn, name, media_type, attempts=0, status="pending"):
    conn.execute(
        "INSERT INTO tmdb_pending (name, type, status, attempts, created_at) VALUES (?, ?, ?, ?, '2025-01-01')",
        (name, media_type, status, attempts),
    )
    conn.commit()


def _catalog(conn, name, media_type, url):
    conn.execute(
        "INSERT INTO catalog (entry_key, name, url, type) VALUES (?, ?, ?, ?)",
        (url, name, url, media_type),
    )
    conn.commit()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def worker(db, settings, tmdb_client, sleeps):
    settings["tmdb token"] = "token"
    settings["tmdb throttle seconds"] = 0.25
    return EnrichmentWorker(
        get_db_connection=db,
        get_settings=lambda: settings,
        logger=log,
        client_factory=lambda _settings: tmdb_client,
        sleep=sleeps.append,
    )


class TestProcessBatch:
    def test_enriches_catalog_and_content(self, worker, conn, tmdb_client):
        _catalog(conn, "Matrix (1999)", "movie", "http://s/m1")
        _catalog(conn, "Matrix (1999)", "movie", "http://s/m2")
        _queue(conn, "Matrix (1999)", "movie")
        tmdb_client.search.return_value = {"id": 603}
        tmdb_client.details.return_value = MATRIX_DETAILS

        counts = worker.process_batch()

        assert counts == {"processed": 1, "done": 1, "not_found": 0, "errors": 0}
        tmdb_client.search.assert_called_once_with("Matrix", "movie", 1999)
        tmdb_client.details.assert_called_once_with(603, "movie")

        rows = conn.execute("SELECT tmdb_id, poster_url, year, genres FROM catalog").fetchall()
        assert [r["tmdb_id"] for r in rows] == [603, 603]
        assert rows[0]["poster_url"] == "https://image.tmdb.org/t/p/w500/matrix.jpg"
        assert json.loads(rows[0]["genres"]) == ["Ação"]

        content = conn.execute("SELECT * FROM content WHERE name = 'Matrix (1999)'").fetchone()
        assert content["tmdb_id"] == 603
        assert content["country"] == "BR"
        pending = conn.execute("SELECT status, content_id, processed_at FROM tmdb_pending").fetchone()
        assert pending["status"] == "done"
        assert pending["content_id"] == content["id"]
        assert pending["processed_at"]

    def test_throttles_between_api_calls(self, worker, conn, tmdb_client, sleeps):
        _queue(conn, "A", "movie")
        _queue(conn, "B", "movie")
        tmdb_client.search.return_value = {"id": 1}
        tmdb_client.details.return_value = {"id": 1}

        worker.process_batch()

        # search A, details A, search B, details B
        assert sleeps == [0.25, 0.25, 0.25]

    def test_not_found(self, worker, conn, tmdb_client):
        _queue(conn, "Obscure Thing", "series")

        counts = worker.process_batch()

        assert counts["not_found"] == 1
        row = conn.execute("SELECT status, attempts FROM tmdb_pending").fetchone()
        assert (row["status"], row["attempts"]) == ("not_found", 1)
        tmdb_client.details.assert_not_called()

    def test_retries_search_without_year(self, worker, conn, tmdb_client):
        _queue(conn, "Matrix (1999)", "movie")
        tmdb_client.search.side_effect = [None, {"id": 603}]
        tmdb_client.details.return_value = MATRIX_DETAILS

        assert worker.process_batch()["done"] == 1
        assert tmdb_client.search.call_args_list[1].args == ("Matrix", "movie")

    def test_error_increments_attempts_then_gives_up(self, worker, conn, tmdb_client, settings):
        settings["enrichment max attempts"] = 2
        _queue(conn, "Broken", "movie")
        tmdb_client.search.side_effect = TMDBError("TMDB /search/movie returned 500")

        first = worker.process_batch()
        row = conn.execute("SELECT status, attempts, last_error FROM tmdb_pending").fetchone()
        assert first["errors"] == 1
        assert (row["status"], row["attempts"]) == ("pending", 1)
        assert "500" in row["last_error"]

        worker.process_batch()
        row = conn.execute("SELECT status, attempts FROM tmdb_pending").fetchone()
        assert (row["status"], row["attempts"]) == ("error", 2)

        assert worker.process_batch()["processed"] == 0

    def test_auth_error_stops_batch(self, worker, conn, tmdb_client):
        _queue(conn, "A", "movie")
        _queue(conn, "B", "movie")
        tmdb_client.search.side_effect = TMDBAuthError("TMDB rejected credentials (401)")

        with pytest.raises(TMDBAuthError):
            worker.process_batch()

        assert tmdb_client.search.call_count == 1
        statuses = [r["status"] for r in conn.execute("SELECT status FROM tmdb_pending").fetchall()]
        assert statuses == ["pending", "pending"]

    def test_respects_limit_and_order(self, worker, conn, tmdb_client):
        for name in ("first", "second", "third"):
            _queue(conn, name, "movie")

        worker.process_batch(limit=2)

        searched = [c.args[0] for c in tmdb_client.search.call_args_list]
        assert searched == ["first", "second"]


class TestRunForever:
    def test_idles_without_token(self, worker, settings, tmdb_client, sleeps):
        settings["tmdb token"] = ""
        settings["enrichment poll seconds"] = 15

        def sleep(seconds):
            sleeps.append(seconds)
            worker.stop()

        worker.sleep = sleep
        worker.run_forever()

        assert sleeps == [15]
        tmdb_client.search.assert_not_called()

    def test_sleeps_when_queue_empty(self, worker, settings, sleeps):
        settings["enrichment poll seconds"] = 7

        def sleep(seconds):
            sleeps.append(seconds)
            worker.stop()

        worker.sleep = sleep
        worker.run_forever()

        assert sleeps == [7]

    def test_throttles_across_batch_boundaries(self, worker, conn, settings, tmdb_client):
        settings["enrichment batch size"] = 1
        settings["enrichment poll seconds"] = 7
        _queue(conn, "A", "movie")
        _queue(conn, "B", "movie")
        events = []

        def search(title, media_type, year=None):
            events.append(("search", title))

        def sleep(seconds):
            events.append(("sleep", seconds))
            if seconds == 7:
                worker.stop()

        tmdb_client.search.side_effect = search
        worker.sleep = sleep
        worker.run_forever()

        assert events == [("search", "A"), ("sleep", 0.25), ("search", "B"), ("sleep", 7)]

    def test_failing_item_is_spaced_between_batches(self, worker, conn, settings, tmdb_client, sleeps):
        settings["enrichment max attempts"] = 3
        _queue(conn, "Broken", "movie")
        tmdb_client.search.side_effect = TMDBError("TMDB /search/movie returned 503")

        for _ in range(3):
            worker.process_batch()

        assert tmdb_client.search.call_count == 3
        assert sleeps == [0.25, 0.25]

    def test_auth_error_pauses_until_next_poll(self, worker, conn, settings, tmdb_client, sleeps):
        settings["enrichment poll seconds"] = 9
        _queue(conn, "A", "movie")
        tmdb_client.search.side_effect = TMDBAuthError("bad token")

        def sleep(seconds):
            sleeps.append(seconds)
            worker.stop()

        worker.sleep = sleep
        worker.run_forever()

        assert sleeps == [9]


class TestEnrichContent:
    def test_enriches_single_content_row(self, worker, conn, tmdb_client):
        conn.execute("INSERT INTO content (name, type) VALUES ('Matrix (1999)', 'movie')")
        conn.commit()
        content_id = conn.execute("SELECT id FROM content").fetchone()["id"]
        tmdb_client.search.return_value = {"id": 603}
        tmdb_client.details.return_value = MATRIX_DETAILS

        result = worker.enrich_content(content_id)

        assert result["status"] == "done"
        assert result["content"]["tmdb_id"] == 603
        assert result["content"]["genres"] == ["Ação"]

    def test_unknown_content(self, worker):
        with pytest.raises(ContentNotFoundError):
            worker.enrich_content(999)


def test_queue_status(worker, conn):
    _queue(conn, "A", "movie")
    _queue(conn, "B", "movie", status="done")
    _queue(conn, "C", "series", status="done")

    assert worker.queue_status() == {"pending": 1, "done": 2, "not_found": 0, "error": 0}
