"""Daemon loops started once at boot.

Each loop sleeps first and logs, rather than raises, its own failures so a
bad iteration never kills the thread.
"""
import threading
import time

from ..db import get_db_connection, vacuum_db
from .epg_cache import cleanup_epg_cache

ERROR_BACKOFF_SECONDS = 300


def _start_loop(name, body, logger):
    def loop():
        while True:
            try:
                body()
            except Exception as exc:
                logger.error("%s error: %s", name, exc)
                time.sleep(ERROR_BACKOFF_SECONDS)

    thread = threading.Thread(target=loop, name=name, daemon=True)
    thread.start()
    logger.info("%s started!", name)
    return thread


def start_epg_scheduler(*, job_manager, get_interval_hours, logger):
    """Queue an EPG refresh every ``get_interval_hours()`` hours (at least one minute)."""
    def tick():
        hours = get_interval_hours()
        seconds = max(60, int(hours * 3600))
        logger.info("EPG scheduler: next refresh in %s hours (%s seconds)", hours, seconds)
        time.sleep(seconds)
        status = job_manager.enqueue_epg_refresh(reason="scheduled")
        logger.info("EPG scheduler: refresh %s", status)

    return _start_loop("EPG scheduler", tick, logger)


def start_enrichment_worker(worker, logger):
    """The worker owns its polling loop; it only needs a thread."""
    thread = threading.Thread(target=worker.run_forever, name="TMDB enrichment", daemon=True)
    thread.start()
    logger.info("TMDB enrichment worker thread started!")
    return thread


def start_vacuum_scheduler(*, getSettings, logger):
    def tick():
        hours = float(getSettings().get("vacuum interval hours", 0) or 0)
        if hours <= 0:
            time.sleep(3600)
            return
        time.sleep(max(60, int(hours * 3600)))
        logger.info("DB vacuum scheduler: running VACUUM...")
        vacuum_db()
        logger.info("DB vacuum scheduler: completed.")

    return _start_loop("DB vacuum scheduler", tick, logger)


def start_epg_cache_cleanup_scheduler(*, logger, interval_seconds=3600):
    def tick():
        time.sleep(interval_seconds)
        conn = get_db_connection()
        try:
            deleted = cleanup_epg_cache(conn, time.time())
        finally:
            conn.close()
        if deleted:
            logger.info("EPG cache cleanup: removed %s expired entries.", deleted)

    return _start_loop("EPG cache cleanup", tick, logger)
