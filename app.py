#!/usr/bin/env python3
import logging
import os
import time

from flask import Flask
import waitress

from telebox.config import CONFIG_PATH, DB_PATH, LOG_DIR, getSettings, loadConfig
from telebox.db import get_db_connection, init_db
from telebox.blueprints.catalog import create_catalog_blueprint
from telebox.blueprints.enrichment import create_enrichment_blueprint
from telebox.blueprints.epg import create_epg_blueprint
from telebox.blueprints.misc import LOG_FILE_NAME, create_misc_blueprint
from telebox.blueprints.notifications import create_notifications_blueprint
from telebox.blueprints.settings import create_settings_blueprint
from telebox.services.enrichment import EnrichmentWorker
from telebox.services.epg import refresh_epg
from telebox.services.jobs import JobManager
from telebox.services.notifications import fan_out_team_notifications
from telebox.services.scheduler import (
    start_enrichment_worker,
    start_epg_cache_cleanup_scheduler,
    start_epg_scheduler,
    start_vacuum_scheduler,
)


def configure_logging():
    """File log (served by /log) plus a shorter console format for docker logs."""
    log = logging.getLogger("Telebox")
    log.setLevel(logging.INFO)

    fileHandler = logging.FileHandler(os.path.join(LOG_DIR, LOG_FILE_NAME))
    fileHandler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    log.addHandler(fileHandler)

    consoleHandler = logging.StreamHandler()
    consoleHandler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    log.addHandler(consoleHandler)
    return log


logger = configure_logging()

BIND_HOST = os.getenv("BIND_HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8001"))

logger.info(f"Using config file: {CONFIG_PATH}")
logger.info(f"Using database file: {DB_PATH}")


def get_epg_refresh_interval():
    try:
        return float(getSettings().get("epg refresh interval", 6))
    except (TypeError, ValueError):
        return 6.0


def run_epg_refresh():
    return refresh_epg(get_db_connection, getSettings(), logger)


def run_team_notifications():
    conn = get_db_connection()
    try:
        return fan_out_team_notifications(conn, time.time(), getSettings(), logger)
    finally:
        conn.close()


enrichment_worker = EnrichmentWorker(
    get_db_connection=get_db_connection,
    get_settings=getSettings,
    logger=logger,
)

job_manager = JobManager(
    logger=logger,
    getSettings=getSettings,
    refresh_epg=run_epg_refresh,
    enrich_pending=enrichment_worker.process_batch,
    notify_teams=run_team_notifications,
)

app = Flask(__name__)
for blueprint in (
    create_settings_blueprint(job_manager.enqueue_epg_refresh),
    create_catalog_blueprint(
        logger=logger,
        getSettings=getSettings,
        get_db_connection=get_db_connection,
        enqueue_enrichment=job_manager.enqueue_enrichment,
    ),
    create_enrichment_blueprint(
        logger=logger, enrichment_worker=enrichment_worker, job_manager=job_manager
    ),
    create_epg_blueprint(
        logger=logger,
        getSettings=getSettings,
        get_db_connection=get_db_connection,
        job_manager=job_manager,
    ),
    create_notifications_blueprint(
        logger=logger, get_db_connection=get_db_connection, job_manager=job_manager
    ),
    create_misc_blueprint(LOG_DIR=LOG_DIR, get_db_connection=get_db_connection),
):
    app.register_blueprint(blueprint)


def start_background_tasks():
    conn = get_db_connection()
    try:
        programmes = conn.execute("SELECT COUNT(*) FROM programmes").fetchone()[0]
    finally:
        conn.close()
    if programmes == 0 and getSettings().get("epg xmltv url"):
        logger.info("Guide is empty, queueing initial EPG refresh...")
        job_manager.enqueue_epg_refresh(reason="startup")

    start_epg_scheduler(
        job_manager=job_manager,
        get_interval_hours=get_epg_refresh_interval,
        logger=logger,
    )
    start_enrichment_worker(enrichment_worker, logger)
    start_vacuum_scheduler(getSettings=getSettings, logger=logger)
    start_epg_cache_cleanup_scheduler(logger=logger)


if __name__ == "__main__":
    loadConfig()
    init_db(logger)
    start_background_tasks()

    if os.environ.get("TERM_PROGRAM") == "vscode":
        app.run(host=BIND_HOST, port=PORT, debug=True)
    else:
        waitress.serve(app, host=BIND_HOST, port=PORT, _quiet=True, threads=24)
