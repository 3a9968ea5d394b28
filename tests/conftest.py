"""Shared fixtures.

Paths are pointed at a scratch directory before ``telebox`` is imported, since
``telebox.config`` creates its data and log directories at import time.
"""
import logging
import os
import tempfile

_SCRATCH = tempfile.mkdtemp(prefix="telebox-tests-")
os.environ.setdefault("DATA_DIR", os.path.join(_SCRATCH, "data"))
os.environ.setdefault("LOG_DIR", os.path.join(_SCRATCH, "logs"))
os.environ.setdefault("CONFIG", os.path.join(_SCRATCH, "data", "Telebox.json"))
os.environ.setdefault("DB_PATH", os.path.join(_SCRATCH, "data", "telebox.db"))

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from flask import Flask  # noqa: E402

from telebox import config as config_mod  # noqa: E402
from telebox.db import get_db_connection, init_db  # noqa: E402


@pytest.fixture
def logger():
    return logging.getLogger("Telebox.tests")


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Each test gets its own config file and an unloaded in-memory config."""
    config_path = str(tmp_path / "Telebox.json")
    monkeypatch.setattr(config_mod, "CONFIG_PATH", config_path)
    monkeypatch.setattr(config_mod, "_lock_path", config_path + ".lock")
    monkeypatch.setattr(config_mod, "config", {})
    for env_name in config_mod.ENV_OVERRIDES.values():
        monkeypatch.delenv(env_name, raising=False)
    return config_path


@pytest.fixture
def db(monkeypatch, tmp_path):
    """Initialized database; yields the DB_PATH-aware connection factory."""
    monkeypatch.setenv("DB_PATH", str(tmp_path / "telebox.db"))
    init_db(logging.getLogger("Telebox.tests"))
    return get_db_connection


@pytest.fixture
def conn(db):
    connection = db()
    yield connection
    connection.close()


@pytest.fixture
def settings():
    """Default settings with retry delays removed."""
    values = config_mod.coerce_settings({})
    values["import retry base delay"] = 0.0
    values["tmdb throttle seconds"] = 0.0
    values["notification timezone"] = "UTC"
    return values


@pytest.fixture
def job_manager():
    manager = MagicMock()
    manager.enqueue_epg_refresh.return_value = "queued"
    manager.enqueue_enrichment.return_value = "queued"
    manager.enqueue_team_notifications.return_value = "queued"
    manager.get_status.return_value = {"status": "idle"}
    return manager


@pytest.fixture
def tmdb_client():
    client = MagicMock()
    client.search.return_value = None
    return client


@pytest.fixture
def enrichment_worker(db, settings, tmdb_client):
    from telebox.services.enrichment import EnrichmentWorker

    return EnrichmentWorker(
        get_db_connection=db,
        get_settings=lambda: settings,
        logger=logging.getLogger("Telebox.tests"),
        client_factory=lambda _settings: tmdb_client,
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def app(db, tmp_path, job_manager, enrichment_worker, logger):
    from telebox.blueprints.catalog import create_catalog_blueprint
    from telebox.blueprints.enrichment import create_enrichment_blueprint
    from telebox.blueprints.epg import create_epg_blueprint
    from telebox.blueprints.misc import create_misc_blueprint
    from telebox.blueprints.notifications import create_notifications_blueprint
    from telebox.blueprints.settings import create_settings_blueprint

    log_dir = tmp_path / "logs"
    log_dir.mkdir()

    flask_app = Flask(__name__)
    flask_app.config["TESTING"] = True
    flask_app.register_blueprint(create_settings_blueprint(job_manager.enqueue_epg_refresh))
    flask_app.register_blueprint(
        create_catalog_blueprint(
            logger=logger,
            getSettings=config_mod.getSettings,
            get_db_connection=db,
            enqueue_enrichment=job_manager.enqueue_enrichment,
        )
    )
    flask_app.register_blueprint(
        create_enrichment_blueprint(
            logger=logger, enrichment_worker=enrichment_worker, job_manager=job_manager
        )
    )
    flask_app.register_blueprint(
        create_epg_blueprint(
            logger=logger,
            getSettings=config_mod.getSettings,
            get_db_connection=db,
            job_manager=job_manager,
        )
    )
    flask_app.register_blueprint(
        create_notifications_blueprint(logger=logger, get_db_connection=db, job_manager=job_manager)
    )
    flask_app.register_blueprint(create_misc_blueprint(LOG_DIR=str(log_dir), get_db_connection=db))
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
