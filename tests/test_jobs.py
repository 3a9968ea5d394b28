import logging
import threading
from unittest.mock import MagicMock

import pytest

from telebox.services import jobs as jobs_mod
from telebox.services.jobs import JobManager

log = logging.getLogger("Telebox.tests")


class FakeClock:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(jobs_mod, "time", fake)
    return fake


@pytest.fixture
def settings():
    return {"team notifications enabled": True}


def _manager(settings, max_workers=0, max_retries=2, **handlers):
    """With max_workers=0 nothing runs until the test drives ``_worker`` itself."""
    defaults = {
        "refresh_epg": MagicMock(return_value={"status": "completed"}),
        "enrich_pending": MagicMock(return_value={"processed": 0}),
        "notify_teams": MagicMock(return_value={"notifications_created": 0}),
    }
    defaults.update(handlers)
    return JobManager(
        logger=log,
        getSettings=lambda: settings,
        max_workers=max_workers,
        max_retries=max_retries,
        **defaults,
    )


class TestEnqueue:
    def test_same_job_is_queued_once(self, settings, clock):
        manager = _manager(settings)

        assert manager.enqueue_enrichment() == "queued"
        assert manager.enqueue_enrichment() == "queued"
        assert len(manager.queue) == 1
        assert manager.get_status("enrich_pending")["status"] == "queued"

    def test_running_job_reports_running(self, settings, clock):
        seen = []
        manager = _manager(settings)
        manager.handlers["enrich_pending"] = lambda: seen.append(manager.enqueue_enrichment())

        manager.enqueue_enrichment()
        manager._worker()

        assert seen == ["running"]

    def test_unknown_job_type(self, settings):
        with pytest.raises(ValueError):
            _manager(settings).enqueue("refresh_portal")

    def test_idle_status(self, settings):
        assert _manager(settings).get_status("notify_teams") == {"status": "idle"}


class TestWorker:
    def test_completed_job_records_result(self, settings, clock):
        handler = MagicMock(return_value={"processed": 3})
        manager = _manager(settings, enrich_pending=handler)

        manager.enqueue_enrichment(reason="catalog_import")
        manager._worker()

        handler.assert_called_once_with()
        status = manager.get_status("enrich_pending")
        assert status["status"] == "completed"
        assert status["result"] == {"processed": 3}
        assert status["reason"] == "catalog_import"
        assert status["completed_at"]

    def test_epg_refresh_triggers_team_notifications(self, settings, clock):
        notify = MagicMock(return_value={})
        manager = _manager(settings, notify_teams=notify)

        manager.enqueue_epg_refresh()
        manager._worker()

        notify.assert_called_once_with()
        assert manager.get_status("notify_teams")["reason"] == "epg_refresh"

    def test_epg_refresh_without_team_notifications(self, settings, clock):
        settings["team notifications enabled"] = False
        notify = MagicMock(return_value={})
        manager = _manager(settings, notify_teams=notify)

        manager.enqueue_epg_refresh()
        manager._worker()

        notify.assert_not_called()

    def test_failed_job_is_retried_with_backoff(self, settings, clock):
        handler = MagicMock(side_effect=[RuntimeError("XMLTV unreachable"), {"status": "completed"}])
        settings["team notifications enabled"] = False
        manager = _manager(settings, refresh_epg=handler)

        manager.enqueue_epg_refresh()
        manager._worker()

        assert handler.call_count == 2
        assert clock.sleeps == [0.5, 0.5, 0.5, 0.5]
        assert manager.get_status("refresh_epg")["status"] == "completed"

    def test_job_marked_error_after_retries(self, settings, clock):
        handler = MagicMock(side_effect=RuntimeError("boom"))
        manager = _manager(settings, max_retries=1, notify_teams=handler)

        manager.enqueue_team_notifications()
        manager._worker()

        assert handler.call_count == 2
        status = manager.get_status("notify_teams")
        assert status["status"] == "error"
        assert status["error"] == "boom"
        assert not manager.queue


def test_worker_threads_drain_queue(settings):
    done = threading.Event()
    manager = _manager(settings, max_workers=1, enrich_pending=lambda: done.set())

    manager.enqueue_enrichment()

    assert done.wait(timeout=5)
