import time
import threading
from collections import deque
from datetime import datetime

JOB_TYPES = ("refresh_epg", "enrich_pending", "notify_teams")


def _utcnow():
    return datetime.utcnow().isoformat()


class JobManager:
    """In-process job queue.

    At most one job of each type is queued or running at a time; enqueueing a
    duplicate reports the existing job's state instead. Failed jobs are retried
    ``max_retries`` times with a ``min(60, 2 ** attempts)`` second backoff.
    """

    def __init__(
        self,
        *,
        logger,
        getSettings,
        refresh_epg,
        enrich_pending,
        notify_teams,
        max_workers=2,
        max_retries=2,
    ):
        self.logger = logger
        self.getSettings = getSettings
        self.handlers = {
            "refresh_epg": refresh_epg,
            "enrich_pending": enrich_pending,
            "notify_teams": notify_teams,
        }

        self.queue = deque()
        self.queue_lock = threading.Lock()
        self.queued_keys = set()
        self.in_flight = set()
        self.in_flight_lock = threading.Lock()

        self.worker_state_lock = threading.Lock()
        self.running_workers = 0
        self.max_workers = max_workers
        self.max_retries = max_retries

        self.job_status = {}
        self.job_status_lock = threading.Lock()

    def enqueue(self, job_type, reason="manual"):
        if job_type not in self.handlers:
            raise ValueError(f"Unknown job type: {job_type}")
        with self.in_flight_lock:
            if job_type in self.in_flight:
                return "running"
        with self.queue_lock:
            if job_type in self.queued_keys:
                return "queued"
            self.queue.append(
                {"type": job_type, "reason": reason or "", "attempts": 0, "run_at": time.time()}
            )
            self.queued_keys.add(job_type)
        self._set_status(job_type, status="queued", queued_at=_utcnow(), reason=reason or "", error=None)
        self._ensure_workers()
        return "queued"

    def enqueue_epg_refresh(self, reason="manual"):
        return self.enqueue("refresh_epg", reason=reason)

    def enqueue_enrichment(self, reason="manual"):
        return self.enqueue("enrich_pending", reason=reason)

    def enqueue_team_notifications(self, reason="manual"):
        return self.enqueue("notify_teams", reason=reason)

    def get_status(self, job_type):
        with self.job_status_lock:
            return dict(self.job_status.get(job_type) or {"status": "idle"})

    def _set_status(self, job_type, **fields):
        with self.job_status_lock:
            self.job_status.setdefault(job_type, {}).update(fields)

    def _requeue(self, job):
        with self.queue_lock:
            self.queue.append(job)
            self.queued_keys.add(job["type"])

    def _take(self):
        with self.queue_lock:
            if not self.queue:
                return None
            job = self.queue.popleft()
            self.queued_keys.discard(job["type"])
            return job

    def _ensure_workers(self):
        with self.worker_state_lock:
            while self.running_workers < self.max_workers:
                with self.queue_lock:
                    if not self.queue:
                        return
                threading.Thread(target=self._worker, daemon=True).start()
                self.running_workers += 1

    def _worker(self):
        try:
            while True:
                job = self._take()
                if job is None:
                    return
                if job["run_at"] > time.time():
                    # Still backing off
                    self._requeue(job)
                    time.sleep(0.5)
                    continue

                job_type = job["type"]
                with self.in_flight_lock:
                    self.in_flight.add(job_type)
                try:
                    self._run_job(job)
                except Exception as exc:
                    self._retry_or_fail(job, exc)
                finally:
                    with self.in_flight_lock:
                        self.in_flight.discard(job_type)
        finally:
            with self.worker_state_lock:
                self.running_workers = max(0, self.running_workers - 1)

    def _retry_or_fail(self, job, exc):
        job["attempts"] += 1
        if job["attempts"] > self.max_retries:
            self._set_status(job["type"], status="error", completed_at=_utcnow(), error=str(exc))
            self.logger.error("Job %s failed: %s", job["type"], exc)
            return
        backoff = min(60, 2 ** job["attempts"])
        job["run_at"] = time.time() + backoff
        self._requeue(job)
        self.logger.error("Job %s failed (retry in %ss): %s", job["type"], backoff, exc)

    def _run_job(self, job):
        job_type = job["type"]
        self.logger.info("Job %s started (%s)", job_type, job["reason"] or "manual")
        self._set_status(job_type, status="running", started_at=_utcnow(), completed_at=None, error=None)
        result = self.handlers[job_type]()
        self._set_status(job_type, status="completed", completed_at=_utcnow(), error=None, result=result)
        self.logger.info("Job %s completed", job_type)

        # A fresh guide may contain new matches for favorite teams
        if job_type == "refresh_epg" and self.getSettings().get("team notifications enabled", True):
            self.enqueue_team_notifications(reason="epg_refresh")
