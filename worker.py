# worker.py
import logging
import threading

from storage import DEFAULT_CLEANUP_MAX_AGE_MS

logger = logging.getLogger(__name__)


class Reaper:
    """Periodic housekeeping for the job store.

    Each sweep times out jobs that have been active for longer than
    ``stale_after_ms`` (their spawner most likely died without reporting)
    and deletes terminal jobs older than ``cleanup_max_age_ms``.
    """

    def __init__(self, store, stale_after_ms=60 * 60 * 1000, cleanup_max_age_ms=DEFAULT_CLEANUP_MAX_AGE_MS,
                 poll_interval=60.0, stop_event=None):
        self.store = store
        self.stale_after_ms = stale_after_ms
        self.cleanup_max_age_ms = cleanup_max_age_ms
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()

    def run(self):
        while not self.stop_event.is_set():
            self.sweep()
            self.stop_event.wait(self.poll_interval)

    def sweep(self):
        if not self.store.is_initialized():
            return {"timed_out": 0, "deleted": 0}

        timed_out = self.store.mark_stale_jobs(self.stale_after_ms)
        deleted = self.store.cleanup_old_jobs(self.cleanup_max_age_ms)
        if timed_out or deleted:
            logger.info("Sweep: %d stale job(s) timed out, %d old job(s) deleted", timed_out, deleted)
        return {"timed_out": timed_out, "deleted": deleted}
