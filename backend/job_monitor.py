"""
Stall monitor for background jobs.
Fails jobs that stopped reporting progress, so a crashed worker or a lost
terminal write never leaves a job 'processing' forever.
"""

import logging
import threading

from config import Config
from lifecycle import JobLifecycleManager

logger = logging.getLogger(__name__)


class JobMonitor:
    """
    Periodically fails processing jobs whose heartbeat is older than
    JOB_STALL_TIMEOUT_MINUTES. The thread is not started in TESTING mode;
    tests call check_stalled_jobs_once() directly.
    """

    def __init__(self, lifecycle: JobLifecycleManager, check_interval_seconds: int = 60):
        self.lifecycle = lifecycle
        self.check_interval = check_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the monitoring thread."""
        if Config.TESTING:
            logger.debug("JobMonitor disabled in TESTING mode")
            return

        if self._thread and self._thread.is_alive():
            logger.warning("JobMonitor already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitor_loop, daemon=True, name="JobMonitor")
        self._thread.start()
        logger.info("JobMonitor started")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop and join the thread."""
        if not self._thread:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("JobMonitor did not stop within timeout")
        else:
            logger.debug("JobMonitor stopped")

    def check_stalled_jobs_once(self) -> int:
        """
        Run a single stall check iteration.
        Returns number of jobs marked as failed.
        """
        timeout = Config.JOB_STALL_TIMEOUT_MINUTES
        try:
            stalled = self.lifecycle.find_stalled(timeout)
        except Exception as e:
            if not self._stop_event.is_set():
                logger.error(f"Error checking stalled jobs: {e}")
            return 0

        count = 0
        for job in stalled:
            if self.lifecycle.fail(job["id"], f"Job stalled (no progress for {timeout} minutes)"):
                logger.warning("Marked job as stalled", extra={"job_id": job["id"]})
                count += 1
        return count

    def _monitor_loop(self) -> None:
        """Check, then sleep until the next interval or stop()."""
        while not self._stop_event.is_set():
            self.check_stalled_jobs_once()
            # Wakes early when stop() is called
            self._stop_event.wait(self.check_interval)
