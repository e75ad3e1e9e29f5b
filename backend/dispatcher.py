"""
Background job dispatch.

submit() creates the job record and starts one daemon worker thread per job,
returning to the caller without waiting. The worker body is a failure
boundary: whatever goes wrong ends up in the job record as status 'failed',
never in the caller, and the upload is removed on every exit path.
"""

import logging
import threading
import time
from collections import OrderedDict
from pathlib import Path

import storage
from lifecycle import JobLifecycleManager
from transcoder import TranscodeError, Transcoder

logger = logging.getLogger(__name__)


class DispatcherBusy(Exception):
    """Raised when MAX_CONCURRENT_JOBS jobs are already running."""


class JobDispatcher:
    """
    Launches transcoding for submitted uploads.

    Args:
        lifecycle: creates jobs and receives failures caught at the boundary
        transcoder: runs one job end to end
        max_concurrent: cap on running jobs, 0 for no limit
        launch_history: number of launched job ids remembered for launch-once
    """

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        transcoder: Transcoder,
        max_concurrent: int = 0,
        launch_history: int = 1000,
    ):
        self.lifecycle = lifecycle
        self.transcoder = transcoder
        self.max_concurrent = max_concurrent
        self.launch_history = launch_history
        self._threads: dict[str, threading.Thread] = {}
        # Most recently launched ids, oldest first; older ids fall back to the store status check
        self._launched: OrderedDict[str, None] = OrderedDict()
        # Slots held by submit() between the capacity check and the thread start
        self._reserved = 0
        self._lock = threading.Lock()

    def active_count(self) -> int:
        with self._lock:
            return len(self._threads)

    def at_capacity(self) -> bool:
        with self._lock:
            return self._is_full()

    def _is_full(self) -> bool:
        if self.max_concurrent <= 0:
            return False
        return len(self._threads) + self._reserved >= self.max_concurrent

    def submit(self, owner_id: str, file_name: str, input_path: str | Path) -> str:
        """
        Create a job for an upload and start processing it in the background.

        The upload belongs to the dispatcher from here on: it is deleted when
        the job ends, or right away if the job cannot be created.

        Raises:
            DispatcherBusy: the concurrency cap is reached (no job created)
            Exception: store errors from job creation propagate (no job created)
        """
        with self._lock:
            busy = self._is_full()
            if not busy:
                self._reserved += 1
        if busy:
            storage.remove_upload(input_path)
            raise DispatcherBusy(f"{self.max_concurrent} jobs already running")

        try:
            job = self.lifecycle.create(owner_id, file_name)
        except Exception:
            with self._lock:
                self._reserved -= 1
            storage.remove_upload(input_path)
            raise

        self._start(job["id"], input_path, reserved=True)
        return job["id"]

    def launch(self, job_id: str, input_path: str | Path) -> bool:
        """
        Start the worker for an existing job. A job id is only ever launched once,
        and only while it is still 'processing'.
        Returns False if the launch was refused.
        """
        job = self.lifecycle.get(job_id)
        if job is None or job["status"] != "processing":
            logger.warning("Job is not processing, launch refused", extra={"job_id": job_id})
            return False
        return self._start(job_id, input_path)

    def _start(self, job_id: str, input_path: str | Path, reserved: bool = False) -> bool:
        with self._lock:
            if reserved:
                self._reserved -= 1
            if job_id in self._threads or job_id in self._launched:
                logger.warning("Job already launched, ignoring", extra={"job_id": job_id})
                return False
            self._launched[job_id] = None
            while len(self._launched) > self.launch_history:
                self._launched.popitem(last=False)
            thread = threading.Thread(
                target=self._run,
                args=(job_id, Path(input_path)),
                daemon=True,
                name=f"job-{job_id[:8]}",
            )
            self._threads[job_id] = thread
        thread.start()
        return True

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until a job's worker exits. Returns False on timeout."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def wait_all(self, timeout: float | None = None) -> bool:
        """Block until all running workers exit (tests, shutdown)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return all(not t.is_alive() for t in threads)

    def _run(self, job_id: str, input_path: Path) -> None:
        try:
            output_path = storage.result_path(job_id)
            self.transcoder.run(job_id, input_path, output_path)
        except TranscodeError as e:
            logger.info(f"Job input rejected: {e}", extra={"job_id": job_id, "job_status": "failed"})
        except Exception as e:
            logger.exception("Background job crashed", extra={"job_id": job_id})
            self.lifecycle.fail(job_id, f"{type(e).__name__}: {e}")
        finally:
            storage.remove_upload(input_path)
            with self._lock:
                self._threads.pop(job_id, None)
