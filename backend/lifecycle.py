"""
Job lifecycle management.

JobLifecycleManager is the only component that writes job state. It enforces
the state machine

    processing -> completed
    processing -> failed

Every mutation is a conditional store write on status == 'processing'.
Mutating a terminal job is a no-op: the call returns False and logs a warning.
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import Any

from config import Config
from job_store import JobStore

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)

STATS_KEYS = ("valid", "invalid", "risky")
MAX_ERROR_DETAIL_LENGTH = 2000


def _now_iso() -> str:
    return Config.now_utc().isoformat(timespec="microseconds")


def empty_stats() -> dict[str, int]:
    return {key: 0 for key in STATS_KEYS}


def _check_stats(processed_count: int, stats: dict[str, int]) -> dict[str, int]:
    """Copy stats, rejecting unknown keys, negatives and totals that don't add up."""
    unknown = set(stats) - set(STATS_KEYS)
    if unknown:
        raise ValueError(f"Unknown stats keys: {sorted(unknown)}")
    clean = {key: int(stats.get(key, 0)) for key in STATS_KEYS}
    if any(v < 0 for v in clean.values()):
        raise ValueError(f"Stats must be non-negative: {clean}")
    if sum(clean.values()) != processed_count:
        raise ValueError(f"Stats {clean} do not sum to processed_count={processed_count}")
    return clean


class JobLifecycleManager:
    """
    Owns job creation and state transitions in the metadata store.

    Args:
        store: job metadata store (injected, see job_store.create_store)
        terminal_retries: extra attempts for complete/fail after a store error
        retry_backoff_ms: pause between terminal attempts
    """

    def __init__(self, store: JobStore, terminal_retries: int = 1, retry_backoff_ms: int = 200):
        self.store = store
        self.terminal_retries = terminal_retries
        self.retry_backoff_ms = retry_backoff_ms

    def create(self, owner_id: str, file_name: str) -> dict[str, Any]:
        """Allocate an id and write the initial record in a single store call."""
        now = _now_iso()
        job = {
            "id": str(uuid.uuid4()),
            "owner_id": owner_id,
            "status": PROCESSING,
            "file_name": file_name,
            "processed_count": 0,
            "total_emails": 0,
            "stats": empty_stats(),
            "download_url": None,
            "error_detail": None,
            "created_at": now,
            "completed_at": None,
            "last_heartbeat": now,
        }
        self.store.create(job)
        logger.info(
            "Job created",
            extra={"job_id": job["id"], "owner_id": owner_id, "file_name": file_name},
        )
        return job

    def report_progress(self, job_id: str, processed_count: int, stats: dict[str, int]) -> bool:
        """
        Best-effort cumulative progress update.

        Store failures are logged and swallowed. Returns True if the record
        was updated, False if the write failed or the job is no longer
        processing.
        """
        fields = {
            "processed_count": processed_count,
            "total_emails": processed_count,
            "stats": _check_stats(processed_count, stats),
            "last_heartbeat": _now_iso(),
        }
        try:
            updated = self.store.update(job_id, fields, require_status=PROCESSING)
        except Exception:
            logger.warning(
                "Progress update failed, continuing",
                extra={"job_id": job_id, "processed_count": processed_count},
                exc_info=True,
            )
            return False

        if not updated:
            logger.debug("Progress ignored for non-processing job", extra={"job_id": job_id})
        return updated

    def complete(self, job_id: str, stats: dict[str, int], download_url: str) -> bool:
        """Terminal transition to 'completed' with final stats."""
        processed = sum(stats.values())
        now = _now_iso()
        fields = {
            "status": COMPLETED,
            "processed_count": processed,
            "total_emails": processed,
            "stats": _check_stats(processed, stats),
            "download_url": download_url,
            "completed_at": now,
            "last_heartbeat": now,
        }
        return self._terminal_write(job_id, fields)

    def fail(self, job_id: str, error_detail: str) -> bool:
        """
        Terminal transition to 'failed'.
        Never raises, so it can run from any except/finally block.
        """
        now = _now_iso()
        fields = {
            "status": FAILED,
            "error_detail": str(error_detail)[:MAX_ERROR_DETAIL_LENGTH] or "Unknown error",
            "completed_at": now,
            "last_heartbeat": now,
        }
        return self._terminal_write(job_id, fields)

    def get(self, job_id: str) -> dict[str, Any] | None:
        return self.store.get(job_id)

    def list_recent(self, owner_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent jobs of one owner, newest first."""
        return self.store.list_recent(owner_id, limit)

    def find_stalled(self, timeout_minutes: int) -> list[dict[str, Any]]:
        """Processing jobs without a heartbeat for timeout_minutes."""
        cutoff = Config.now_utc() - timedelta(minutes=timeout_minutes)
        return self.store.find_stalled(cutoff.isoformat(timespec="microseconds"))

    def count_processing(self) -> int:
        return self.store.count_processing()

    def _terminal_write(self, job_id: str, fields: dict[str, Any]) -> bool:
        target = fields["status"]
        attempts = 1 + self.terminal_retries

        for attempt in range(1, attempts + 1):
            try:
                updated = self.store.update(job_id, fields, require_status=PROCESSING)
            except Exception:
                if attempt < attempts:
                    logger.warning(
                        "Terminal write failed, retrying",
                        extra={"job_id": job_id, "job_status": target, "attempt": attempt},
                        exc_info=True,
                    )
                    time.sleep(self.retry_backoff_ms / 1000.0)
                    continue
                logger.error(
                    "Terminal write failed, job left in processing",
                    extra={"job_id": job_id, "job_status": target, "attempt": attempt},
                    exc_info=True,
                )
                return False

            if updated:
                logger.info(f"Job {target}", extra={"job_id": job_id, "job_status": target})
                return True

            # An earlier attempt may have been applied before its error surfaced
            if attempt > 1:
                try:
                    current = self.store.get(job_id)
                except Exception:
                    logger.debug("Could not re-read job after retry", extra={"job_id": job_id})
                    current = None
                if current and current.get("status") == target:
                    return True

            logger.warning(
                "Ignoring transition of job that is not processing",
                extra={"job_id": job_id, "job_status": target},
            )
            return False

        return False
