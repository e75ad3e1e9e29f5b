"""
Job metadata store interface and the in-process implementation.

A store holds one document per job, keyed by job id. The lifecycle manager is
its only writer. Backends:

- memory: dict guarded by a lock (tests, single-process development)
- sqlite: see db.py (default, persistent)
- redis: see redis_store.py (shared between processes)
"""

import copy
import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any


class JobExistsError(Exception):
    """Raised when creating a job whose id is already stored."""


class JobStore(ABC):
    """Document store for job records."""

    @abstractmethod
    def create(self, job: dict[str, Any]) -> None:
        """Insert a complete job record in one write. Raises JobExistsError on id clash."""
        ...

    @abstractmethod
    def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        require_status: str | None = None,
    ) -> bool:
        """
        Partially update a job.

        When require_status is given the write only happens if the stored
        status still equals it (checked and written atomically).

        Returns:
            True if the job was updated, False if it is missing or the
            status condition did not hold
        """
        ...

    @abstractmethod
    def get(self, job_id: str) -> dict[str, Any] | None:
        """Point lookup. Returns a copy of the record or None."""
        ...

    @abstractmethod
    def list_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        """Jobs of one owner, newest first (ties broken by insertion order)."""
        ...

    @abstractmethod
    def find_stalled(self, cutoff_iso: str) -> list[dict[str, Any]]:
        """Processing jobs whose last_heartbeat is older than cutoff_iso."""
        ...

    @abstractmethod
    def count_processing(self) -> int:
        """Number of jobs still in the processing state."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Remove every job (for testing)."""
        ...


class MemoryJobStore(JobStore):
    """Thread-safe dict-backed store. State is lost when the process exits."""

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def create(self, job: dict[str, Any]) -> None:
        with self._lock:
            if job["id"] in self._jobs:
                raise JobExistsError(job["id"])
            self._jobs[job["id"]] = copy.deepcopy(job)
            self._order[job["id"]] = next(self._seq)

    def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        require_status: str | None = None,
    ) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if require_status is not None and job.get("status") != require_status:
                return False
            job.update(copy.deepcopy(fields))
            return True

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            owned = [j for j in self._jobs.values() if j.get("owner_id") == owner_id]
            owned.sort(key=lambda j: (j["created_at"], self._order[j["id"]]), reverse=True)
            return [copy.deepcopy(j) for j in owned[:limit]]

    def find_stalled(self, cutoff_iso: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(j)
                for j in self._jobs.values()
                if j.get("status") == "processing"
                and (j.get("last_heartbeat") or j["created_at"]) < cutoff_iso
            ]

    def count_processing(self) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.get("status") == "processing")

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._order.clear()


def create_store(backend: str, db_path: str | None = None, redis_url: str | None = None) -> JobStore:
    """Build the store selected by STORE_BACKEND."""
    if backend == "memory":
        return MemoryJobStore()
    if backend == "sqlite":
        from db import SQLiteJobStore

        if not db_path:
            raise ValueError("sqlite store requires db_path")
        store = SQLiteJobStore(db_path)
        store.init_db()
        return store
    if backend == "redis":
        from redis_store import RedisJobStore

        return RedisJobStore(url=redis_url)
    raise ValueError(f"Unknown store backend: {backend}")
