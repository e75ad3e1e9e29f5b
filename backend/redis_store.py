"""
Redis job metadata store for multi-process deployments.

Layout (all keys share KEY_PREFIX):
- job:<id>            hash, field "data" holds the JSON job document
- owner:<owner>:jobs  sorted set of job ids scored by creation sequence
- processing          set of job ids not yet terminal
- job_seq             counter giving each job its creation sequence
"""

import json
import logging
from typing import Any

import redis

from job_store import JobExistsError, JobStore

logger = logging.getLogger(__name__)


class RedisJobStore(JobStore):
    """Job store backed by Redis. Conditional updates use WATCH/MULTI transactions."""

    KEY_PREFIX = "emailclean:"
    JOB_KEY = KEY_PREFIX + "job:"
    PROCESSING_SET = KEY_PREFIX + "processing"
    SEQ_KEY = KEY_PREFIX + "job_seq"

    def __init__(self, url: str | None = None, client: Any = None):
        """
        Args:
            url: Redis connection URL, used when no client is given
            client: pre-built redis client (decode_responses=True expected)
        """
        if client is None:
            if not url:
                raise ValueError("RedisJobStore requires a url or a client")
            client = redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        self._redis = client

    def _job_key(self, job_id: str) -> str:
        return f"{self.JOB_KEY}{job_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.KEY_PREFIX}owner:{owner_id}:jobs"

    def create(self, job: dict[str, Any]) -> None:
        key = self._job_key(job["id"])
        if self._redis.hget(key, "data") is not None:
            raise JobExistsError(job["id"])

        seq = self._redis.incr(self.SEQ_KEY)
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(key, mapping={"data": json.dumps(job)})
        pipe.zadd(self._owner_key(job["owner_id"]), {job["id"]: seq})
        if job.get("status") == "processing":
            pipe.sadd(self.PROCESSING_SET, job["id"])
        pipe.execute()

    def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        require_status: str | None = None,
    ) -> bool:
        key = self._job_key(job_id)

        def apply(pipe: Any) -> bool:
            data = pipe.hget(key, "data")
            if data is None:
                return False
            job = json.loads(data)
            if require_status is not None and job.get("status") != require_status:
                return False
            job.update(fields)
            pipe.multi()
            pipe.hset(key, mapping={"data": json.dumps(job)})
            if job.get("status") != "processing":
                pipe.srem(self.PROCESSING_SET, job_id)
            return True

        return self._redis.transaction(apply, key, value_from_callable=True)

    def get(self, job_id: str) -> dict[str, Any] | None:
        data = self._redis.hget(self._job_key(job_id), "data")
        return json.loads(data) if data else None

    def list_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        job_ids = self._redis.zrevrange(self._owner_key(owner_id), 0, limit - 1)
        jobs = []
        for job_id in job_ids:
            job = self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    def find_stalled(self, cutoff_iso: str) -> list[dict[str, Any]]:
        stalled = []
        for job_id in self._redis.smembers(self.PROCESSING_SET):
            job = self.get(job_id)
            if job is None:
                self._redis.srem(self.PROCESSING_SET, job_id)
                continue
            heartbeat = job.get("last_heartbeat") or job.get("created_at", "")
            if job.get("status") == "processing" and heartbeat < cutoff_iso:
                stalled.append(job)
        return stalled

    def count_processing(self) -> int:
        return int(self._redis.scard(self.PROCESSING_SET))

    def clear(self) -> None:
        for key in self._redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
            self._redis.delete(key)
