"""
Tests for job lifecycle state transitions.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from config import Config
from job_store import MemoryJobStore
from lifecycle import JobLifecycleManager


@pytest.fixture
def lifecycle():
    return JobLifecycleManager(MemoryJobStore(), terminal_retries=1, retry_backoff_ms=0)


def stats(valid=0, invalid=0, risky=0):
    return {"valid": valid, "invalid": invalid, "risky": risky}


class TestCreate:
    """Test job creation."""

    def test_initial_record(self, lifecycle):
        job = lifecycle.create("alice", "list.csv")

        stored = lifecycle.get(job["id"])
        assert stored == job
        assert stored["owner_id"] == "alice"
        assert stored["status"] == "processing"
        assert stored["file_name"] == "list.csv"
        assert stored["processed_count"] == 0
        assert stored["total_emails"] == 0
        assert stored["stats"] == stats()
        assert stored["download_url"] is None
        assert stored["error_detail"] is None
        assert stored["completed_at"] is None
        assert stored["created_at"] == stored["last_heartbeat"]

    def test_ids_are_unique(self, lifecycle):
        ids = {lifecycle.create("alice", "x.csv")["id"] for _ in range(50)}
        assert len(ids) == 50

    def test_create_uses_injected_clock(self, lifecycle):
        fixed = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        Config.set_time_provider(lambda: fixed)
        job = lifecycle.create("alice", "x.csv")
        assert job["created_at"].startswith("2026-01-02T03:04:05")

    def test_store_error_propagates(self, lifecycle):
        with patch.object(lifecycle.store, "create", side_effect=ConnectionError("down")):
            with pytest.raises(ConnectionError):
                lifecycle.create("alice", "x.csv")


class TestTransitions:
    """Test the processing -> completed | failed state machine."""

    def test_progress_is_cumulative(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        assert lifecycle.report_progress(job["id"], 10, stats(valid=7, invalid=3)) is True
        assert lifecycle.report_progress(job["id"], 20, stats(valid=15, invalid=5)) is True

        stored = lifecycle.get(job["id"])
        assert stored["processed_count"] == 20
        assert stored["total_emails"] == 20
        assert stored["stats"] == stats(valid=15, invalid=5)

    def test_progress_stats_must_add_up(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        with pytest.raises(ValueError):
            lifecycle.report_progress(job["id"], 10, stats(valid=3))
        with pytest.raises(ValueError):
            lifecycle.report_progress(job["id"], 1, {"valid": 1, "bogus": 0})

    def test_complete(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        assert lifecycle.complete(job["id"], stats(valid=1, invalid=2), "/api/download/r.csv")

        stored = lifecycle.get(job["id"])
        assert stored["status"] == "completed"
        assert stored["processed_count"] == 3
        assert stored["total_emails"] == 3
        assert stored["download_url"] == "/api/download/r.csv"
        assert stored["error_detail"] is None
        assert stored["completed_at"] is not None

    def test_fail(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        lifecycle.report_progress(job["id"], 10, stats(valid=10))
        assert lifecycle.fail(job["id"], "Error: unexpected end of data")

        stored = lifecycle.get(job["id"])
        assert stored["status"] == "failed"
        assert stored["error_detail"] == "Error: unexpected end of data"
        assert stored["download_url"] is None
        # Partial progress is kept
        assert stored["processed_count"] == 10

    def test_fail_truncates_long_detail(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        lifecycle.fail(job["id"], "x" * 5000)
        assert len(lifecycle.get(job["id"])["error_detail"]) == 2000

    def test_terminal_state_is_final(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        lifecycle.complete(job["id"], stats(valid=1), "/api/download/r.csv")
        before = lifecycle.get(job["id"])

        assert lifecycle.fail(job["id"], "late failure") is False
        assert lifecycle.complete(job["id"], stats(valid=2), "/other") is False
        assert lifecycle.report_progress(job["id"], 5, stats(valid=5)) is False

        assert lifecycle.get(job["id"]) == before

    def test_failed_job_cannot_complete(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        lifecycle.fail(job["id"], "boom")
        assert lifecycle.complete(job["id"], stats(valid=1), "/api/download/r.csv") is False
        assert lifecycle.get(job["id"])["status"] == "failed"

    def test_unknown_job(self, lifecycle):
        assert lifecycle.get("missing") is None
        assert lifecycle.report_progress("missing", 0, stats()) is False
        assert lifecycle.fail("missing", "x") is False


class TestStoreFaults:
    """Test behavior when the store raises."""

    def test_progress_error_is_swallowed(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        with patch.object(lifecycle.store, "update", side_effect=ConnectionError("down")):
            assert lifecycle.report_progress(job["id"], 1, stats(valid=1)) is False
        assert lifecycle.get(job["id"])["processed_count"] == 0

    def test_terminal_write_retried_once(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        real_update = lifecycle.store.update
        calls = []

        def flaky(job_id, fields, require_status=None):
            calls.append(fields["status"])
            if len(calls) == 1:
                raise ConnectionError("blip")
            return real_update(job_id, fields, require_status)

        with patch.object(lifecycle.store, "update", side_effect=flaky):
            assert lifecycle.complete(job["id"], stats(valid=1), "/api/download/r.csv") is True

        assert calls == ["completed", "completed"]
        assert lifecycle.get(job["id"])["status"] == "completed"

    def test_retry_after_applied_write_counts_as_success(self, lifecycle):
        """A write that landed but reported an error is not reported as a conflict."""
        job = lifecycle.create("alice", "x.csv")
        real_update = lifecycle.store.update
        calls = []

        def applied_then_error(job_id, fields, require_status=None):
            calls.append(1)
            result = real_update(job_id, fields, require_status)
            if len(calls) == 1:
                raise TimeoutError("reply lost")
            return result

        with patch.object(lifecycle.store, "update", side_effect=applied_then_error):
            assert lifecycle.fail(job["id"], "boom") is True

        assert lifecycle.get(job["id"])["status"] == "failed"

    def test_fail_never_raises(self, lifecycle):
        job = lifecycle.create("alice", "x.csv")
        with patch.object(lifecycle.store, "update", side_effect=ConnectionError("down")):
            assert lifecycle.fail(job["id"], "boom") is False
        # Left processing for the stall monitor
        assert lifecycle.get(job["id"])["status"] == "processing"


class TestQueries:
    """Test listing and stall queries."""

    def test_list_recent_returns_twenty_newest_first(self, lifecycle):
        start = datetime(2026, 3, 1, tzinfo=UTC)
        created = []
        for i in range(25):
            Config.set_time_provider(lambda i=i: start + timedelta(minutes=i))
            created.append(lifecycle.create("alice", f"file{i}.csv")["id"])
        lifecycle.create("bob", "other.csv")

        jobs = lifecycle.list_recent("alice")

        assert len(jobs) == 20
        assert [j["id"] for j in jobs] == list(reversed(created))[:20]
        assert all(j["owner_id"] == "alice" for j in jobs)

    def test_list_recent_same_timestamp_keeps_insertion_order(self, lifecycle):
        fixed = datetime(2026, 3, 1, tzinfo=UTC)
        Config.set_time_provider(lambda: fixed)
        ids = [lifecycle.create("alice", "x.csv")["id"] for _ in range(3)]
        assert [j["id"] for j in lifecycle.list_recent("alice")] == list(reversed(ids))

    def test_list_recent_unknown_owner(self, lifecycle):
        assert lifecycle.list_recent("nobody") == []

    def test_find_stalled(self, lifecycle):
        old = datetime(2026, 3, 1, tzinfo=UTC)
        Config.set_time_provider(lambda: old)
        stalled = lifecycle.create("alice", "old.csv")
        done = lifecycle.create("alice", "done.csv")
        lifecycle.complete(done["id"], stats(), "/api/download/r.csv")

        Config.set_time_provider(lambda: old + timedelta(minutes=30))
        fresh = lifecycle.create("alice", "new.csv")

        ids = [j["id"] for j in lifecycle.find_stalled(10)]
        assert ids == [stalled["id"]]
        assert fresh["id"] not in ids
        assert lifecycle.count_processing() == 2
