"""
Tests for worker.py - job processing, failure handling and the thread pool.
"""

import json
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from crmlinker.database import LinkRecord
from crmlinker.errors import (
    InsufficientKeyFields,
    RateLimited,
    SourceNotFound,
    StorageFatal,
    UpstreamError,
    UpstreamTransient,
)
from crmlinker.records import IncomingRecord
from crmlinker.work_queue import DONE, FAILED, PENDING, RUNNING, WorkQueue
from crmlinker.worker import WorkerPool, is_retryable


def read_issues(tmp_path):
    path = tmp_path / "logs" / "processing_issues.log"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines() if line]


@pytest.fixture
def queue(database, test_logger):
    return WorkQueue(database, max_attempts=2, base_delay=0.0, max_delay=0.0, logger=test_logger)


@pytest.fixture
def pool(queue, reconciler, test_logger):
    return WorkerPool(
        queue,
        reconciler,
        concurrency=2,
        poll_interval=0.01,
        stale_after=0,
        settle_delay=0.0,
        logger=test_logger,
    )


def locked_error():
    return OperationalError("UPDATE reconcile_jobs", {}, Exception("database is locked"))


class FailingFirst:
    """Wraps a queue method so its first `times` calls raise a lock error."""

    def __init__(self, func, times=1):
        self.func = func
        self.remaining = times
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.remaining > 0:
            self.remaining -= 1
            raise locked_error()
        return self.func(*args, **kwargs)


class TestIsRetryable:
    """Test the retry classification."""

    @pytest.mark.parametrize("exc", [
        UpstreamTransient("timeout"),
        RateLimited("429"),
        StorageFatal("database is locked"),
        ConnectionError("connection reset"),
    ])
    def test_retryable(self, exc):
        assert is_retryable(exc)

    @pytest.mark.parametrize("exc", [
        UpstreamError("bad request", status=400),
        SourceNotFound("r1"),
        InsufficientKeyFields("r1"),
        ValueError("unexpected"),
    ])
    def test_not_retryable(self, exc):
        assert not is_retryable(exc)


class TestProcess:
    """Test settling a single claimed job."""

    def test_success_completes_job(self, pool, queue, fetcher, test_logger):
        """A reconciled record marks the job done and counts the link."""
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com", address="12 Main St"))
        queue.enqueue(["r1"])

        outcome = pool.process(queue.claim())

        assert outcome.link_id is not None
        assert queue.count(DONE) == 1
        metrics = test_logger.get_metrics()
        assert metrics["links_created"] == 1
        assert metrics["match_types"] == {"unmatched": 1}

    def test_unmatched_is_logged_as_issue(self, pool, queue, fetcher, tmp_path):
        """Unmatched links land in the issue log."""
        fetcher.add(IncomingRecord(record_id="r1", website="nobody.org"))
        queue.enqueue(["r1"])
        pool.process(queue.claim())

        issues = read_issues(tmp_path)
        assert [i["issue"] for i in issues] == ["unmatched"]
        assert issues[0]["record_id"] == "r1"

    def test_not_found_completes_job(self, pool, queue, test_logger, tmp_path):
        """A record missing upstream is settled, not retried."""
        queue.enqueue(["ghost"])
        pool.process(queue.claim())

        assert queue.count(DONE) == 1
        assert test_logger.get_metrics()["outcomes"] == {"not_found": 1}
        assert read_issues(tmp_path)[0]["issue"] == "not_found"

    def test_skipped_completes_job(self, pool, queue, fetcher, test_logger, tmp_path):
        """A record with no key fields is settled as skipped."""
        fetcher.add(IncomingRecord(record_id="r1", name="Nameless"))
        queue.enqueue(["r1"])
        pool.process(queue.claim())

        assert queue.count(DONE) == 1
        assert test_logger.get_metrics()["outcomes"] == {"skipped": 1}
        assert read_issues(tmp_path)[0]["issue"] == "skipped"

    def test_duplicate_is_not_a_new_link(self, pool, queue, fetcher, test_logger):
        """links_created only counts first sightings."""
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com"))
        fetcher.add(IncomingRecord(record_id="r2", website="acme.com"))
        queue.enqueue(["r1", "r2"])
        pool.process(queue.claim())
        pool.process(queue.claim())

        metrics = test_logger.get_metrics()
        assert metrics["records_processed"] == 2
        assert metrics["links_created"] == 1
        assert metrics["match_types"]["duplicate"] == 1


class TestFailures:
    """Test failed attempts."""

    def test_transient_error_reschedules(self, pool, queue, fetcher, test_logger):
        """A retryable error puts the job back in the queue."""
        fetcher.errors["r1"] = UpstreamTransient("503")
        queue.enqueue(["r1"])

        assert pool.process(queue.claim()) is None

        assert queue.count(PENDING) == 1
        assert test_logger.get_metrics()["retries"] == 1

    def test_exhausted_retries_park_job(self, pool, queue, fetcher, test_logger, tmp_path):
        """The last allowed failure parks the job and logs an issue."""
        fetcher.errors["r1"] = UpstreamTransient("503")
        queue.enqueue(["r1"])

        pool.process(queue.claim())
        pool.process(queue.claim(now=datetime.now() + timedelta(seconds=1)))

        assert queue.count(FAILED) == 1
        metrics = test_logger.get_metrics()
        assert metrics["failed"] == 1
        assert metrics["errors_by_type"] == {"UpstreamTransient": 1}
        issue = read_issues(tmp_path)[0]
        assert issue["issue"] == "failed"
        assert issue["attempts"] == 2
        assert "UpstreamTransient" in issue["error"]

    def test_permanent_error_fails_at_once(self, pool, queue, fetcher, test_logger):
        """A non-retryable error skips the remaining attempts."""
        fetcher.errors["r1"] = UpstreamError("unauthorized", status=401)
        queue.enqueue(["r1"])

        pool.process(queue.claim())

        assert queue.count(FAILED) == 1
        assert test_logger.get_metrics()["retries"] == 0


class TestPool:
    """Test the threaded pool."""

    def test_concurrency_must_be_positive(self, queue, reconciler):
        with pytest.raises(ValueError):
            WorkerPool(queue, reconciler, concurrency=0)

    def test_drain_processes_everything(self, pool, queue, fetcher, link_repo, database):
        """drain=True returns once every job is settled."""
        ids = [f"r{i}" for i in range(10)]
        for i, rid in enumerate(ids):
            fetcher.add(IncomingRecord(record_id=rid, website=f"site{i % 3}.com"))
        queue.enqueue(ids)

        pool.run(drain=True)

        assert queue.count(DONE) == 10
        assert not pool.is_alive()
        assert link_repo.count() == 3
        sources = set()
        with database.session() as session:
            for link in session.query(LinkRecord).all():
                sources |= link.source_ids
        assert sources == set(ids)

    def test_drain_waits_out_retries(self, pool, queue, fetcher):
        """A job failing once is retried before the pool exits."""

        class FlakyOnce:
            def __init__(self, inner):
                self.inner = inner
                self.failed = False

            def fetch_record(self, record_id):
                if not self.failed:
                    self.failed = True
                    raise UpstreamTransient("timeout")
                return self.inner.fetch_record(record_id)

        pool.reconciler.fetcher = FlakyOnce(fetcher)
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com"))
        queue.enqueue(["r1"])

        pool.run(drain=True)

        assert queue.count(DONE) == 1

    def test_start_releases_stale_claims(self, pool, queue, fetcher):
        """Jobs left running by a previous process are picked up again."""
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com"))
        queue.enqueue(["r1"])
        queue.claim()

        pool.run(drain=True)

        assert queue.count(DONE) == 1

    def test_stop_ends_idle_workers(self, pool):
        """Workers waiting on an empty queue exit after stop()."""
        pool.start(drain=False)
        assert pool.is_alive()

        pool.stop()
        pool.join(timeout=5)

        assert not pool.is_alive()

    def test_stop_from_another_thread(self, pool):
        """run() returns when stop() is called elsewhere, as a signal handler would."""
        timer = threading.Timer(0.1, pool.stop)
        timer.start()
        pool.run(drain=False)
        timer.join()
        assert not pool.is_alive()

    def test_fresh_claims_of_another_process_are_kept(self, queue, reconciler, fetcher, test_logger):
        """Only claims older than stale_after are taken over at start-up."""
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com"))
        queue.enqueue(["r1"])
        queue.claim()
        pool = WorkerPool(queue, reconciler, concurrency=1, poll_interval=0.01, stale_after=600, logger=test_logger)

        pool.start(drain=False)
        pool.stop()
        pool.join(timeout=5)

        assert queue.count(RUNNING) == 1
        assert fetcher.calls == []


class TestSettleErrors:
    """Test queue writes failing after a record was reconciled."""

    def test_complete_retried_after_lock(self, pool, queue, fetcher, test_logger):
        """A locked queue on completion is retried; the job ends up done and counted once."""
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com"))
        queue.enqueue(["r1"])
        queue.complete = FailingFirst(queue.complete)

        pool.run(drain=True)

        assert queue.count(DONE) == 1
        assert queue.complete.calls == 2
        metrics = test_logger.get_metrics()
        assert metrics["records_processed"] == 1
        assert metrics["links_created"] == 1

    def test_fail_retried_after_lock(self, pool, queue, fetcher):
        """Recording a failure survives a lock error too."""
        fetcher.errors["r1"] = UpstreamError("unauthorized", status=401)
        queue.enqueue(["r1"])
        queue.fail = FailingFirst(queue.fail)

        pool.run(drain=True)

        assert queue.count(FAILED) == 1

    def test_unwritable_queue_stops_drain(self, queue, reconciler, fetcher, test_logger):
        """If completion never succeeds the pool stops instead of waiting forever."""
        fetcher.add(IncomingRecord(record_id="r1", website="acme.com"))
        queue.enqueue(["r1"])
        queue.complete = FailingFirst(queue.complete, times=100)
        pool = WorkerPool(
            queue,
            reconciler,
            concurrency=2,
            poll_interval=0.01,
            settle_retries=2,
            settle_delay=0.0,
            logger=test_logger,
        )

        pool.run(drain=True)

        assert not pool.is_alive()
        assert queue.complete.calls == 3
        assert queue.count(RUNNING) == 1
        metrics = test_logger.get_metrics()
        assert metrics["records_processed"] == 1
        assert metrics["links_created"] == 1
