"""
Worker pool: a fixed number of threads pulling record ids from the work queue.

Each worker claims a job, reconciles it, reports the outcome and marks the job
done or failed. stop() lets in-flight reconciliations finish; nothing new is
claimed after it.

Settling a job (done, rescheduled, failed) is retried on storage errors. If the
queue stays unwritable the pool stops; the job is left `running` and the next
start releases it.
"""

import threading
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import ReconcileJob
from .errors import LinkerError, StorageFatal, UpstreamTransient
from .logger import StructuredLogger, get_logger
from .reconciler import Reconciler
from .records import MatchType, OutcomeStatus, ReconcileOutcome
from .retry import RetryError, exponential_backoff, is_transient_error
from .work_queue import RETRYING, WorkQueue

SETTLE_ERRORS = (SQLAlchemyError, StorageFatal)

# Running jobs claimed longer ago than this are assumed abandoned at start-up
DEFAULT_STALE_AFTER = 600.0


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (UpstreamTransient, StorageFatal)):
        return True
    if isinstance(exc, LinkerError):
        return False
    return is_transient_error(exc)


def _invoke(func, *args, **kwargs):
    return func(*args, **kwargs)


class WorkerPool:
    def __init__(
        self,
        queue: WorkQueue,
        reconciler: Reconciler,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        stale_after: Optional[float] = DEFAULT_STALE_AFTER,
        settle_retries: int = 3,
        settle_delay: float = 0.5,
        logger: Optional[StructuredLogger] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.reconciler = reconciler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self.logger = logger or get_logger()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._settle_with_retry = exponential_backoff(
            max_retries=settle_retries,
            base_delay=settle_delay,
            exceptions=SETTLE_ERRORS,
            on_retry=self._on_settle_retry,
        )(_invoke)

    def start(self, drain: bool = False) -> None:
        """Spawn the worker threads. With drain=True each exits once the queue is empty."""
        self.queue.release_running(stale_after=self.stale_after)
        self.logger.info(f"Starting {self.concurrency} worker(s)", drain=drain)
        for i in range(self.concurrency):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(drain,),
                name=f"worker-{i + 1}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Stop claiming new jobs. In-flight jobs run to completion."""
        if not self._stop.is_set():
            self.logger.info("Shutdown requested, finishing in-flight records")
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def is_alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def run(self, drain: bool = False) -> None:
        """Start, then block until every worker has exited."""
        self.start(drain=drain)
        while self.is_alive():
            # Short joins keep the main thread responsive to signals
            self.join(timeout=0.5)

    def _worker_loop(self, drain: bool) -> None:
        while not self._stop.is_set():
            try:
                job = self.queue.claim()
                if job is None:
                    if drain and not self.queue.has_unfinished():
                        break
                    self._stop.wait(self.poll_interval)
                    continue
                self.process(job)
            except (SQLAlchemyError, LinkerError) as e:
                self.logger.error("Queue access failed", error=str(e))
                self._stop.wait(self.poll_interval)

    def process(self, job: ReconcileJob) -> Optional[ReconcileOutcome]:
        """Reconcile one claimed job and settle it in the queue."""
        try:
            outcome = self.reconciler.reconcile(job.record_id)
        except Exception as e:
            self._handle_failure(job, e)
            return None

        # Storage already reflects the outcome; count it even if settling fails
        self.report(outcome, job_id=job.id)
        self._settle(job, self.queue.complete, job.id)
        return outcome

    def report(self, outcome: ReconcileOutcome, job_id: Optional[int] = None) -> None:
        """Count the outcome, print a completion line, log issues for review."""
        match_type = outcome.match_type.value if outcome.match_type else None
        created = outcome.status == OutcomeStatus.SUCCESS and outcome.match_type != MatchType.DUPLICATE
        self.logger.record_outcome(outcome.status.value, match_type, created=created)

        label = match_type or outcome.status.value
        self.logger.info(f"[{label}] {outcome.record_id}", job_id=job_id, link_id=outcome.link_id)

        if outcome.status == OutcomeStatus.SKIPPED:
            self.logger.issue("skipped", record_id=outcome.record_id, job_id=job_id, reason=outcome.reason)
        elif outcome.status == OutcomeStatus.NOT_FOUND:
            self.logger.issue("not_found", record_id=outcome.record_id, job_id=job_id, reason=outcome.reason)
        elif outcome.match_type == MatchType.UNMATCHED:
            self.logger.issue("unmatched", record_id=outcome.record_id, job_id=job_id, link_id=outcome.link_id)

    def _settle(self, job: ReconcileJob, func, *args, **kwargs):
        """
        Write a job's new state, retrying storage errors.

        Returns the queue call's result, or None if the write kept failing. In
        that case the pool is stopped so drain mode cannot wait on the job forever.
        """
        try:
            return self._settle_with_retry(func, *args, **kwargs)
        except RetryError as e:
            self.logger.critical(
                "Could not settle job, stopping workers",
                record_id=job.record_id,
                job_id=job.id,
                error=str(e),
            )
            self.stop()
            return None

    def _on_settle_retry(self, attempt: int, exc: Exception, delay: float):
        self.logger.warning("Queue write failed, retrying", attempt=attempt, delay=delay, error=str(exc))

    def _handle_failure(self, job: ReconcileJob, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        result = self._settle(job, self.queue.fail, job.id, error, retryable=is_retryable(exc))
        if result is None:
            self.logger.record_failure(type(exc).__name__)
            return
        if result == RETRYING:
            self.logger.record_retry()
            self.logger.warning(
                "Record failed, rescheduled",
                record_id=job.record_id,
                job_id=job.id,
                attempt=job.attempts,
                error=error,
            )
            return

        self.logger.record_failure(type(exc).__name__)
        self.logger.error(f"[failed] {job.record_id}", job_id=job.id, attempts=job.attempts, error=error)
        self.logger.issue(
            "failed",
            record_id=job.record_id,
            job_id=job.id,
            attempts=job.attempts,
            error=error,
        )
