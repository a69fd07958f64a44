"""
Durable work queue backed by the reconcile_jobs table.

Delivery is at-least-once: a job claimed by a worker that dies stays
`running` until release_running() puts it back. A claim sets updated_at, so
updated_at of a running job is its claim time. Failed jobs are rescheduled
with exponential backoff until max_attempts, then parked as `failed` for
manual follow-up.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import Database, ReconcileJob
from .errors import StorageFatal
from .logger import StructuredLogger, get_logger
from .retry import backoff_delay

PENDING = "pending"
RUNNING = "running"
DONE = "done"
FAILED = "failed"

# Retry outcomes returned by WorkQueue.fail
RETRYING = "retrying"


class WorkQueue:
    def __init__(
        self,
        database: Database,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        logger: Optional[StructuredLogger] = None,
    ):
        self.database = database
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = logger or get_logger()

    def enqueue(self, record_ids: Iterable[str]) -> int:
        """Add one pending job per record id. Returns the number enqueued."""
        now = datetime.now()
        jobs = [
            ReconcileJob(
                record_id=record_id,
                status=PENDING,
                max_attempts=self.max_attempts,
                next_attempt_at=now,
            )
            for record_id in record_ids
        ]
        if not jobs:
            return 0
        try:
            with self.database.session() as session:
                session.add_all(jobs)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageFatal(f"Enqueue failed: {e}") from e
        return len(jobs)

    def claim(self, now: Optional[datetime] = None) -> Optional[ReconcileJob]:
        """
        Claim the next due job for this worker.

        The status flip is a conditional UPDATE; if another worker got there
        first the row count is 0 and the next candidate is tried.
        """
        now = now or datetime.now()
        with self.database.session() as session:
            while True:
                candidate = (
                    session.query(ReconcileJob.id)
                    .filter(ReconcileJob.status == PENDING, ReconcileJob.next_attempt_at <= now)
                    .order_by(ReconcileJob.next_attempt_at, ReconcileJob.id)
                    .first()
                )
                if candidate is None:
                    return None

                claimed = (
                    session.query(ReconcileJob)
                    .filter(ReconcileJob.id == candidate.id, ReconcileJob.status == PENDING)
                    .update(
                        {
                            "status": RUNNING,
                            "attempts": ReconcileJob.attempts + 1,
                            "updated_at": datetime.now(),
                        },
                        synchronize_session=False,
                    )
                )
                session.commit()
                if claimed == 1:
                    return session.get(ReconcileJob, candidate.id)

    def complete(self, job_id: int) -> None:
        self._set(job_id, status=DONE, last_error=None)

    def fail(self, job_id: int, error: str, retryable: bool = True) -> str:
        """
        Record a failed attempt.

        Returns:
            "retrying" if the job was rescheduled, "failed" if it is parked
        """
        with self.database.session() as session:
            job = session.get(ReconcileJob, job_id)
            if job is None:
                raise StorageFatal(f"Job {job_id} vanished from the queue")

            if retryable and job.attempts < job.max_attempts:
                delay = backoff_delay(job.attempts, self.base_delay, self.max_delay)
                job.status = PENDING
                job.next_attempt_at = datetime.now() + timedelta(seconds=delay)
                result = RETRYING
            else:
                job.status = FAILED
                result = FAILED
            job.last_error = error
            session.commit()
            return result

    def release_running(self, stale_after: Optional[float] = None) -> int:
        """
        Put jobs left `running` by a dead worker back in the queue.

        Args:
            stale_after: Only release jobs claimed at least this many seconds
                ago (None = every running job)
        """
        now = datetime.now()
        cutoff = now - timedelta(seconds=stale_after) if stale_after is not None else None
        return self._bulk_update(RUNNING, {"status": PENDING, "next_attempt_at": now}, claimed_before=cutoff)

    def requeue_failed(self) -> int:
        """Give parked jobs a fresh set of attempts."""
        return self._bulk_update(
            FAILED,
            {"status": PENDING, "attempts": 0, "next_attempt_at": datetime.now()},
        )

    def count(self, status: str) -> int:
        with self.database.session() as session:
            return session.query(ReconcileJob).filter(ReconcileJob.status == status).count()

    def has_unfinished(self) -> bool:
        with self.database.session() as session:
            return (
                session.query(ReconcileJob.id)
                .filter(ReconcileJob.status.in_((PENDING, RUNNING)))
                .first()
                is not None
            )

    def failures(self) -> List[ReconcileJob]:
        with self.database.session() as session:
            return (
                session.query(ReconcileJob)
                .filter(ReconcileJob.status == FAILED)
                .order_by(ReconcileJob.id)
                .all()
            )

    def clear(self) -> int:
        """Delete every job. Returns the number removed."""
        with self.database.session() as session:
            removed = session.query(ReconcileJob).delete(synchronize_session=False)
            session.commit()
            return removed

    def _set(self, job_id: int, **values) -> None:
        values["updated_at"] = datetime.now()
        with self.database.session() as session:
            session.query(ReconcileJob).filter(ReconcileJob.id == job_id).update(
                values, synchronize_session=False
            )
            session.commit()

    def _bulk_update(self, from_status: str, values: dict, claimed_before: Optional[datetime] = None) -> int:
        values["updated_at"] = datetime.now()
        with self.database.session() as session:
            query = session.query(ReconcileJob).filter(ReconcileJob.status == from_status)
            if claimed_before is not None:
                query = query.filter(ReconcileJob.updated_at <= claimed_before)
            updated = query.update(values, synchronize_session=False)
            session.commit()
        if updated:
            self.logger.info(f"Moved {updated} job(s) from {from_status} to {values['status']}")
        return updated
