"""Relational job queue backed by the job_queue table."""

import threading
from datetime import timedelta
from typing import Optional, Sequence

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from jobstore.config import Settings, settings as default_settings
from jobstore.errors import ArgumentError, OperationCancelledError
from jobstore.models import JobQueueEntry, utcnow
from jobstore.queues.base import FetchedJobBase

logger = structlog.get_logger()


class SqlFetchedJob(FetchedJobBase):
    """A claimed job_queue row."""

    def __init__(self, session: Session, entry_id: int, job_id: str, queue: str):
        super().__init__(job_id, queue)
        self._session = session
        self._entry_id = entry_id

    def _remove(self):
        with self._session.begin():
            self._session.query(JobQueueEntry).filter(
                JobQueueEntry.id == self._entry_id
            ).delete(synchronize_session=False)
        logger.debug("Job removed from queue", job_id=self.job_id, queue=self.queue)

    def _requeue(self):
        with self._session.begin():
            self._session.query(JobQueueEntry).filter(
                JobQueueEntry.id == self._entry_id
            ).update({JobQueueEntry.fetched_at: None}, synchronize_session=False)
        logger.info("Job requeued", job_id=self.job_id, queue=self.queue)


class SqlJobQueue:
    """Polls job_queue for visible rows and claims them one at a time.

    A claimed row stays invisible until it is removed, requeued, or its
    fetched_at falls behind the invisibility timeout.
    """

    def __init__(self, session: Session, settings: Settings):
        self._session = session
        self.poll_interval = settings.queue_poll_interval_seconds
        self.invisibility_timeout = timedelta(seconds=settings.invisibility_timeout_seconds)

    def enqueue(self, queue: str, job_id: str):
        """Add a job id; runs inside the caller's transaction."""
        self._session.add(JobQueueEntry(job_id=int(job_id), queue=queue))

    def dequeue(
        self, queues: Sequence[str], cancellation: Optional[threading.Event] = None
    ) -> SqlFetchedJob:
        if not queues:
            raise ArgumentError("queues", "At least one queue must be given")
        cancellation = cancellation or threading.Event()

        while True:
            if cancellation.is_set():
                raise OperationCancelledError("Dequeue cancelled")

            fetched = self._try_claim(list(queues))
            if fetched is not None:
                logger.info("Job dequeued", job_id=fetched.job_id, queue=fetched.queue)
                return fetched

            cancellation.wait(self.poll_interval)

    def _try_claim(self, queues) -> Optional[SqlFetchedJob]:
        with self._session.begin():
            now = utcnow()
            visible = or_(
                JobQueueEntry.fetched_at.is_(None),
                JobQueueEntry.fetched_at < now - self.invisibility_timeout,
            )
            while True:
                candidate = (
                    self._session.query(JobQueueEntry.id, JobQueueEntry.job_id, JobQueueEntry.queue)
                    .filter(JobQueueEntry.queue.in_(queues), visible)
                    .order_by(JobQueueEntry.id)
                    .with_for_update(skip_locked=True)
                    .first()
                )
                if candidate is None:
                    return None

                # Another fetcher may have claimed the row since the select.
                claimed = (
                    self._session.query(JobQueueEntry)
                    .filter(JobQueueEntry.id == candidate.id, visible)
                    .update({JobQueueEntry.fetched_at: now}, synchronize_session=False)
                )
                if claimed == 1:
                    break

        return SqlFetchedJob(self._session, candidate.id, str(candidate.job_id), candidate.queue)


class SqlJobQueueProvider:
    """Default provider: queues live in the same database as the jobs."""

    name = "sql"
    transactional = True

    def __init__(self, settings: Settings = None):
        self.settings = settings or default_settings

    def get_job_queue(self, session: Session) -> SqlJobQueue:
        return SqlJobQueue(session, self.settings)
