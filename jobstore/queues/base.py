"""
Structural protocols for pluggable job queues.

A provider hands out a JobQueue bound to a connection's session. The queue
enqueues job ids and dequeues them as FetchedJob handles. A FetchedJob is
either removed (processed) or requeued; leaving its context manager without
doing either puts the job back.
"""

import threading
from typing import Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy.orm import Session


@runtime_checkable
class FetchedJob(Protocol):
    """Handle to a dequeued job."""

    @property
    def job_id(self) -> str: ...

    @property
    def queue(self) -> str: ...

    def remove_from_queue(self) -> None: ...

    def requeue(self) -> None: ...


@runtime_checkable
class JobQueue(Protocol):
    """Queue backend bound to one session."""

    def enqueue(self, queue: str, job_id: str) -> None: ...

    def dequeue(
        self, queues: Sequence[str], cancellation: Optional[threading.Event] = None
    ) -> FetchedJob: ...


@runtime_checkable
class JobQueueProvider(Protocol):
    """Factory of queue backends; one instance serves a set of queue names.

    Transactional providers enqueue inside the write transaction; the others
    are handed their job ids only after the database commit succeeds.
    """

    name: str
    transactional: bool

    def get_job_queue(self, session: Session) -> JobQueue: ...


class FetchedJobBase:
    """Context-manager plumbing shared by the built-in fetched-job handles."""

    def __init__(self, job_id: str, queue: str):
        self._job_id = job_id
        self._queue = queue
        self._removed = False
        self._requeued = False

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def queue(self) -> str:
        return self._queue

    def remove_from_queue(self) -> None:
        self._remove()
        self._removed = True

    def requeue(self) -> None:
        self._requeue()
        self._requeued = True

    def close(self) -> None:
        if not self._removed and not self._requeued:
            self.requeue()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _remove(self) -> None:
        raise NotImplementedError

    def _requeue(self) -> None:
        raise NotImplementedError
