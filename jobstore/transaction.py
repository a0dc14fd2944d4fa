"""Write-only transaction: queued mutations committed as one unit."""

import json
from datetime import timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy.orm import Session

from jobstore.dialects import upsert
from jobstore.models import (
    Counter,
    HashEntry,
    Job,
    JobState,
    ListEntry,
    SetEntry,
    utcnow,
)
from jobstore.queues.registry import QueueProviderRegistry
from jobstore.schemas import State
from jobstore.validation import HashPairs, hash_pairs, job_pk, require

logger = structlog.get_logger()


class SqlWriteOnlyTransaction:
    """Accumulates mutations and applies them in a single database transaction.

    Nothing touches the database until commit(). If any queued command fails
    during commit, every command of the batch is rolled back. Leaving the
    context manager without committing discards the batch.

    Job ids bound for non-transactional queues are pushed only once the
    database commit has succeeded.
    """

    def __init__(self, session: Session, queue_providers: QueueProviderRegistry):
        self._session = session
        self._queue_providers = queue_providers
        self._commands: List[Callable[[Session], None]] = []
        self._after_commit: List[Callable[[Session], None]] = []
        self._committed = False

    def __len__(self):
        return len(self._commands) + len(self._after_commit)

    def _enqueue(self, command: Callable[[Session], None], after_commit: bool = False):
        if self._committed:
            raise RuntimeError("Transaction has already been committed")
        (self._after_commit if after_commit else self._commands).append(command)

    def commit(self):
        """Apply every queued command atomically."""
        if self._committed:
            raise RuntimeError("Transaction has already been committed")

        with self._session.begin():
            for command in self._commands:
                command(self._session)

        logger.debug("Write transaction committed", commands=len(self._commands))
        self._committed = True
        self._commands = []

        after_commit, self._after_commit = self._after_commit, []
        for command in after_commit:
            command(self._session)

    def discard(self):
        """Drop every queued command."""
        self._commands = []
        self._after_commit = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self._committed:
            self.discard()

    # Jobs

    def expire_job(self, job_id: str, expire_in: timedelta):
        pk = job_pk(job_id)
        require("expire_in", expire_in)
        self._enqueue(lambda s: s.query(Job).filter(Job.id == pk).update(
            {Job.expire_at: utcnow() + expire_in}, synchronize_session=False))

    def persist_job(self, job_id: str):
        pk = job_pk(job_id)
        self._enqueue(lambda s: s.query(Job).filter(Job.id == pk).update(
            {Job.expire_at: None}, synchronize_session=False))

    def set_job_state(self, job_id: str, state: State):
        """Append a state and make it the job's current state."""
        pk = job_pk(job_id)
        require("state", state)

        def command(session: Session):
            row = self._state_row(pk, state)
            session.add(row)
            session.flush()
            session.query(Job).filter(Job.id == pk).update(
                {Job.state_id: row.id, Job.state_name: state.name}, synchronize_session=False)

        self._enqueue(command)

    def add_job_state(self, job_id: str, state: State):
        """Append a state to the history without changing the current one."""
        pk = job_pk(job_id)
        require("state", state)
        self._enqueue(lambda s: s.add(self._state_row(pk, state)))

    @staticmethod
    def _state_row(pk: int, state: State) -> JobState:
        return JobState(
            job_id=pk,
            name=state.name,
            reason=state.reason,
            created_at=utcnow(),
            data=json.dumps(state.data),
        )

    def add_to_queue(self, queue: str, job_id: str):
        require("queue", queue)
        require("job_id", job_id)
        provider = self._queue_providers.get_provider(queue)
        self._enqueue(
            lambda s: provider.get_job_queue(s).enqueue(queue, job_id),
            after_commit=not provider.transactional,
        )

    # Counters

    def increment_counter(self, key: str, expire_in: Optional[timedelta] = None):
        self._add_counter(key, 1, expire_in)

    def decrement_counter(self, key: str, expire_in: Optional[timedelta] = None):
        self._add_counter(key, -1, expire_in)

    def _add_counter(self, key: str, delta: int, expire_in: Optional[timedelta]):
        require("key", key)
        self._enqueue(lambda s: s.add(Counter(
            key=key,
            value=delta,
            expire_at=utcnow() + expire_in if expire_in is not None else None,
        )))

    # Sets

    def add_to_set(self, key: str, value: str, score: float = 0.0):
        require("key", key)
        require("value", value)
        self._enqueue(lambda s: upsert(
            s, SetEntry,
            {"key": key, "value": value, "score": score},
            index_elements=["key", "value"],
            update=["score"],
        ))

    def remove_from_set(self, key: str, value: str):
        require("key", key)
        require("value", value)
        self._enqueue(lambda s: s.query(SetEntry).filter(
            SetEntry.key == key, SetEntry.value == value).delete(synchronize_session=False))

    def expire_set(self, key: str, expire_in: timedelta):
        self._expire(SetEntry, key, expire_in)

    def persist_set(self, key: str):
        self._persist(SetEntry, key)

    # Lists

    def insert_to_list(self, key: str, value: str):
        require("key", key)
        self._enqueue(lambda s: s.add(ListEntry(key=key, value=value)))

    def remove_from_list(self, key: str, value: str):
        """Remove every occurrence of value from the list."""
        require("key", key)
        self._enqueue(lambda s: s.query(ListEntry).filter(
            ListEntry.key == key, ListEntry.value == value).delete(synchronize_session=False))

    def trim_list(self, key: str, keep_starting_from: int, keep_ending_at: int):
        """Keep only the newest-first positions keep_starting_from..keep_ending_at."""
        require("key", key)

        def command(session: Session):
            ids = [row.id for row in session.query(ListEntry.id)
                   .filter(ListEntry.key == key)
                   .order_by(ListEntry.id.desc())]
            keep = ids[max(keep_starting_from, 0):keep_ending_at + 1]
            query = session.query(ListEntry).filter(ListEntry.key == key)
            if keep:
                query = query.filter(ListEntry.id.notin_(keep))
            query.delete(synchronize_session=False)

        self._enqueue(command)

    def expire_list(self, key: str, expire_in: timedelta):
        self._expire(ListEntry, key, expire_in)

    def persist_list(self, key: str):
        self._persist(ListEntry, key)

    # Hashes

    def set_range_in_hash(self, key: str, pairs: HashPairs):
        require("key", key)
        items = hash_pairs(pairs)

        def command(session: Session):
            for field, value in items:
                upsert(
                    session, HashEntry,
                    {"key": key, "field": field, "value": value},
                    index_elements=["key", "field"],
                    update=["value"],
                )

        self._enqueue(command)

    def remove_hash(self, key: str):
        require("key", key)
        self._enqueue(lambda s: s.query(HashEntry).filter(
            HashEntry.key == key).delete(synchronize_session=False))

    def expire_hash(self, key: str, expire_in: timedelta):
        self._expire(HashEntry, key, expire_in)

    def persist_hash(self, key: str):
        self._persist(HashEntry, key)

    def _expire(self, model, key: str, expire_in: timedelta):
        require("key", key)
        require("expire_in", expire_in)
        self._enqueue(lambda s: s.query(model).filter(model.key == key).update(
            {model.expire_at: utcnow() + expire_in}, synchronize_session=False))

    def _persist(self, model, key: str):
        require("key", key)
        self._enqueue(lambda s: s.query(model).filter(model.key == key).update(
            {model.expire_at: None}, synchronize_session=False))


__all__ = ["SqlWriteOnlyTransaction"]
